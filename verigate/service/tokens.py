from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Sequence, Union

from verigate.config import Settings
from verigate.logging import get_logger
from verigate.service.errors import (
    AlreadyVerifiedError,
    DuplicateIdentityError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from verigate.service.mutation import mutate_identity
from verigate.service.schemas import validate_contact
from verigate.storage.errors import ConstraintViolation
from verigate.storage.models import (
    Channel,
    Identity,
    PendingChange,
    StoredToken,
    TokenPurpose,
    utcnow,
)

if TYPE_CHECKING:
    from verigate.service.identity import IdentityStore

logger = get_logger(__name__)

_EMAIL_TOKEN_BYTES = 32


def hash_token(raw: str) -> str:
    """SHA-256 hex digest; the only form in which a token is stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class IssuedToken:
    """A freshly issued token. ``raw`` exists only here and in the message sent."""

    purpose: TokenPurpose
    destination: str
    expires_at: datetime
    identity: Identity = field(repr=False)
    raw: str = field(repr=False, default="")


@dataclass
class ConsumedToken:
    purpose: TokenPurpose
    identity: Identity = field(repr=False)
    old_value: Optional[str] = None
    new_value: Optional[str] = None


class VerificationTokenService:
    """Single-use ownership proofs for email, phone and password reset.

    Every issue or consume is one compare-and-set write on the identity, so
    a second consumer of the same token re-reads a cleared slot and fails.
    """

    def __init__(
        self,
        store: "IdentityStore",
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    # helpers
    def ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose is TokenPurpose.PASSWORD_RESET:
            minutes = self.settings.reset_token_ttl_minutes
        elif purpose.is_numeric_code:
            minutes = self.settings.phone_code_ttl_minutes
        else:
            minutes = self.settings.email_token_ttl_minutes
        return timedelta(minutes=minutes)

    def generate(self, purpose: TokenPurpose) -> str:
        if purpose.is_numeric_code:
            return "".join(
                secrets.choice("0123456789")
                for _ in range(self.settings.phone_code_length)
            )
        return secrets.token_urlsafe(_EMAIL_TOKEN_BYTES)

    @staticmethod
    def _slot(identity: Identity, purpose: TokenPurpose):
        return {
            TokenPurpose.EMAIL_VERIFICATION: identity.email_verification,
            TokenPurpose.PHONE_VERIFICATION: identity.phone_verification,
            TokenPurpose.PASSWORD_RESET: identity.password_reset,
            TokenPurpose.EMAIL_CHANGE: identity.pending_email_change,
            TokenPurpose.PHONE_CHANGE: identity.pending_phone_change,
        }[purpose]

    @staticmethod
    def _store_slot(
        identity: Identity,
        purpose: TokenPurpose,
        value: Union[StoredToken, PendingChange, None],
    ) -> None:
        attr = {
            TokenPurpose.EMAIL_VERIFICATION: "email_verification",
            TokenPurpose.PHONE_VERIFICATION: "phone_verification",
            TokenPurpose.PASSWORD_RESET: "password_reset",
            TokenPurpose.EMAIL_CHANGE: "pending_email_change",
            TokenPurpose.PHONE_CHANGE: "pending_phone_change",
        }[purpose]
        setattr(identity, attr, value)

    def _stage(
        self,
        identity: Identity,
        purpose: TokenPurpose,
        raw: str,
        channel_value: Optional[str],
    ) -> str:
        """Write a new token for ``purpose`` onto ``identity``; return its destination."""
        expires_at = self._clock() + self.ttl(purpose)
        token_hash = hash_token(raw)
        if purpose in (TokenPurpose.EMAIL_CHANGE, TokenPurpose.PHONE_CHANGE):
            if not channel_value:
                raise ValidationError("new value required", field=purpose.channel.value)
            self._store_slot(
                identity,
                purpose,
                PendingChange(
                    new_value=channel_value, token_hash=token_hash, expires_at=expires_at
                ),
            )
            return channel_value
        destination = identity.contact(purpose.channel)
        if not destination:
            raise ValidationError("no phone number on record", field="phone")
        self._store_slot(
            identity, purpose, StoredToken(token_hash=token_hash, expires_at=expires_at)
        )
        return destination

    # issue
    def issue_token(
        self,
        identity_id: str,
        purpose: TokenPurpose,
        channel_value: Optional[str] = None,
    ) -> IssuedToken:
        """Issue a token, replacing any outstanding one for the same purpose."""
        raw = self.generate(purpose)
        updated, destination = mutate_identity(
            self.store,
            identity_id,
            lambda identity: self._stage(identity, purpose, raw, channel_value),
        )
        slot = self._slot(updated, purpose)
        logger.info("token_issued", identity_id=identity_id, purpose=purpose.value)
        return IssuedToken(
            purpose=purpose,
            destination=destination,
            expires_at=slot.expires_at,
            identity=updated,
            raw=raw,
        )

    def request_contact_change(
        self, identity_id: str, channel: Channel, new_value: str
    ) -> IssuedToken:
        """Stage ``new_value`` for ``channel`` and issue the token that confirms it.

        The canonical contact is untouched until that token is consumed.
        """
        normalized = validate_contact(channel, new_value)
        purpose = (
            TokenPurpose.EMAIL_CHANGE if channel is Channel.EMAIL else TokenPurpose.PHONE_CHANGE
        )
        raw = self.generate(purpose)

        def _apply(identity: Identity) -> str:
            if identity.contact(channel) == normalized:
                raise ValidationError(
                    f"new {channel.value} matches the current one", field=channel.value
                )
            if self.store.contact_in_use(channel, normalized, exclude_id=identity.id):
                raise DuplicateIdentityError(
                    f"{channel.value} already in use", field=channel.value
                )
            return self._stage(identity, purpose, raw, normalized)

        updated, destination = mutate_identity(self.store, identity_id, _apply)
        logger.info(
            "contact_change_requested", identity_id=identity_id, channel=channel.value
        )
        return IssuedToken(
            purpose=purpose,
            destination=destination,
            expires_at=self._slot(updated, purpose).expires_at,
            identity=updated,
            raw=raw,
        )

    def resend_verification(self, identity_id: str, channel: Channel) -> IssuedToken:
        """Re-issue whichever proof is outstanding for ``channel``.

        A staged change takes precedence over the initial verification.
        """
        change_purpose = (
            TokenPurpose.EMAIL_CHANGE if channel is Channel.EMAIL else TokenPurpose.PHONE_CHANGE
        )
        initial_purpose = (
            TokenPurpose.EMAIL_VERIFICATION
            if channel is Channel.EMAIL
            else TokenPurpose.PHONE_VERIFICATION
        )
        raw_change = self.generate(change_purpose)
        raw_initial = self.generate(initial_purpose)

        def _apply(identity: Identity) -> TokenPurpose:
            pending = identity.pending_change(channel)
            if pending is not None:
                self._stage(identity, change_purpose, raw_change, pending.new_value)
                return change_purpose
            if identity.is_verified(channel):
                raise AlreadyVerifiedError(
                    f"{channel.value} already verified", field=channel.value
                )
            if channel is Channel.PHONE and not identity.phone:
                raise ValidationError("no phone number on record", field="phone")
            self._stage(identity, initial_purpose, raw_initial, None)
            return initial_purpose

        updated, purpose = mutate_identity(self.store, identity_id, _apply)
        raw = raw_change if purpose is change_purpose else raw_initial
        destination = (
            self._slot(updated, purpose).new_value
            if purpose is change_purpose
            else updated.contact(channel)
        )
        logger.info("token_reissued", identity_id=identity_id, purpose=purpose.value)
        return IssuedToken(
            purpose=purpose,
            destination=destination,
            expires_at=self._slot(updated, purpose).expires_at,
            identity=updated,
            raw=raw,
        )

    # consume
    def _matches(self, slot, token_hash: str, now: datetime) -> bool:
        if slot is None or slot.is_expired(now):
            return False
        return hmac.compare_digest(slot.token_hash, token_hash)

    def _apply_effect(
        self, identity: Identity, purpose: TokenPurpose, ip: Optional[str]
    ) -> ConsumedToken:
        consumed = ConsumedToken(purpose=purpose, identity=identity)
        if purpose is TokenPurpose.EMAIL_VERIFICATION:
            identity.email_verified = True
            identity.email_verification = None
        elif purpose is TokenPurpose.PHONE_VERIFICATION:
            identity.phone_verified = True
            identity.phone_verification = None
        elif purpose is TokenPurpose.EMAIL_CHANGE:
            change = identity.pending_email_change
            consumed.old_value, consumed.new_value = identity.email, change.new_value
            identity.email = change.new_value
            identity.email_verified = True
            identity.pending_email_change = None
            identity.email_verification = None
            identity.record_change(
                "email", consumed.old_value, consumed.new_value, changed_by=identity.id, ip=ip
            )
        elif purpose is TokenPurpose.PHONE_CHANGE:
            change = identity.pending_phone_change
            consumed.old_value, consumed.new_value = identity.phone, change.new_value
            identity.phone = change.new_value
            identity.phone_verified = True
            identity.pending_phone_change = None
            identity.phone_verification = None
            identity.record_change(
                "phone", consumed.old_value, consumed.new_value, changed_by=identity.id, ip=ip
            )
        elif purpose is TokenPurpose.PASSWORD_RESET:
            identity.password_reset = None
        return consumed

    def consume_any(
        self,
        purposes: Sequence[TokenPurpose],
        raw: Optional[str],
        *,
        identity_id: Optional[str] = None,
        on_consume: Optional[Callable[[Identity], None]] = None,
        ip: Optional[str] = None,
    ) -> ConsumedToken:
        """Consume the first of ``purposes`` whose stored token matches ``raw``.

        Phone codes are short, so they are only looked up by ``identity_id``;
        email-style tokens are found by their hash. Any failure leaves the
        stored token as it was.
        """
        if not raw or not isinstance(raw, str):
            raise InvalidOrExpiredTokenError()
        token_hash = hash_token(raw.strip())

        if identity_id is None:
            if any(p.is_numeric_code for p in purposes):
                raise InvalidOrExpiredTokenError()
            found = self.store.find_identity_by_token(token_hash, purposes)
            if found is None:
                raise InvalidOrExpiredTokenError()
            identity_id = found.id

        def _apply(identity: Identity) -> ConsumedToken:
            now = self._clock()
            for purpose in purposes:
                if self._matches(self._slot(identity, purpose), token_hash, now):
                    consumed = self._apply_effect(identity, purpose, ip)
                    if on_consume is not None:
                        on_consume(identity)
                    return consumed
            raise InvalidOrExpiredTokenError()

        try:
            updated, consumed = mutate_identity(self.store, identity_id, _apply)
        except NotFoundError:
            raise InvalidOrExpiredTokenError()
        except ConstraintViolation as exc:
            # Another identity claimed the staged value after it was requested
            raise DuplicateIdentityError(
                f"{exc.field or 'contact'} already in use", field=exc.field
            )
        consumed.identity = updated
        logger.info(
            "token_consumed", identity_id=updated.id, purpose=consumed.purpose.value
        )
        return consumed

    def consume_token(
        self,
        purpose: TokenPurpose,
        raw: Optional[str],
        *,
        identity_id: Optional[str] = None,
        on_consume: Optional[Callable[[Identity], None]] = None,
        ip: Optional[str] = None,
    ) -> ConsumedToken:
        return self.consume_any(
            [purpose], raw, identity_id=identity_id, on_consume=on_consume, ip=ip
        )
