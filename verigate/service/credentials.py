from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from verigate.config import Settings
from verigate.logging import get_logger
from verigate.service.errors import (
    AccountLockedError,
    InternalError,
    InvalidCredentialsError,
    ValidationError,
)
from verigate.service.mutation import mutate_identity
from verigate.service.schemas import validate_password_strength
from verigate.storage.models import Identity, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from verigate.service.identity import IdentityStore

logger = get_logger(__name__)


@dataclass
class LoginOutcome:
    identity: Identity
    success: bool


class CredentialManager:
    """Password hashing, verification and brute-force lockout."""

    def __init__(
        self,
        store: "IdentityStore",
        settings: Settings,
        *,
        clock: Callable[[], "datetime"] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.lockout_threshold = settings.lockout_threshold
        self._clock = clock
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def hash_password(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: str) -> bool:
        """Return True when ``plaintext`` matches ``password_hash``.

        A mismatch is a normal False; a stored hash that cannot be parsed
        means the record is corrupt and is reported as ``InternalError``.
        """
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerificationError:
            return False
        except InvalidHash as exc:
            logger.error("password_hash_invalid", error=str(exc))
            raise InternalError("stored credential is unreadable") from exc

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False

    def validate_password(self, plaintext: str) -> str:
        try:
            return validate_password_strength(plaintext)
        except ValueError as exc:
            raise ValidationError(str(exc), field="password")

    def burn_dummy_verification(self, plaintext: str) -> None:
        """Spend one verification on a throwaway hash.

        Used when the login email is unknown so the response takes as long
        as a real password check.
        """
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.hash_password(secrets.token_urlsafe(16))
            dummy = self._dummy_hash
        try:
            self._pwd_hasher.verify(dummy, plaintext)
        except VerificationError:
            pass

    def ensure_unlocked(self, identity: Identity) -> None:
        if identity.locked:
            raise AccountLockedError()

    def record_login_result(
        self,
        identity_id: str,
        success: bool,
        *,
        new_hash: Optional[str] = None,
        verified_hash: Optional[str] = None,
    ) -> Identity:
        """Apply a login outcome atomically and return the stored identity.

        A failure increments the counter and locks at the threshold. A
        success resets the counter; it is refused if a concurrent failure
        locked the account in between. ``new_hash`` upgrades the stored
        hash in the same write when cost parameters changed.

        ``verified_hash`` is the hash the password was checked against; if
        the stored hash changed since, the success is refused so a
        concurrent reset or change is never overwritten.
        """

        def _apply(identity: Identity) -> None:
            now = self._clock()
            if success:
                if identity.locked:
                    raise AccountLockedError()
                if verified_hash is not None and identity.password_hash != verified_hash:
                    raise InvalidCredentialsError()
                identity.login_attempts = 0
                identity.last_login = now
                if new_hash:
                    identity.password_hash = new_hash
                return
            identity.login_attempts += 1
            identity.last_failed_login = now
            if identity.login_attempts >= self.lockout_threshold:
                identity.locked = True

        updated, _ = mutate_identity(self.store, identity_id, _apply)
        if not success:
            logger.info(
                "login_failure_recorded",
                identity_id=identity_id,
                attempts=updated.login_attempts,
                locked=updated.locked,
            )
        return updated

    def authenticate(self, identity: Identity, plaintext: str) -> LoginOutcome:
        """Check the lock, then the password, and record the outcome.

        Raises ``AccountLockedError`` before touching the password when the
        account is already locked. A mismatch is counted and returned as an
        unsuccessful outcome so the caller can audit it before failing.
        """
        self.ensure_unlocked(identity)
        if not self.verify_password(plaintext, identity.password_hash):
            return LoginOutcome(self.record_login_result(identity.id, False), False)
        new_hash = None
        if self.needs_rehash(identity.password_hash):
            new_hash = self.hash_password(plaintext)
        return LoginOutcome(
            self.record_login_result(
                identity.id,
                True,
                new_hash=new_hash,
                verified_hash=identity.password_hash,
            ),
            True,
        )

    def set_password(self, identity_id: str, new_hash: str) -> Identity:
        """Replace the stored hash and clear any lockout."""

        def _apply(identity: Identity) -> None:
            identity.password_hash = new_hash
            identity.login_attempts = 0
            identity.locked = False

        updated, _ = mutate_identity(self.store, identity_id, _apply)
        return updated

    def admin_unlock(self, identity_id: str) -> Identity:
        def _apply(identity: Identity) -> None:
            identity.locked = False
            identity.login_attempts = 0

        updated, _ = mutate_identity(self.store, identity_id, _apply)
        logger.info("account_unlocked", identity_id=identity_id)
        return updated
