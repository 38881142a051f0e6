from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Protocol, Union

from verigate.config import Settings
from verigate.logging import get_logger, redact_email, redact_phone
from verigate.service.audit import AuditEvent, AuditLog, RequestOrigin
from verigate.service.credentials import CredentialManager
from verigate.service.errors import (
    AccountLockedError,
    DuplicateIdentityError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ServiceError,
    TransportFailureError,
    ValidationError,
)
from verigate.service.mutation import mutate_identity
from verigate.service.notifications import (
    DeliveryResult,
    MessageComposer,
    NotificationGateway,
)
from verigate.service.results import (
    GenericAck,
    IssueReceipt,
    OperationError,
    OperationResult,
    RegistrationResult,
    VerificationOutcome,
)
from verigate.service.schemas import (
    AdminCreateRequest,
    IdentityProfile,
    LoginRequest,
    NameUpdateRequest,
    NewPasswordRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    RegisterRequest,
    parse_request,
    validate_email,
)
from verigate.service.sessions import SessionCredential, SessionIssuer
from verigate.service.tokens import IssuedToken, VerificationTokenService
from verigate.storage.errors import ConstraintViolation, StorageError
from verigate.storage.models import (
    AuditAction,
    AuditLogEntry,
    Channel,
    Identity,
    Role,
    TokenPurpose,
    utcnow,
)

logger = get_logger(__name__)


class IdentityStore(Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def find_identity_by_token(
        self, token_hash: str, purposes: Iterable[TokenPurpose]
    ) -> Optional[Identity]: ...

    def contact_in_use(
        self, channel: Channel, value: str, *, exclude_id: Optional[str] = None
    ) -> bool: ...

    def compare_and_swap(self, identity: Identity, expected_version: int) -> bool: ...

    def append_audit_entry(self, entry: AuditLogEntry) -> None: ...

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]: ...


@dataclass
class AuthContext:
    identity_id: str
    role: str
    expires_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


def _channel(value: Union[Channel, str]) -> Channel:
    try:
        return Channel(value)
    except ValueError:
        raise ValidationError("channel must be 'email' or 'phone'", field="channel")


def _mask(channel: Channel, value: Optional[str]) -> str:
    return redact_email(value) if channel is Channel.EMAIL else redact_phone(value)


class IdentityService:
    """Entry point for every identity operation.

    Components below raise ``ServiceError``; this class is the boundary
    that turns every outcome, including unexpected failures, into an
    ``OperationResult`` and hands the produced audit events to the audit
    log. Nothing raised by a component escapes a public method.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        gateway: NotificationGateway,
        *,
        credentials: Optional[CredentialManager] = None,
        tokens: Optional[VerificationTokenService] = None,
        sessions: Optional[SessionIssuer] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.gateway = gateway
        self.credentials = credentials or CredentialManager(store, settings, clock=clock)
        self.tokens = tokens or VerificationTokenService(store, settings, clock=clock)
        self.sessions = sessions or SessionIssuer(settings, clock=clock)
        self.audit = audit or AuditLog(store)
        self.messages = MessageComposer(settings)

    # boundary
    def _run(
        self,
        operation: str,
        origin: Optional[RequestOrigin],
        body: Callable[[List[AuditEvent]], Any],
    ) -> OperationResult:
        events: List[AuditEvent] = []
        try:
            result = OperationResult.success(body(events), events)
        except ServiceError as exc:
            if exc.status_code >= 500:
                logger.error(
                    "identity_operation_failed",
                    operation=operation,
                    error_code=exc.error_code,
                    error=exc.message,
                )
            result = OperationResult.failure(OperationError.from_exception(exc), events)
        except StorageError as exc:
            logger.error(
                "identity_operation_storage_failed", operation=operation, error=str(exc)
            )
            result = OperationResult.failure(
                OperationError.from_exception(InternalError()), events
            )
        except Exception as exc:
            logger.error(
                "identity_operation_crashed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            result = OperationResult.failure(
                OperationError.from_exception(InternalError()), events
            )
        self.audit.record_all(result.audit, origin)
        return result

    def _load(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("identity not found")
        return identity

    @staticmethod
    def _require_admin(actor: Optional[AuthContext]) -> None:
        if actor is None or not actor.is_admin:
            raise ForbiddenError("admin role required")

    def _deliver(self, issued: IssuedToken, events: List[AuditEvent]) -> bool:
        """Send ``issued`` through the gateway; a failure is audited, never raised.

        The stored token stays valid either way so the caller can resend.
        """
        purpose = issued.purpose
        try:
            if purpose.channel is Channel.PHONE:
                result = self.gateway.send_sms(
                    issued.destination, self.messages.phone_code(issued.raw)
                )
            else:
                if purpose is TokenPurpose.PASSWORD_RESET:
                    subject, body = self.messages.password_reset(issued.raw)
                elif purpose is TokenPurpose.EMAIL_CHANGE:
                    subject, body = self.messages.email_change(issued.raw)
                else:
                    subject, body = self.messages.email_verification(issued.raw)
                result = self.gateway.send_email(issued.destination, subject, body)
        except Exception as exc:
            logger.error(
                "notification_gateway_error",
                purpose=purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            result = DeliveryResult(False, purpose.channel.value, type(exc).__name__)

        if result.delivered:
            return True
        logger.warning(
            "notification_delivery_failed",
            identity_id=issued.identity.id,
            purpose=purpose.value,
            reason=result.error,
        )
        events.append(
            AuditEvent(
                AuditAction.OTHER,
                "notification delivery failed",
                actor_id=issued.identity.id,
                details={
                    "error": TransportFailureError.error_code,
                    "purpose": purpose.value,
                    "channel": purpose.channel.value,
                    "reason": result.error,
                },
            )
        )
        return False

    def _receipt(self, issued: IssuedToken, delivered: bool) -> IssueReceipt:
        return IssueReceipt(
            purpose=issued.purpose.value,
            destination=_mask(issued.purpose.channel, issued.destination),
            expires_at=issued.expires_at,
            delivery_failed=not delivered,
        )

    def _create_identity(
        self, request: RegisterRequest, role: str, events: List[AuditEvent]
    ) -> RegistrationResult:
        if self.store.get_identity_by_email(request.email) is not None:
            raise DuplicateIdentityError("email already registered", field="email")
        if request.phone and self.store.contact_in_use(Channel.PHONE, request.phone):
            raise DuplicateIdentityError("phone already registered", field="phone")

        identity = Identity.new(
            name=request.name,
            email=request.email,
            password_hash=self.credentials.hash_password(request.password),
            phone=request.phone,
            role=role,
        )
        try:
            self.store.create_identity(identity)
        except ConstraintViolation as exc:
            raise DuplicateIdentityError(
                f"{exc.field or 'email'} already registered", field=exc.field or "email"
            )
        events.append(
            AuditEvent(
                AuditAction.REGISTER,
                "identity registered",
                actor_id=identity.id,
                details={"role": role, "has_phone": bool(identity.phone)},
            )
        )

        pending: List[str] = []
        failed: List[str] = []
        to_issue = [TokenPurpose.EMAIL_VERIFICATION]
        if identity.phone:
            to_issue.append(TokenPurpose.PHONE_VERIFICATION)
        for purpose in to_issue:
            issued = self.tokens.issue_token(identity.id, purpose)
            pending.append(purpose.channel.value)
            if not self._deliver(issued, events):
                failed.append(purpose.channel.value)
        logger.info("identity_registered", identity_id=identity.id, role=role)
        return RegistrationResult(
            identity_id=identity.id, pending_verifications=pending, delivery_failed=failed
        )

    # registration and login
    def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[RegistrationResult]:
        def _body(events: List[AuditEvent]) -> RegistrationResult:
            request = parse_request(
                RegisterRequest, name=name, email=email, password=password, phone=phone
            )
            return self._create_identity(request, Role.USER.value, events)

        return self._run("register", origin, _body)

    def login(
        self, email: str, password: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[SessionCredential]:
        def _body(events: List[AuditEvent]) -> SessionCredential:
            request = parse_request(LoginRequest, email=email, password=password)
            identity = self.store.get_identity_by_email(request.email)
            if identity is None:
                self.credentials.burn_dummy_verification(request.password)
                events.append(
                    AuditEvent(
                        AuditAction.FAILED_LOGIN,
                        "login failed",
                        details={"email": redact_email(request.email), "reason": "unknown"},
                    )
                )
                raise InvalidCredentialsError()

            try:
                outcome = self.credentials.authenticate(identity, request.password)
            except AccountLockedError:
                events.append(
                    AuditEvent(
                        AuditAction.FAILED_LOGIN,
                        "login refused for locked account",
                        actor_id=identity.id,
                        details={"reason": "locked"},
                    )
                )
                raise

            if not outcome.success:
                events.append(
                    AuditEvent(
                        AuditAction.FAILED_LOGIN,
                        "login failed",
                        actor_id=identity.id,
                        details={
                            "reason": "mismatch",
                            "attempts": outcome.identity.login_attempts,
                        },
                    )
                )
                if outcome.identity.locked:
                    events.append(
                        AuditEvent(
                            AuditAction.ACCOUNT_LOCKED,
                            "account locked after repeated failed logins",
                            actor_id=identity.id,
                            details={"attempts": outcome.identity.login_attempts},
                        )
                    )
                raise InvalidCredentialsError()

            credential = self.sessions.issue_session(outcome.identity)
            events.append(
                AuditEvent(AuditAction.LOGIN, "login succeeded", actor_id=identity.id)
            )
            return credential

        return self._run("login", origin, _body)

    def logout(
        self, identity_id: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[None]:
        """Record a logout. Session credentials are stateless and stay valid until expiry."""

        def _body(events: List[AuditEvent]) -> None:
            self._load(identity_id)
            events.append(
                AuditEvent(AuditAction.LOGOUT, "logout", actor_id=identity_id)
            )

        return self._run("logout", origin, _body)

    def authenticate(self, token: str) -> OperationResult[AuthContext]:
        def _body(events: List[AuditEvent]) -> AuthContext:
            claims = self.sessions.verify_session(token)
            if claims is None:
                raise InvalidCredentialsError("invalid or expired session")
            identity = self.store.get_identity(str(claims["sub"]))
            if identity is None:
                raise InvalidCredentialsError("invalid or expired session")
            return AuthContext(
                identity_id=identity.id,
                role=identity.role,
                expires_at=self.sessions.expires_at(claims),
            )

        return self._run("authenticate", None, _body)

    def require_verified(self, identity_id: str) -> OperationResult[None]:
        def _body(events: List[AuditEvent]) -> None:
            identity = self._load(identity_id)
            if not (identity.email_verified or identity.phone_verified):
                raise ForbiddenError("verify your email or phone first")

        return self._run("require_verified", None, _body)

    # verification
    def consume_email_token(
        self, raw: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[VerificationOutcome]:
        def _body(events: List[AuditEvent]) -> VerificationOutcome:
            try:
                consumed = self.tokens.consume_any(
                    [TokenPurpose.EMAIL_VERIFICATION, TokenPurpose.EMAIL_CHANGE],
                    raw,
                    ip=origin.ip if origin else None,
                )
            except InvalidOrExpiredTokenError:
                events.append(
                    AuditEvent(
                        AuditAction.VERIFY_EMAIL,
                        "email token rejected",
                        details={"outcome": "rejected"},
                    )
                )
                raise
            identity = consumed.identity
            details = {"purpose": consumed.purpose.value}
            if consumed.purpose is TokenPurpose.EMAIL_CHANGE:
                details["old_email"] = redact_email(consumed.old_value)
                details["new_email"] = redact_email(consumed.new_value)
            events.append(
                AuditEvent(
                    AuditAction.VERIFY_EMAIL,
                    "email change confirmed"
                    if consumed.purpose is TokenPurpose.EMAIL_CHANGE
                    else "email verified",
                    actor_id=identity.id,
                    details=details,
                )
            )
            return VerificationOutcome(
                identity_id=identity.id,
                channel=Channel.EMAIL.value,
                purpose=consumed.purpose.value,
            )

        return self._run("consume_email_token", origin, _body)

    def consume_phone_code(
        self, identity_id: str, code: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[VerificationOutcome]:
        def _body(events: List[AuditEvent]) -> VerificationOutcome:
            try:
                consumed = self.tokens.consume_any(
                    [TokenPurpose.PHONE_CHANGE, TokenPurpose.PHONE_VERIFICATION],
                    code,
                    identity_id=identity_id,
                    ip=origin.ip if origin else None,
                )
            except InvalidOrExpiredTokenError:
                events.append(
                    AuditEvent(
                        AuditAction.VERIFY_PHONE,
                        "phone code rejected",
                        actor_id=identity_id,
                        details={"outcome": "rejected"},
                    )
                )
                raise
            details = {"purpose": consumed.purpose.value}
            if consumed.purpose is TokenPurpose.PHONE_CHANGE:
                details["old_phone"] = redact_phone(consumed.old_value)
                details["new_phone"] = redact_phone(consumed.new_value)
            events.append(
                AuditEvent(
                    AuditAction.VERIFY_PHONE,
                    "phone change confirmed"
                    if consumed.purpose is TokenPurpose.PHONE_CHANGE
                    else "phone verified",
                    actor_id=identity_id,
                    details=details,
                )
            )
            return VerificationOutcome(
                identity_id=identity_id,
                channel=Channel.PHONE.value,
                purpose=consumed.purpose.value,
            )

        return self._run("consume_phone_code", origin, _body)

    def resend_verification(
        self,
        identity_id: str,
        channel: Union[Channel, str],
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[IssueReceipt]:
        def _body(events: List[AuditEvent]) -> IssueReceipt:
            issued = self.tokens.resend_verification(identity_id, _channel(channel))
            delivered = self._deliver(issued, events)
            events.append(
                AuditEvent(
                    AuditAction.RESEND_VERIFICATION,
                    "verification re-sent",
                    actor_id=identity_id,
                    details={"purpose": issued.purpose.value},
                )
            )
            return self._receipt(issued, delivered)

        return self._run("resend_verification", origin, _body)

    def resend_verification_by_email(
        self, email: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[GenericAck]:
        """Public resend keyed by address; the answer never reveals whether it exists."""

        def _body(events: List[AuditEvent]) -> GenericAck:
            try:
                normalized = validate_email(email)
            except ValueError:
                return GenericAck()
            identity = self.store.get_identity_by_email(normalized)
            if identity is None or identity.email_verified:
                return GenericAck()
            issued = self.tokens.issue_token(identity.id, TokenPurpose.EMAIL_VERIFICATION)
            self._deliver(issued, events)
            events.append(
                AuditEvent(
                    AuditAction.RESEND_VERIFICATION,
                    "verification re-sent",
                    actor_id=identity.id,
                    details={"purpose": issued.purpose.value},
                )
            )
            return GenericAck()

        return self._run("resend_verification_by_email", origin, _body)

    # passwords
    def request_reset(
        self, email: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[GenericAck]:
        """Start a password reset. Known and unknown addresses get the same answer."""

        def _body(events: List[AuditEvent]) -> GenericAck:
            try:
                normalized = parse_request(PasswordResetRequest, email=email).email
            except ValidationError:
                return GenericAck()
            try:
                identity = self.store.get_identity_by_email(normalized)
                if identity is None:
                    events.append(
                        AuditEvent(
                            AuditAction.RESET_PASSWORD_REQUEST,
                            "reset requested for unknown address",
                            details={"email": redact_email(normalized)},
                        )
                    )
                    return GenericAck()
                issued = self.tokens.issue_token(identity.id, TokenPurpose.PASSWORD_RESET)
                self._deliver(issued, events)
                events.append(
                    AuditEvent(
                        AuditAction.RESET_PASSWORD_REQUEST,
                        "password reset requested",
                        actor_id=identity.id,
                    )
                )
            except (ServiceError, StorageError) as exc:
                logger.error(
                    "password_reset_request_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            return GenericAck()

        return self._run("request_reset", origin, _body)

    def reset_password(
        self, raw: str, new_password: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[None]:
        def _body(events: List[AuditEvent]) -> None:
            request = parse_request(NewPasswordRequest, new_password=new_password)
            new_hash = self.credentials.hash_password(request.new_password)

            def _apply_new_password(identity: Identity) -> None:
                identity.password_hash = new_hash
                identity.login_attempts = 0
                identity.locked = False

            try:
                consumed = self.tokens.consume_token(
                    TokenPurpose.PASSWORD_RESET, raw, on_consume=_apply_new_password
                )
            except InvalidOrExpiredTokenError:
                events.append(
                    AuditEvent(
                        AuditAction.RESET_PASSWORD,
                        "reset token rejected",
                        details={"outcome": "rejected"},
                    )
                )
                raise
            events.append(
                AuditEvent(
                    AuditAction.RESET_PASSWORD,
                    "password reset",
                    actor_id=consumed.identity.id,
                )
            )

        return self._run("reset_password", origin, _body)

    def change_password(
        self,
        identity_id: str,
        current_password: str,
        new_password: str,
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[None]:
        def _body(events: List[AuditEvent]) -> None:
            request = parse_request(
                PasswordChangeRequest,
                current_password=current_password,
                new_password=new_password,
            )
            identity = self._load(identity_id)
            if not self.credentials.verify_password(
                request.current_password, identity.password_hash
            ):
                events.append(
                    AuditEvent(
                        AuditAction.UPDATE_PASSWORD,
                        "password change refused",
                        actor_id=identity_id,
                        details={"reason": "current_password_mismatch"},
                    )
                )
                raise InvalidCredentialsError()
            if request.new_password == request.current_password:
                raise ValidationError(
                    "new password must differ from the current one", field="new_password"
                )
            self.credentials.set_password(
                identity_id, self.credentials.hash_password(request.new_password)
            )
            events.append(
                AuditEvent(AuditAction.UPDATE_PASSWORD, "password changed", actor_id=identity_id)
            )

        return self._run("change_password", origin, _body)

    # profile
    def request_contact_change(
        self,
        identity_id: str,
        channel: Union[Channel, str],
        new_value: str,
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[IssueReceipt]:
        def _body(events: List[AuditEvent]) -> IssueReceipt:
            target = _channel(channel)
            issued = self.tokens.request_contact_change(identity_id, target, new_value)
            delivered = self._deliver(issued, events)
            events.append(
                AuditEvent(
                    AuditAction.CONTACT_CHANGE_REQUEST,
                    f"{target.value} change requested",
                    actor_id=identity_id,
                    details={
                        "channel": target.value,
                        "new_value": _mask(target, issued.destination),
                    },
                )
            )
            return self._receipt(issued, delivered)

        return self._run("request_contact_change", origin, _body)

    def get_profile(self, identity_id: str) -> OperationResult[IdentityProfile]:
        return self._run(
            "get_profile",
            None,
            lambda events: IdentityProfile.from_identity(self._load(identity_id)),
        )

    def update_name(
        self, identity_id: str, name: str, *, origin: Optional[RequestOrigin] = None
    ) -> OperationResult[IdentityProfile]:
        def _body(events: List[AuditEvent]) -> IdentityProfile:
            request = parse_request(NameUpdateRequest, name=name)

            def _apply(identity: Identity) -> bool:
                if identity.name == request.name:
                    return False
                identity.record_change(
                    "name",
                    identity.name,
                    request.name,
                    changed_by=identity_id,
                    ip=origin.ip if origin else None,
                )
                identity.name = request.name
                return True

            updated, changed = mutate_identity(self.store, identity_id, _apply)
            if changed:
                events.append(
                    AuditEvent(
                        AuditAction.UPDATE_PROFILE,
                        "name updated",
                        actor_id=identity_id,
                        details={"field": "name"},
                    )
                )
            return IdentityProfile.from_identity(updated)

        return self._run("update_name", origin, _body)

    # administration
    def admin_unlock(
        self,
        actor: AuthContext,
        identity_id: str,
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[IdentityProfile]:
        def _body(events: List[AuditEvent]) -> IdentityProfile:
            self._require_admin(actor)
            updated = self.credentials.admin_unlock(identity_id)
            events.append(
                AuditEvent(
                    AuditAction.ADMIN_ACTION,
                    "account unlocked by administrator",
                    actor_id=actor.identity_id,
                    details={"operation": "unlock", "target_id": identity_id},
                )
            )
            return IdentityProfile.from_identity(updated)

        return self._run("admin_unlock", origin, _body)

    def admin_create_identity(
        self,
        actor: AuthContext,
        name: str,
        email: str,
        password: str,
        role: Union[Role, str] = Role.USER,
        phone: Optional[str] = None,
        *,
        origin: Optional[RequestOrigin] = None,
    ) -> OperationResult[RegistrationResult]:
        def _body(events: List[AuditEvent]) -> RegistrationResult:
            self._require_admin(actor)
            request = parse_request(
                AdminCreateRequest,
                name=name,
                email=email,
                password=password,
                phone=phone,
                role=role,
            )
            created = self._create_identity(request, request.role.value, events)
            events.append(
                AuditEvent(
                    AuditAction.ADMIN_ACTION,
                    "identity created by administrator",
                    actor_id=actor.identity_id,
                    details={
                        "operation": "create_identity",
                        "target_id": created.identity_id,
                        "role": request.role.value,
                    },
                )
            )
            return created

        return self._run("admin_create_identity", origin, _body)


__all__ = [
    "AuthContext",
    "IdentityService",
    "IdentityStore",
]
