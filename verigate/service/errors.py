from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for identity-core failures.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code``; ``IdentityService`` turns them into ``OperationError``
    values so callers never see the exception itself:
    - validation_error (400)
    - invalid_credentials (401)
    - forbidden (403)
    - not_found (404)
    - duplicate_identity / already_verified (409)
    - account_locked (423)
    - transport_failure (502)
    - internal_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.field = field or self.detail.get("field")


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateIdentityError(ServiceError):
    """Email or phone already belongs to another identity (409)."""
    status_code = 409
    error_code = "duplicate_identity"


class InvalidCredentialsError(ServiceError):
    """Unknown identity or wrong password; the two are indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many consecutive failed logins (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str = "account locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(ServiceError):
    """Token absent, expired, already used, or mismatched (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AlreadyVerifiedError(ServiceError):
    status_code = 409
    error_code = "already_verified"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ForbiddenError(ServiceError):
    """Caller lacks the role or verified contact the operation needs (403)."""
    status_code = 403
    error_code = "forbidden"


class TransportFailureError(ServiceError):
    """Notification gateway could not deliver (502)."""
    status_code = 502
    error_code = "transport_failure"


class InternalError(ServiceError):
    """Storage or cryptographic failure (500)."""
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "internal error", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateIdentityError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidOrExpiredTokenError",
    "AlreadyVerifiedError",
    "NotFoundError",
    "ForbiddenError",
    "TransportFailureError",
    "InternalError",
]
