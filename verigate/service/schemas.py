from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from verigate.service.errors import ValidationError
from verigate.storage.models import Channel, Identity, Role

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 50


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return re.sub("[\u200b-\u200d\ufeff]", "", normalized)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_phone(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    # Allow the usual visual separators, store digits only
    normalized = re.sub(r"[\s().-]", "", value.strip())
    if not _PHONE_PATTERN.match(normalized):
        raise ValueError("phone must be 10-15 digits with an optional leading +")
    return normalized


def validate_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if len(normalized) < MIN_NAME_LENGTH or len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(
            f"name must be between {MIN_NAME_LENGTH} and {MAX_NAME_LENGTH} characters"
        )
    return normalized


def validate_password_strength(value: str) -> str:
    """Enforce the password policy: length bounds plus mixed case and a digit."""
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain a digit")
    return value


def validate_contact(channel: Channel, value: str) -> str:
    """Normalize a contact value for ``channel``, raising ``ValidationError``."""
    try:
        if channel is Channel.EMAIL:
            return validate_email(value)
        return validate_phone(value)
    except ValueError as exc:
        raise ValidationError(str(exc), field=channel.value)


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return validate_phone(value)


class AdminCreateRequest(RegisterRequest):
    role: Role = Role.USER


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return validate_email(value)


class NewPasswordRequest(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class PasswordChangeRequest(NewPasswordRequest):
    """Change password while signed in (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=1024)


class NameUpdateRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return validate_name(value)


class PendingChangeView(BaseModel):
    new_value: str
    expires_at: datetime


class IdentityProfile(BaseModel):
    """Public view of an identity; never carries hashes or token material."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: str
    email_verified: bool
    phone_verified: bool
    locked: bool
    pending_email_change: Optional[PendingChangeView] = None
    pending_phone_change: Optional[PendingChangeView] = None
    created_at: datetime
    last_login: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityProfile":
        def _pending(change) -> Optional[PendingChangeView]:
            if change is None:
                return None
            return PendingChangeView(new_value=change.new_value, expires_at=change.expires_at)

        return cls(
            id=identity.id,
            name=identity.name,
            email=identity.email,
            phone=identity.phone,
            role=identity.role,
            email_verified=identity.email_verified,
            phone_verified=identity.phone_verified,
            locked=identity.locked,
            pending_email_change=_pending(identity.pending_email_change),
            pending_phone_change=_pending(identity.pending_phone_change),
            created_at=identity.created_at,
            last_login=identity.last_login,
        )


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_request(model: Type[ModelT], **data) -> ModelT:
    """Build ``model`` from keyword input, mapping pydantic errors to ``ValidationError``.

    Only the first failing field is reported; its name travels in ``field``.
    """
    try:
        return model(**data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc") or ()
        field_name = str(loc[0]) if loc else None
        message = first.get("msg", "invalid input")
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        raise ValidationError(message, field=field_name)


__all__ = [
    "AdminCreateRequest",
    "IdentityProfile",
    "LoginRequest",
    "NameUpdateRequest",
    "NewPasswordRequest",
    "PasswordChangeRequest",
    "PasswordResetRequest",
    "PendingChangeView",
    "RegisterRequest",
    "parse_request",
    "validate_contact",
    "validate_email",
    "validate_name",
    "validate_password_strength",
    "validate_phone",
]
