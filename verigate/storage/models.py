from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Channel(str, Enum):
    """Contact channels that carry an ownership proof."""

    EMAIL = "email"
    PHONE = "phone"


class TokenPurpose(str, Enum):
    """What a verification token proves once consumed.

    Each purpose has at most one outstanding token per identity.
    """

    EMAIL_VERIFICATION = "email_verification"
    PHONE_VERIFICATION = "phone_verification"
    EMAIL_CHANGE = "email_change"
    PHONE_CHANGE = "phone_change"
    PASSWORD_RESET = "password_reset"

    @property
    def channel(self) -> Channel:
        if self in (TokenPurpose.PHONE_VERIFICATION, TokenPurpose.PHONE_CHANGE):
            return Channel.PHONE
        return Channel.EMAIL

    @property
    def is_numeric_code(self) -> bool:
        return self.channel is Channel.PHONE


class AuditAction(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    FAILED_LOGIN = "failed_login"
    ACCOUNT_LOCKED = "account_locked"
    LOGOUT = "logout"
    UPDATE_PROFILE = "update_profile"
    UPDATE_PASSWORD = "update_password"
    RESET_PASSWORD_REQUEST = "reset_password_request"
    RESET_PASSWORD = "reset_password"
    VERIFY_EMAIL = "verify_email"
    VERIFY_PHONE = "verify_phone"
    CONTACT_CHANGE_REQUEST = "contact_change_request"
    RESEND_VERIFICATION = "resend_verification"
    ADMIN_ACTION = "admin_action"
    OTHER = "other"


@dataclass
class StoredToken:
    token_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PendingChange:
    """A staged contact value waiting for its own proof of ownership."""

    new_value: str
    token_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class ChangeRecord:
    field: str
    old_value: Optional[str]
    new_value: Optional[str]
    changed_at: datetime = field(default_factory=utcnow)
    changed_by: Optional[str] = None
    ip: Optional[str] = None


@dataclass
class Identity:
    id: str
    name: str
    email: str
    password_hash: str = field(repr=False)
    phone: Optional[str] = None
    role: str = Role.USER.value
    email_verified: bool = False
    phone_verified: bool = False
    login_attempts: int = 0
    locked: bool = False
    email_verification: Optional[StoredToken] = field(default=None, repr=False)
    phone_verification: Optional[StoredToken] = field(default=None, repr=False)
    password_reset: Optional[StoredToken] = field(default=None, repr=False)
    pending_email_change: Optional[PendingChange] = field(default=None, repr=False)
    pending_phone_change: Optional[PendingChange] = field(default=None, repr=False)
    last_login: Optional[datetime] = None
    last_failed_login: Optional[datetime] = None
    change_history: List[ChangeRecord] = field(default_factory=list, repr=False)
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def new(
        cls,
        *,
        name: str,
        email: str,
        password_hash: str,
        phone: Optional[str] = None,
        role: str = Role.USER.value,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=password_hash,
            phone=phone,
            role=role,
        )

    def pending_change(self, channel: Channel) -> Optional[PendingChange]:
        if channel is Channel.EMAIL:
            return self.pending_email_change
        return self.pending_phone_change

    def is_verified(self, channel: Channel) -> bool:
        if channel is Channel.EMAIL:
            return self.email_verified
        return self.phone_verified

    def contact(self, channel: Channel) -> Optional[str]:
        if channel is Channel.EMAIL:
            return self.email
        return self.phone

    def record_change(
        self,
        field_name: str,
        old_value: Optional[str],
        new_value: Optional[str],
        *,
        changed_by: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        self.change_history.append(
            ChangeRecord(
                field=field_name,
                old_value=old_value,
                new_value=new_value,
                changed_by=changed_by,
                ip=ip,
            )
        )


@dataclass
class AuditOrigin:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditLogEntry:
    action: str
    description: str
    actor_id: Optional[str] = None
    origin: AuditOrigin = field(default_factory=AuditOrigin)
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
