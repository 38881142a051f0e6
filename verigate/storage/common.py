"""Serialization helpers shared between the memory and postgres stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from verigate.storage.models import (
    AuditLogEntry,
    AuditOrigin,
    ChangeRecord,
    Identity,
    PendingChange,
    StoredToken,
    TokenPurpose,
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        # Stored values are always UTC
        value = value.replace(tzinfo=timezone.utc)
    return value


def serialize_token(token: Optional[StoredToken]) -> Optional[Dict[str, Any]]:
    if token is None:
        return None
    return {"token_hash": token.token_hash, "expires_at": serialize_datetime(token.expires_at)}


def deserialize_token(raw: Optional[Dict[str, Any]]) -> Optional[StoredToken]:
    if not raw:
        return None
    return StoredToken(
        token_hash=raw["token_hash"], expires_at=deserialize_datetime(raw["expires_at"])
    )


def serialize_pending(change: Optional[PendingChange]) -> Optional[Dict[str, Any]]:
    if change is None:
        return None
    return {
        "new_value": change.new_value,
        "token_hash": change.token_hash,
        "expires_at": serialize_datetime(change.expires_at),
    }


def deserialize_pending(raw: Optional[Dict[str, Any]]) -> Optional[PendingChange]:
    if not raw:
        return None
    return PendingChange(
        new_value=raw["new_value"],
        token_hash=raw["token_hash"],
        expires_at=deserialize_datetime(raw["expires_at"]),
    )


def serialize_change_record(record: ChangeRecord) -> Dict[str, Any]:
    return {
        "field": record.field,
        "old_value": record.old_value,
        "new_value": record.new_value,
        "changed_at": serialize_datetime(record.changed_at),
        "changed_by": record.changed_by,
        "ip": record.ip,
    }


def deserialize_change_record(raw: Dict[str, Any]) -> ChangeRecord:
    return ChangeRecord(
        field=raw["field"],
        old_value=raw.get("old_value"),
        new_value=raw.get("new_value"),
        changed_at=deserialize_datetime(raw.get("changed_at")),
        changed_by=raw.get("changed_by"),
        ip=raw.get("ip"),
    )


def serialize_identity(identity: Identity) -> Dict[str, Any]:
    return {
        "id": identity.id,
        "name": identity.name,
        "email": identity.email,
        "password_hash": identity.password_hash,
        "phone": identity.phone,
        "role": identity.role,
        "email_verified": identity.email_verified,
        "phone_verified": identity.phone_verified,
        "login_attempts": identity.login_attempts,
        "locked": identity.locked,
        "email_verification": serialize_token(identity.email_verification),
        "phone_verification": serialize_token(identity.phone_verification),
        "password_reset": serialize_token(identity.password_reset),
        "pending_email_change": serialize_pending(identity.pending_email_change),
        "pending_phone_change": serialize_pending(identity.pending_phone_change),
        "last_login": serialize_datetime(identity.last_login),
        "last_failed_login": serialize_datetime(identity.last_failed_login),
        "change_history": [serialize_change_record(r) for r in identity.change_history],
        "created_at": serialize_datetime(identity.created_at),
        "version": identity.version,
    }


def deserialize_identity(raw: Dict[str, Any]) -> Identity:
    return Identity(
        id=raw["id"],
        name=raw["name"],
        email=raw["email"],
        password_hash=raw["password_hash"],
        phone=raw.get("phone"),
        role=raw.get("role", "user"),
        email_verified=bool(raw.get("email_verified", False)),
        phone_verified=bool(raw.get("phone_verified", False)),
        login_attempts=int(raw.get("login_attempts", 0)),
        locked=bool(raw.get("locked", False)),
        email_verification=deserialize_token(raw.get("email_verification")),
        phone_verification=deserialize_token(raw.get("phone_verification")),
        password_reset=deserialize_token(raw.get("password_reset")),
        pending_email_change=deserialize_pending(raw.get("pending_email_change")),
        pending_phone_change=deserialize_pending(raw.get("pending_phone_change")),
        last_login=deserialize_datetime(raw.get("last_login")),
        last_failed_login=deserialize_datetime(raw.get("last_failed_login")),
        change_history=[
            deserialize_change_record(r) for r in raw.get("change_history") or []
        ],
        created_at=deserialize_datetime(raw.get("created_at")),
        version=int(raw.get("version", 0)),
    )


def serialize_audit_entry(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "description": entry.description,
        "ip": entry.origin.ip,
        "user_agent": entry.origin.user_agent,
        "details": entry.details,
        "timestamp": serialize_datetime(entry.timestamp),
    }


def deserialize_audit_entry(raw: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=raw["id"],
        actor_id=raw.get("actor_id"),
        action=raw["action"],
        description=raw.get("description", ""),
        origin=AuditOrigin(ip=raw.get("ip"), user_agent=raw.get("user_agent")),
        details=raw.get("details") or {},
        timestamp=deserialize_datetime(raw.get("timestamp")),
    )


def token_hashes_for(identity: Identity, purposes: Iterable[TokenPurpose]) -> list[str]:
    """Return the stored hashes of ``identity`` for the given purposes."""
    hashes: list[str] = []
    for purpose in purposes:
        if purpose is TokenPurpose.EMAIL_VERIFICATION and identity.email_verification:
            hashes.append(identity.email_verification.token_hash)
        elif purpose is TokenPurpose.PHONE_VERIFICATION and identity.phone_verification:
            hashes.append(identity.phone_verification.token_hash)
        elif purpose is TokenPurpose.PASSWORD_RESET and identity.password_reset:
            hashes.append(identity.password_reset.token_hash)
        elif purpose is TokenPurpose.EMAIL_CHANGE and identity.pending_email_change:
            hashes.append(identity.pending_email_change.token_hash)
        elif purpose is TokenPurpose.PHONE_CHANGE and identity.pending_phone_change:
            hashes.append(identity.pending_phone_change.token_hash)
    return hashes
