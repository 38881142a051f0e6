from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from verigate.service.audit import AuditEvent
from verigate.service.errors import ServiceError

ValueT = TypeVar("ValueT")


@dataclass(frozen=True)
class OperationError:
    code: str
    message: str
    field: Optional[str] = None
    detail: Dict[str, Any] = dataclass_field(default_factory=dict)
    status_code: int = 400

    @classmethod
    def from_exception(cls, exc: ServiceError) -> "OperationError":
        return cls(
            code=exc.error_code,
            message=exc.message,
            field=exc.field,
            detail=dict(exc.detail),
            status_code=exc.status_code,
        )


@dataclass
class OperationResult(Generic[ValueT]):
    """Outcome of one ``IdentityService`` call.

    Exactly one of ``value`` or ``error`` is meaningful, selected by ``ok``.
    ``audit`` lists the events the call produced, success or not. It is
    for the audit log and operators only and must never be serialized to
    clients: its descriptions and actor ids differ between known and
    unknown identities where ``value`` deliberately does not.
    """

    ok: bool
    value: Optional[ValueT] = None
    error: Optional[OperationError] = None
    audit: List[AuditEvent] = dataclass_field(default_factory=list)

    @classmethod
    def success(
        cls, value: Optional[ValueT] = None, audit: Optional[List[AuditEvent]] = None
    ) -> "OperationResult[ValueT]":
        return cls(ok=True, value=value, audit=list(audit or []))

    @classmethod
    def failure(
        cls, error: OperationError, audit: Optional[List[AuditEvent]] = None
    ) -> "OperationResult[ValueT]":
        return cls(ok=False, error=error, audit=list(audit or []))

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None


@dataclass(frozen=True)
class GenericAck:
    """Response that deliberately says nothing about whether an account exists."""

    message: str = "If the account exists, a message has been sent."


@dataclass(frozen=True)
class RegistrationResult:
    identity_id: str
    pending_verifications: List[str]
    delivery_failed: List[str] = dataclass_field(default_factory=list)


@dataclass(frozen=True)
class VerificationOutcome:
    identity_id: str
    channel: str
    purpose: str


@dataclass(frozen=True)
class IssueReceipt:
    """Acknowledges a newly sent proof without exposing the token itself."""

    purpose: str
    destination: str
    expires_at: datetime
    delivery_failed: bool = False
