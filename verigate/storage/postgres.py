from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from verigate.logging import get_logger
from verigate.storage.common import (
    deserialize_datetime,
    deserialize_identity,
    serialize_identity,
    token_hashes_for,
)
from verigate.storage.errors import ConstraintViolation, StorageError
from verigate.storage.models import (
    AuditLogEntry,
    AuditOrigin,
    Channel,
    Identity,
    TokenPurpose,
)

_ALL_PURPOSES = tuple(TokenPurpose)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    diag = getattr(exc, "diag", None)
    name = (getattr(diag, "constraint_name", None) or str(exc)).lower()
    return "phone" if "phone" in name else "email"


class PostgresStore:
    """Postgres-backed identity store.

    The full identity record lives in a JSONB ``state`` column. ``email``,
    ``phone`` and ``token_hashes`` are projected into real columns so the
    database enforces uniqueness and can index token lookups.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identity (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    phone TEXT,
                    token_hashes TEXT[] NOT NULL DEFAULT '{}',
                    state JSONB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT identity_email_key UNIQUE (email),
                    CONSTRAINT identity_phone_key UNIQUE (phone)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS identity_token_hashes_idx ON identity USING GIN (token_hashes)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id TEXT PRIMARY KEY,
                    actor_id TEXT,
                    action TEXT NOT NULL,
                    description TEXT NOT NULL,
                    ip TEXT,
                    user_agent TEXT,
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS audit_log_actor_idx ON audit_log (actor_id, created_at DESC)"
            )

    @staticmethod
    def _row_values(identity: Identity) -> tuple[str, Optional[str], List[str], str]:
        return (
            identity.email,
            identity.phone,
            token_hashes_for(identity, _ALL_PURPOSES),
            json.dumps(serialize_identity(identity)),
        )

    @staticmethod
    def _identity_from_row(row: Dict[str, Any]) -> Identity:
        state = row["state"]
        if isinstance(state, str):
            state = json.loads(state)
        identity = deserialize_identity(state)
        identity.version = int(row["version"])
        return identity

    def _fetch_one(self, query: str, params: tuple) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.OperationalError as exc:
            self.logger.error("identity_store_unavailable", error=str(exc))
            raise StorageError("identity store unavailable") from exc
        return self._identity_from_row(row) if row else None

    # identities
    def create_identity(self, identity: Identity) -> Identity:
        identity.version = 1
        email, phone, hashes, state = self._row_values(identity)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity (id, email, phone, token_hashes, state, version, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (identity.id, email, phone, hashes, state, 1, identity.created_at),
                )
        except errors.UniqueViolation as exc:
            field_name = _constraint_field(exc)
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        except errors.OperationalError as exc:
            self.logger.error("identity_store_unavailable", error=str(exc))
            raise StorageError("identity store unavailable") from exc
        return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._fetch_one(
            "SELECT state, version FROM identity WHERE id = %s", (identity_id,)
        )

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._fetch_one(
            "SELECT state, version FROM identity WHERE email = %s", (email,)
        )

    def find_identity_by_token(
        self, token_hash: str, purposes: Iterable[TokenPurpose]
    ) -> Optional[Identity]:
        identity = self._fetch_one(
            "SELECT state, version FROM identity WHERE %s = ANY(token_hashes)",
            (token_hash,),
        )
        # The column mixes purposes; only accept a hash stored for the requested ones
        if identity and token_hash in token_hashes_for(identity, list(purposes)):
            return identity
        return None

    def contact_in_use(
        self, channel: Channel, value: str, *, exclude_id: Optional[str] = None
    ) -> bool:
        column = "phone" if channel is Channel.PHONE else "email"
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT 1 AS hit FROM identity WHERE {column} = %s AND id IS DISTINCT FROM %s LIMIT 1",
                    (value, exclude_id),
                ).fetchone()
        except errors.OperationalError as exc:
            self.logger.error("identity_store_unavailable", error=str(exc))
            raise StorageError("identity store unavailable") from exc
        return bool(row)

    def compare_and_swap(self, identity: Identity, expected_version: int) -> bool:
        new_version = expected_version + 1
        snapshot_version = identity.version
        identity.version = new_version
        email, phone, hashes, state = self._row_values(identity)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE identity
                    SET email = %s, phone = %s, token_hashes = %s, state = %s, version = %s
                    WHERE id = %s AND version = %s
                    """,
                    (email, phone, hashes, state, new_version, identity.id, expected_version),
                )
                swapped = cur.rowcount == 1
        except errors.UniqueViolation as exc:
            identity.version = snapshot_version
            field_name = _constraint_field(exc)
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        except errors.OperationalError as exc:
            identity.version = snapshot_version
            self.logger.error("identity_store_unavailable", error=str(exc))
            raise StorageError("identity store unavailable") from exc
        if not swapped:
            identity.version = snapshot_version
        return swapped

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_log (id, actor_id, action, description, ip, user_agent, details, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.actor_id,
                        entry.action,
                        entry.description,
                        entry.origin.ip,
                        entry.origin.user_agent,
                        json.dumps(entry.details),
                        entry.timestamp,
                    ),
                )
        except errors.OperationalError as exc:
            raise StorageError("audit log unavailable") from exc

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                actor_id=row.get("actor_id"),
                action=row["action"],
                description=row.get("description", ""),
                origin=AuditOrigin(ip=row.get("ip"), user_agent=row.get("user_agent")),
                details=row.get("details") or {},
                timestamp=deserialize_datetime(row.get("created_at")),
            )
            for row in rows
        ]
