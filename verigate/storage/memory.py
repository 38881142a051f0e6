from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from verigate.logging import get_logger
from verigate.storage.common import (
    deserialize_audit_entry,
    deserialize_identity,
    serialize_audit_entry,
    serialize_identity,
    token_hashes_for,
)
from verigate.storage.errors import ConstraintViolation
from verigate.storage.models import AuditLogEntry, Channel, Identity, TokenPurpose


class MemoryStore:
    """In-process identity store.

    Callers always receive deep copies, so a record fetched for a
    read-modify-write is private until ``compare_and_swap`` publishes it.
    When ``fs_root`` is given the state is mirrored to a JSON file and
    reloaded on construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.audit_entries: List[AuditLogEntry] = []
        # RLock so helpers can re-enter while the caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # identities
    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            self._check_unique(identity)
            stored = copy.deepcopy(identity)
            stored.version = 1
            self.identities[stored.id] = stored
            self._persist_state()
            identity.version = stored.version
            return copy.deepcopy(stored)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.email == email), None
            )
            return copy.deepcopy(identity) if identity else None

    def find_identity_by_token(
        self, token_hash: str, purposes: Iterable[TokenPurpose]
    ) -> Optional[Identity]:
        wanted = list(purposes)
        with self._data_lock:
            for identity in self.identities.values():
                if token_hash in token_hashes_for(identity, wanted):
                    return copy.deepcopy(identity)
            return None

    def contact_in_use(
        self, channel: Channel, value: str, *, exclude_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.id == exclude_id:
                    continue
                if identity.contact(channel) == value:
                    return True
            return False

    def compare_and_swap(self, identity: Identity, expected_version: int) -> bool:
        """Publish ``identity`` if the stored version still equals ``expected_version``.

        On success the caller's object has its version bumped to match
        the stored copy.
        """
        with self._data_lock:
            current = self.identities.get(identity.id)
            if current is None or current.version != expected_version:
                return False
            self._check_unique(identity)
            stored = copy.deepcopy(identity)
            stored.version = expected_version + 1
            self.identities[stored.id] = stored
            self._persist_state()
            identity.version = stored.version
            return True

    def list_identities(self, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            results = sorted(
                self.identities.values(), key=lambda i: i.created_at, reverse=True
            )
            return [copy.deepcopy(i) for i in results[:limit]]

    def _check_unique(self, identity: Identity) -> None:
        for other in self.identities.values():
            if other.id == identity.id:
                continue
            if other.email == identity.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity.phone and other.phone == identity.phone:
                raise ConstraintViolation("phone already exists", {"field": "phone"})

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(copy.deepcopy(entry))
            self._persist_state()

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            results = [
                e
                for e in self.audit_entries
                if (actor_id is None or e.actor_id == actor_id)
                and (action is None or e.action == action)
            ]
            results.sort(key=lambda e: e.timestamp, reverse=True)
            return [copy.deepcopy(e) for e in results[:limit]]

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [serialize_identity(i) for i in self.identities.values()],
            "audit_entries": [serialize_audit_entry(e) for e in self.audit_entries],
        }
        path = self._state_path()
        # Write to a temp file then rename so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError:
            self.logger.error("memory_store_persist_failed", path=str(path))
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            raw["id"]: deserialize_identity(raw) for raw in data.get("identities", [])
        }
        self.audit_entries = [
            deserialize_audit_entry(raw) for raw in data.get("audit_entries", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            audit_entries=len(self.audit_entries),
        )
        return True
