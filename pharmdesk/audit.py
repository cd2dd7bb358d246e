"""
Append-Only Audit Ledger (Hash-Chained).

Every mutating desk operation -- submissions, status changes, lock
toggles, staff provisioning, logins, password changes -- is recorded as an
(actor, action, timestamp) entry.  Entries are linked through a SHA-256
hash chain so that an entry edited directly in the database shows up in
``verify_chain()``.

Audit writes are advisory: ``record()`` never raises.  A failed write is
logged and the mutation it describes stands.  The ledger exposes no update
or delete operation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from pharmdesk.store import SQLiteRecordStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit ledger entry."""

    id: str = Field(
        default_factory=lambda: uuid.uuid4().hex[:12],
        description="Unique identifier for this entry.",
    )
    action: str = Field(..., description="Free-text description of what happened.")
    actor: str = Field(
        ...,
        description="Display name of the acting staff user, or 'System' for public submissions.",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = {
            "id": self.id,
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class AuditLedger:
    """Append-only, hash-chained audit ledger backed by the record store.

    * ``record()`` -- best-effort append; never raises to the caller.
    * ``list()``   -- newest-first snapshot taken at call time.
    * ``verify_chain()`` -- walks the ledger oldest-first and reports the
      first broken link.
    """

    KIND = "audit_logs"

    def __init__(self, store: SQLiteRecordStore, list_limit: Optional[int] = None) -> None:
        self._store = store
        self._list_limit = list_limit

    def record(self, action: str, actor: str) -> Optional[AuditEntry]:
        """Append an entry.

        Returns:
            The stored entry, or None if the write failed (the failure is
            logged, not raised).
        """
        try:
            with self._store.lock:
                head = self._store.select_all(self.KIND, order_by="seq", limit=1)
                previous_hash = AuditEntry(**_entry_fields(head[0])).compute_hash() if head else ""
                entry = AuditEntry(action=action, actor=actor, previous_hash=previous_hash)
                self._store.insert(self.KIND, entry.model_dump())
        except Exception:
            logger.error("Audit write failed for action %r by %r", action, actor, exc_info=True)
            return None
        logger.debug("Audit: %s (%s)", action, actor)
        return entry

    def list(self, limit: Optional[int] = None) -> list[AuditEntry]:
        """Return entries ordered by timestamp, newest first.

        ``limit`` falls back to the configured ledger cap when omitted.
        """
        limit = limit if limit is not None else self._list_limit
        rows = self._store.select_all(self.KIND, order_by="timestamp", limit=limit)
        return [AuditEntry(**_entry_fields(r)) for r in rows]

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link, oldest entry first.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the zero-based
            position of the first entry whose link does not match.
        """
        rows = self._store.select_all(self.KIND, order_by="seq", ascending=True)
        expected_prev = ""
        for i, row in enumerate(rows):
            entry = AuditEntry(**_entry_fields(row))
            if entry.previous_hash != expected_prev:
                return (False, i)
            expected_prev = entry.compute_hash()
        return (True, None)

    def __len__(self) -> int:
        return self._store.count(self.KIND)


def _entry_fields(row: dict) -> dict:
    return {k: row[k] for k in ("id", "action", "actor", "timestamp", "previous_hash")}
