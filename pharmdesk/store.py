"""
SQLite record store for PharmDesk.

Schema
------
requests          -- sourcing requests (attachment and sources as JSON text)
consultations     -- consultation bookings
audit_logs        -- append-only action ledger
staff_users       -- staff accounts (credential stored as a PBKDF2 hash)
reset_tokens      -- one-time password-reset tokens (SHA-256 of the token)
schema_migrations -- applied migration versions

The store API is small: insert, partial update, select by id,
select newest-first.  ``update()`` accepts an ``expected`` mapping that
turns the write into a compare-and-swap, which is how the lifecycle engine
closes the gap between checking a lock flag and writing a status.

Usage
-----
    store = SQLiteRecordStore("data/pharmdesk.db")   # migrates on open
    store.insert("requests", {...})
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pharmdesk.errors import StorageError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema and migrations
# ---------------------------------------------------------------------------

_MIGRATIONS: list[tuple[int, str, str]] = [
    (
        1,
        "initial schema",
        """
        CREATE TABLE IF NOT EXISTS requests (
            id                   TEXT PRIMARY KEY,
            created_at           TEXT NOT NULL,           -- ISO-8601 UTC
            requester_name       TEXT NOT NULL,
            requester_type       TEXT NOT NULL,
            requester_type_other TEXT,
            contact_email        TEXT NOT NULL,
            contact_phone        TEXT,
            generic_name         TEXT NOT NULL,
            brand_name           TEXT,
            dosage_strength      TEXT,
            quantity             TEXT NOT NULL,
            urgency              TEXT NOT NULL
                                     CHECK(urgency IN ('NORMAL', 'HIGH', 'CRITICAL')),
            notes                TEXT NOT NULL DEFAULT '',
            prescription         TEXT,                    -- JSON attachment
            status               TEXT NOT NULL
                                     CHECK(status IN ('PENDING', 'PROCESSING', 'FULFILLED', 'REJECTED')),
            ai_analysis          TEXT,
            ai_sources           TEXT                     -- JSON list of sources
        );

        CREATE TABLE IF NOT EXISTS consultations (
            id             TEXT PRIMARY KEY,
            created_at     TEXT NOT NULL,
            patient_name   TEXT NOT NULL,
            contact_email  TEXT NOT NULL,
            contact_phone  TEXT NOT NULL DEFAULT '',
            preferred_date TEXT NOT NULL,
            reason         TEXT NOT NULL DEFAULT '',
            attachment     TEXT,                          -- JSON attachment
            status         TEXT NOT NULL
                               CHECK(status IN ('SCHEDULED', 'COMPLETED', 'CANCELLED')),
            doctor_notes   TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_logs (
            seq           INTEGER PRIMARY KEY AUTOINCREMENT,
            id            TEXT NOT NULL UNIQUE,
            action        TEXT NOT NULL,
            actor         TEXT NOT NULL,
            timestamp     TEXT NOT NULL,
            previous_hash TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS staff_users (
            id            TEXT PRIMARY KEY,
            username      TEXT NOT NULL UNIQUE,
            name          TEXT NOT NULL,
            role          TEXT NOT NULL
                              CHECK(role IN ('SUPER_ADMIN', 'DOCTOR', 'PHARMACIST')),
            password_hash TEXT NOT NULL,
            created_at    TEXT NOT NULL,
            status        TEXT NOT NULL DEFAULT 'ACTIVE'
                              CHECK(status IN ('ACTIVE', 'INACTIVE'))
        );

        CREATE TABLE IF NOT EXISTS reset_tokens (
            id          TEXT PRIMARY KEY,
            username    TEXT NOT NULL,
            token_hash  TEXT NOT NULL UNIQUE,
            created_at  TEXT NOT NULL,
            expires_at  TEXT NOT NULL,
            used_at     TEXT
        );
        """,
    ),
    (
        2,
        "add record lock flag",
        """
        ALTER TABLE requests ADD COLUMN is_locked INTEGER NOT NULL DEFAULT 0;
        ALTER TABLE consultations ADD COLUMN is_locked INTEGER NOT NULL DEFAULT 0;
        """,
    ),
]

LATEST_SCHEMA_VERSION = _MIGRATIONS[-1][0]

KINDS = ("requests", "consultations", "audit_logs", "staff_users", "reset_tokens")

# Columns holding JSON-encoded structures.
_JSON_COLUMNS: dict[str, set[str]] = {
    "requests": {"prescription", "ai_sources"},
    "consultations": {"attachment"},
}


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


_ADD_COLUMN = re.compile(r"ALTER\s+TABLE\s+(\w+)\s+ADD\s+COLUMN\s+(\w+)", re.IGNORECASE)


def _split_statements(ddl: str) -> list[str]:
    """Split a migration script into single statements, dropping ``--`` comments."""
    lines = [line.split("--", 1)[0] for line in ddl.splitlines()]
    return [s.strip() for s in "\n".join(lines).split(";") if s.strip()]


def _is_schema_mismatch(exc: sqlite3.Error) -> bool:
    text = str(exc).lower()
    return "no such column" in text or "has no column named" in text


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SQLiteRecordStore:
    """Thread-safe SQLite implementation of the record store contract.

    A single connection is shared and serialized by a re-entrant lock, so
    ``':memory:'`` databases work for tests and demos.  Callers that need
    several operations to run without interleaving (the audit ledger
    reading its chain head, for one) may hold ``store.lock``.
    """

    def __init__(self, path: str | Path = ":memory:", auto_migrate: bool = True) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._columns: dict[str, set[str]] = {}
        if auto_migrate:
            self.migrate()

    # -- schema management --

    def schema_version(self) -> int:
        """Return the highest applied migration version (0 for a fresh file)."""
        with self.lock:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                " version INTEGER PRIMARY KEY, description TEXT NOT NULL,"
                " applied_at TEXT NOT NULL)"
            )
            row = self._conn.execute(
                "SELECT MAX(version) AS v FROM schema_migrations"
            ).fetchone()
        return row["v"] or 0

    def migrate(self, target: Optional[int] = None) -> int:
        """Apply pending migrations up to ``target`` (default: latest).

        Each migration runs in its own transaction; a failure rolls that
        migration back and leaves the recorded version unchanged.  Columns
        that already exist (added by hand on an older deployment) are
        skipped.  Idempotent.

        Returns:
            The resulting schema version.

        Raises:
            StorageError: If a migration statement fails.
        """
        target = LATEST_SCHEMA_VERSION if target is None else target
        with self.lock:
            self._columns.clear()
            current = self.schema_version()
            for version, description, ddl in _MIGRATIONS:
                if version <= current or version > target:
                    continue
                try:
                    # One transaction per migration: DDL and the version row
                    # commit together or not at all.
                    if self._conn.in_transaction:
                        self._conn.commit()
                    self._conn.execute("BEGIN")
                    for statement in _split_statements(ddl):
                        added = _ADD_COLUMN.match(statement)
                        if added and self._has_column(added.group(1), added.group(2)):
                            logger.info(
                                "Column %s.%s already present; skipping",
                                added.group(1), added.group(2),
                            )
                            continue
                        self._conn.execute(statement)
                    self._conn.execute(
                        "INSERT INTO schema_migrations (version, description, applied_at)"
                        " VALUES (?, ?, ?)",
                        (version, description, _now()),
                    )
                    self._conn.commit()
                except sqlite3.Error as exc:
                    self._conn.rollback()
                    raise StorageError(
                        f"Migration {version} ({description}) failed: {exc}",
                        detail={"version": version},
                    ) from exc
                logger.info("Applied schema migration %d: %s", version, description)
                current = version
            self._columns.clear()
        return current

    def close(self) -> None:
        """Close the shared connection.  The store is unusable afterwards."""
        with self.lock:
            self._conn.close()

    # -- helpers --

    def _table(self, kind: str) -> str:
        if kind not in KINDS:
            raise StorageError(f"Unknown record kind '{kind}'.", detail={"kind": kind})
        return kind

    def _has_column(self, table: str, column: str) -> bool:
        rows = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(r["name"] == column for r in rows)

    def _table_columns(self, kind: str) -> set[str]:
        if kind not in self._columns:
            rows = self._conn.execute(f"PRAGMA table_info({kind})").fetchall()
            self._columns[kind] = {r["name"] for r in rows}
        return self._columns[kind]

    def _check_columns(self, kind: str, names) -> None:
        unknown = sorted(set(names) - self._table_columns(kind))
        if unknown:
            raise StorageError(
                f"Schema mismatch: table '{kind}' has no column(s) {unknown}. "
                f"Run migrate() to bring the database to schema version {LATEST_SCHEMA_VERSION}.",
                code="SCHEMA_MISMATCH",
                detail={"kind": kind, "columns": unknown},
            )

    def _encode(self, kind: str, record: dict[str, Any]) -> dict[str, Any]:
        json_cols = _JSON_COLUMNS.get(kind, set())
        encoded = {}
        for key, value in record.items():
            if key in json_cols and value is not None:
                value = json.dumps(value, sort_keys=True)
            elif isinstance(value, bool):
                value = int(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            encoded[key] = value
        return encoded

    def _decode(self, kind: str, row: sqlite3.Row) -> dict[str, Any]:
        json_cols = _JSON_COLUMNS.get(kind, set())
        data = dict(row)
        for key in json_cols:
            if data.get(key) is not None:
                data[key] = json.loads(data[key])
        return data

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._conn:
                return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            if _is_schema_mismatch(exc):
                raise StorageError(
                    f"Schema mismatch: {exc}. Run migrate() to update the database.",
                    code="SCHEMA_MISMATCH",
                ) from exc
            raise StorageError(f"Database error: {exc}") from exc

    # -- record CRUD --

    def insert(self, kind: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert one record and return it as stored."""
        table = self._table(kind)
        with self.lock:
            self._check_columns(table, record.keys())
            encoded = self._encode(table, record)
            cols = list(encoded)
            placeholders = ", ".join("?" for _ in cols)
            self._execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})",
                tuple(encoded[c] for c in cols),
            )
        return dict(record)

    def update(
        self,
        kind: str,
        record_id: str,
        fields: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Apply a partial update.

        With ``expected``, the write only happens if every listed column
        still holds the given value (compare-and-swap).

        Returns:
            True if a row was updated, False if the id is unknown or an
            expectation did not hold.
        """
        if not fields:
            raise StorageError("update() called with no fields.")
        table = self._table(kind)
        expected = expected or {}
        with self.lock:
            self._check_columns(table, list(fields) + list(expected))
            enc_fields = self._encode(table, fields)
            enc_expected = self._encode(table, expected)
            assignments = ", ".join(f"{c} = ?" for c in enc_fields)
            conditions = " AND ".join(["id = ?"] + [f"{c} IS ?" for c in enc_expected])
            cur = self._execute(
                f"UPDATE {table} SET {assignments} WHERE {conditions}",
                tuple(enc_fields.values()) + (record_id,) + tuple(enc_expected.values()),
            )
        return cur.rowcount == 1

    def delete(self, kind: str, record_id: str) -> bool:
        """Remove a record.  Only staff accounts and reset tokens may be deleted."""
        table = self._table(kind)
        if table not in {"staff_users", "reset_tokens"}:
            raise StorageError(f"Records of kind '{kind}' are never deleted.")
        with self.lock:
            cur = self._execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cur.rowcount == 1

    def select_one(self, kind: str, record_id: str) -> Optional[dict[str, Any]]:
        """Return the record with ``record_id``, or None if there is none."""
        table = self._table(kind)
        with self.lock:
            row = self._execute(
                f"SELECT * FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
        return self._decode(table, row) if row else None

    def select_all(
        self,
        kind: str,
        order_by: str = "created_at",
        limit: Optional[int] = None,
        ascending: bool = False,
    ) -> list[dict[str, Any]]:
        """Return every record of ``kind``, newest first by default.

        Ties on ``order_by`` fall back to insertion order.
        """
        table = self._table(kind)
        direction = "ASC" if ascending else "DESC"
        with self.lock:
            self._check_columns(table, [order_by])
            sql = f"SELECT * FROM {table} ORDER BY {order_by} {direction}, rowid {direction}"
            params: tuple = ()
            if limit is not None:
                sql += " LIMIT ?"
                params = (limit,)
            rows = self._execute(sql, params).fetchall()
        return [self._decode(table, r) for r in rows]

    def select_where(self, kind: str, **equals: Any) -> list[dict[str, Any]]:
        """Return records whose columns equal the given values."""
        table = self._table(kind)
        with self.lock:
            self._check_columns(table, equals.keys())
            encoded = self._encode(table, equals)
            where = " AND ".join(f"{c} IS ?" for c in encoded) or "1 = 1"
            rows = self._execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY rowid",
                tuple(encoded.values()),
            ).fetchall()
        return [self._decode(table, r) for r in rows]

    def count(self, kind: str) -> int:
        """Return the number of stored records of ``kind``."""
        table = self._table(kind)
        with self.lock:
            row = self._execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
        return row["n"]
