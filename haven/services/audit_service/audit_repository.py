"""Append-only storage for the platform audit chain.

In PostgreSQL the ``audit_entries`` table is granted INSERT and SELECT only,
so rows cannot be edited or removed once written. Without a connection
manager entries live in process memory (development and tests).
"""
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import psycopg2

from haven.shared.database import ConnectionManager, RepositoryError
from haven.shared.utils import ensure_utc, to_iso
from .audit_logger import AuditAction, AuditEntity, AuditEntry

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_entries (
    seq             BIGSERIAL PRIMARY KEY,
    entry_id        TEXT UNIQUE NOT NULL,
    timestamp       TIMESTAMPTZ NOT NULL,
    action          TEXT NOT NULL,
    entity_type     TEXT NOT NULL,
    entity_id       TEXT NOT NULL,
    actor_id        TEXT NOT NULL,
    actor_role      TEXT NOT NULL,
    tenant_id       TEXT,
    details         JSONB NOT NULL DEFAULT '{}'::jsonb,
    previous_hash   TEXT NOT NULL,
    entry_hash      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS audit_entries_entity ON audit_entries (entity_type, entity_id);
"""

COLUMNS = (
    "entry_id", "timestamp", "action", "entity_type", "entity_id",
    "actor_id", "actor_role", "tenant_id", "details", "previous_hash", "entry_hash",
)
_COLUMN_LIST = ", ".join(COLUMNS)


@dataclass(frozen=True)
class AuditQuery:
    """Equality and time-range filters over audit entries; None means any."""
    entity_type: Optional[AuditEntity] = None
    entity_id: Optional[str] = None
    action: Optional[AuditAction] = None
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 100

    def _equalities(self) -> List[Tuple[str, Any]]:
        return [
            ("entity_type", self.entity_type.value if self.entity_type else None),
            ("entity_id", self.entity_id),
            ("action", self.action.value if self.action else None),
            ("actor_id", self.actor_id),
            ("tenant_id", self.tenant_id),
        ]

    def matches(self, entry: AuditEntry) -> bool:
        values = {
            "entity_type": entry.entity_type.value,
            "entity_id": entry.entity_id,
            "action": entry.action.value,
            "actor_id": entry.actor_id,
            "tenant_id": entry.tenant_id,
        }
        for column, wanted in self._equalities():
            if wanted is not None and values[column] != wanted:
                return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True

    def to_sql(self) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, wanted in self._equalities():
            if wanted is not None:
                clauses.append(f"{column} = %s")
                params.append(wanted)
        if self.start_date:
            clauses.append("timestamp >= %s")
            params.append(self.start_date)
        if self.end_date:
            clauses.append("timestamp <= %s")
            params.append(self.end_date)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(self.limit)
        return f"SELECT {_COLUMN_LIST} FROM audit_entries{where} ORDER BY seq DESC LIMIT %s", params


class AuditRepository:
    """Immutable audit entries in PostgreSQL, or in memory."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        self.connection_manager = connection_manager
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

        logger.info(
            "AUDIT_REPOSITORY_INITIALIZED",
            extra={"backend": "postgresql" if connection_manager else "memory"}
        )

    def ensure_schema(self) -> None:
        if self.connection_manager is None:
            return
        self._execute(SCHEMA, (), commit=True)

    def append(self, entry: AuditEntry) -> bool:
        """Store one entry at the end of the chain.

        Raises:
            RepositoryError: If the database write fails
        """
        if self.connection_manager is None:
            with self._lock:
                self._entries.append(entry)
        else:
            placeholders = ", ".join(["%s"] * len(COLUMNS))
            self._execute(
                f"INSERT INTO audit_entries ({_COLUMN_LIST}) VALUES ({placeholders})",
                self._entry_to_params(entry),
                commit=True,
            )

        logger.debug(
            "AUDIT_ENTRY_STORED",
            extra={
                "entry_id": entry.entry_id,
                "action": entry.action.value,
                "backend": "postgresql" if self.connection_manager else "memory",
            }
        )
        return True

    def last_hash(self) -> Optional[str]:
        """Hash of the newest entry, or None for an empty chain."""
        if self.connection_manager is None:
            with self._lock:
                return self._entries[-1].entry_hash if self._entries else None
        rows = self._execute("SELECT entry_hash FROM audit_entries ORDER BY seq DESC LIMIT 1", ())
        return rows[0][0] if rows else None

    def all_entries(self) -> List[AuditEntry]:
        """The whole chain in append order."""
        if self.connection_manager is None:
            with self._lock:
                return list(self._entries)
        rows = self._execute(f"SELECT {_COLUMN_LIST} FROM audit_entries ORDER BY seq ASC", ())
        return [self._row_to_entry(row) for row in rows]

    def query(self, **filters) -> List[AuditEntry]:
        """Entries matching ``AuditQuery(**filters)``, newest first."""
        criteria = AuditQuery(**filters)
        if self.connection_manager is None:
            with self._lock:
                # Newest first; append order breaks timestamp ties
                matching = [e for e in reversed(self._entries) if criteria.matches(e)]
            return matching[:criteria.limit]

        sql, params = criteria.to_sql()
        return [self._row_to_entry(row) for row in self._execute(sql, params)]

    def _execute(self, sql: str, params, commit: bool = False) -> List[tuple]:
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = [] if commit else cur.fetchall()
                if commit:
                    conn.commit()
                return rows
        except psycopg2.Error as e:
            logger.error("AUDIT_STORAGE_FAILED", extra={"error": str(e)})
            raise RepositoryError(f"audit storage failed: {e}") from e

    @staticmethod
    def _entry_to_params(entry: AuditEntry) -> tuple:
        return (
            entry.entry_id,
            entry.timestamp,
            entry.action.value,
            entry.entity_type.value,
            entry.entity_id,
            entry.actor_id,
            entry.actor_role,
            entry.tenant_id,
            json.dumps(entry.details),
            entry.previous_hash,
            entry.entry_hash,
        )

    @staticmethod
    def _row_to_entry(row: tuple) -> AuditEntry:
        record = dict(zip(COLUMNS, row))
        details = record["details"]
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEntry(
            entry_id=record["entry_id"],
            timestamp=ensure_utc(record["timestamp"]),
            action=AuditAction(record["action"]),
            entity_type=AuditEntity(record["entity_type"]),
            entity_id=record["entity_id"],
            actor_id=record["actor_id"],
            actor_role=record["actor_role"],
            tenant_id=record["tenant_id"],
            details=details or {},
            previous_hash=record["previous_hash"],
            entry_hash=record["entry_hash"],
        )

    def to_document(self, entry: AuditEntry) -> Dict[str, Any]:
        """JSON-compatible form of an entry."""
        document = dict(zip(COLUMNS, self._entry_to_params(entry)))
        document["timestamp"] = to_iso(entry.timestamp)
        document["details"] = dict(entry.details)
        return document
