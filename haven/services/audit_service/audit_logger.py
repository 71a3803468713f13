"""Audit logger - platform-wide, hash-chained record of alert actions.

Every alert creation, lifecycle action, delivery write and export emits
one entry here, in addition to the alert's own response log. The two are
independent: the response log answers "what happened to this alert",
this log answers "what did anyone do on the platform".
"""
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from haven.shared.utils import utc_now

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Alert lifecycle
    ALERT_CREATED = "alert_created"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_NOTE_ADDED = "alert_note_added"
    ALERT_RESPONDED = "alert_responded"
    ALERT_ESCALATED = "alert_escalated"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_CONTACTED = "alert_contacted"
    ALERT_CLOSING_NOTE = "alert_closing_note"

    # Dispatcher writes
    ALERT_DELIVERY_RECORDED = "alert_delivery_recorded"

    # Data access
    EXPORT_DATA = "export_data"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    CRISIS_ALERT = "crisis_alert"
    ALERT_EXPORT = "alert_export"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry.

    Stored append-only in PostgreSQL (or memory in development).
    """
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str   # Responder id, or the detector/dispatcher name
    actor_role: str
    tenant_id: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""     # Hash of this entry

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.

        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "tenant_id": self.tenant_id,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()


def verify_chain(entries: List[AuditEntry]) -> bool:
    """Verify integrity of an audit chain given in append order.

    Returns:
        True if chain is valid, False if tampered
    """
    expected_prev = GENESIS_HASH
    for entry in entries:
        if entry.previous_hash != expected_prev:
            logger.critical(
                "AUDIT_CHAIN_VERIFICATION_FAILED",
                extra={
                    "entry_id": entry.entry_id,
                    "expected_prev": expected_prev[:16],
                    "actual_prev": entry.previous_hash[:16],
                }
            )
            return False

        computed = entry.compute_hash()
        if computed != entry.entry_hash:
            logger.critical(
                "AUDIT_ENTRY_HASH_MISMATCH",
                extra={
                    "entry_id": entry.entry_id,
                    "computed": computed[:16],
                    "stored": entry.entry_hash[:16],
                }
            )
            return False

        expected_prev = entry.entry_hash

    logger.info(
        "AUDIT_CHAIN_VERIFIED",
        extra={"entry_count": len(entries)}
    )
    return True


class AuditLogger:
    """Appends chained audit entries to an ``AuditRepository``.

    The chain head is read from the repository on first use, so a restarted
    process continues the existing chain.
    """

    def __init__(self, repository=None):
        """Initialize audit logger.

        Args:
            repository: AuditRepository (in-memory if omitted)
        """
        if repository is None:
            from .audit_repository import AuditRepository
            repository = AuditRepository()
        self.repository = repository
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str,
        actor_role: str,
        tenant_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity
            actor_id: Who performed the action
            actor_role: Role of actor (responder, detector, dispatcher)
            tenant_id: Tenant context
            details: Additional context (no raw PII)

        Returns:
            Created AuditEntry

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
        """
        with self._lock:
            if self._last_hash is None:
                self._last_hash = self.repository.last_hash() or GENESIS_HASH

            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=utc_now(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                tenant_id=tenant_id,
                details=details or {},
                previous_hash=self._last_hash,
            )

            # Compute hash (creates new instance since frozen)
            entry_hash = entry.compute_hash()
            entry = AuditEntry(
                entry_id=entry.entry_id,
                timestamp=entry.timestamp,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                actor_id=entry.actor_id,
                actor_role=entry.actor_role,
                tenant_id=entry.tenant_id,
                details=entry.details,
                previous_hash=entry.previous_hash,
                entry_hash=entry_hash,
            )

            self.repository.append(entry)
            self._last_hash = entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "actor_role": actor_role,
                "tenant_id": tenant_id,
                "entry_hash": entry_hash[:16],  # Truncated for logs
            }
        )

        return entry

    def log_alert_action(
        self,
        action: AuditAction,
        alert_id: str,
        person_id_hash: str,
        actor_id: str,
        actor_role: str,
        tenant_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log an action taken on a crisis alert.

        Args:
            action: Lifecycle action (ALERT_*)
            alert_id: Crisis alert identifier
            person_id_hash: Hashed identifier of the person in crisis
            actor_id: Responder or upstream component
            actor_role: Role of actor
            tenant_id: Tenant context
            details: Additional context

        Returns:
            Created AuditEntry
        """
        entry_details = dict(details or {})
        entry_details["person_id_hash"] = person_id_hash

        return self.log(
            action=action,
            entity_type=AuditEntity.CRISIS_ALERT,
            entity_id=alert_id,
            actor_id=actor_id,
            actor_role=actor_role,
            tenant_id=tenant_id,
            details=entry_details,
        )

    def verify_chain(self) -> bool:
        """Verify integrity of the stored audit chain."""
        return verify_chain(self.repository.all_entries())

    def query(self, **filters) -> List[AuditEntry]:
        """Query audit entries; see ``AuditRepository.query``."""
        return self.repository.query(**filters)
