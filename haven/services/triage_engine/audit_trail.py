"""Per-alert response log: append-only and hash-chained.

The log is the authoritative history of an alert. Each entry chains to the
previous entry's hash; the first entry chains to a genesis hash derived from
the alert id, so entries cannot be moved between alerts, reordered, edited
or dropped from the middle without ``verify_trail`` noticing.

Appends are computed here but only ever applied inside a store's atomic
write, never by read-modify-write of the whole list from a client.
"""
import hashlib
import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from haven.shared.models import (
    AlertStatus,
    LIFECYCLE_ACTIONS,
    ResponseAction,
    ResponseLogEntry,
)

logger = logging.getLogger(__name__)


def genesis_hash(alert_id: str) -> str:
    """Chain anchor for an alert's first entry."""
    return hashlib.sha256(f"genesis:{alert_id}".encode()).hexdigest()


def append_entry(
    alert_id: str,
    trail: Sequence[ResponseLogEntry],
    action: ResponseAction,
    actor_id: str,
    actor_name: str,
    timestamp: datetime,
    note: Optional[str] = None,
) -> ResponseLogEntry:
    """Build the next chained entry for ``trail``.
    
    The caller appends the returned entry; ``trail`` itself is not touched.
    """
    previous = trail[-1].entry_hash if trail else genesis_hash(alert_id)
    entry = ResponseLogEntry(
        sequence=len(trail),
        action=action,
        actor_id=actor_id,
        actor_name=actor_name,
        timestamp=timestamp,
        note=note,
        previous_hash=previous,
    )
    return replace(entry, entry_hash=entry.compute_hash())


def verify_trail(alert_id: str, trail: Sequence[ResponseLogEntry]) -> bool:
    """Verify sequence numbers and the hash chain of an alert's log.
    
    Returns:
        True if intact, False if any entry was altered, moved or dropped
    """
    expected_prev = genesis_hash(alert_id)
    for index, entry in enumerate(trail):
        if entry.sequence != index:
            logger.critical(
                "ALERT_TRAIL_SEQUENCE_BROKEN",
                extra={
                    "alert_id": alert_id,
                    "position": index,
                    "sequence": entry.sequence,
                }
            )
            return False
        
        if entry.previous_hash != expected_prev:
            logger.critical(
                "ALERT_TRAIL_CHAIN_BROKEN",
                extra={
                    "alert_id": alert_id,
                    "sequence": entry.sequence,
                    "expected_prev": expected_prev[:16],
                    "actual_prev": entry.previous_hash[:16],
                }
            )
            return False
        
        computed = entry.compute_hash()
        if computed != entry.entry_hash:
            logger.critical(
                "ALERT_TRAIL_ENTRY_TAMPERED",
                extra={
                    "alert_id": alert_id,
                    "sequence": entry.sequence,
                    "computed": computed[:16],
                    "stored": entry.entry_hash[:16],
                }
            )
            return False
        
        expected_prev = entry.entry_hash
    
    return True


def extends(previous: Sequence[ResponseLogEntry], current: Sequence[ResponseLogEntry]) -> bool:
    """True if ``current`` keeps every entry of ``previous`` in place."""
    if len(current) < len(previous):
        return False
    return all(
        old.entry_hash == new.entry_hash
        for old, new in zip(previous, current)
    )


def status_from_trail(trail: Sequence[ResponseLogEntry]) -> AlertStatus:
    """Status implied by the last lifecycle-changing entry."""
    for entry in reversed(trail):
        if entry.action in LIFECYCLE_ACTIONS:
            return LIFECYCLE_ACTIONS[entry.action]
    return AlertStatus.UNREAD


def status_at(trail: Sequence[ResponseLogEntry], as_of: datetime) -> AlertStatus:
    """Status the alert had at ``as_of``, replayed from its log."""
    status = AlertStatus.UNREAD
    for entry in trail:
        if entry.timestamp > as_of:
            break
        if entry.action in LIFECYCLE_ACTIONS:
            status = LIFECYCLE_ACTIONS[entry.action]
    return status
