"""Decoding of raw alert documents for batch consumers.

Snapshots, statistics and export all work on a population of alerts where
one corrupt document must not hide the rest: bad records are set aside and
reported instead of aborting the batch.
"""
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Tuple, Union

from haven.shared.errors import ValidationFailed
from haven.shared.models import CrisisAlert

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedRecord:
    """A record left out of a batch because it could not be decoded."""
    record_id: str
    reason: str

    def to_dict(self) -> dict:
        return {"id": self.record_id, "reason": self.reason}


AlertRecord = Union[CrisisAlert, dict]


def decode_records(
    records: Iterable[AlertRecord],
) -> Tuple[List[CrisisAlert], List[SkippedRecord]]:
    """Split records into decoded alerts and skipped ones, keeping order."""
    alerts: List[CrisisAlert] = []
    skipped: List[SkippedRecord] = []
    for record in records:
        if isinstance(record, CrisisAlert):
            alerts.append(record)
            continue
        try:
            alerts.append(CrisisAlert.from_document(record))
        except ValidationFailed as e:
            record_id = _record_id(record)
            logger.warning(
                "ALERT_RECORD_SKIPPED",
                extra={"alert_id": record_id, "error": str(e)}
            )
            skipped.append(SkippedRecord(record_id=record_id, reason=str(e)))
    return alerts, skipped


def _record_id(record: Any) -> str:
    if isinstance(record, dict) and record.get("id"):
        return str(record["id"])
    return "<unknown>"
