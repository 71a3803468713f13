"""CSV export of the filtered alert view.

Rows come out in the order they are given (the view's display order).
Quoting follows RFC 4180 via the ``csv`` module, so names or terms with
commas, quotes or newlines survive a round trip.
"""
import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Tuple

from haven.shared.models import CrisisAlert
from haven.shared.utils import to_iso, utc_now
from .records import AlertRecord, SkippedRecord, decode_records

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    "ID",
    "Person Name",
    "Responder",
    "Source",
    "Tier",
    "Status",
    "Created At",
    "Trigger Terms",
)

TERM_DELIMITER = "; "


@dataclass(frozen=True)
class ExportResult:
    content: str
    row_count: int
    skipped: Tuple[SkippedRecord, ...] = ()
    filename: str = ""


def export_filename(on: Optional[date] = None) -> str:
    on = on or utc_now().date()
    return f"crisis-alerts-{on.isoformat()}.csv"


def alert_to_row(alert: CrisisAlert) -> List[str]:
    return [
        alert.id,
        alert.person_name,
        alert.assigned_responder_name or "",
        alert.source.value,
        str(int(alert.tier)),
        alert.status.value,
        to_iso(alert.created_at) or "",
        TERM_DELIMITER.join(alert.trigger_terms),
    ]


def export_csv(
    records: Iterable[AlertRecord],
    now: Optional[datetime] = None,
) -> ExportResult:
    """Serialize alerts to CSV text with a header row.

    Undecodable records are skipped and reported, never abort the export.
    """
    alerts, skipped = decode_records(records)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(EXPORT_COLUMNS)
    for alert in alerts:
        writer.writerow(alert_to_row(alert))

    result = ExportResult(
        content=buffer.getvalue(),
        row_count=len(alerts),
        skipped=tuple(skipped),
        filename=export_filename((now or utc_now()).date()),
    )

    logger.info(
        "ALERT_EXPORT_GENERATED",
        extra={"row_count": result.row_count, "skipped": len(skipped)}
    )
    return result


def parse_export(content: str) -> List[Dict[str, str]]:
    """Read an export back into one dict per row, keyed by column."""
    reader = csv.DictReader(io.StringIO(content, newline=""))
    if reader.fieldnames is None or tuple(reader.fieldnames) != EXPORT_COLUMNS:
        raise ValueError(f"unexpected export header: {reader.fieldnames!r}")
    return [dict(row) for row in reader]


def split_terms(value: str) -> List[str]:
    """Inverse of the trigger-term join."""
    return value.split(TERM_DELIMITER) if value else []
