"""Crisis Alert Triage Engine: shared queue of crisis alerts for responders.

Detectors (panic button, AI chat detection, check-ins) create alerts;
responders acknowledge, note, respond, escalate and resolve them; every
subscriber sees the same ordered population with statistics recomputed
on each change.

Endpoints (http_handler):
- POST /alerts - Create alert from a detector submission
- GET /alerts - Filtered view and statistics
- GET /alerts/export - CSV export of the filtered view
- GET /alerts/<id> - Alert with response log
- POST /alerts/<id>/actions - Responder action
- POST /alerts/<id>/deliveries/<channel> - Dispatcher send report
- GET /audit/verify - Platform audit chain check

The service modules (processor, intake, delivery, sync, http_handler)
depend on the alert store and are imported from their own modules.
"""

from .audit_trail import append_entry, extends, genesis_hash, verify_trail
from .config import TriageConfig
from .events import AlertEvent, AlertEventPublisher, AlertEventType
from .export import EXPORT_COLUMNS, ExportResult, export_csv, parse_export
from .filters import ACTIVE_ONLY, DEFAULT_FILTERS, AlertFilters, apply_filters, build_predicate
from .records import SkippedRecord, decode_records
from .state_machine import ActionRequest, AlertAction, Transition, plan_transition
from .stats import StatsSummary, compute_stats, stats_as_of

__all__ = [
    "append_entry",
    "extends",
    "genesis_hash",
    "verify_trail",
    "TriageConfig",
    "AlertEvent",
    "AlertEventPublisher",
    "AlertEventType",
    "EXPORT_COLUMNS",
    "ExportResult",
    "export_csv",
    "parse_export",
    "ACTIVE_ONLY",
    "DEFAULT_FILTERS",
    "AlertFilters",
    "apply_filters",
    "build_predicate",
    "SkippedRecord",
    "decode_records",
    "ActionRequest",
    "AlertAction",
    "Transition",
    "plan_transition",
    "StatsSummary",
    "compute_stats",
    "stats_as_of",
]
