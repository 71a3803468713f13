"""Alert lifecycle state machine.

Pure functions: ``plan_transition`` validates an action against an alert as
read from the store and produces a ``Transition`` that names the status it
expects to find. Stores call ``apply_transition`` inside their atomic write
after checking that the persisted status still equals that expectation.

Status edges (RESOLVED is terminal):

    unread       -> acknowledged, responded, escalated, resolved
    acknowledged -> responded, escalated, resolved
    responded    -> escalated, resolved
    escalated    -> escalated (re-escalation), resolved
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from haven.shared.errors import PreconditionFailed, ValidationFailed
from haven.shared.models import (
    ACTIVE_STATUSES,
    AlertStatus,
    CrisisAlert,
    ResponseAction,
    ResponseLogEntry,
)
from .audit_trail import append_entry, status_from_trail

logger = logging.getLogger(__name__)


class AlertAction(Enum):
    """Actions a responder can submit."""
    ACKNOWLEDGE = "acknowledge"
    ADD_NOTE = "add_note"
    RESPOND = "respond"
    ESCALATE = "escalate"
    RESOLVE = "resolve"
    CONTACT_PERSON = "contact_person"
    CLOSING_NOTE = "closing_note"


@dataclass(frozen=True)
class ActionRule:
    allowed_from: FrozenSet[AlertStatus]
    log_action: ResponseAction
    target: Optional[AlertStatus]  # None: status unchanged
    requires_note: bool = False


ACTION_RULES: Dict[AlertAction, ActionRule] = {
    AlertAction.ACKNOWLEDGE: ActionRule(
        allowed_from=frozenset({AlertStatus.UNREAD}),
        log_action=ResponseAction.ACKNOWLEDGED,
        target=AlertStatus.ACKNOWLEDGED,
    ),
    AlertAction.ADD_NOTE: ActionRule(
        allowed_from=ACTIVE_STATUSES,
        log_action=ResponseAction.NOTE_ADDED,
        target=None,
        requires_note=True,
    ),
    AlertAction.RESPOND: ActionRule(
        allowed_from=frozenset({AlertStatus.UNREAD, AlertStatus.ACKNOWLEDGED}),
        log_action=ResponseAction.RESPONDED,
        target=AlertStatus.RESPONDED,
        requires_note=True,
    ),
    AlertAction.ESCALATE: ActionRule(
        allowed_from=ACTIVE_STATUSES,
        log_action=ResponseAction.ESCALATED,
        target=AlertStatus.ESCALATED,
    ),
    AlertAction.RESOLVE: ActionRule(
        allowed_from=ACTIVE_STATUSES,
        log_action=ResponseAction.RESOLVED,
        target=AlertStatus.RESOLVED,
    ),
    AlertAction.CONTACT_PERSON: ActionRule(
        allowed_from=ACTIVE_STATUSES,
        log_action=ResponseAction.CONTACTED_PERSON,
        target=None,
        requires_note=True,
    ),
    AlertAction.CLOSING_NOTE: ActionRule(
        allowed_from=frozenset({AlertStatus.RESOLVED}),
        log_action=ResponseAction.CLOSING_NOTE,
        target=None,
        requires_note=True,
    ),
}


def allowed_edges() -> Dict[AlertStatus, FrozenSet[AlertStatus]]:
    """Every status change any action can produce, keyed by source status."""
    edges: Dict[AlertStatus, set] = {status: set() for status in AlertStatus}
    for rule in ACTION_RULES.values():
        if rule.target is None:
            continue
        for status in rule.allowed_from:
            edges[status].add(rule.target)
    return {status: frozenset(targets) for status, targets in edges.items()}


@dataclass(frozen=True)
class ActionRequest:
    """An action submitted by a responder."""
    alert_id: str
    action: AlertAction
    actor_id: str
    actor_name: str
    note: Optional[str] = None
    destination: Optional[str] = None  # escalation target

    @classmethod
    def from_dict(cls, alert_id: str, data: Dict[str, Any]) -> "ActionRequest":
        """Build a request from an API payload.

        Raises:
            ValidationFailed: On unknown action or missing actor
        """
        if not isinstance(data, dict):
            raise ValidationFailed("action payload must be an object")
        try:
            action = AlertAction(data.get("action"))
        except ValueError as e:
            raise ValidationFailed(f"unknown action: {data.get('action')!r}") from e
        return cls(
            alert_id=alert_id,
            action=action,
            actor_id=data.get("actor_id") or "",
            actor_name=data.get("actor_name") or "",
            note=data.get("note"),
            destination=data.get("destination"),
        )


@dataclass(frozen=True)
class Transition:
    """A validated, not yet applied action.

    ``expected_status`` is the status the plan was made against; the store
    refuses the write if the persisted status differs.
    """
    alert_id: str
    action: AlertAction
    expected_status: AlertStatus
    target_status: AlertStatus
    log_action: ResponseAction
    actor_id: str
    actor_name: str
    note: Optional[str] = None
    destination: Optional[str] = None

    @property
    def changes_status(self) -> bool:
        return ACTION_RULES[self.action].target is not None


def normalize_request(request: ActionRequest) -> ActionRequest:
    """Validate payload fields and fill action-specific defaults.

    Raises:
        ValidationFailed: If the payload is malformed
    """
    actor_id = (request.actor_id or "").strip()
    actor_name = (request.actor_name or "").strip()
    if not actor_id:
        raise ValidationFailed("actor_id is required")
    if not actor_name:
        actor_name = actor_id

    note = request.note.strip() if request.note else None
    destination = request.destination.strip() if request.destination else None
    rule = ACTION_RULES[request.action]

    if request.action is AlertAction.ESCALATE:
        if not destination:
            raise ValidationFailed("escalation requires a destination")
        note = note or f"Escalated to {destination}"
    elif request.action is AlertAction.RESOLVE:
        note = note or "Alert resolved"
    elif rule.requires_note and not note:
        raise ValidationFailed(f"{request.action.value} requires a note")

    return replace(
        request,
        actor_id=actor_id,
        actor_name=actor_name,
        note=note,
        destination=destination,
    )


def plan_transition(alert: CrisisAlert, request: ActionRequest) -> Transition:
    """Check ``request`` against ``alert`` as currently persisted.

    Raises:
        ValidationFailed: If the payload is malformed
        PreconditionFailed: If the action is not valid in the current status
    """
    request = normalize_request(request)
    rule = ACTION_RULES[request.action]

    if alert.status not in rule.allowed_from:
        last = alert.last_lifecycle_entry
        raise PreconditionFailed(
            alert_id=alert.id,
            action=request.action.value,
            current_status=alert.status.value,
            last_actor_name=last.actor_name if last else None,
        )

    return Transition(
        alert_id=alert.id,
        action=request.action,
        expected_status=alert.status,
        target_status=rule.target or alert.status,
        log_action=rule.log_action,
        actor_id=request.actor_id,
        actor_name=request.actor_name,
        note=request.note,
        destination=request.destination,
    )


def apply_transition(
    alert: CrisisAlert,
    transition: Transition,
    now: datetime,
) -> Tuple[CrisisAlert, ResponseLogEntry]:
    """Append the log entry and update status and stamps in one step.

    Must only be called after the caller verified
    ``alert.status is transition.expected_status``.

    Returns:
        (updated alert, appended entry)
    """
    if alert.status is not transition.expected_status:
        raise ValueError(
            f"alert {alert.id} is {alert.status.value}, "
            f"transition expects {transition.expected_status.value}"
        )

    entry = append_entry(
        alert.id,
        alert.response_log,
        action=transition.log_action,
        actor_id=transition.actor_id,
        actor_name=transition.actor_name,
        timestamp=now,
        note=transition.note,
    )

    changes: Dict[str, Any] = {
        "status": transition.target_status,
        "response_log": alert.response_log + (entry,),
        "updated_at": now,
    }

    if transition.action is AlertAction.ACKNOWLEDGE:
        if alert.acknowledged_at is None:
            changes["acknowledged_at"] = now
            changes["acknowledged_by"] = transition.actor_id
    elif transition.action is AlertAction.RESPOND:
        if alert.responded_at is None:
            changes["responded_at"] = now
            changes["responded_by"] = transition.actor_id
        changes["response_notes"] = transition.note
    elif transition.action is AlertAction.ESCALATE:
        if alert.escalated_at is None:
            changes["escalated_at"] = now
        changes["escalated_to"] = transition.destination
    elif transition.action is AlertAction.RESOLVE:
        if alert.resolved_at is None:
            changes["resolved_at"] = now
            changes["resolved_by"] = transition.actor_id

    updated = replace(alert, **changes)

    derived = status_from_trail(updated.response_log)
    if derived is not updated.status:
        # Unreachable while ACTION_RULES and LIFECYCLE_ACTIONS agree
        raise ValueError(
            f"alert {alert.id}: status {updated.status.value} disagrees "
            f"with trail-derived {derived.value}"
        )

    return updated, entry
