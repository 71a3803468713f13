"""Action processor - the only writer of alert status.

Reads the persisted alert, plans a transition against it and hands the
plan to the store, which applies it only if the persisted status is still
the one the plan was made against. A lost race is re-planned against the
fresh record; the loser of two acknowledges therefore ends in
``PreconditionFailed`` instead of overwriting the winner.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from haven.shared.database import ConflictError, RepositoryError
from haven.shared.errors import PersistenceUnavailable, PreconditionFailed, ValidationFailed
from haven.shared.models import CrisisAlert, ResponseLogEntry
from haven.shared.utils import hash_pii
from haven.services.alert_store import AlertStore
from haven.services.audit_service import AuditAction, AuditLogger
from .config import TriageConfig
from .events import ACTION_EVENT_TYPES, AlertEvent, AlertEventPublisher
from .state_machine import (
    ActionRequest,
    AlertAction,
    normalize_request,
    plan_transition,
)

logger = logging.getLogger(__name__)


ACTION_AUDIT_TYPES: Dict[AlertAction, AuditAction] = {
    AlertAction.ACKNOWLEDGE: AuditAction.ALERT_ACKNOWLEDGED,
    AlertAction.ADD_NOTE: AuditAction.ALERT_NOTE_ADDED,
    AlertAction.RESPOND: AuditAction.ALERT_RESPONDED,
    AlertAction.ESCALATE: AuditAction.ALERT_ESCALATED,
    AlertAction.RESOLVE: AuditAction.ALERT_RESOLVED,
    AlertAction.CONTACT_PERSON: AuditAction.ALERT_CONTACTED,
    AlertAction.CLOSING_NOTE: AuditAction.ALERT_CLOSING_NOTE,
}


@dataclass(frozen=True)
class ActionResult:
    """Outcome of an accepted action."""
    alert: CrisisAlert
    entry: ResponseLogEntry
    attempts: int

    def to_dict(self) -> dict:
        return {
            "alert": self.alert.to_document(),
            "entry": self.entry.to_dict(),
            "attempts": self.attempts,
        }


class ActionProcessor:
    """Validates and applies responder actions.

    Every accepted action is durably written (log entry and status together)
    before it is audited and published; audit and publish failures are
    logged and never undo or fail the action.
    """

    def __init__(
        self,
        store: AlertStore,
        audit_logger: Optional[AuditLogger] = None,
        event_publisher: Optional[AlertEventPublisher] = None,
        config: Optional[TriageConfig] = None,
    ):
        self.store = store
        self.config = config or TriageConfig()
        self.audit_logger = audit_logger or AuditLogger()
        self.event_publisher = event_publisher or AlertEventPublisher(
            stream_name=self.config.event_stream_name,
            enabled=self.config.event_publishing_enabled,
            region=self.config.aws_region,
        )

        logger.info(
            "ACTION_PROCESSOR_INITIALIZED",
            extra={"max_conflict_retries": self.config.max_conflict_retries}
        )

    async def submit(self, request: ActionRequest) -> ActionResult:
        """Apply one action.

        Raises:
            ValidationFailed: Malformed payload
            NotFoundError: Unknown alert
            PreconditionFailed: Action not valid in the persisted status
            PersistenceUnavailable: Store failure, or conflicts kept
                winning past ``max_conflict_retries``
        """
        try:
            request = normalize_request(request)
        except ValidationFailed as e:
            logger.warning(
                "ALERT_ACTION_INVALID",
                extra={
                    "alert_id": request.alert_id,
                    "action": request.action.value,
                    "error": str(e),
                }
            )
            raise

        alert = await self.store.get(request.alert_id)
        max_attempts = self.config.max_conflict_retries + 1

        for attempt in range(1, max_attempts + 1):
            try:
                transition = plan_transition(alert, request)
            except PreconditionFailed as e:
                logger.warning(
                    "ALERT_ACTION_REJECTED",
                    extra={
                        "alert_id": alert.id,
                        "action": request.action.value,
                        "current_status": e.current_status,
                        "actor_id": request.actor_id,
                        "attempt": attempt,
                    }
                )
                raise

            try:
                updated, entry = await self.store.apply_transition(transition)
            except ConflictError as e:
                logger.warning(
                    "ALERT_TRANSITION_CONFLICT",
                    extra={
                        "alert_id": alert.id,
                        "action": request.action.value,
                        "expected_status": transition.expected_status.value,
                        "attempt": attempt,
                    }
                )
                alert = e.current if e.current is not None else await self.store.get(alert.id)
                continue

            result = ActionResult(alert=updated, entry=entry, attempts=attempt)
            self._after_commit(request, result)
            return result

        logger.error(
            "ALERT_TRANSITION_RETRIES_EXHAUSTED",
            extra={
                "alert_id": request.alert_id,
                "action": request.action.value,
                "attempts": max_attempts,
            }
        )
        raise PersistenceUnavailable(
            f"{request.action.value} on alert {request.alert_id} lost "
            f"{max_attempts} concurrent writes"
        )

    def _after_commit(self, request: ActionRequest, result: ActionResult) -> None:
        alert = result.alert
        person_id_hash = hash_pii(alert.person_id)

        logger.info(
            "ALERT_ACTION_APPLIED",
            extra={
                "alert_id": alert.id,
                "action": request.action.value,
                "status": alert.status.value,
                "tier": int(alert.tier),
                "actor_id": request.actor_id,
                "person_id_hash": person_id_hash,
                "sequence": result.entry.sequence,
                "attempts": result.attempts,
            }
        )

        details = {"sequence": result.entry.sequence, "status": alert.status.value}
        if request.destination:
            details["destination"] = request.destination

        try:
            self.audit_logger.log_alert_action(
                action=ACTION_AUDIT_TYPES[request.action],
                alert_id=alert.id,
                person_id_hash=person_id_hash,
                actor_id=request.actor_id,
                actor_role="responder",
                tenant_id=alert.tenant_id,
                details=details,
            )
        except RepositoryError as e:
            logger.critical(
                "ALERT_AUDIT_WRITE_FAILED",
                extra={
                    "alert_id": alert.id,
                    "action": request.action.value,
                    "error": str(e),
                    "action_required": "MANUAL_AUDIT_RECONCILIATION",
                }
            )

        self.event_publisher.publish(
            AlertEvent.for_alert(
                ACTION_EVENT_TYPES[request.action],
                alert,
                actor_id=request.actor_id,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def acknowledge(self, alert_id: str, actor_id: str, actor_name: str) -> ActionResult:
        return await self.submit(ActionRequest(alert_id, AlertAction.ACKNOWLEDGE, actor_id, actor_name))

    async def add_note(self, alert_id: str, actor_id: str, actor_name: str, note: str) -> ActionResult:
        return await self.submit(
            ActionRequest(alert_id, AlertAction.ADD_NOTE, actor_id, actor_name, note=note)
        )

    async def respond(self, alert_id: str, actor_id: str, actor_name: str, note: str) -> ActionResult:
        return await self.submit(
            ActionRequest(alert_id, AlertAction.RESPOND, actor_id, actor_name, note=note)
        )

    async def escalate(
        self,
        alert_id: str,
        actor_id: str,
        actor_name: str,
        destination: str,
        note: Optional[str] = None,
    ) -> ActionResult:
        return await self.submit(
            ActionRequest(
                alert_id, AlertAction.ESCALATE, actor_id, actor_name,
                note=note, destination=destination,
            )
        )

    async def resolve(
        self,
        alert_id: str,
        actor_id: str,
        actor_name: str,
        note: Optional[str] = None,
    ) -> ActionResult:
        return await self.submit(
            ActionRequest(alert_id, AlertAction.RESOLVE, actor_id, actor_name, note=note)
        )

    async def contact_person(self, alert_id: str, actor_id: str, actor_name: str, note: str) -> ActionResult:
        return await self.submit(
            ActionRequest(alert_id, AlertAction.CONTACT_PERSON, actor_id, actor_name, note=note)
        )

    async def closing_note(self, alert_id: str, actor_id: str, actor_name: str, note: str) -> ActionResult:
        return await self.submit(
            ActionRequest(alert_id, AlertAction.CLOSING_NOTE, actor_id, actor_name, note=note)
        )
