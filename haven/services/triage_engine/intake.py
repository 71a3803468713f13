"""Alert intake - the interface upstream detectors create alerts through.

Detectors decide *whether* something is a crisis and at which tier; intake
only validates the submission and records it as a new unread alert.
"""
import logging
from typing import Any, Dict, Iterable, Optional

from haven.shared.database import RepositoryError
from haven.shared.errors import ValidationFailed
from haven.shared.models import (
    AIFeature,
    AiDetectionPayload,
    AlertSource,
    AlertTier,
    CheckinPayload,
    CheckinType,
    CrisisAlert,
    GeoPoint,
    PAYLOAD_TYPES,
    PanicButtonPayload,
    PanicTriggerLocation,
    SourcePayload,
    new_alert_id,
)
from haven.shared.utils import hash_pii
from haven.services.alert_store import AlertStore
from haven.services.audit_service import AuditAction, AuditLogger
from .config import TriageConfig
from .events import AlertEvent, AlertEventPublisher, AlertEventType

logger = logging.getLogger(__name__)


class AlertIntake:
    """Creates alerts on behalf of the upstream detectors."""

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

    async def create_alert(
        self,
        tenant_id: str,
        person_id: str,
        person_name: str,
        source: AlertSource,
        tier: AlertTier,
        payload: SourcePayload,
        trigger_terms: Iterable[str] = (),
        context: str = "",
        full_message: str = "",
        assigned_responder_id: Optional[str] = None,
        assigned_responder_name: Optional[str] = None,
    ) -> CrisisAlert:
        """Validate a detector submission and store it as an unread alert.

        Returns:
            The stored alert, with ``created_at`` assigned by the store

        Raises:
            ValidationFailed: Missing identity or payload/source mismatch

        Logs:
            - CRISIS_ALERT_CREATED: After the alert is stored (critical)
        """
        if not tenant_id or not person_id:
            raise ValidationFailed("tenant_id and person_id are required")

        draft = CrisisAlert(
            id=new_alert_id(),
            tenant_id=tenant_id,
            person_id=person_id,
            person_name=(person_name or "").strip() or "Unknown",
            source=source,
            tier=tier,
            payload=payload,
            trigger_terms=tuple(term.strip() for term in trigger_terms if term and term.strip()),
            context=context or "",
            full_message=full_message or "",
            assigned_responder_id=assigned_responder_id,
            assigned_responder_name=assigned_responder_name,
        )

        alert = await self.store.create(draft)
        person_id_hash = hash_pii(person_id)

        logger.critical(
            "CRISIS_ALERT_CREATED",
            extra={
                "alert_id": alert.id,
                "tenant_id": tenant_id,
                "person_id_hash": person_id_hash,
                "source": source.value,
                "tier": int(alert.tier),
                "term_count": len(alert.trigger_terms),
                "responder_assigned": assigned_responder_id is not None,
            }
        )

        try:
            self.audit_logger.log_alert_action(
                action=AuditAction.ALERT_CREATED,
                alert_id=alert.id,
                person_id_hash=person_id_hash,
                actor_id=source.value,
                actor_role="detector",
                tenant_id=tenant_id,
                details={"tier": int(alert.tier)},
            )
        except RepositoryError as e:
            # The alert is stored; a retry from the detector would duplicate it
            logger.critical(
                "ALERT_AUDIT_WRITE_FAILED",
                extra={
                    "alert_id": alert.id,
                    "action": AuditAction.ALERT_CREATED.value,
                    "error": str(e),
                    "action_required": "MANUAL_AUDIT_RECONCILIATION",
                }
            )
        self.event_publisher.publish(
            AlertEvent.for_alert(AlertEventType.CREATED, alert, actor_id=source.value)
        )

        return alert

    async def submit(self, data: Dict[str, Any], default_tenant: Optional[str] = None) -> CrisisAlert:
        """Create an alert from a raw detector submission (HTTP or stream).

        Raises:
            ValidationFailed: On missing or malformed fields
        """
        if not isinstance(data, dict):
            raise ValidationFailed("submission must be an object")
        try:
            source = AlertSource.parse(data["source"])
            tier = AlertTier(int(data["tier"]))
            payload = PAYLOAD_TYPES[source].from_dict(data.get("payload") or {})
        except KeyError as e:
            raise ValidationFailed(f"missing field: {e.args[0]}") from e
        except (ValueError, TypeError) as e:
            raise ValidationFailed(f"invalid submission: {e}") from e

        trigger_terms = data.get("trigger_terms") or []
        if isinstance(trigger_terms, str) or not isinstance(trigger_terms, list):
            raise ValidationFailed("trigger_terms must be a list")

        return await self.create_alert(
            tenant_id=data.get("tenant_id") or default_tenant or self.config.default_tenant,
            person_id=data.get("person_id") or "",
            person_name=data.get("person_name") or "",
            source=source,
            tier=tier,
            payload=payload,
            trigger_terms=[str(term) for term in trigger_terms],
            context=data.get("context") or "",
            full_message=data.get("full_message") or "",
            assigned_responder_id=data.get("assigned_responder_id"),
            assigned_responder_name=data.get("assigned_responder_name"),
        )

    async def raise_panic_alert(
        self,
        tenant_id: str,
        person_id: str,
        person_name: str,
        triggered_from: PanicTriggerLocation,
        location: Optional[GeoPoint] = None,
        assigned_responder_id: Optional[str] = None,
        assigned_responder_name: Optional[str] = None,
    ) -> CrisisAlert:
        """A panic-button press is always tier 1."""
        return await self.create_alert(
            tenant_id=tenant_id,
            person_id=person_id,
            person_name=person_name,
            source=AlertSource.PANIC_BUTTON,
            tier=AlertTier.CRITICAL,
            payload=PanicButtonPayload(triggered_from=triggered_from, location=location),
            context=f"Panic button pressed from {triggered_from.value}",
            assigned_responder_id=assigned_responder_id,
            assigned_responder_name=assigned_responder_name,
        )

    async def raise_ai_alert(
        self,
        tenant_id: str,
        person_id: str,
        person_name: str,
        tier: AlertTier,
        feature: AIFeature,
        trigger_terms: Iterable[str],
        full_message: str,
        context: str = "",
        llm_bypassed: bool = False,
        ai_response: Optional[str] = None,
        assigned_responder_id: Optional[str] = None,
        assigned_responder_name: Optional[str] = None,
    ) -> CrisisAlert:
        """Crisis language detected in an AI chat feature.

        Crisis resources are shown to the person for tier 1 and 2.
        """
        try:
            tier = AlertTier(tier)
        except ValueError as e:
            raise ValidationFailed(f"invalid tier: {tier!r}") from e
        return await self.create_alert(
            tenant_id=tenant_id,
            person_id=person_id,
            person_name=person_name,
            source=AlertSource.AI_DETECTION,
            tier=tier,
            payload=AiDetectionPayload(
                feature=feature,
                resources_displayed=tier <= AlertTier.HIGH,
                llm_bypassed=llm_bypassed,
                ai_response=ai_response,
            ),
            trigger_terms=trigger_terms,
            context=context,
            full_message=full_message,
            assigned_responder_id=assigned_responder_id,
            assigned_responder_name=assigned_responder_name,
        )

    async def raise_checkin_alert(
        self,
        tenant_id: str,
        person_id: str,
        person_name: str,
        checkin_id: str,
        checkin_type: CheckinType,
        concerning_score: Optional[int] = None,
        concerning_fields: Iterable[str] = (),
        tier: AlertTier = AlertTier.MODERATE,
        context: str = "",
        assigned_responder_id: Optional[str] = None,
        assigned_responder_name: Optional[str] = None,
    ) -> CrisisAlert:
        fields = tuple(concerning_fields)
        return await self.create_alert(
            tenant_id=tenant_id,
            person_id=person_id,
            person_name=person_name,
            source=AlertSource.CHECKIN,
            tier=tier,
            payload=CheckinPayload(
                checkin_id=checkin_id,
                checkin_type=checkin_type,
                concerning_score=concerning_score,
                concerning_fields=fields,
            ),
            trigger_terms=fields,
            context=context,
            assigned_responder_id=assigned_responder_id,
            assigned_responder_name=assigned_responder_name,
        )
