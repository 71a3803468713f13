"""Delivery write target for the notification dispatcher.

The dispatcher sends push/email/SMS/in-app notifications itself and then
reports each successful send here. Flags are write-once: a repeated report
is acknowledged but changes nothing.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from haven.shared.database import RepositoryError
from haven.shared.errors import ValidationFailed
from haven.shared.models import CrisisAlert, DeliveryChannel
from haven.shared.utils import hash_pii
from haven.services.alert_store import AlertStore
from haven.services.audit_service import AuditAction, AuditLogger
from .events import AlertEvent, AlertEventPublisher, AlertEventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    alert: CrisisAlert
    channel: DeliveryChannel
    changed: bool


class DeliveryRecorder:
    """Records dispatcher sends on the alert's delivery record."""

    def __init__(
        self,
        store: AlertStore,
        audit_logger: Optional[AuditLogger] = None,
        event_publisher: Optional[AlertEventPublisher] = None,
    ):
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()
        self.event_publisher = event_publisher or AlertEventPublisher(enabled=False)

    async def record(
        self,
        alert_id: str,
        channel,
        sent_at: Optional[datetime] = None,
        dispatcher_id: str = "notification-dispatcher",
    ) -> DeliveryResult:
        """Mark ``channel`` as sent for an alert.

        Args:
            alert_id: Alert identifier
            channel: DeliveryChannel or its string value
            sent_at: Send time reported by the dispatcher (store time if omitted)
            dispatcher_id: Component reporting the send

        Raises:
            ValidationFailed: Unknown channel
            NotFoundError: Unknown alert
        """
        try:
            channel = DeliveryChannel(channel)
        except ValueError as e:
            raise ValidationFailed(f"unknown delivery channel: {channel!r}") from e

        alert, changed = await self.store.record_delivery(alert_id, channel, sent_at)

        if not changed:
            logger.info(
                "ALERT_DELIVERY_ALREADY_RECORDED",
                extra={"alert_id": alert_id, "channel": channel.value}
            )
            return DeliveryResult(alert=alert, channel=channel, changed=False)

        logger.info(
            "ALERT_DELIVERY_RECORDED",
            extra={"alert_id": alert_id, "channel": channel.value}
        )
        try:
            self.audit_logger.log_alert_action(
                action=AuditAction.ALERT_DELIVERY_RECORDED,
                alert_id=alert.id,
                person_id_hash=hash_pii(alert.person_id),
                actor_id=dispatcher_id,
                actor_role="dispatcher",
                tenant_id=alert.tenant_id,
                details={"channel": channel.value},
            )
        except RepositoryError as e:
            logger.critical(
                "ALERT_AUDIT_WRITE_FAILED",
                extra={
                    "alert_id": alert.id,
                    "action": AuditAction.ALERT_DELIVERY_RECORDED.value,
                    "error": str(e),
                    "action_required": "MANUAL_AUDIT_RECONCILIATION",
                }
            )
        self.event_publisher.publish(
            AlertEvent.for_alert(
                AlertEventType.DELIVERY_RECORDED,
                alert,
                actor_id=dispatcher_id,
                details={"channel": channel.value},
            )
        )
        return DeliveryResult(alert=alert, channel=channel, changed=True)
