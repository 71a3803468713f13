"""Alert lifecycle events published to Kinesis.

Downstream consumers (the notification dispatcher, analytics) learn about
new alerts and lifecycle changes from this stream instead of calling the
engine. Publishing happens after the write is durable and is best-effort:
a failed publish never fails the action that caused it.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import boto3

from haven.shared.models import CrisisAlert
from haven.shared.utils import hash_pii, hash_text_for_audit, to_iso, utc_now
from .state_machine import AlertAction

logger = logging.getLogger(__name__)


class AlertEventType(Enum):
    CREATED = "alert.created"
    ACKNOWLEDGED = "alert.acknowledged"
    NOTE_ADDED = "alert.note_added"
    RESPONDED = "alert.responded"
    ESCALATED = "alert.escalated"
    RESOLVED = "alert.resolved"
    CONTACTED = "alert.contacted"
    CLOSING_NOTE = "alert.closing_note"
    DELIVERY_RECORDED = "alert.delivery_recorded"


ACTION_EVENT_TYPES: Dict[AlertAction, AlertEventType] = {
    AlertAction.ACKNOWLEDGE: AlertEventType.ACKNOWLEDGED,
    AlertAction.ADD_NOTE: AlertEventType.NOTE_ADDED,
    AlertAction.RESPOND: AlertEventType.RESPONDED,
    AlertAction.ESCALATE: AlertEventType.ESCALATED,
    AlertAction.RESOLVE: AlertEventType.RESOLVED,
    AlertAction.CONTACT_PERSON: AlertEventType.CONTACTED,
    AlertAction.CLOSING_NOTE: AlertEventType.CLOSING_NOTE,
}


@dataclass(frozen=True)
class AlertEvent:
    """Immutable lifecycle event for one alert."""
    event_id: str
    event_type: AlertEventType
    alert_id: str
    tenant_id: str
    person_id_hash: str
    source: str
    tier: int
    status: str
    actor_id: Optional[str] = None
    message_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def for_alert(
        cls,
        event_type: AlertEventType,
        alert: CrisisAlert,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AlertEvent":
        return cls(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            alert_id=alert.id,
            tenant_id=alert.tenant_id,
            person_id_hash=hash_pii(alert.person_id),
            source=alert.source.value,
            tier=int(alert.tier),
            status=alert.status.value,
            actor_id=actor_id,
            message_hash=hash_text_for_audit(alert.full_message) if alert.full_message else None,
            details=details or {},
        )

    def to_event_payload(self) -> dict:
        """Convert to Kinesis record payload.

        Returns:
            Dictionary for Kinesis put_record Data field
        """
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": to_iso(self.timestamp),
            "source": "triage-engine",
            "data": {
                "alert_id": self.alert_id,
                "tenant_id": self.tenant_id,
                "person_id_hash": self.person_id_hash,
                "alert_source": self.source,
                "tier": self.tier,
                "status": self.status,
                "actor_id": self.actor_id,
                "message_hash": self.message_hash,
                **self.details,
            }
        }


class AlertEventPublisher:
    """Publishes alert lifecycle events to a Kinesis stream.

    Failure Handling:
        - Publishing failure does NOT fail the action; it is already stored
        - Failures are logged at CRITICAL level for alerting
    """

    def __init__(
        self,
        stream_name: str = "haven-alert-events",
        enabled: bool = True,
        region: str = "us-east-1",
        kinesis_client=None,
    ):
        """Initialize publisher.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region
            kinesis_client: Pre-built client (tests)
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region
        self._kinesis_client = kinesis_client

        logger.info(
            "ALERT_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def publish(self, event: AlertEvent) -> bool:
        """Publish one event, partitioned by alert id.

        Returns:
            True if published successfully, False otherwise
        """
        if not self.enabled:
            logger.debug(
                "ALERT_EVENT_PUBLISH_SKIPPED",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "reason": "publishing_disabled",
                }
            )
            return False

        payload = event.to_event_payload()

        if self.kinesis_client is None:
            # Fallback: Log event for manual processing
            logger.critical(
                "ALERT_EVENT_FALLBACK_LOG",
                extra={
                    "event_id": event.event_id,
                    "payload": json.dumps(payload),
                    "reason": "kinesis_client_unavailable",
                    "action": "MANUAL_PROCESSING_REQUIRED",
                }
            )
            return False

        try:
            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=event.alert_id,  # Same alert -> same shard, ordered
            )
        except Exception as e:
            logger.critical(
                "ALERT_EVENT_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "alert_id": event.alert_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": json.dumps(payload),
                }
            )
            return False

        logger.info(
            "ALERT_EVENT_PUBLISHED",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type.value,
                "alert_id": event.alert_id,
                "shard_id": response.get("ShardId"),
                "sequence_number": response.get("SequenceNumber"),
            }
        )
        return True
