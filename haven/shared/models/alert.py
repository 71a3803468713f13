"""Crisis alert domain model.

A CrisisAlert is the single first-class record of the triage engine. It is
created by an upstream detector (panic button, AI chat detection, daily
check-in scorer) and afterwards changed only through validated lifecycle
actions. Tier and source never change after creation.

Source-specific evidence is carried as a tagged payload keyed by ``source``
rather than as optional fields for every source.
"""
import hashlib
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

from haven.shared.errors import ValidationFailed
from haven.shared.utils.timeutil import parse_iso, to_iso


class AlertSource(Enum):
    """Upstream detector that raised the alert."""
    PANIC_BUTTON = "panic_button"
    AI_DETECTION = "ai_detection"
    CHECKIN = "checkin"

    @classmethod
    def parse(cls, value: str) -> "AlertSource":
        """Parse a source, accepting the legacy ``sos``/``ai`` spellings."""
        return cls(_LEGACY_SOURCE_ALIASES.get(value, value))


_LEGACY_SOURCE_ALIASES = {
    "sos": AlertSource.PANIC_BUTTON.value,
    "ai": AlertSource.AI_DETECTION.value,
}


class AlertTier(IntEnum):
    """Urgency classification, lower is more urgent. Fixed at creation."""
    CRITICAL = 1
    HIGH = 2
    MODERATE = 3
    STANDARD = 4


class AlertSeverity(Enum):
    """Human-readable severity mapped from tier."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertStatus(Enum):
    """Workflow state. RESOLVED is terminal."""
    UNREAD = "unread"
    ACKNOWLEDGED = "acknowledged"
    RESPONDED = "responded"
    ESCALATED = "escalated"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        """Position in the lifecycle; status never moves to a lower rank."""
        return _STATUS_RANK[self]


_STATUS_RANK = {status: index for index, status in enumerate(AlertStatus)}

ACTIVE_STATUSES = frozenset(s for s in AlertStatus if s is not AlertStatus.RESOLVED)


class ResponseAction(Enum):
    """Action recorded in an alert's response log."""
    ACKNOWLEDGED = "acknowledged"
    NOTE_ADDED = "note_added"
    RESPONDED = "responded"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CONTACTED_PERSON = "contacted_person"
    CLOSING_NOTE = "closing_note"


# Log actions that move the alert's status, and where they move it
LIFECYCLE_ACTIONS: Dict[ResponseAction, AlertStatus] = {
    ResponseAction.ACKNOWLEDGED: AlertStatus.ACKNOWLEDGED,
    ResponseAction.RESPONDED: AlertStatus.RESPONDED,
    ResponseAction.ESCALATED: AlertStatus.ESCALATED,
    ResponseAction.RESOLVED: AlertStatus.RESOLVED,
}


class DeliveryChannel(Enum):
    """Notification channels written by the external dispatcher."""
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class AIFeature(Enum):
    """AI feature that detected the crisis language."""
    ANCHOR = "anchor"
    DAILY_ORACLE = "daily_oracle"
    VOICE_COMPANION = "voice_companion"
    STORY_MODE = "story_mode"
    GUIDED_CHECKIN = "guided_checkin"
    PROMPT_CARDS = "prompt_cards"


class CheckinType(Enum):
    MORNING = "morning"
    EVENING = "evening"
    WEEKLY = "weekly"


class PanicTriggerLocation(Enum):
    """Where in the app the panic button was pressed."""
    HOME = "home"
    COMMUNITY = "community"
    MESSAGES = "messages"
    HEADER = "header"
    PROFILE = "profile"


TIER_TO_SEVERITY: Dict[AlertTier, AlertSeverity] = {
    AlertTier.CRITICAL: AlertSeverity.CRITICAL,
    AlertTier.HIGH: AlertSeverity.HIGH,
    AlertTier.MODERATE: AlertSeverity.MEDIUM,
    AlertTier.STANDARD: AlertSeverity.LOW,
}

TIER_LABELS: Dict[AlertTier, str] = {
    AlertTier.CRITICAL: "Critical",
    AlertTier.HIGH: "High",
    AlertTier.MODERATE: "Moderate",
    AlertTier.STANDARD: "Standard",
}

SOURCE_LABELS: Dict[AlertSource, str] = {
    AlertSource.PANIC_BUTTON: "Panic Button",
    AlertSource.AI_DETECTION: "AI Detection",
    AlertSource.CHECKIN: "Check-in",
}

STATUS_LABELS: Dict[AlertStatus, str] = {
    AlertStatus.UNREAD: "Unread",
    AlertStatus.ACKNOWLEDGED: "Acknowledged",
    AlertStatus.RESPONDED: "Responded",
    AlertStatus.ESCALATED: "Escalated",
    AlertStatus.RESOLVED: "Resolved",
}


def new_alert_id() -> str:
    return f"alert_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Source payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeoPoint:
    """Coordinates reported with a panic-button press."""
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValidationFailed(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValidationFailed(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class PanicButtonPayload:
    source: ClassVar[AlertSource] = AlertSource.PANIC_BUTTON

    triggered_from: PanicTriggerLocation
    location: Optional[GeoPoint] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered_from": self.triggered_from.value,
            "location": (
                {"latitude": self.location.latitude, "longitude": self.location.longitude}
                if self.location else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PanicButtonPayload":
        location = data.get("location")
        return cls(
            triggered_from=PanicTriggerLocation(data["triggered_from"]),
            location=(
                GeoPoint(float(location["latitude"]), float(location["longitude"]))
                if location else None
            ),
        )


@dataclass(frozen=True)
class AiDetectionPayload:
    source: ClassVar[AlertSource] = AlertSource.AI_DETECTION

    feature: AIFeature
    resources_displayed: bool = False
    llm_bypassed: bool = False  # automated reply suppressed for safety
    ai_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature.value,
            "resources_displayed": self.resources_displayed,
            "llm_bypassed": self.llm_bypassed,
            "ai_response": self.ai_response,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AiDetectionPayload":
        return cls(
            feature=AIFeature(data["feature"]),
            resources_displayed=bool(data.get("resources_displayed", False)),
            llm_bypassed=bool(data.get("llm_bypassed", False)),
            ai_response=data.get("ai_response"),
        )


@dataclass(frozen=True)
class CheckinPayload:
    source: ClassVar[AlertSource] = AlertSource.CHECKIN

    checkin_id: str
    checkin_type: CheckinType
    concerning_score: Optional[int] = None  # 1-10
    concerning_fields: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.concerning_score is not None and not 1 <= self.concerning_score <= 10:
            raise ValidationFailed(
                f"concerning_score must be 1-10, got {self.concerning_score}"
            )
        object.__setattr__(self, "concerning_fields", tuple(self.concerning_fields))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkin_id": self.checkin_id,
            "checkin_type": self.checkin_type.value,
            "concerning_score": self.concerning_score,
            "concerning_fields": list(self.concerning_fields),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckinPayload":
        score = data.get("concerning_score")
        return cls(
            checkin_id=str(data["checkin_id"]),
            checkin_type=CheckinType(data["checkin_type"]),
            concerning_score=int(score) if score is not None else None,
            concerning_fields=tuple(data.get("concerning_fields") or ()),
        )


SourcePayload = Union[PanicButtonPayload, AiDetectionPayload, CheckinPayload]

PAYLOAD_TYPES = {
    AlertSource.PANIC_BUTTON: PanicButtonPayload,
    AlertSource.AI_DETECTION: AiDetectionPayload,
    AlertSource.CHECKIN: CheckinPayload,
}


# ---------------------------------------------------------------------------
# Delivery record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChannelDelivery:
    sent: bool = False
    sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryRecord:
    """Per-channel "sent" flags. A flag once set is never cleared."""
    push: ChannelDelivery = ChannelDelivery()
    email: ChannelDelivery = ChannelDelivery()
    sms: ChannelDelivery = ChannelDelivery()
    in_app: ChannelDelivery = ChannelDelivery()

    def channel(self, channel: DeliveryChannel) -> ChannelDelivery:
        return getattr(self, channel.value)

    def with_sent(self, channel: DeliveryChannel, sent_at: Optional[datetime]) -> "DeliveryRecord":
        """Return a record with ``channel`` marked sent; write-once."""
        if self.channel(channel).sent:
            return self
        return replace(self, **{channel.value: ChannelDelivery(sent=True, sent_at=sent_at)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            channel.value: {
                "sent": self.channel(channel).sent,
                "sent_at": to_iso(self.channel(channel).sent_at),
            }
            for channel in DeliveryChannel
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliveryRecord":
        data = data or {}
        values = {}
        for channel in DeliveryChannel:
            entry = data.get(channel.value) or {}
            values[channel.value] = ChannelDelivery(
                sent=bool(entry.get("sent", False)),
                sent_at=parse_iso(entry.get("sent_at")),
            )
        return cls(**values)


# ---------------------------------------------------------------------------
# Response log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResponseLogEntry:
    """One entry of an alert's append-only response log.

    Entries are hash-chained per alert: ``previous_hash`` is the hash of the
    preceding entry (or the alert's genesis hash) and ``entry_hash`` covers
    every other field. Position in the log, not ``timestamp``, is the
    authoritative order.
    """
    sequence: int
    action: ResponseAction
    actor_id: str
    actor_name: str
    timestamp: datetime
    note: Optional[str] = None
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field but the hash."""
        content = {
            "sequence": self.sequence,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "timestamp": to_iso(self.timestamp),
            "note": self.note,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()

    @property
    def changes_status(self) -> bool:
        return self.action in LIFECYCLE_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "timestamp": to_iso(self.timestamp),
            "note": self.note,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseLogEntry":
        timestamp = parse_iso(data["timestamp"])
        if timestamp is None:
            raise ValidationFailed(f"response log entry {data.get('sequence')} has no timestamp")
        return cls(
            sequence=int(data["sequence"]),
            action=ResponseAction(data["action"]),
            actor_id=data["actor_id"],
            actor_name=data["actor_name"],
            timestamp=timestamp,
            note=data.get("note"),
            previous_hash=data.get("previous_hash", ""),
            entry_hash=data.get("entry_hash", ""),
        )


# ---------------------------------------------------------------------------
# Crisis alert
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrisisAlert:
    """A safety-critical event awaiting human triage.

    Immutable value: stores replace the whole record on every write.
    ``created_at`` is None only on a draft that has not been persisted yet;
    the store assigns it, and the document codec rejects records without it.
    """
    id: str
    tenant_id: str
    person_id: str
    person_name: str
    source: AlertSource
    tier: AlertTier
    payload: SourcePayload
    trigger_terms: Tuple[str, ...] = ()
    context: str = ""
    full_message: str = ""
    assigned_responder_id: Optional[str] = None
    assigned_responder_name: Optional[str] = None
    status: AlertStatus = AlertStatus.UNREAD
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    escalated_at: Optional[datetime] = None
    escalated_to: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    response_notes: Optional[str] = None
    response_log: Tuple[ResponseLogEntry, ...] = ()
    deliveries: DeliveryRecord = field(default_factory=DeliveryRecord)

    def __post_init__(self):
        if not isinstance(self.source, AlertSource):
            raise ValidationFailed(f"invalid source: {self.source!r}")
        if not isinstance(self.payload, PAYLOAD_TYPES[self.source]):
            raise ValidationFailed(
                f"payload {type(self.payload).__name__} does not match source {self.source.value}"
            )
        try:
            object.__setattr__(self, "tier", AlertTier(self.tier))
        except ValueError as e:
            raise ValidationFailed(f"invalid tier: {self.tier!r}") from e
        # Ordered set: keep first occurrence
        object.__setattr__(self, "trigger_terms", tuple(dict.fromkeys(self.trigger_terms)))
        object.__setattr__(self, "response_log", tuple(self.response_log))

    @property
    def severity(self) -> AlertSeverity:
        return TIER_TO_SEVERITY[self.tier]

    @property
    def is_resolved(self) -> bool:
        return self.status is AlertStatus.RESOLVED

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def last_lifecycle_entry(self) -> Optional[ResponseLogEntry]:
        for entry in reversed(self.response_log):
            if entry.changes_status:
                return entry
        return None

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the store's document shape (JSON-compatible)."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "person_id": self.person_id,
            "person_name": self.person_name,
            "assigned_responder_id": self.assigned_responder_id,
            "assigned_responder_name": self.assigned_responder_name,
            "source": self.source.value,
            "tier": int(self.tier),
            "severity": self.severity.value,
            "payload": self.payload.to_dict(),
            "trigger_terms": list(self.trigger_terms),
            "context": self.context,
            "full_message": self.full_message,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "acknowledged_at": to_iso(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
            "responded_at": to_iso(self.responded_at),
            "responded_by": self.responded_by,
            "escalated_at": to_iso(self.escalated_at),
            "escalated_to": self.escalated_to,
            "resolved_at": to_iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "response_notes": self.response_notes,
            "response_log": [entry.to_dict() for entry in self.response_log],
            "deliveries": self.deliveries.to_dict(),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CrisisAlert":
        """Decode a store document.

        Raises:
            ValidationFailed: If the document is malformed
        """
        doc_id = doc.get("id", "<unknown>") if isinstance(doc, dict) else "<unknown>"
        try:
            source = AlertSource.parse(doc["source"])
            created_at = parse_iso(doc.get("created_at"))
            if created_at is None:
                raise ValidationFailed(f"alert document {doc_id} has no created_at")
            return cls(
                id=doc["id"],
                tenant_id=doc["tenant_id"],
                person_id=doc["person_id"],
                person_name=doc.get("person_name") or "Unknown",
                assigned_responder_id=doc.get("assigned_responder_id"),
                assigned_responder_name=doc.get("assigned_responder_name"),
                source=source,
                tier=AlertTier(int(doc["tier"])),
                payload=PAYLOAD_TYPES[source].from_dict(doc.get("payload") or {}),
                trigger_terms=tuple(doc.get("trigger_terms") or ()),
                context=doc.get("context") or "",
                full_message=doc.get("full_message") or "",
                status=AlertStatus(doc.get("status", AlertStatus.UNREAD.value)),
                created_at=created_at,
                updated_at=parse_iso(doc.get("updated_at")),
                acknowledged_at=parse_iso(doc.get("acknowledged_at")),
                acknowledged_by=doc.get("acknowledged_by"),
                responded_at=parse_iso(doc.get("responded_at")),
                responded_by=doc.get("responded_by"),
                escalated_at=parse_iso(doc.get("escalated_at")),
                escalated_to=doc.get("escalated_to"),
                resolved_at=parse_iso(doc.get("resolved_at")),
                resolved_by=doc.get("resolved_by"),
                response_notes=doc.get("response_notes"),
                response_log=tuple(
                    ResponseLogEntry.from_dict(entry) for entry in doc.get("response_log") or ()
                ),
                deliveries=DeliveryRecord.from_dict(doc.get("deliveries")),
            )
        except ValidationFailed:
            raise
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ValidationFailed(f"malformed alert document {doc_id}: {e!r}") from e
