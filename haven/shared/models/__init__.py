"""Shared domain models for Haven."""
from .alert import (
    AlertSource,
    AlertTier,
    AlertSeverity,
    AlertStatus,
    ResponseAction,
    DeliveryChannel,
    AIFeature,
    CheckinType,
    PanicTriggerLocation,
    GeoPoint,
    PanicButtonPayload,
    AiDetectionPayload,
    CheckinPayload,
    SourcePayload,
    ChannelDelivery,
    DeliveryRecord,
    ResponseLogEntry,
    CrisisAlert,
    ACTIVE_STATUSES,
    LIFECYCLE_ACTIONS,
    PAYLOAD_TYPES,
    TIER_TO_SEVERITY,
    TIER_LABELS,
    SOURCE_LABELS,
    STATUS_LABELS,
    new_alert_id,
)

__all__ = [
    "AlertSource",
    "AlertTier",
    "AlertSeverity",
    "AlertStatus",
    "ResponseAction",
    "DeliveryChannel",
    "AIFeature",
    "CheckinType",
    "PanicTriggerLocation",
    "GeoPoint",
    "PanicButtonPayload",
    "AiDetectionPayload",
    "CheckinPayload",
    "SourcePayload",
    "ChannelDelivery",
    "DeliveryRecord",
    "ResponseLogEntry",
    "CrisisAlert",
    "ACTIVE_STATUSES",
    "LIFECYCLE_ACTIONS",
    "PAYLOAD_TYPES",
    "TIER_TO_SEVERITY",
    "TIER_LABELS",
    "SOURCE_LABELS",
    "STATUS_LABELS",
    "new_alert_id",
]
