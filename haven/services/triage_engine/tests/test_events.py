"""Tests for the alert lifecycle event publisher."""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from haven.shared.utils import configure_pii_salt, hash_pii, hash_text_for_audit
from haven.shared.models import (
    AlertSource,
    AlertTier,
    CrisisAlert,
    PanicButtonPayload,
    PanicTriggerLocation,
)
from haven.services.triage_engine.events import (
    AlertEvent,
    AlertEventPublisher,
    AlertEventType,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def alert():
    return CrisisAlert(
        id="alert_001",
        tenant_id="full-service",
        person_id="person_001",
        person_name="Alex Doe",
        source=AlertSource.PANIC_BUTTON,
        tier=AlertTier.CRITICAL,
        payload=PanicButtonPayload(triggered_from=PanicTriggerLocation.HOME),
        full_message="private words",
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


class TestAlertEvent:
    def test_event_hashes_person(self, alert):
        event = AlertEvent.for_alert(AlertEventType.CREATED, alert, actor_id="panic_button")

        assert event.person_id_hash == hash_pii("person_001")
        assert event.event_id.startswith("evt_")

    def test_payload_excludes_names_and_message(self, alert):
        payload = AlertEvent.for_alert(AlertEventType.CREATED, alert).to_event_payload()
        serialized = json.dumps(payload)

        assert payload["event_type"] == "alert.created"
        assert payload["data"]["tier"] == 1
        assert "Alex Doe" not in serialized
        assert "person_001" not in serialized
        assert "private words" not in serialized
        assert payload["data"]["message_hash"] == hash_text_for_audit("private words")


class TestAlertEventPublisher:
    def test_publish_partitions_by_alert(self, alert):
        client = MagicMock()
        client.put_record.return_value = {"ShardId": "shard-0", "SequenceNumber": "1"}
        publisher = AlertEventPublisher(stream_name="alerts", kinesis_client=client)

        assert publisher.publish(AlertEvent.for_alert(AlertEventType.CREATED, alert)) is True

        kwargs = client.put_record.call_args.kwargs
        assert kwargs["StreamName"] == "alerts"
        assert kwargs["PartitionKey"] == "alert_001"
        assert json.loads(kwargs["Data"])["data"]["alert_id"] == "alert_001"

    def test_disabled_publisher_skips(self, alert):
        client = MagicMock()
        publisher = AlertEventPublisher(enabled=False, kinesis_client=client)

        assert publisher.publish(AlertEvent.for_alert(AlertEventType.CREATED, alert)) is False
        client.put_record.assert_not_called()

    def test_failure_returns_false(self, alert):
        client = MagicMock()
        client.put_record.side_effect = Exception("throttled")
        publisher = AlertEventPublisher(kinesis_client=client)

        assert publisher.publish(AlertEvent.for_alert(AlertEventType.RESOLVED, alert)) is False

    def test_client_created_lazily(self, alert):
        with patch("haven.services.triage_engine.events.boto3.client") as client_factory:
            publisher = AlertEventPublisher(region="eu-west-1")
            client_factory.assert_not_called()

            publisher.publish(AlertEvent.for_alert(AlertEventType.CREATED, alert))

        client_factory.assert_called_once_with("kinesis", region_name="eu-west-1")
