"""Tests for dispatcher delivery reports."""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from haven.shared.database import NotFoundError, RepositoryError
from haven.shared.errors import ValidationFailed
from haven.shared.utils import configure_pii_salt
from haven.shared.models import DeliveryChannel, PanicTriggerLocation
from haven.services.alert_store import InMemoryAlertStore
from haven.services.audit_service import AuditAction, AuditLogger
from haven.services.triage_engine.delivery import DeliveryRecorder
from haven.services.triage_engine.intake import AlertIntake


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def recorder(store, audit_logger, publisher):
    return DeliveryRecorder(store, audit_logger, publisher)


async def create_alert(store):
    intake = AlertIntake(store, AuditLogger(), MagicMock())
    return await intake.raise_panic_alert(
        tenant_id="full-service",
        person_id="person_001",
        person_name="Alex Doe",
        triggered_from=PanicTriggerLocation.HOME,
    )


class TestDeliveryRecorder:
    @pytest.mark.asyncio
    async def test_records_send(self, store, recorder, audit_logger, publisher):
        alert = await create_alert(store)
        sent_at = datetime(2024, 5, 1, 12, 0, 5, tzinfo=timezone.utc)

        result = await recorder.record(alert.id, "push", sent_at=sent_at)

        assert result.changed is True
        assert result.channel is DeliveryChannel.PUSH
        assert result.alert.deliveries.push.sent_at == sent_at
        assert len(audit_logger.query(action=AuditAction.ALERT_DELIVERY_RECORDED)) == 1
        publisher.publish.assert_called_once()

    @pytest.mark.asyncio
    async def test_repeat_report_is_noop(self, store, recorder, audit_logger, publisher):
        alert = await create_alert(store)

        first = await recorder.record(alert.id, DeliveryChannel.SMS)
        second = await recorder.record(alert.id, DeliveryChannel.SMS)

        assert second.changed is False
        assert second.alert.deliveries.sms.sent_at == first.alert.deliveries.sms.sent_at
        assert len(audit_logger.query(action=AuditAction.ALERT_DELIVERY_RECORDED)) == 1
        assert publisher.publish.call_count == 1

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo_delivery(self, store, publisher):
        alert = await create_alert(store)
        failing_audit = MagicMock()
        failing_audit.log_alert_action.side_effect = RepositoryError("audit store down")
        recorder = DeliveryRecorder(store, failing_audit, publisher)

        result = await recorder.record(alert.id, DeliveryChannel.EMAIL)

        assert result.changed is True
        assert (await store.get(alert.id)).deliveries.email.sent is True
        publisher.publish.assert_called_once()

    @pytest.mark.asyncio
    async def test_delivery_does_not_touch_lifecycle(self, store, recorder):
        alert = await create_alert(store)

        result = await recorder.record(alert.id, "email")

        assert result.alert.status is alert.status
        assert result.alert.response_log == ()

    @pytest.mark.asyncio
    async def test_unknown_channel(self, store, recorder):
        alert = await create_alert(store)

        with pytest.raises(ValidationFailed):
            await recorder.record(alert.id, "fax")

    @pytest.mark.asyncio
    async def test_unknown_alert(self, recorder):
        with pytest.raises(NotFoundError):
            await recorder.record("missing", "push")
