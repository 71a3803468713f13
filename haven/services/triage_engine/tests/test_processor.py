"""Tests for the action processor: transitions, races and audit."""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from haven.shared.database import ConflictError, NotFoundError, RepositoryError
from haven.shared.errors import PersistenceUnavailable, PreconditionFailed, ValidationFailed
from haven.shared.utils import configure_pii_salt
from haven.shared.models import (
    AlertSource,
    AlertStatus,
    AlertTier,
    CrisisAlert,
    PanicButtonPayload,
    PanicTriggerLocation,
    ResponseAction,
)
from haven.services.alert_store import InMemoryAlertStore
from haven.services.audit_service import AuditAction, AuditLogger
from haven.services.triage_engine.audit_trail import verify_trail
from haven.services.triage_engine.config import TriageConfig
from haven.services.triage_engine.events import AlertEventType
from haven.services.triage_engine.processor import ActionProcessor
from haven.services.triage_engine.state_machine import ActionRequest, AlertAction


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TickingClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class InterleavingStore(InMemoryAlertStore):
    """Yields to the event loop after every read, so concurrent
    submissions all plan against the same persisted status."""

    async def get(self, alert_id):
        alert = await super().get(alert_id)
        await asyncio.sleep(0)
        return alert


def draft(alert_id="alert_001") -> CrisisAlert:
    return CrisisAlert(
        id=alert_id,
        tenant_id="full-service",
        person_id="person_001",
        person_name="Alex Doe",
        source=AlertSource.PANIC_BUTTON,
        tier=AlertTier.CRITICAL,
        payload=PanicButtonPayload(triggered_from=PanicTriggerLocation.HOME),
    )


@pytest.fixture
def store():
    return InterleavingStore(clock=TickingClock())


@pytest.fixture
def audit_logger():
    return AuditLogger()


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def processor(store, audit_logger, publisher):
    return ActionProcessor(store, audit_logger, publisher, TriageConfig())


class TestSubmit:
    @pytest.mark.asyncio
    async def test_acknowledge(self, store, processor):
        await store.create(draft())

        result = await processor.acknowledge("alert_001", "coach_001", "Jordan")

        assert result.alert.status is AlertStatus.ACKNOWLEDGED
        assert result.entry.action is ResponseAction.ACKNOWLEDGED
        assert result.attempts == 1
        assert (await store.get("alert_001")).status is AlertStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_unknown_alert(self, processor):
        with pytest.raises(NotFoundError):
            await processor.acknowledge("missing", "coach_001", "Jordan")

    @pytest.mark.asyncio
    async def test_invalid_payload_changes_nothing(self, store, processor, audit_logger):
        await store.create(draft())

        with pytest.raises(ValidationFailed):
            await processor.add_note("alert_001", "coach_001", "Jordan", "   ")

        assert (await store.get("alert_001")).response_log == ()
        assert audit_logger.query() == []

    @pytest.mark.asyncio
    async def test_rejected_action_reports_current_status(self, store, processor):
        await store.create(draft())
        await processor.resolve("alert_001", "coach_002", "Sam")

        with pytest.raises(PreconditionFailed) as exc_info:
            await processor.acknowledge("alert_001", "coach_001", "Jordan")

        assert exc_info.value.current_status == "resolved"
        assert exc_info.value.last_actor_name == "Sam"

    @pytest.mark.asyncio
    async def test_accepted_action_is_audited_and_published(self, store, processor, audit_logger, publisher):
        await store.create(draft())

        await processor.escalate("alert_001", "coach_001", "Jordan", destination="Crisis Line")

        entries = audit_logger.query(action=AuditAction.ALERT_ESCALATED)
        assert len(entries) == 1
        assert entries[0].details["destination"] == "Crisis Line"
        assert "person_001" not in str(entries[0].details)

        event = publisher.publish.call_args[0][0]
        assert event.event_type is AlertEventType.ESCALATED
        assert event.alert_id == "alert_001"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo_action(self, store, publisher):
        failing_audit = MagicMock()
        failing_audit.log_alert_action.side_effect = RepositoryError("audit store down")
        processor = ActionProcessor(store, failing_audit, publisher)
        await store.create(draft())

        result = await processor.acknowledge("alert_001", "coach_001", "Jordan")

        assert result.alert.status is AlertStatus.ACKNOWLEDGED
        assert (await store.get("alert_001")).status is AlertStatus.ACKNOWLEDGED
        publisher.publish.assert_called_once()

    @pytest.mark.asyncio
    async def test_from_dict_request(self, store, processor):
        await store.create(draft())
        req = ActionRequest.from_dict(
            "alert_001",
            {"action": "respond", "actor_id": "coach_001", "actor_name": "Jordan", "note": "Called"},
        )

        result = await processor.submit(req)

        assert result.alert.status is AlertStatus.RESPONDED
        assert result.alert.response_notes == "Called"


class TestPanicButtonLifecycle:
    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve_then_refuse(self):
        store = InMemoryAlertStore(clock=TickingClock())
        processor = ActionProcessor(store, AuditLogger(), MagicMock())
        await store.create(draft())

        acknowledged = await processor.acknowledge("alert_001", "coach_001", "Jordan")

        assert acknowledged.alert.status is AlertStatus.ACKNOWLEDGED
        assert acknowledged.alert.acknowledged_at is not None
        assert len(acknowledged.alert.response_log) == 1

        resolved = await processor.resolve("alert_001", "coach_001", "Jordan", note="PIR contacted, safe")

        assert resolved.alert.status is AlertStatus.RESOLVED
        assert resolved.alert.resolved_at is not None
        assert resolved.alert.resolved_at > resolved.alert.acknowledged_at
        assert resolved.alert.resolved_by == "coach_001"
        assert len(resolved.alert.response_log) == 2
        assert resolved.alert.response_log[-1].note == "PIR contacted, safe"
        assert verify_trail("alert_001", resolved.alert.response_log)

        with pytest.raises(PreconditionFailed) as exc_info:
            await processor.acknowledge("alert_001", "coach_002", "Sam")

        assert exc_info.value.current_status == "resolved"
        stored = await store.get("alert_001")
        assert stored.status is AlertStatus.RESOLVED
        assert len(stored.response_log) == 2


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_acknowledge_single_winner(self, store, processor):
        await store.create(draft())

        results = await asyncio.gather(
            processor.acknowledge("alert_001", "coach_001", "Jordan"),
            processor.acknowledge("alert_001", "coach_002", "Sam"),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, PreconditionFailed)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].current_status == "acknowledged"

        alert = await store.get("alert_001")
        assert len(alert.response_log) == 1
        assert alert.acknowledged_by == successes[0].alert.acknowledged_by

    @pytest.mark.asyncio
    async def test_escalate_and_resolve_race(self, store, processor):
        await store.create(draft())

        results = await asyncio.gather(
            processor.escalate("alert_001", "coach_001", "Jordan", destination="Crisis Line"),
            processor.resolve("alert_001", "coach_002", "Sam"),
            return_exceptions=True,
        )

        assert not any(isinstance(r, Exception) for r in results)
        alert = await store.get("alert_001")
        # Escalate committed first; resolve re-planned against escalated
        assert alert.status is AlertStatus.RESOLVED
        assert [e.action for e in alert.response_log] == [
            ResponseAction.ESCALATED,
            ResponseAction.RESOLVED,
        ]
        assert results[1].attempts == 2
        assert verify_trail(alert.id, alert.response_log)

    @pytest.mark.asyncio
    async def test_concurrent_notes_all_retained(self, store, processor):
        await store.create(draft())

        await asyncio.gather(*(
            processor.add_note("alert_001", f"coach_{i}", f"Coach {i}", f"note {i}")
            for i in range(5)
        ))

        alert = await store.get("alert_001")
        assert sorted(e.note for e in alert.response_log) == [f"note {i}" for i in range(5)]
        assert [e.sequence for e in alert.response_log] == list(range(5))
        assert verify_trail(alert.id, alert.response_log)

    @pytest.mark.asyncio
    async def test_conflict_retries_exhausted(self, publisher):
        store = MagicMock()
        alert = await InMemoryAlertStore(clock=TickingClock()).create(draft())

        async def get(alert_id):
            return alert

        async def apply_transition(transition):
            raise ConflictError("busy", current=alert)

        store.get = get
        store.apply_transition = apply_transition
        processor = ActionProcessor(store, AuditLogger(), publisher, TriageConfig(max_conflict_retries=2))

        with pytest.raises(PersistenceUnavailable):
            await processor.acknowledge("alert_001", "coach_001", "Jordan")

        publisher.publish.assert_not_called()
