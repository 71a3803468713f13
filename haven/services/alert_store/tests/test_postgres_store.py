"""Tests for the PostgreSQL alert store with a mocked driver."""
import asyncio
import json
import pytest
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import psycopg2

from haven.shared.database import ConflictError, ConnectionManager, DatabaseConfig, NotFoundError
from haven.shared.errors import PersistenceUnavailable
from haven.shared.utils import configure_pii_salt
from haven.shared.models import (
    AlertSource,
    AlertStatus,
    AlertTier,
    CrisisAlert,
    DeliveryChannel,
    PanicButtonPayload,
    PanicTriggerLocation,
)
from haven.services.alert_store import ChangeKind, PostgresAlertStore
from haven.services.triage_engine.state_machine import (
    ActionRequest,
    AlertAction,
    plan_transition,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_alert(alert_id="a1", status=AlertStatus.UNREAD) -> CrisisAlert:
    return CrisisAlert(
        id=alert_id,
        tenant_id="full-service",
        person_id="person_001",
        person_name="Alex Doe",
        source=AlertSource.PANIC_BUTTON,
        tier=AlertTier.CRITICAL,
        payload=PanicButtonPayload(triggered_from=PanicTriggerLocation.HOME),
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )


def row_for(store: PostgresAlertStore, alert: CrisisAlert) -> tuple:
    params = store._entity_to_params(alert)
    return tuple(params[column] for column in store.columns)


@pytest.fixture
def cursor():
    cur = MagicMock()
    cur.rowcount = 1
    return cur


@pytest.fixture
def store(cursor):
    manager = ConnectionManager(DatabaseConfig(host="localhost"))
    store = PostgresAlertStore(manager, clock=lambda: NOW + timedelta(minutes=1))

    @contextmanager
    def transaction():
        yield cursor

    store.transaction = transaction
    store._ensure_listener = lambda: None
    return store


class TestRowMapping:
    def test_response_log_kept_out_of_document_column(self, store):
        params = store._entity_to_params(make_alert())

        assert "response_log" not in json.loads(params["document"])
        assert json.loads(params["response_log"]) == []

    def test_row_round_trip(self, store):
        alert = make_alert()
        assert store._row_to_entity(row_for(store, alert)) == alert

    def test_jsonb_values_already_decoded(self, store):
        alert = make_alert()
        row = list(row_for(store, alert))
        row[5] = json.loads(row[5])
        row[6] = json.loads(row[6])

        assert store._row_to_entity(tuple(row)) == alert


class TestOperations:
    @pytest.mark.asyncio
    async def test_create_inserts(self, store, cursor):
        stored = await store.create(make_alert())

        sql, params = cursor.execute.call_args[0]
        assert sql.startswith("INSERT INTO crisis_alerts")
        assert stored.created_at == NOW + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_get_missing(self, store, cursor):
        cursor.fetchone.return_value = None

        with pytest.raises(NotFoundError):
            await store.get("missing")

    @pytest.mark.asyncio
    async def test_driver_error_becomes_persistence_unavailable(self, store, cursor):
        cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

        with pytest.raises(PersistenceUnavailable):
            await store.get("a1")

    @pytest.mark.asyncio
    async def test_list_skips_malformed_rows(self, store, cursor):
        good = row_for(store, make_alert("a1"))
        bad = list(row_for(store, make_alert("a2")))
        bad[5] = json.dumps({"id": "a2", "tier": "urgent"})
        cursor.fetchall.return_value = [good, tuple(bad)]

        alerts = await store.list_alerts("full-service")

        assert [a.id for a in alerts] == ["a1"]
        sql, params = cursor.execute.call_args[0]
        assert "ORDER BY created_at DESC, id DESC LIMIT %s" in sql
        assert params == ["full-service", 200]

    @pytest.mark.asyncio
    async def test_transition_appends_with_jsonb_concat(self, store, cursor):
        alert = make_alert()
        cursor.fetchone.return_value = row_for(store, alert)
        transition = plan_transition(
            alert, ActionRequest("a1", AlertAction.ACKNOWLEDGE, "coach_001", "Jordan")
        )

        updated, entry = await store.apply_transition(transition)

        sql, params = cursor.execute.call_args[0]
        assert "response_log = response_log || %s::jsonb" in sql
        assert "WHERE id = %s AND status = %s" in sql
        assert json.loads(params[2]) == [entry.to_dict()]
        assert params[-1] == "unread"
        assert updated.status is AlertStatus.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_transition_conflict(self, store, cursor):
        persisted = make_alert(status=AlertStatus.RESOLVED)
        cursor.fetchone.return_value = row_for(store, persisted)
        transition = plan_transition(
            make_alert(), ActionRequest("a1", AlertAction.ACKNOWLEDGE, "coach_001", "Jordan")
        )

        with pytest.raises(ConflictError) as exc_info:
            await store.apply_transition(transition)

        assert exc_info.value.current.status is AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_record_delivery_already_sent(self, store, cursor):
        alert = make_alert()
        sent = CrisisAlert.from_document({
            **alert.to_document(),
            "deliveries": {"sms": {"sent": True, "sent_at": "2024-05-01T12:00:30.000Z"}},
        })
        cursor.fetchone.return_value = row_for(store, sent)

        result, changed = await store.record_delivery("a1", DeliveryChannel.SMS)

        assert changed is False
        assert result.deliveries.sms.sent is True


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_subscribe_replays_events_after_resync(self, store, cursor):
        cursor.fetchall.return_value = []
        alert = make_alert()

        real_query = store._query_scope

        def query_then_notify(tenant_id, scope):
            documents = real_query(tenant_id, scope)
            # A write lands while the initial population is loading
            store._broadcast("document", alert.to_document())
            return documents

        store._query_scope = query_then_notify
        feed = await store.subscribe("full-service")

        first = await asyncio.wait_for(feed.__anext__(), timeout=1)
        second = await asyncio.wait_for(feed.__anext__(), timeout=1)

        assert first.kind is ChangeKind.RESYNC
        assert second.kind is ChangeKind.ADDED
        assert second.alert_id == "a1"
        feed.close()

    @pytest.mark.asyncio
    async def test_transport_failure_marks_feeds_stale_then_resyncs(self, store, cursor):
        cursor.fetchall.return_value = []
        feed = await store.subscribe("full-service")
        await asyncio.wait_for(feed.__anext__(), timeout=1)

        store._mark_all_stale("connection lost")
        stale = await asyncio.wait_for(feed.__anext__(), timeout=1)

        cursor.fetchall.return_value = [row_for(store, make_alert())]
        store._resync_all()
        resync = await asyncio.wait_for(feed.__anext__(), timeout=1)

        assert stale.kind is ChangeKind.STALE
        assert "connection lost" in str(stale.error)
        assert resync.kind is ChangeKind.RESYNC
        assert [doc["id"] for doc in resync.documents] == ["a1"]
        feed.close()

    @pytest.mark.asyncio
    async def test_dispatch_delete(self, store, cursor):
        cursor.fetchall.return_value = [row_for(store, make_alert())]
        feed = await store.subscribe("full-service")
        await asyncio.wait_for(feed.__anext__(), timeout=1)

        store._dispatch(json.dumps({"op": "DELETE", "id": "a1"}))
        event = await asyncio.wait_for(feed.__anext__(), timeout=1)

        assert event.kind is ChangeKind.REMOVED
        feed.close()

    @pytest.mark.asyncio
    async def test_dispatch_update_loads_row(self, store, cursor):
        cursor.fetchall.return_value = [row_for(store, make_alert())]
        feed = await store.subscribe("full-service")
        await asyncio.wait_for(feed.__anext__(), timeout=1)

        cursor.fetchone.return_value = row_for(store, make_alert(status=AlertStatus.ACKNOWLEDGED))
        store._dispatch(json.dumps({"op": "UPDATE", "id": "a1"}))
        event = await asyncio.wait_for(feed.__anext__(), timeout=1)

        assert event.kind is ChangeKind.MODIFIED
        assert event.document["status"] == "acknowledged"
        feed.close()

    @pytest.mark.asyncio
    async def test_malformed_notification_does_not_stop_feed(self, store, cursor):
        cursor.fetchall.return_value = [row_for(store, make_alert())]
        feed = await store.subscribe("full-service")
        await asyncio.wait_for(feed.__anext__(), timeout=1)

        conn = MagicMock()
        conn.notifies = [
            MagicMock(payload="not json"),
            MagicMock(payload=json.dumps({"op": "UPDATE"})),
            MagicMock(payload=json.dumps({"op": "DELETE", "id": "a1"})),
        ]
        store._drain(conn)
        event = await asyncio.wait_for(feed.__anext__(), timeout=1)

        assert conn.notifies == []
        assert event.kind is ChangeKind.REMOVED
        assert event.alert_id == "a1"
        feed.close()

    def test_database_error_while_draining_propagates(self, store):
        conn = MagicMock()
        conn.notifies = [MagicMock(payload=json.dumps({"op": "UPDATE", "id": "a1"}))]

        with patch.object(store, "_dispatch", side_effect=psycopg2.OperationalError("gone")):
            with pytest.raises(psycopg2.OperationalError):
                store._drain(conn)

    @pytest.mark.asyncio
    async def test_close_stops_listener(self, store):
        listener = MagicMock()
        store._listener = listener

        await store.close()

        assert store._stop.is_set()
        listener.join.assert_called_once()
