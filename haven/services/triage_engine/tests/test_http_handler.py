"""Tests for the Triage Engine HTTP endpoints."""
import pytest
from datetime import timedelta

from haven.shared.utils import configure_pii_salt, utc_now
from haven.services.audit_service import AuditAction
from haven.services.triage_engine import http_handler
from haven.services.triage_engine.config import TriageConfig
from haven.services.triage_engine.export import EXPORT_COLUMNS, parse_export
from haven.services.triage_engine.http_handler import app, build_components


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class TickingClock:
    def __init__(self):
        self.now = utc_now() - timedelta(minutes=5)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def components(monkeypatch):
    fresh = build_components(TriageConfig())
    fresh.store._clock = TickingClock()
    monkeypatch.setattr(http_handler, "components", fresh)
    return fresh


@pytest.fixture
def client(components):
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def panic_submission(**overrides):
    data = {
        "tenant_id": "full-service",
        "person_id": "person_001",
        "person_name": "Alex Doe",
        "source": "panic_button",
        "tier": 1,
        "payload": {"triggered_from": "home"},
        "assigned_responder_id": "coach_001",
    }
    data.update(overrides)
    return data


def ai_submission(**overrides):
    data = {
        "tenant_id": "full-service",
        "person_id": "person_002",
        "person_name": "Sam Roe",
        "source": "ai_detection",
        "tier": 2,
        "trigger_terms": ["hopeless", "alone"],
        "payload": {"feature": "anchor", "llm_bypassed": True},
    }
    data.update(overrides)
    return data


def create(client, data) -> dict:
    response = client.post("/alerts", json=data)
    assert response.status_code == 201
    return response.get_json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy", "service": "triage-engine"}

    def test_ready_without_database(self, client):
        assert client.get("/ready").status_code == 200


class TestCreateAlert:
    def test_create_panic_alert(self, client):
        body = create(client, panic_submission())

        assert body["status"] == "unread"
        assert body["tier"] == 1
        assert body["source"] == "panic_button"
        assert body["created_at"].endswith("Z")
        assert body["response_log"] == []

    def test_missing_body(self, client):
        response = client.post("/alerts", json={})
        assert response.status_code == 400

    def test_invalid_tier(self, client):
        response = client.post("/alerts", json=panic_submission(tier=7))

        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_failed"

    def test_payload_must_match_source(self, client):
        response = client.post("/alerts", json=ai_submission(payload={"triggered_from": "home"}))
        assert response.status_code == 400

    def test_creation_is_audited(self, client, components):
        body = create(client, panic_submission())

        entries = components.audit_logger.query(action=AuditAction.ALERT_CREATED)
        assert [e.entity_id for e in entries] == [body["id"]]


class TestListAlerts:
    def test_list_with_stats(self, client):
        create(client, panic_submission())
        create(client, ai_submission())

        response = client.get("/alerts?tenant_id=full-service")

        assert response.status_code == 200
        body = response.get_json()
        assert body["count"] == 2
        assert body["total_in_scope"] == 2
        assert [a["source"] for a in body["alerts"]] == ["ai_detection", "panic_button"]
        assert body["stats"]["critical_active"] == 1
        assert body["stats"]["high_active"] == 1
        assert body["stats"]["trends"]["unread"] == 2

    def test_filtered_view_keeps_whole_population_stats(self, client):
        create(client, panic_submission())
        create(client, ai_submission())

        body = client.get("/alerts?source=ai_detection").get_json()

        assert body["count"] == 1
        assert body["alerts"][0]["source"] == "ai_detection"
        assert body["stats"]["total"] == 2

    def test_responder_scope(self, client):
        create(client, panic_submission())
        create(client, ai_submission())

        body = client.get("/alerts?responder_id=coach_001").get_json()

        assert body["total_in_scope"] == 1
        assert body["alerts"][0]["assigned_responder_id"] == "coach_001"

    def test_invalid_filter(self, client):
        response = client.get("/alerts?tier=9")
        assert response.status_code == 400


class TestGetAlert:
    def test_get_alert(self, client):
        created = create(client, panic_submission())

        response = client.get(f"/alerts/{created['id']}")

        assert response.status_code == 200
        assert response.get_json()["trail_valid"] is True

    def test_get_missing_alert(self, client):
        assert client.get("/alerts/nope").status_code == 404


class TestActions:
    def test_acknowledge(self, client):
        created = create(client, panic_submission())

        response = client.post(
            f"/alerts/{created['id']}/actions",
            json={"action": "acknowledge", "actor_id": "coach_001", "actor_name": "Jordan"},
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["alert"]["status"] == "acknowledged"
        assert body["alert"]["acknowledged_by"] == "coach_001"
        assert body["entry"]["action"] == "acknowledged"
        assert body["attempts"] == 1

    def test_second_acknowledge_conflicts(self, client):
        created = create(client, panic_submission())
        url = f"/alerts/{created['id']}/actions"
        client.post(url, json={"action": "acknowledge", "actor_id": "coach_001", "actor_name": "Jordan"})

        response = client.post(url, json={"action": "acknowledge", "actor_id": "coach_002", "actor_name": "Riley"})

        assert response.status_code == 409
        body = response.get_json()
        assert body["error"] == "precondition_failed"
        assert body["current_status"] == "acknowledged"

    def test_unknown_action(self, client):
        created = create(client, panic_submission())

        response = client.post(
            f"/alerts/{created['id']}/actions",
            json={"action": "delete", "actor_id": "coach_001"},
        )

        assert response.status_code == 400

    def test_note_requires_text(self, client):
        created = create(client, panic_submission())

        response = client.post(
            f"/alerts/{created['id']}/actions",
            json={"action": "add_note", "actor_id": "coach_001"},
        )

        assert response.status_code == 400

    def test_unknown_alert(self, client):
        response = client.post(
            "/alerts/nope/actions",
            json={"action": "acknowledge", "actor_id": "coach_001"},
        )
        assert response.status_code == 404

    def test_missing_body(self, client):
        created = create(client, panic_submission())
        assert client.post(f"/alerts/{created['id']}/actions", json={}).status_code == 400


class TestDeliveries:
    def test_record_delivery_is_write_once(self, client):
        created = create(client, panic_submission())
        url = f"/alerts/{created['id']}/deliveries/push"

        first = client.post(url, json={"sent_at": "2024-05-01T12:00:00Z"})
        second = client.post(url, json={"sent_at": "2024-05-02T12:00:00Z"})

        assert first.status_code == 200
        assert first.get_json()["changed"] is True
        assert second.get_json()["changed"] is False
        push = second.get_json()["deliveries"]["push"]
        assert push == {"sent": True, "sent_at": "2024-05-01T12:00:00.000Z"}

    def test_unknown_channel(self, client):
        created = create(client, panic_submission())
        assert client.post(f"/alerts/{created['id']}/deliveries/pigeon").status_code == 400

    def test_invalid_sent_at(self, client):
        created = create(client, panic_submission())

        response = client.post(
            f"/alerts/{created['id']}/deliveries/sms",
            json={"sent_at": "yesterday"},
        )

        assert response.status_code == 400

    def test_unknown_alert(self, client):
        assert client.post("/alerts/nope/deliveries/email").status_code == 404


class TestExport:
    def test_export_csv(self, client, components):
        create(client, panic_submission())
        create(client, ai_submission(person_name='Roe, "Sam"'))

        response = client.get("/alerts/export?actor_id=admin_001")

        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert 'filename="crisis-alerts-' in response.headers["Content-Disposition"]
        text = response.get_data(as_text=True)
        assert text.startswith(",".join(EXPORT_COLUMNS))
        rows = parse_export(text)
        assert [r["Person Name"] for r in rows] == ['Roe, "Sam"', "Alex Doe"]
        assert rows[0]["Trigger Terms"] == "hopeless; alone"

        exports = components.audit_logger.query(action=AuditAction.EXPORT_DATA)
        assert exports[0].actor_id == "admin_001"
        assert exports[0].details["row_count"] == 2

    def test_export_respects_filters(self, client):
        create(client, panic_submission())
        create(client, ai_submission())

        response = client.get("/alerts/export?tier=1")

        rows = parse_export(response.get_data(as_text=True))
        assert [r["Source"] for r in rows] == ["panic_button"]


class TestAuditVerify:
    def test_chain_valid_after_actions(self, client):
        created = create(client, panic_submission())
        client.post(
            f"/alerts/{created['id']}/actions",
            json={"action": "acknowledge", "actor_id": "coach_001", "actor_name": "Jordan"},
        )

        response = client.get("/audit/verify")

        assert response.status_code == 200
        assert response.get_json() == {"valid": True}

    def test_alert_audit_history(self, client):
        created = create(client, panic_submission())
        client.post(
            f"/alerts/{created['id']}/actions",
            json={"action": "acknowledge", "actor_id": "coach_001", "actor_name": "Jordan"},
        )

        response = client.get(f"/alerts/{created['id']}/audit")

        assert response.status_code == 200
        body = response.get_json()
        assert [e["action"] for e in body["entries"]] == ["alert_acknowledged", "alert_created"]
        assert body["entries"][0]["timestamp"].endswith("Z")

    def test_alert_audit_invalid_limit(self, client):
        assert client.get("/alerts/a1/audit?limit=lots").status_code == 400
