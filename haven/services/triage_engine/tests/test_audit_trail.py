"""Tests for the per-alert hash-chained response log."""
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from haven.shared.utils import configure_pii_salt
from haven.shared.models import AlertStatus, ResponseAction
from haven.services.triage_engine.audit_trail import (
    append_entry,
    extends,
    genesis_hash,
    status_at,
    status_from_trail,
    verify_trail,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def build_trail(alert_id="alert_001", actions=None):
    actions = actions or [
        ResponseAction.ACKNOWLEDGED,
        ResponseAction.NOTE_ADDED,
        ResponseAction.RESOLVED,
    ]
    trail = ()
    for i, action in enumerate(actions):
        entry = append_entry(
            alert_id,
            trail,
            action=action,
            actor_id="coach_001",
            actor_name="Jordan",
            timestamp=T0 + timedelta(minutes=i + 1),
            note=f"note {i}",
        )
        trail = trail + (entry,)
    return trail


class TestAppend:
    def test_first_entry_chains_to_alert_genesis(self):
        trail = build_trail()
        assert trail[0].previous_hash == genesis_hash("alert_001")
        assert trail[0].sequence == 0

    def test_entries_chain(self):
        trail = build_trail()
        assert trail[1].previous_hash == trail[0].entry_hash
        assert [e.sequence for e in trail] == [0, 1, 2]

    def test_append_does_not_modify_trail(self):
        trail = build_trail()
        append_entry("alert_001", trail, ResponseAction.CLOSING_NOTE, "c", "C", T0)
        assert len(trail) == 3

    def test_entry_hash_covers_entry_fields(self):
        entry = append_entry("alert_001", (), ResponseAction.ESCALATED, "c", "C", T0, note="Crisis Line")

        assert entry.entry_hash == entry.compute_hash()
        assert (entry.action, entry.actor_id, entry.timestamp, entry.note) == (
            ResponseAction.ESCALATED, "c", T0, "Crisis Line",
        )


class TestVerify:
    def test_intact_trail(self):
        assert verify_trail("alert_001", build_trail()) is True

    def test_empty_trail(self):
        assert verify_trail("alert_001", ()) is True

    def test_edited_note_detected(self):
        trail = list(build_trail())
        trail[1] = replace(trail[1], note="rewritten")
        assert verify_trail("alert_001", trail) is False

    def test_dropped_entry_detected(self):
        trail = build_trail()
        assert verify_trail("alert_001", (trail[0], trail[2])) is False

    def test_reordered_entries_detected(self):
        trail = build_trail()
        assert verify_trail("alert_001", (trail[1], trail[0], trail[2])) is False

    def test_trail_moved_to_other_alert_detected(self):
        assert verify_trail("alert_002", build_trail("alert_001")) is False


class TestExtends:
    def test_longer_trail_extends_prefix(self):
        trail = build_trail()
        assert extends(trail[:2], trail) is True
        assert extends(trail, trail) is True

    def test_shorter_trail_does_not_extend(self):
        trail = build_trail()
        assert extends(trail, trail[:2]) is False

    def test_diverging_trail_does_not_extend(self):
        trail = build_trail()
        other = build_trail(actions=[ResponseAction.ACKNOWLEDGED, ResponseAction.ESCALATED])
        assert extends(trail[:2], other) is False


class TestDerivedStatus:
    def test_status_from_last_lifecycle_entry(self):
        trail = build_trail(actions=[
            ResponseAction.ACKNOWLEDGED,
            ResponseAction.NOTE_ADDED,
            ResponseAction.CONTACTED_PERSON,
        ])
        assert status_from_trail(trail) is AlertStatus.ACKNOWLEDGED

    def test_empty_trail_is_unread(self):
        assert status_from_trail(()) is AlertStatus.UNREAD

    def test_status_at_replays_history(self):
        trail = build_trail()
        assert status_at(trail, T0) is AlertStatus.UNREAD
        assert status_at(trail, T0 + timedelta(minutes=1)) is AlertStatus.ACKNOWLEDGED
        assert status_at(trail, T0 + timedelta(minutes=2, seconds=30)) is AlertStatus.ACKNOWLEDGED
        assert status_at(trail, T0 + timedelta(hours=1)) is AlertStatus.RESOLVED
