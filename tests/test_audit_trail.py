"""
Self-Healing Engine - Audit Trail Tests
=======================================
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from healing_shared.constants import ActionType, AuditAction
from healing_shared.utils.logging import set_correlation_id

from healing_engine.core.audit_trail import AuditTrail

from conftest import ORG


@pytest.fixture
def trail(clock):
    return AuditTrail(clock=clock)


class TestAuditTrail:
    """Tests for recording and querying audit entries."""

    def test_record_stamps_entry(self, trail, clock):
        """Test an entry carries the clock's time and the given fields."""
        entry = trail.record(ORG, AuditAction.PATTERN_DETECTED, "pattern", "p1", {"pattern_type": "stuck_process"})

        assert entry.created_at == clock()
        assert entry.performed_by == "system"
        assert entry.simulated is False
        assert entry.details == {"pattern_type": "stuck_process"}
        assert len(trail) == 1

    def test_entries_are_immutable(self, trail):
        """Test recorded entries cannot be edited."""
        entry = trail.record(ORG, AuditAction.PATTERN_DETECTED, "pattern", "p1")

        with pytest.raises(ValidationError):
            entry.entity_id = "p2"

    def test_correlation_id_captured(self, trail):
        """Test the current correlation ID is written on each entry."""
        set_correlation_id("job-42")
        try:
            entry = trail.record(ORG, AuditAction.SAFETY_PASS, "execution", "e1")
        finally:
            set_correlation_id(None)

        assert entry.correlation_id == "job-42"

    def test_query_filters(self, trail, clock):
        """Test filtering by action, entity and time."""
        trail.record(ORG, AuditAction.PATTERN_DETECTED, "pattern", "p1")
        clock.advance(minutes=10)
        trail.record(ORG, AuditAction.SAFETY_PASS, "execution", "e1")
        trail.record(ORG, AuditAction.ACTION_COMPLETED, "execution", "e1")
        trail.record("org-2", AuditAction.SAFETY_PASS, "execution", "e9")

        assert [e.entity_id for e in trail.query(ORG, action=AuditAction.SAFETY_PASS)] == ["e1"]
        assert len(trail.query(ORG, entity_type="execution")) == 2
        assert len(trail.query(ORG, entity_id="p1")) == 1
        assert len(trail.query(ORG, since=clock() - timedelta(minutes=1))) == 2
        assert len(trail.query(ORG)) == 3

    def test_limit_returns_most_recent(self, trail):
        """Test a limit keeps the newest entries in insertion order."""
        for index in range(5):
            trail.record(ORG, AuditAction.ACTION_EXECUTED, "execution", f"e{index}")

        assert [e.entity_id for e in trail.query(ORG, limit=2)] == ["e3", "e4"]

    def test_count_and_group(self, trail):
        """Test counting by action and grouping by entity."""
        trail.record(ORG, AuditAction.ACTION_TRIGGERED, "execution", "e1")
        trail.record(ORG, AuditAction.ACTION_COMPLETED, "execution", "e1")
        trail.record(ORG, AuditAction.ACTION_TRIGGERED, "execution", "e2")

        assert trail.count_by_action(ORG) == {"action_triggered": 2, "action_completed": 1}
        groups = trail.group_by_entity(ORG, "execution")
        assert {key: len(entries) for key, entries in groups.items()} == {"e1": 2, "e2": 1}

    def test_user_activity_newest_first(self, trail, clock):
        """Test one person's recent entries come back newest first."""
        trail.record(ORG, AuditAction.APPROVAL_GRANTED, "approval", "old", performed_by="bob")
        clock.advance(days=8)
        trail.record(ORG, AuditAction.APPROVAL_GRANTED, "approval", "a1", performed_by="bob")
        trail.record(ORG, AuditAction.APPROVAL_REJECTED, "approval", "a2", performed_by="erin")
        clock.advance(minutes=5)
        trail.record(ORG, AuditAction.ROLLBACK_COMPLETED, "execution", "e1", performed_by="bob")

        activity = trail.user_activity(ORG, "bob", days=7)

        assert [e.entity_id for e in activity] == ["e1", "a1"]
        assert [e.entity_id for e in trail.user_activity(ORG, "bob", days=30, limit=1)] == ["e1"]

    def test_export_csv(self, trail):
        """Test the export has a header row and JSON details."""
        trail.record(ORG, AuditAction.PATTERN_DETECTED, "pattern", "p1", {"occurrences": 3, "severity": "high"})
        trail.record(ORG, AuditAction.SAFETY_BLOCK, "execution", "e1", simulated=True)

        lines = trail.export_csv(ORG).splitlines()

        assert lines[0] == "timestamp,action,entity_type,entity_id,performed_by,simulated,correlation_id,details"
        assert lines[1] == (
            '2026-03-04T10:00:00+00:00,pattern_detected,pattern,p1,system,false,,'
            '"{""occurrences"": 3, ""severity"": ""high""}"'
        )
        assert lines[2] == "2026-03-04T10:00:00+00:00,safety_block,execution,e1,system,true,,{}"

    def test_export_csv_filters(self, trail):
        """Test export filters narrow the rows like query does."""
        trail.record(ORG, AuditAction.PATTERN_DETECTED, "pattern", "p1")
        trail.record(ORG, AuditAction.SAFETY_PASS, "execution", "e1")

        lines = trail.export_csv(ORG, entity_type="execution").splitlines()

        assert len(lines) == 2
        assert ",e1," in lines[1]


class TestAuditCompleteness:
    """Tests that every side effect of a run leaves an entry."""

    @pytest.mark.asyncio
    async def test_each_delivery_has_an_executed_entry(self, engine, make_action, set_policy, email):
        """Test each performed change is preceded by an action_executed entry."""
        set_policy()
        action = make_action(ActionType.NOTIFY, {
            "recipients": [{"type": "team", "id": "support", "channel": "email"}],
            "message_template": "Team update",
        })

        execution = await engine.execute_action(ORG, action.id)

        executed = engine.audit.query(ORG, action=AuditAction.ACTION_EXECUTED)
        assert len(executed) == len(execution.result.changes) == len(email.outbox) == 3
        assert [e.details["change"]["entity_id"] for e in executed] == ["alice", "carol", "dave"]
