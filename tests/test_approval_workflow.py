"""
Self-Healing Engine - Approval Workflow Tests
=============================================
"""

import pytest

from healing_shared.constants import (
    ActionType,
    ApprovalPriority,
    ApprovalStatus,
    AuditAction,
    ExecutionStatus,
    Severity,
)
from healing_shared.schemas.events import DetectedPattern, EntityRef

from healing_engine.core.approval_workflow import determine_priority
from healing_engine.core.errors import DeliveryFailure, InvalidTransition, NotFoundError

from conftest import ORG

NOTIFY_ALICE = {
    "recipients": [{"type": "person", "id": "alice"}],
    "message_template": "Heads up",
}


def pattern_with(severity: Severity, entities: int = 1) -> DetectedPattern:
    return DetectedPattern(
        organization_id=ORG,
        type="stuck_process",
        severity=severity,
        confidence=0.9,
        occurrences=3,
        affected_entities=[EntityRef(id=f"p{i}", type="person") for i in range(entities)],
    )


@pytest.fixture
def gated(make_action, set_policy):
    """An approval-gated notify action with no cooldown."""
    set_policy()
    return make_action(ActionType.NOTIFY, NOTIFY_ALICE, requires_approval=True, name="Ping Alice")


class TestDeterminePriority:
    """Tests for request priority."""

    def test_no_pattern_is_low(self):
        """Test manual executions get low priority."""
        assert determine_priority(None) == ApprovalPriority.LOW

    def test_severity_mapping(self):
        """Test priority follows the pattern's severity."""
        assert determine_priority(pattern_with(Severity.CRITICAL)) == ApprovalPriority.URGENT
        assert determine_priority(pattern_with(Severity.HIGH)) == ApprovalPriority.HIGH
        assert determine_priority(pattern_with(Severity.MEDIUM)) == ApprovalPriority.NORMAL
        assert determine_priority(pattern_with(Severity.LOW)) == ApprovalPriority.LOW

    def test_wide_blast_radius_is_high(self):
        """Test more than ten affected entities raises priority to high."""
        assert determine_priority(pattern_with(Severity.LOW, entities=11)) == ApprovalPriority.HIGH


class TestCreateRequest:
    """Tests for opening approval requests."""

    @pytest.mark.asyncio
    async def test_request_fields(self, engine, gated, clock):
        """Test a new request is pending, expires after a day, and starts at level zero."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        assert request.status == ApprovalStatus.PENDING
        assert request.action_id == gated.id
        assert request.requested_at == clock()
        assert (request.expires_at - request.requested_at).total_seconds() == 24 * 3600
        assert request.current_escalation_level == 0
        assert request.current_approver.target_id == "bob"

        entry = engine.audit.query(ORG, action=AuditAction.APPROVAL_REQUESTED)[0]
        assert entry.entity_id == request.id
        assert entry.details["priority"] == "low"

    @pytest.mark.asyncio
    async def test_configured_approvers(self, engine, make_action, set_policy, in_app):
        """Test approvers named on the action replace the role-based chain."""
        set_policy()
        action = make_action(
            ActionType.NOTIFY,
            NOTIFY_ALICE,
            requires_approval=True,
            trigger_config={"approvers": ["carol", {"target_type": "role", "target_id": "supervisor"}]},
        )

        execution = await engine.execute_action(ORG, action.id)
        request = engine.approvals.for_execution(execution.id)

        assert [(a.target_type, a.target_id) for a in request.escalation_chain] == [
            ("person", "carol"),
            ("role", "supervisor"),
        ]
        assert [m.recipient_id for m in in_app.outbox] == ["carol"]

    @pytest.mark.asyncio
    async def test_notification_failure_is_not_fatal(self, engine, gated, in_app):
        """Test a failing approver notification still leaves the request open."""
        in_app.fail_with = DeliveryFailure("push gateway down")

        execution = await engine.execute_action(ORG, gated.id)

        assert execution.status == ExecutionStatus.AWAITING_APPROVAL
        assert engine.approvals.for_execution(execution.id).status == ApprovalStatus.PENDING


class TestDecisions:
    """Tests for approve and reject."""

    def test_unknown_request(self, engine):
        """Test deciding an unknown request raises NotFoundError."""
        with pytest.raises(NotFoundError):
            engine.workflow.approve("missing", decided_by="bob")

    @pytest.mark.asyncio
    async def test_reject_is_audited(self, engine, gated):
        """Test a rejection records who decided and why."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        engine.workflow.reject(request.id, decided_by="bob", reason="duplicate")

        assert request.status == ApprovalStatus.REJECTED
        assert request.decision_reason == "duplicate"
        entry = engine.audit.query(ORG, action=AuditAction.APPROVAL_REJECTED)[0]
        assert entry.performed_by == "bob"
        assert entry.details["reason"] == "duplicate"


class TestMaintenance:
    """Tests for the expiry and escalation sweep."""

    @pytest.mark.asyncio
    async def test_escalates_idle_request(self, engine, gated, clock, in_app):
        """Test a request idle past the escalation window moves to the next approver."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        clock.advance(hours=5)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts == {"expired": 0, "escalated": 1, "exhausted": 0, "auto_approved": 0}
        assert request.status == ApprovalStatus.ESCALATED
        assert request.current_escalation_level == 1
        assert request.current_approver.target_id == "erin"
        assert (in_app.outbox[-1].recipient_id, in_app.outbox[-1].message.subject) == (
            "erin", "Escalated approval required"
        )

    @pytest.mark.asyncio
    async def test_recent_request_untouched(self, engine, gated, clock):
        """Test nothing happens before the escalation window passes."""
        await engine.execute_action(ORG, gated.id)

        clock.advance(hours=3)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts == {"expired": 0, "escalated": 0, "exhausted": 0, "auto_approved": 0}

    @pytest.mark.asyncio
    async def test_exhausted_chain_blocks(self, engine, gated, clock):
        """Test a request past its last approver is expired and its execution blocked."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        clock.advance(hours=5)
        await engine.run_approval_maintenance(ORG)
        clock.advance(hours=5)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts["exhausted"] == 1
        assert request.status == ApprovalStatus.EXPIRED
        assert execution.status == ExecutionStatus.BLOCKED
        assert execution.blocked_reason.startswith("No approver available")
        entry = engine.audit.query(ORG, action=AuditAction.APPROVAL_EXPIRED)[0]
        assert entry.details["exhausted"] is True

    @pytest.mark.asyncio
    async def test_expired_request(self, engine, gated, clock):
        """Test a request past expires_at is expired before any escalation."""
        execution = await engine.execute_action(ORG, gated.id)

        clock.advance(hours=25)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts == {"expired": 1, "escalated": 0, "exhausted": 0, "auto_approved": 0}
        assert execution.status == ExecutionStatus.BLOCKED
        assert execution.blocked_reason == "Approval request expired"

    @pytest.mark.asyncio
    async def test_decided_requests_ignored(self, engine, gated, clock):
        """Test approved requests are never swept."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)
        await engine.approve(request.id, decided_by="bob")

        clock.advance(hours=30)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts == {"expired": 0, "escalated": 0, "exhausted": 0, "auto_approved": 0}
        assert request.status == ApprovalStatus.APPROVED

    @pytest.mark.asyncio
    async def test_expiry_notifies_current_approver(self, engine, gated, clock, in_app):
        """Test the approver holding an expired request is told it lapsed."""
        await engine.execute_action(ORG, gated.id)

        clock.advance(hours=25)
        await engine.run_approval_maintenance(ORG)

        assert (in_app.outbox[-1].recipient_id, in_app.outbox[-1].message.subject) == (
            "bob", "Approval request expired"
        )

    @pytest.mark.asyncio
    async def test_expiry_notifies_assignee(self, engine, gated, clock, in_app):
        """Test an assigned request reports its expiry to the assignee."""
        execution = await engine.execute_action(ORG, gated.id)
        await engine.assign_approval(engine.approvals.for_execution(execution.id).id, "carol")

        clock.advance(hours=25)
        await engine.run_approval_maintenance(ORG)

        assert in_app.outbox[-1].recipient_id == "carol"
        assert in_app.outbox[-1].message.subject == "Approval request expired"

    @pytest.mark.asyncio
    async def test_expiry_notification_disabled(self, engine, gated, clock, in_app):
        """Test no expiry message is sent when the policy turns it off."""
        engine.workflow.policy.notify_on_expiration = False
        await engine.execute_action(ORG, gated.id)
        sent = len(in_app.outbox)

        clock.advance(hours=25)
        await engine.run_approval_maintenance(ORG)

        assert len(in_app.outbox) == sent

    @pytest.mark.asyncio
    async def test_low_priority_auto_approved(self, engine, gated, clock):
        """Test a low-priority request waiting past the configured hours is approved by the system."""
        engine.workflow.policy.auto_approve_low_priority_hours = 2
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        clock.advance(hours=2)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts["auto_approved"] == 1
        assert request.status == ApprovalStatus.APPROVED
        assert request.decided_by == "system"
        assert request.decision_reason == "Auto-approved after 2h at low priority"
        assert execution.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_higher_priority_never_auto_approved(self, engine, gated, make_pattern, clock):
        """Test only low-priority requests are approved without a person."""
        engine.workflow.policy.auto_approve_low_priority_hours = 2
        execution = await engine.execute_action(
            ORG, gated.id, pattern_id=make_pattern(severity=Severity.HIGH).id
        )

        clock.advance(hours=3)
        counts = await engine.run_approval_maintenance(ORG)

        assert counts["auto_approved"] == 0
        assert engine.approvals.for_execution(execution.id).status == ApprovalStatus.PENDING


class TestAssignment:
    """Tests for handing a request to a specific reviewer."""

    @pytest.mark.asyncio
    async def test_assign_notifies_and_audits(self, engine, gated, in_app):
        """Test the assignee is told about the request and the hand-off is audited."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        await engine.assign_approval(request.id, "carol", assigned_by="bob")

        assert request.assigned_to == "carol"
        assert (in_app.outbox[-1].recipient_id, in_app.outbox[-1].message.subject) == (
            "carol", "Approval request assigned"
        )
        entry = engine.audit.query(ORG, action=AuditAction.APPROVAL_ASSIGNED)[0]
        assert entry.performed_by == "bob"
        assert entry.details == {"assigned_to": "carol", "previous_assignee": None}

    @pytest.mark.asyncio
    async def test_unknown_assignee(self, engine, gated):
        """Test assigning to someone outside the directory fails."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)

        with pytest.raises(NotFoundError, match="Person zed not found"):
            await engine.assign_approval(request.id, "zed")
        assert request.assigned_to is None

    @pytest.mark.asyncio
    async def test_decided_request_cannot_be_assigned(self, engine, gated):
        """Test only open requests can change hands."""
        execution = await engine.execute_action(ORG, gated.id)
        request = engine.approvals.for_execution(execution.id)
        await engine.approve(request.id, decided_by="bob")

        with pytest.raises(InvalidTransition):
            await engine.assign_approval(request.id, "carol")


class TestReadSurface:
    """Tests for pending lists and statistics."""

    @pytest.mark.asyncio
    async def test_list_pending_most_urgent_first(self, engine, gated, make_pattern, clock):
        """Test pending requests are ordered by priority, then age."""
        low = await engine.execute_action(ORG, gated.id)
        clock.advance(minutes=1)
        urgent = await engine.execute_action(ORG, gated.id, pattern_id=make_pattern(severity=Severity.CRITICAL).id)
        clock.advance(minutes=1)
        high = await engine.execute_action(ORG, gated.id, pattern_id=make_pattern(severity=Severity.HIGH).id)
        clock.advance(minutes=1)
        later_low = await engine.execute_action(ORG, gated.id)

        pending = engine.workflow.list_pending(ORG)

        assert [r.execution_id for r in pending] == [urgent.id, high.id, low.id, later_low.id]

    @pytest.mark.asyncio
    async def test_statistics(self, engine, gated, clock):
        """Test statistics count statuses and average decision time."""
        first = await engine.execute_action(ORG, gated.id)
        second = await engine.execute_action(ORG, gated.id)

        clock.advance(hours=2)
        await engine.approve(engine.approvals.for_execution(first.id).id, decided_by="bob")
        stats = engine.workflow.statistics(ORG)

        assert stats["total_requests"] == 2
        assert stats["by_status"]["approved"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["average_decision_hours"] == 2.0
        assert engine.approvals.for_execution(second.id).status == ApprovalStatus.PENDING
