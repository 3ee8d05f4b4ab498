"""
Self-Healing Engine - Approval Workflow
=======================================

Human sign-off for executions the safety gate defers.

A request is opened when an execution enters ``awaiting_approval`` and
notifies the first approver in its escalation chain. An open request can
be assigned to a specific reviewer, who is notified directly. The
maintenance sweep then:

- expires requests past ``expires_at`` (execution -> blocked) and tells
  the assignee, or the current approver, that the request lapsed
- escalates requests idle at their current level for too long
- gives up when the chain is exhausted (treated as expired)

Low-priority requests can also be approved automatically once they have
waited ``auto_approve_low_priority_hours``; the engine picks those up
through ``due_for_auto_approval`` so they resume under its admission lock.

Approving a request only records the decision; resuming the execution
is the engine's job because it needs the organization's admission lock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from healing_shared.constants import (
    OPEN_APPROVAL_STATUSES,
    PRIORITY_RANK,
    ApprovalPriority,
    ApprovalStatus,
    AuditAction,
    Channel,
    Defaults,
    ExecutionStatus,
    Severity,
)
from healing_shared.schemas.actions import (
    ActionExecution,
    ApprovalRequest,
    ApproverRef,
    AutomatedAction,
)
from healing_shared.schemas.events import DetectedPattern
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.adapters import DeliveryMessage, DeliveryRouter, DirectoryAdapter
from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.errors import (
    ApprovalExhausted,
    ApprovalExpired,
    DeliveryFailure,
    InvalidTransition,
    NotFoundError,
)
from healing_engine.core.stores import ApprovalStore, ExecutionStore

logger = get_logger(__name__)


@dataclass
class ApprovalPolicy:
    """Timing and routing for approval requests."""
    expiration_hours: float = Defaults.APPROVAL_EXPIRATION_HOURS
    escalate_after_hours: float = Defaults.APPROVAL_ESCALATE_AFTER_HOURS
    approver_roles: list[str] = field(default_factory=lambda: ["admin"])
    channel: Channel = Channel.IN_APP
    notify_on_expiration: bool = True
    # 0 disables auto-approval
    auto_approve_low_priority_hours: float = Defaults.APPROVAL_AUTO_APPROVE_LOW_PRIORITY_HOURS


def determine_priority(pattern: Optional[DetectedPattern]) -> ApprovalPriority:
    """Priority from the triggering pattern's severity and blast radius."""
    if pattern is None:
        return ApprovalPriority.LOW
    if pattern.severity == Severity.CRITICAL:
        return ApprovalPriority.URGENT
    if pattern.severity == Severity.HIGH or len(pattern.affected_entities) > 10:
        return ApprovalPriority.HIGH
    if pattern.severity == Severity.MEDIUM:
        return ApprovalPriority.NORMAL
    return ApprovalPriority.LOW


class ApprovalWorkflow:
    """Creates, decides and sweeps approval requests."""

    def __init__(
        self,
        approvals: ApprovalStore,
        executions: ExecutionStore,
        directory: DirectoryAdapter,
        delivery: DeliveryRouter,
        audit: AuditTrail,
        policy: Optional[ApprovalPolicy] = None,
        clock: Clock = utc_now
    ):
        self.approvals = approvals
        self.executions = executions
        self.directory = directory
        self.delivery = delivery
        self.audit = audit
        self.policy = policy or ApprovalPolicy()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_request(
        self,
        execution: ActionExecution,
        action: AutomatedAction,
        pattern: Optional[DetectedPattern] = None
    ) -> ApprovalRequest:
        """
        Open a request for an execution awaiting approval.

        The chain comes from ``trigger_config["approvers"]`` when the action
        names approvers, otherwise from the people holding the configured
        approver roles.
        """
        now = self._clock()
        request = ApprovalRequest(
            execution_id=execution.id,
            organization_id=execution.organization_id,
            action_id=action.id,
            priority=determine_priority(pattern),
            requested_at=now,
            expires_at=now + timedelta(hours=self.policy.expiration_hours),
            escalation_chain=await self._build_chain(action),
            level_started_at=now,
        )
        self.approvals.add(request)

        self.audit.approval_event(
            AuditAction.APPROVAL_REQUESTED,
            request,
            details={
                "action_id": action.id,
                "priority": request.priority.value,
                "approvers": [a.model_dump() for a in request.escalation_chain],
            },
        )
        logger.info(
            f"Approval requested for execution {execution.id}",
            extra={
                "execution_id": execution.id,
                "action_id": action.id,
                "priority": request.priority.value,
            }
        )

        await self._notify(request, f"Approval required: {action.name or action.id}")
        return request

    async def _build_chain(self, action: AutomatedAction) -> list[ApproverRef]:
        configured = action.trigger_config.get("approvers") or []
        if configured:
            return [
                ApproverRef(target_id=item) if isinstance(item, str) else ApproverRef.model_validate(item)
                for item in configured
            ]

        chain: list[ApproverRef] = []
        for role in self.policy.approver_roles:
            people = await self.directory.resolve(action.organization_id, "role", role)
            if people:
                chain.extend(ApproverRef(target_type="person", target_id=p.id) for p in people)
            else:
                chain.append(ApproverRef(target_type="role", target_id=role))
        return chain

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def approve(self, request_id: str, decided_by: str, reason: Optional[str] = None) -> ApprovalRequest:
        """Record approval. The caller resumes the execution."""
        request = self._open_request(request_id)
        self._decide(request, ApprovalStatus.APPROVED, decided_by, reason)
        self.audit.approval_event(
            AuditAction.APPROVAL_GRANTED, request, performed_by=decided_by, details={"reason": reason}
        )
        logger.info(
            f"Approval {request.id} granted by {decided_by}",
            extra={"execution_id": request.execution_id}
        )
        return request

    def reject(self, request_id: str, decided_by: str, reason: Optional[str] = None) -> ApprovalRequest:
        """Record rejection and block the execution."""
        request = self._open_request(request_id)
        self._decide(request, ApprovalStatus.REJECTED, decided_by, reason)
        self.audit.approval_event(
            AuditAction.APPROVAL_REJECTED, request, performed_by=decided_by, details={"reason": reason}
        )
        self._block_execution(request, f"Approval rejected by {decided_by}" + (f": {reason}" if reason else ""))
        logger.info(
            f"Approval {request.id} rejected by {decided_by}",
            extra={"execution_id": request.execution_id}
        )
        return request

    async def assign(self, request_id: str, assignee_id: str, assigned_by: str = "system") -> ApprovalRequest:
        """
        Hand an open request to a specific reviewer and notify them.

        Raises:
            NotFoundError: Unknown request or assignee
            InvalidTransition: Request already decided or expired
        """
        request = self._open_request(request_id)
        if not await self.directory.resolve(request.organization_id, "person", assignee_id):
            raise NotFoundError(f"Person {assignee_id} not found")

        previous = request.assigned_to
        request.assigned_to = assignee_id
        self.audit.approval_event(
            AuditAction.APPROVAL_ASSIGNED,
            request,
            performed_by=assigned_by,
            details={"assigned_to": assignee_id, "previous_assignee": previous},
        )
        logger.info(
            f"Approval {request.id} assigned to {assignee_id}",
            extra={"execution_id": request.execution_id, "assigned_by": assigned_by}
        )

        await self._notify(
            request,
            "Approval request assigned",
            body=f"You have been assigned to review execution {request.execution_id}.",
            approver=ApproverRef(target_type="person", target_id=assignee_id),
        )
        return request

    def withdraw(self, request: ApprovalRequest, performed_by: str) -> None:
        """Close an open request whose execution was cancelled."""
        if request.status not in OPEN_APPROVAL_STATUSES:
            return
        self._decide(request, ApprovalStatus.REJECTED, performed_by, "Execution cancelled")
        self.audit.approval_event(
            AuditAction.APPROVAL_REJECTED, request, performed_by=performed_by, details={"withdrawn": True}
        )

    def _open_request(self, request_id: str) -> ApprovalRequest:
        """
        Load a request that can still be decided.

        Raises:
            NotFoundError: Unknown request
            InvalidTransition: Request already decided or expired
            ApprovalExpired: Request passed its expiry; it is expired here
        """
        request = self.approvals.require(request_id)
        if request.status not in OPEN_APPROVAL_STATUSES:
            raise InvalidTransition(
                f"Cannot decide approval request {request.id} with status {request.status.value}"
            )
        if self._clock() >= request.expires_at:
            self._expire(request, "Approval request expired before a decision")
            raise ApprovalExpired(f"Approval request {request.id} has expired")
        return request

    def _decide(
        self,
        request: ApprovalRequest,
        status: ApprovalStatus,
        decided_by: str,
        reason: Optional[str]
    ) -> None:
        request.status = status
        request.decided_by = decided_by
        request.decided_at = self._clock()
        request.decision_reason = reason

    # -------------------------------------------------------------------------
    # Maintenance sweep
    # -------------------------------------------------------------------------

    async def run_maintenance(self, organization_id: str) -> dict[str, int]:
        """
        Expire, escalate, or give up on open requests.

        Returns:
            Counts of expired, escalated and exhausted requests
        """
        now = self._clock()
        escalate_after = timedelta(hours=self.policy.escalate_after_hours)
        counts = {"expired": 0, "escalated": 0, "exhausted": 0}

        for request in self.approvals.open_requests(organization_id):
            if now >= request.expires_at:
                self._expire(request, "Approval request expired")
                await self._notify_expired(request)
                counts["expired"] += 1
                continue

            if self.policy.escalate_after_hours <= 0 or now - request.level_started_at < escalate_after:
                continue

            next_level = request.current_escalation_level + 1
            if next_level >= len(request.escalation_chain):
                error = ApprovalExhausted(
                    f"No approver available for request {request.id} after "
                    f"{len(request.escalation_chain)} levels"
                )
                self._expire(request, str(error), exhausted=True)
                await self._notify_expired(request)
                counts["exhausted"] += 1
                continue

            request.current_escalation_level = next_level
            request.status = ApprovalStatus.ESCALATED
            request.level_started_at = now
            self.audit.approval_event(
                AuditAction.APPROVAL_ESCALATED,
                request,
                details={"approver": request.current_approver.model_dump()},
            )
            await self._notify(request, "Escalated approval required")
            counts["escalated"] += 1

        if any(counts.values()):
            logger.info(
                "Approval maintenance completed",
                extra={"organization_id": organization_id, **counts}
            )
        return counts

    def due_for_auto_approval(self, organization_id: str) -> list[ApprovalRequest]:
        """Open low-priority requests that have waited long enough to approve without a person."""
        hours = self.policy.auto_approve_low_priority_hours
        if hours <= 0:
            return []
        now = self._clock()
        return [
            r for r in self.approvals.open_requests(organization_id)
            if r.priority == ApprovalPriority.LOW
            and now < r.expires_at
            and now - r.requested_at >= timedelta(hours=hours)
        ]

    def _expire(self, request: ApprovalRequest, reason: str, exhausted: bool = False) -> None:
        request.status = ApprovalStatus.EXPIRED
        self.audit.approval_event(
            AuditAction.APPROVAL_EXPIRED,
            request,
            details={"reason": reason, "exhausted": exhausted},
        )
        self._block_execution(request, reason)

    def _block_execution(self, request: ApprovalRequest, reason: str) -> None:
        execution = self.executions.get(request.execution_id)
        if execution is None or execution.status != ExecutionStatus.AWAITING_APPROVAL:
            return
        self.executions.transition(
            execution.id,
            ExecutionStatus.BLOCKED,
            blocked_reason=reason,
            completed_at=self._clock(),
        )
        self.audit.execution_blocked(execution, reason)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def _notify_expired(self, request: ApprovalRequest) -> int:
        if not self.policy.notify_on_expiration:
            return 0
        approver = (
            ApproverRef(target_type="person", target_id=request.assigned_to)
            if request.assigned_to else request.current_approver
        )
        return await self._notify(
            request,
            "Approval request expired",
            body=f"The approval request for execution {request.execution_id} expired without a decision.",
            approver=approver,
        )

    async def _notify(
        self,
        request: ApprovalRequest,
        subject: str,
        body: Optional[str] = None,
        approver: Optional[ApproverRef] = None
    ) -> int:
        approver = approver or request.current_approver
        adapter = self.delivery.get(self.policy.channel)
        if approver is None or adapter is None:
            return 0

        message = DeliveryMessage(
            subject=subject,
            body=body or (
                f"Execution {request.execution_id} is waiting for approval "
                f"(priority {request.priority.value}, expires {request.expires_at.isoformat()})."
            ),
            severity="warning" if PRIORITY_RANK[request.priority] >= 2 else "info",
            metadata={"request_id": request.id, "level": request.current_escalation_level},
        )

        sent = 0
        recipients = await self.directory.resolve(request.organization_id, approver.target_type, approver.target_id)
        for recipient in recipients:
            if not recipient.available:
                continue
            try:
                if await adapter.deliver(recipient, message):
                    sent += 1
            except DeliveryFailure as e:
                logger.warning(
                    f"Approval notification to {recipient.id} failed: {e}",
                    extra={"request_id": request.id}
                )
        return sent

    # -------------------------------------------------------------------------
    # Read surface
    # -------------------------------------------------------------------------

    def list_pending(self, organization_id: str) -> list[ApprovalRequest]:
        """Open requests, most urgent first, oldest first within a priority."""
        return sorted(
            self.approvals.open_requests(organization_id),
            key=lambda r: (-PRIORITY_RANK[r.priority], r.requested_at),
        )

    def statistics(self, organization_id: str, days: int = 30) -> dict[str, Any]:
        since: datetime = self._clock() - timedelta(days=days)
        requests = [r for r in self.approvals.query(organization_id) if r.requested_at >= since]

        by_status = {status.value: 0 for status in ApprovalStatus}
        decision_hours = []
        for request in requests:
            by_status[request.status.value] += 1
            if request.decided_at:
                decision_hours.append((request.decided_at - request.requested_at).total_seconds() / 3600)

        return {
            "total_requests": len(requests),
            "by_status": by_status,
            "average_decision_hours": sum(decision_hours) / len(decision_hours) if decision_hours else 0.0,
        }
