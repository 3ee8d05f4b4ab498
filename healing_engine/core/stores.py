"""
Self-Healing Engine - In-Memory Stores
======================================

Thread-safe in-memory storage for engine state. Persistence of these
records is owned by the surrounding platform; the engine only needs the
operations below.

The ExecutionStore enforces the execution state machine and provides the
compare-and-increment reservation used to admit executions under the
per-organization concurrency limit.
"""

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Optional

from healing_shared.constants import (
    ADMITTED_STATUSES,
    EXECUTION_TRANSITIONS,
    ApprovalStatus,
    ExecutionStatus,
    OPEN_APPROVAL_STATUSES,
)
from healing_shared.schemas.actions import (
    ActionExecution,
    ApprovalRequest,
    AutomatedAction,
    SafetyPolicy,
)
from healing_shared.schemas.events import DetectedPattern

from healing_engine.core.errors import InvalidTransition, NotFoundError


class ExecutionStore:
    """Action executions and their state machine."""

    def __init__(self):
        self._executions: dict[str, ActionExecution] = {}
        self._lock = Lock()

    def add(self, execution: ActionExecution) -> ActionExecution:
        with self._lock:
            self._executions[execution.id] = execution
        return execution

    def get(self, execution_id: str) -> Optional[ActionExecution]:
        return self._executions.get(execution_id)

    def require(self, execution_id: str) -> ActionExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    def transition(
        self,
        execution_id: str,
        status: ExecutionStatus,
        **fields: Any
    ) -> ActionExecution:
        """
        Move an execution to ``status`` and set any extra fields.

        Raises:
            InvalidTransition: If the move is not allowed from the current state
        """
        with self._lock:
            execution = self.require(execution_id)
            self._check(execution, status)
            execution.status = status
            for name, value in fields.items():
                setattr(execution, name, value)
            return execution

    def reserve_executing(self, execution_id: str, limit: int) -> bool:
        """
        Atomically admit an execution into ``executing``.

        Counts the organization's running executions and transitions this
        one only while that count is below ``limit``.
        """
        with self._lock:
            execution = self.require(execution_id)
            running = self._count_status(execution.organization_id, ExecutionStatus.EXECUTING)
            if running >= limit:
                return False
            self._check(execution, ExecutionStatus.EXECUTING)
            execution.status = ExecutionStatus.EXECUTING
            return True

    @staticmethod
    def _check(execution: ActionExecution, status: ExecutionStatus) -> None:
        if status not in EXECUTION_TRANSITIONS[execution.status]:
            raise InvalidTransition(
                f"Execution {execution.id} cannot move from "
                f"{execution.status.value} to {status.value}"
            )

    def _count_status(self, organization_id: str, status: ExecutionStatus) -> int:
        return sum(
            1 for e in self._executions.values()
            if e.organization_id == organization_id and e.status == status
        )

    def count_executing(self, organization_id: str) -> int:
        with self._lock:
            return self._count_status(organization_id, ExecutionStatus.EXECUTING)

    def count_admitted_since(
        self,
        organization_id: str,
        since: datetime,
        exclude_id: Optional[str] = None
    ) -> int:
        """Executions that passed gating and started at or after ``since``."""
        with self._lock:
            return sum(
                1 for e in self._executions.values()
                if e.organization_id == organization_id
                and e.id != exclude_id
                and e.status in ADMITTED_STATUSES
                and e.started_at >= since
            )

    def latest_for_action(
        self,
        action_id: str,
        statuses: frozenset[ExecutionStatus],
        exclude_id: Optional[str] = None
    ) -> Optional[ActionExecution]:
        with self._lock:
            candidates = [
                e for e in self._executions.values()
                if e.action_id == action_id and e.status in statuses and e.id != exclude_id
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.started_at)

    def query(
        self,
        organization_id: str,
        status: Optional[ExecutionStatus] = None,
        action_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100
    ) -> list[ActionExecution]:
        with self._lock:
            executions = [
                e for e in self._executions.values()
                if e.organization_id == organization_id
            ]
        if status:
            executions = [e for e in executions if e.status == status]
        if action_id:
            executions = [e for e in executions if e.action_id == action_id]
        if since:
            executions = [e for e in executions if e.started_at >= since]

        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[:limit]

    def statistics(self, organization_id: str, since: Optional[datetime] = None) -> dict[str, Any]:
        """Totals by status, success rate over finished runs, average duration."""
        executions = self.query(organization_id, since=since, limit=len(self._executions) or 1)

        by_status: dict[str, int] = {}
        for e in executions:
            by_status[e.status.value] = by_status.get(e.status.value, 0) + 1

        finished = [
            e for e in executions
            if e.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.ROLLED_BACK)
        ]
        succeeded = [e for e in finished if e.status != ExecutionStatus.FAILED]
        durations = [e.duration_ms for e in finished if e.duration_ms is not None]

        return {
            "total": len(executions),
            "by_status": by_status,
            "success_rate": len(succeeded) / len(finished) if finished else 0.0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
        }


class ApprovalStore:
    """Approval requests."""

    def __init__(self):
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = Lock()

    def add(self, request: ApprovalRequest) -> ApprovalRequest:
        with self._lock:
            self._requests[request.id] = request
        return request

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    def require(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Approval request {request_id} not found")
        return request

    def for_execution(self, execution_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            for request in self._requests.values():
                if request.execution_id == execution_id:
                    return request
        return None

    def query(
        self,
        organization_id: str,
        status: Optional[ApprovalStatus] = None
    ) -> list[ApprovalRequest]:
        with self._lock:
            requests = [
                r for r in self._requests.values()
                if r.organization_id == organization_id
                and (status is None or r.status == status)
            ]
        return sorted(requests, key=lambda r: r.requested_at)

    def open_requests(self, organization_id: str) -> list[ApprovalRequest]:
        return [
            r for r in self.query(organization_id)
            if r.status in OPEN_APPROVAL_STATUSES
        ]


class PatternRepository:
    """Detected patterns. Write-once."""

    def __init__(self):
        self._patterns: dict[str, DetectedPattern] = {}
        self._lock = Lock()

    def save(self, pattern: DetectedPattern) -> DetectedPattern:
        with self._lock:
            if pattern.id in self._patterns:
                raise InvalidTransition(f"Pattern {pattern.id} already recorded")
            self._patterns[pattern.id] = pattern
        return pattern

    def get(self, pattern_id: str) -> Optional[DetectedPattern]:
        return self._patterns.get(pattern_id)

    def query(
        self,
        organization_id: str,
        since: Optional[datetime] = None
    ) -> list[DetectedPattern]:
        with self._lock:
            patterns = [
                p for p in self._patterns.values()
                if p.organization_id == organization_id
                and (since is None or p.detected_at >= since)
            ]
        return sorted(patterns, key=lambda p: p.detected_at)


class ActionCatalog:
    """Organization-configured automated actions."""

    def __init__(self):
        self._actions: dict[str, AutomatedAction] = {}
        self._lock = Lock()

    def add(self, action: AutomatedAction) -> AutomatedAction:
        with self._lock:
            self._actions[action.id] = action
        return action

    def get(self, action_id: str) -> Optional[AutomatedAction]:
        return self._actions.get(action_id)

    def require(self, action_id: str) -> AutomatedAction:
        action = self._actions.get(action_id)
        if action is None:
            raise NotFoundError(f"Action {action_id} not found")
        return action

    def for_organization(self, organization_id: str) -> list[AutomatedAction]:
        with self._lock:
            return [a for a in self._actions.values() if a.organization_id == organization_id]

    def for_pattern_type(self, organization_id: str, pattern_type: str) -> list[AutomatedAction]:
        """Active pattern-triggered actions matching a pattern type, in id order."""
        return sorted(
            (a for a in self.for_organization(organization_id) if a.matches_pattern_type(pattern_type)),
            key=lambda a: a.id,
        )


@dataclass
class MappingWeight:
    """Learned effectiveness of an action type against a pattern type."""
    pattern_type: str
    action_type: str
    weight: float
    samples: int
    success_rate: float
    updated_at: datetime
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None


class MappingWeightStore:
    """Pattern -> action weights written by the learning loop."""

    def __init__(self):
        self._weights: dict[tuple[str, str, str], MappingWeight] = {}
        self._lock = Lock()

    def upsert(self, organization_id: str, mapping: MappingWeight) -> bool:
        """Store a weight, keeping any approval already given. Returns True when the mapping is new."""
        key = (organization_id, mapping.pattern_type, mapping.action_type)
        with self._lock:
            existing = self._weights.get(key)
            if existing is not None and existing.approved_by:
                mapping.approved_by = existing.approved_by
                mapping.approved_at = existing.approved_at
            self._weights[key] = mapping
        return existing is None

    def approve(
        self,
        organization_id: str,
        pattern_type: str,
        action_type: str,
        approved_by: str,
        at: datetime
    ) -> MappingWeight:
        """
        Mark a learned mapping as reviewed by a person.

        Raises:
            NotFoundError: No mapping for the pair
        """
        with self._lock:
            mapping = self._weights.get((organization_id, pattern_type, action_type))
            if mapping is None:
                raise NotFoundError(f"No learned mapping from {pattern_type} to {action_type}")
            mapping.approved_by = approved_by
            mapping.approved_at = at
        return mapping

    def for_organization(self, organization_id: str) -> list[MappingWeight]:
        """Every mapping of an organization, by pattern type then strength."""
        with self._lock:
            weights = [w for (org, _, _), w in self._weights.items() if org == organization_id]
        return sorted(weights, key=lambda w: (w.pattern_type, -w.weight, w.action_type))

    def weights_for(self, organization_id: str, pattern_type: str) -> list[MappingWeight]:
        """Weights for a pattern type, strongest first."""
        with self._lock:
            weights = [
                w for (org, ptype, _), w in self._weights.items()
                if org == organization_id and ptype == pattern_type
            ]
        return sorted(weights, key=lambda w: (-w.weight, w.action_type))


class KeyedStateStore:
    """
    Executor state keyed by (namespace, action_id, key).

    Owned by the executor registry; reminders use it for repeat counts,
    escalations for the reached level, retries for attempt counts.
    """

    def __init__(self):
        self._state: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._lock = Lock()

    def get(self, namespace: str, action_id: str, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._state.get((namespace, action_id, key))
            return dict(value) if value is not None else None

    def set(self, namespace: str, action_id: str, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._state[(namespace, action_id, key)] = dict(value)

    def delete(self, namespace: str, action_id: str, key: str) -> None:
        with self._lock:
            self._state.pop((namespace, action_id, key), None)


class PolicyStore:
    """Per-organization safety policy overrides."""

    def __init__(self, default: SafetyPolicy):
        self._default = default
        self._overrides: dict[str, SafetyPolicy] = {}
        self._lock = Lock()

    def get(self, organization_id: str) -> SafetyPolicy:
        return self._overrides.get(organization_id, self._default)

    def set(self, organization_id: str, policy: SafetyPolicy) -> None:
        with self._lock:
            self._overrides[organization_id] = policy
