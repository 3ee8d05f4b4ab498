"""
Self-Healing Engine - Engine
============================

The closed loop: detect -> gate -> execute -> audit, with the approval
workflow interposed when gating defers to a human.

Execution lifecycle:
1. VALIDATE: action definition and config are checked before anything is
   recorded; a bad action raises ConfigurationError
2. GATE: under the organization's admission lock the safety gate runs
   and, if it passes, the execution is atomically reserved into
   ``executing`` (or parked in ``awaiting_approval``)
3. EXECUTE: outside the lock, the executor runs under its timeout
4. RECORD: the execution is finished as ``completed`` or ``failed`` with
   exactly the changes that were performed, and audited
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from healing_shared.constants import (
    ActionType,
    AuditAction,
    ExecutionStatus,
    OPEN_APPROVAL_STATUSES,
    PatternType,
    TriggeredBy,
)
from healing_shared.schemas.actions import (
    ActionExecution,
    ApprovalRequest,
    AutomatedAction,
    ExecutionResult,
    SafetyPolicy,
)
from healing_shared.schemas.events import DetectedPattern, new_id
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.action_registry import ActionRegistry, ExecutionContext, ExecutorServices
from healing_engine.core.actions import build_default_registry
from healing_engine.core.adapters import (
    DeliveryRouter,
    DirectoryAdapter,
    OperationAdapter,
    PatternStoreAdapter,
    WorkItemAdapter,
)
from healing_engine.core.approval_workflow import ApprovalPolicy, ApprovalWorkflow
from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.errors import (
    ConfigurationError,
    DeliveryFailure,
    ExecutionTimeout,
    InvalidTransition,
    NotFoundError,
    SelfHealingError,
    TargetUnavailable,
)
from healing_engine.core.learning import LearningConfig, LearningResult, LearningService
from healing_engine.core.pattern_detector import DetectionResult, PatternDetector
from healing_engine.core.safety_gate import SafetyGate, validate_action_safety
from healing_engine.core.stores import (
    ActionCatalog,
    ApprovalStore,
    ExecutionStore,
    KeyedStateStore,
    MappingWeight,
    MappingWeightStore,
    PatternRepository,
    PolicyStore,
)

logger = get_logger(__name__)


@dataclass
class ScanOutcome:
    detection: DetectionResult
    executions: list[ActionExecution] = field(default_factory=list)


class SelfHealingEngine:
    """
    Orchestrates detection, admission, execution and approvals.

    Collaborators are injected so tests can run the whole loop in memory.
    """

    def __init__(
        self,
        catalog: ActionCatalog,
        executions: ExecutionStore,
        approvals: ApprovalStore,
        patterns: PatternRepository,
        policies: PolicyStore,
        registry: ActionRegistry,
        services: ExecutorServices,
        audit: AuditTrail,
        detector: PatternDetector,
        gate: SafetyGate,
        workflow: ApprovalWorkflow,
        learning: LearningService,
        default_timeout_ms: int,
        clock: Clock = utc_now
    ):
        self.catalog = catalog
        self.executions = executions
        self.approvals = approvals
        self.patterns = patterns
        self.policies = policies
        self.registry = registry
        self.services = services
        self.audit = audit
        self.detector = detector
        self.gate = gate
        self.workflow = workflow
        self.learning = learning
        self.default_timeout_ms = default_timeout_ms
        self._clock = clock
        self._org_locks: dict[str, asyncio.Lock] = {}

    def _org_lock(self, organization_id: str) -> asyncio.Lock:
        return self._org_locks.setdefault(organization_id, asyncio.Lock())

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def validate_action(self, action: AutomatedAction) -> Any:
        """
        Validate an action definition and parse its config.

        Rejections are audited as ``configuration_rejected``.

        Returns:
            The typed config variant

        Raises:
            ConfigurationError: If the action cannot run as configured
        """
        try:
            validate_action_safety(action, self.registry, self.services.is_production)
            validation = self.registry.validate(action)
            if not validation.valid:
                raise ConfigurationError(
                    f"Action {action.id} has an invalid {action.action_type.value} config: "
                    f"{'; '.join(validation.errors)}",
                    validation.errors,
                )
        except ConfigurationError as e:
            self.audit.record(
                action.organization_id,
                AuditAction.CONFIGURATION_REJECTED,
                "automated_action",
                action.id,
                {"errors": e.errors or [str(e)]},
            )
            logger.warning(
                f"Action {action.id} rejected: {e}",
                extra={"action_id": action.id, "organization_id": action.organization_id}
            )
            raise
        return validation.config

    def register_action(self, action: AutomatedAction) -> AutomatedAction:
        """Validate and add an action to the catalog."""
        self.validate_action(action)
        return self.catalog.add(action)

    def policy_for(self, organization_id: str) -> SafetyPolicy:
        return self.policies.get(organization_id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_action(
        self,
        organization_id: str,
        action_id: str,
        pattern_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        dry_run: bool = False,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL
    ) -> ActionExecution:
        """
        Gate and run one action.

        Args:
            organization_id: Owning organization
            action_id: Action to run
            pattern_id: Triggering pattern, if any
            execution_id: Id to give the new execution
            dry_run: Run validation and gating, simulate side effects
            triggered_by: Origin of the execution

        Returns:
            The execution in its resulting state (blocked, awaiting_approval,
            completed or failed)

        Raises:
            NotFoundError: Unknown action or pattern
            ConfigurationError: Invalid action; no execution is created
            DeliveryFailure: I/O failure while executing; the execution is
                recorded as failed before this propagates
        """
        action = self.catalog.require(action_id)
        if action.organization_id != organization_id:
            raise NotFoundError(f"Action {action_id} not found in organization {organization_id}")
        if not action.is_active:
            raise ConfigurationError(f"Action {action_id} is inactive")

        pattern = self._load_pattern(pattern_id)
        self.validate_action(action)

        if execution_id and self.executions.get(execution_id):
            raise InvalidTransition(f"Execution {execution_id} already exists")

        policy = self.policy_for(organization_id)
        execution = ActionExecution(
            **({"id": execution_id} if execution_id else {}),
            action_id=action.id,
            organization_id=organization_id,
            triggered_by=triggered_by,
            pattern_id=pattern.id if pattern else None,
            dry_run=dry_run or policy.dry_run_mode,
            created_at=self._clock(),
            started_at=self._clock(),
        )
        self.executions.add(execution)
        self.executions.transition(execution.id, ExecutionStatus.GATING)
        self.audit.action_triggered(action, execution)

        async with self._org_lock(organization_id):
            result = await self.gate.evaluate(action, pattern, policy, execution)
            if not result.passed:
                return self._block(execution, result.blocked_reason)

            if result.requires_approval and not execution.dry_run:
                self.executions.transition(execution.id, ExecutionStatus.AWAITING_APPROVAL)
                await self.workflow.create_request(execution, action, pattern)
                return execution

            if not self._reserve(execution, policy):
                return execution

        await self._run(execution, action, result.config, pattern)
        return execution

    def _load_pattern(self, pattern_id: Optional[str]) -> Optional[DetectedPattern]:
        if not pattern_id:
            return None
        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            raise NotFoundError(f"Pattern {pattern_id} not found")
        return pattern

    def _reserve(self, execution: ActionExecution, policy: SafetyPolicy) -> bool:
        if self.executions.reserve_executing(execution.id, policy.max_concurrent_executions):
            return True
        self._block(
            execution,
            f"Too many concurrent executions (max: {policy.max_concurrent_executions})",
        )
        return False

    def _block(self, execution: ActionExecution, reason: Optional[str]) -> ActionExecution:
        reason = reason or "Blocked by safety checks"
        self.executions.transition(
            execution.id,
            ExecutionStatus.BLOCKED,
            blocked_reason=reason,
            completed_at=self._clock(),
        )
        self.audit.execution_blocked(execution, reason)
        logger.info(
            f"Execution {execution.id} blocked: {reason}",
            extra={"execution_id": execution.id, "action_id": execution.action_id}
        )
        return execution

    def _context(
        self,
        execution: ActionExecution,
        action: AutomatedAction,
        config: Any,
        pattern: Optional[DetectedPattern]
    ) -> ExecutionContext:
        return ExecutionContext(
            execution=execution,
            action=action,
            config=config,
            pattern=pattern,
            services=self.services,
            audit=self.audit,
            clock=self._clock,
        )

    async def _run(
        self,
        execution: ActionExecution,
        action: AutomatedAction,
        config: Any,
        pattern: Optional[DetectedPattern]
    ) -> None:
        """Run the executor under its timeout and record the outcome."""
        executor = self.registry.get(action.action_type)
        context = self._context(execution, action, config, pattern)
        timeout_ms = getattr(config, "timeout_ms", None) or self.default_timeout_ms

        logger.info(
            f"Executing {action.action_type.value} action {action.id}",
            extra={
                "execution_id": execution.id,
                "action_id": action.id,
                "pattern_id": execution.pattern_id,
                "dry_run": execution.dry_run,
            }
        )

        delivery_error: Optional[DeliveryFailure] = None
        try:
            result = await asyncio.wait_for(executor.execute(action, context), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = ExecutionTimeout(f"Execution timed out after {timeout_ms}ms")
            result = ExecutionResult(success=False, error_message=str(error))
        except DeliveryFailure as e:
            delivery_error = e
            result = ExecutionResult(success=False, error_message=str(e))
        except TargetUnavailable as e:
            result = ExecutionResult(success=False, error_message=str(e))
        except SelfHealingError as e:
            result = ExecutionResult(success=False, error_message=str(e))
        except Exception as e:
            logger.exception(
                f"Executor for {action.action_type.value} raised unexpectedly",
                extra={"execution_id": execution.id, "action_id": action.id}
            )
            result = ExecutionResult(success=False, error_message=f"{type(e).__name__}: {e}")

        # Recorded changes are exactly what the context performed
        result.changes = list(context.changes)
        self._finish(execution, result)

        if delivery_error is not None:
            raise delivery_error

    def _finish(self, execution: ActionExecution, result: ExecutionResult) -> None:
        status = ExecutionStatus.COMPLETED if result.success else ExecutionStatus.FAILED
        self.executions.transition(
            execution.id,
            status,
            result=result,
            error_message=result.error_message,
            rollback_data=result.rollback_data if result.success else None,
            completed_at=self._clock(),
        )
        self.audit.execution_finished(execution)
        log = logger.info if result.success else logger.warning
        log(
            f"Execution {execution.id} {status.value}",
            extra={
                "execution_id": execution.id,
                "action_id": execution.action_id,
                "changes": len(result.changes),
                "error": result.error_message,
            }
        )

    # -------------------------------------------------------------------------
    # Approvals
    # -------------------------------------------------------------------------

    async def approve(
        self,
        request_id: str,
        decided_by: str,
        reason: Optional[str] = None
    ) -> ActionExecution:
        """
        Approve a request and resume its execution.

        The gate runs again under the admission lock, since counters may
        have moved while the request was pending.

        Raises:
            ApprovalExpired: The request had expired; its execution is blocked
        """
        request = self.workflow.approve(request_id, decided_by, reason)
        execution = self.executions.require(request.execution_id)
        action = self.catalog.require(execution.action_id)
        pattern = self.patterns.get(execution.pattern_id) if execution.pattern_id else None
        policy = self.policy_for(execution.organization_id)

        async with self._org_lock(execution.organization_id):
            result = await self.gate.evaluate(action, pattern, policy, execution)
            if not result.passed:
                return self._block(execution, result.blocked_reason)
            if not self._reserve(execution, policy):
                return execution

        await self._run(execution, action, result.config, pattern)
        return execution

    def reject(self, request_id: str, decided_by: str, reason: Optional[str] = None) -> ActionExecution:
        request = self.workflow.reject(request_id, decided_by, reason)
        return self.executions.require(request.execution_id)

    async def assign_approval(
        self,
        request_id: str,
        assignee_id: str,
        assigned_by: str = "system"
    ) -> ApprovalRequest:
        return await self.workflow.assign(request_id, assignee_id, assigned_by)

    async def run_approval_maintenance(self, organization_id: str) -> dict[str, int]:
        """Auto-approve due low-priority requests, then expire and escalate the rest."""
        auto_approved = 0
        hours = self.workflow.policy.auto_approve_low_priority_hours
        for request in self.workflow.due_for_auto_approval(organization_id):
            await self.approve(
                request.id,
                decided_by="system",
                reason=f"Auto-approved after {hours:g}h at low priority",
            )
            auto_approved += 1

        counts = await self.workflow.run_maintenance(organization_id)
        return {**counts, "auto_approved": auto_approved}

    # -------------------------------------------------------------------------
    # Escalations
    # -------------------------------------------------------------------------

    def acknowledge_escalation(
        self,
        organization_id: str,
        action_id: str,
        pattern_id: str,
        acknowledged_by: str
    ) -> dict[str, Any]:
        """
        Record that someone has taken an escalation; later triggers stop climbing.

        Raises:
            NotFoundError: Unknown action
            InvalidTransition: Not an escalation, or nothing escalated for the pattern
        """
        action = self.catalog.require(action_id)
        if action.organization_id != organization_id:
            raise NotFoundError(f"Action {action_id} not found in organization {organization_id}")
        if action.action_type != ActionType.ESCALATION:
            raise InvalidTransition(f"Action {action_id} is not an escalation")

        executor = self.registry.get(ActionType.ESCALATION)
        state = executor.acknowledge(self.registry.state, action_id, pattern_id, acknowledged_by, self._clock())
        self.audit.record(
            organization_id,
            AuditAction.ESCALATION_ACKNOWLEDGED,
            "automated_action",
            action_id,
            {"pattern_id": pattern_id, "level": state["level"]},
            performed_by=acknowledged_by,
        )
        logger.info(
            f"Escalation of {action_id} for {pattern_id} acknowledged by {acknowledged_by}",
            extra={"action_id": action_id, "pattern_id": pattern_id, "level": state["level"]}
        )
        return state

    # -------------------------------------------------------------------------
    # Rollback and cancellation
    # -------------------------------------------------------------------------

    async def rollback(self, execution_id: str, performed_by: str = "system") -> ActionExecution:
        """
        Reverse a completed execution.

        Raises:
            InvalidTransition: Not completed, not reversible, or nothing to reverse
        """
        execution = self.executions.require(execution_id)
        if execution.status != ExecutionStatus.COMPLETED:
            raise InvalidTransition(
                f"Only completed executions can be rolled back (status: {execution.status.value})"
            )

        action = self.catalog.require(execution.action_id)
        executor = self.registry.get(action.action_type)
        if not executor.can_rollback:
            raise InvalidTransition(f"{action.action_type.value} actions cannot be rolled back")
        if not execution.rollback_data:
            raise InvalidTransition(f"Execution {execution_id} has no rollback data")

        validation = self.registry.validate(action)
        pattern = self.patterns.get(execution.pattern_id) if execution.pattern_id else None
        context = self._context(execution, action, validation.config, pattern)

        result = await executor.rollback(execution, context)
        self.executions.transition(
            execution.id,
            ExecutionStatus.ROLLED_BACK,
            rolled_back_at=self._clock(),
            rolled_back_by=performed_by,
        )
        self.audit.record(
            execution.organization_id,
            AuditAction.ROLLBACK_COMPLETED,
            "execution",
            execution.id,
            {
                "action_id": action.id,
                "changes": [c.model_dump(mode="json") for c in context.changes],
                "metrics": result.metrics,
            },
            performed_by=performed_by,
        )
        logger.info(
            f"Execution {execution.id} rolled back by {performed_by}",
            extra={"execution_id": execution.id, "action_id": action.id}
        )
        return execution

    def cancel(self, execution_id: str, performed_by: str = "system") -> ActionExecution:
        """
        Cancel an execution that has not started running.

        Raises:
            InvalidTransition: If the execution is executing or finished
        """
        execution = self.executions.transition(
            execution_id,
            ExecutionStatus.CANCELLED,
            completed_at=self._clock(),
        )
        request = self.approvals.for_execution(execution_id)
        if request is not None and request.status in OPEN_APPROVAL_STATUSES:
            self.workflow.withdraw(request, performed_by)

        self.audit.record(
            execution.organization_id,
            AuditAction.EXECUTION_CANCELLED,
            "execution",
            execution.id,
            {"action_id": execution.action_id},
            performed_by=performed_by,
        )
        return execution

    # -------------------------------------------------------------------------
    # Scans and analysis
    # -------------------------------------------------------------------------

    async def scan(
        self,
        organization_id: str,
        pattern_types: Optional[list[PatternType]] = None,
        time_window_minutes: int = 60,
        auto_execute: bool = False,
        dry_run: bool = False
    ) -> ScanOutcome:
        """
        Detect patterns and optionally run the actions they trigger.

        Each auto-executed action is recorded independently; a rejected
        or failed action does not stop the rest of the scan.
        """
        detection = await self.detector.detect(organization_id, pattern_types, time_window_minutes)
        outcome = ScanOutcome(detection=detection)
        if not auto_execute:
            return outcome

        for pattern in detection.patterns:
            for action in self.catalog.for_pattern_type(organization_id, pattern.type.value):
                execution_id = new_id()
                try:
                    await self.execute_action(
                        organization_id,
                        action.id,
                        pattern_id=pattern.id,
                        execution_id=execution_id,
                        dry_run=dry_run,
                        triggered_by=TriggeredBy.PATTERN,
                    )
                except ConfigurationError:
                    continue
                except DeliveryFailure as e:
                    logger.warning(
                        f"Auto-executed action {action.id} failed delivery: {e}",
                        extra={"action_id": action.id, "pattern_id": pattern.id}
                    )
                execution = self.executions.get(execution_id)
                if execution is not None:
                    outcome.executions.append(execution)
        return outcome

    def analyze(self, organization_id: str, window_days: Optional[int] = None) -> LearningResult:
        return self.learning.analyze(organization_id, window_days)

    def approve_mapping(
        self,
        organization_id: str,
        pattern_type: str,
        action_type: str,
        approved_by: str
    ) -> MappingWeight:
        return self.learning.approve_mapping(organization_id, pattern_type, action_type, approved_by)

    def statistics(self, organization_id: str) -> dict[str, Any]:
        return {
            "executions": self.executions.statistics(organization_id),
            "approvals": self.workflow.statistics(organization_id),
            "safety": self.gate.statistics(organization_id),
            "audit": self.audit.count_by_action(organization_id),
        }


def build_engine(
    settings: Any,
    pattern_store: PatternStoreAdapter,
    directory: DirectoryAdapter,
    delivery: DeliveryRouter,
    work_items: WorkItemAdapter,
    operations: OperationAdapter,
    registry: Optional[ActionRegistry] = None,
    clock: Clock = utc_now
) -> SelfHealingEngine:
    """
    Wire an engine with in-memory stores around the given adapters.

    Args:
        settings: Service settings (policy defaults, timeouts, thresholds)
        registry: Executor registry; the frozen built-in one if None
        clock: Time source shared by every component
    """
    registry = registry or build_default_registry(KeyedStateStore())
    audit = AuditTrail(clock=clock)
    executions = ExecutionStore()
    approvals = ApprovalStore()
    patterns = PatternRepository()
    catalog = ActionCatalog()
    weights = MappingWeightStore()

    services = ExecutorServices(
        directory=directory,
        delivery=delivery,
        work_items=work_items,
        operations=operations,
        state=registry.state,
        is_production=settings.is_production,
        webhook_timeout_seconds=settings.webhook_timeout_seconds,
    )
    workflow = ApprovalWorkflow(
        approvals,
        executions,
        directory,
        delivery,
        audit,
        ApprovalPolicy(
            expiration_hours=settings.approval_expiration_hours,
            escalate_after_hours=settings.approval_escalate_after_hours,
            approver_roles=list(settings.approver_roles),
            notify_on_expiration=settings.approval_notify_on_expiration,
            auto_approve_low_priority_hours=settings.approval_auto_approve_low_priority_hours,
        ),
        clock=clock,
    )
    learning = LearningService(
        executions,
        catalog,
        patterns,
        audit,
        weights,
        LearningConfig(
            min_occurrences=settings.learning_min_occurrences,
            min_success_rate=settings.learning_min_success_rate,
            confidence_threshold=settings.learning_confidence_threshold,
            analysis_window_days=settings.learning_window_days,
        ),
        clock=clock,
    )

    return SelfHealingEngine(
        catalog=catalog,
        executions=executions,
        approvals=approvals,
        patterns=patterns,
        policies=PolicyStore(settings.default_policy()),
        registry=registry,
        services=services,
        audit=audit,
        detector=PatternDetector(pattern_store, audit, patterns, weights, clock=clock),
        gate=SafetyGate(executions, registry, directory, audit, clock=clock),
        workflow=workflow,
        learning=learning,
        default_timeout_ms=settings.execution_timeout_ms,
        clock=clock,
    )
