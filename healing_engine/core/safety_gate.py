"""
Self-Healing Engine - Safety Gate
=================================

Admission control for automated actions. Runs a fixed, ordered battery
of checks against the organization's live execution counters:

1. rate_limit          executions admitted in the trailing hour
2. concurrent_limit    executions currently running
3. affected_entities   blast radius of the pattern (warning only)
4. cooldown            recent run of the same action
5. time_restriction    blocked hours / days (UTC)
6. approval_required   informational, routes to the approval workflow
7. configuration       parses the action config into its typed variant
8. target_availability named people / roles / pools must resolve

The first failing error-severity check becomes the blocked reason.
"""

from datetime import timedelta
from typing import Any, Optional

from healing_shared.constants import (
    BLOCKING_SEVERITIES,
    ActionType,
    AuditAction,
    CheckSeverity,
    ExecutionStatus,
    TargetType,
    TriggerType,
)
from healing_shared.schemas.actions import (
    ActionExecution,
    AutomatedAction,
    SafetyCheck,
    SafetyCheckResult,
    SafetyPolicy,
)
from healing_shared.schemas.events import DetectedPattern
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.action_registry import ActionRegistry
from healing_engine.core.adapters import DirectoryAdapter, webhook_url_problem
from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.errors import ConfigurationError
from healing_engine.core.stores import ExecutionStore

logger = get_logger(__name__)

COOLDOWN_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.EXECUTING})

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _check(name: str, passed: bool, message: str, severity: CheckSeverity) -> SafetyCheck:
    return SafetyCheck(name=name, passed=passed, message=message, severity=severity)


class SafetyGate:
    """Evaluates whether an action may run now."""

    def __init__(
        self,
        executions: ExecutionStore,
        registry: ActionRegistry,
        directory: DirectoryAdapter,
        audit: Optional[AuditTrail] = None,
        clock: Clock = utc_now
    ):
        self.executions = executions
        self.registry = registry
        self.directory = directory
        self.audit = audit
        self._clock = clock

    async def evaluate(
        self,
        action: AutomatedAction,
        pattern: Optional[DetectedPattern],
        policy: SafetyPolicy,
        execution: Optional[ActionExecution] = None
    ) -> SafetyCheckResult:
        """
        Run the check battery.

        Args:
            action: Action being admitted
            pattern: Triggering pattern, if any
            policy: Organization safety policy
            execution: Execution being gated; excluded from its own counters
                and, when given, the decision is written to the audit trail

        Returns:
            SafetyCheckResult with the parsed config attached when valid
        """
        exclude_id = execution.id if execution else None

        config_check, config = self.check_configuration(action)
        checks = [
            self.check_rate_limit(action, policy, exclude_id),
            self.check_concurrency(action, policy),
            self.check_affected_entities(pattern, policy),
            self.check_cooldown(action, policy, exclude_id),
            self.check_time_restriction(policy),
            self.check_approval_requirement(action, pattern, policy),
            config_check,
            await self.check_target_availability(action, config),
        ]

        warnings = [
            c.message for c in checks
            if not c.passed and c.severity == CheckSeverity.WARNING
        ]
        failures = [
            c for c in checks
            if not c.passed and c.severity in BLOCKING_SEVERITIES
        ]

        result = SafetyCheckResult(
            passed=not failures,
            checks=checks,
            blocked_reason=failures[0].message if failures else None,
            warnings=warnings,
            requires_approval=self._requires_approval(action, pattern, policy),
            config=config,
        )

        logger.info(
            "Safety checks completed",
            extra={
                "action_id": action.id,
                "organization_id": action.organization_id,
                "passed": result.passed,
                "failed_checks": [c.name for c in checks if not c.passed],
            }
        )

        if execution is not None and self.audit is not None:
            self.audit.safety_evaluated(execution, result)
        return result

    def statistics(self, organization_id: str, days: int = 7) -> dict[str, Any]:
        """
        Gate outcomes over the last ``days`` from the audit trail.

        ``by_check`` counts each blocking or warning check that did not
        pass; ``risk_score`` is the blocked share of gated executions as a
        percentage.
        """
        if self.audit is None:
            return {"gated": 0, "blocked_executions": 0, "warning_count": 0, "by_check": {}, "risk_score": 0}

        since = self._clock() - timedelta(days=days)
        entries = [
            e for e in self.audit.query(organization_id, since=since)
            if e.action in (AuditAction.SAFETY_PASS, AuditAction.SAFETY_BLOCK)
        ]
        blocked = sum(1 for e in entries if e.action == AuditAction.SAFETY_BLOCK)
        by_check: dict[str, int] = {}
        warning_count = 0
        for entry in entries:
            warning_count += len(entry.details.get("warnings", []))
            for check in entry.details.get("checks", []):
                if check["passed"] or check["severity"] == CheckSeverity.INFO.value:
                    continue
                by_check[check["name"]] = by_check.get(check["name"], 0) + 1

        return {
            "gated": len(entries),
            "blocked_executions": blocked,
            "warning_count": warning_count,
            "by_check": by_check,
            "risk_score": min(100, round(blocked / len(entries) * 100)) if entries else 0,
        }

    # -------------------------------------------------------------------------
    # Individual checks
    # -------------------------------------------------------------------------

    def check_rate_limit(
        self,
        action: AutomatedAction,
        policy: SafetyPolicy,
        exclude_id: Optional[str] = None
    ) -> SafetyCheck:
        since = self._clock() - timedelta(hours=1)
        recent = self.executions.count_admitted_since(action.organization_id, since, exclude_id)
        passed = recent < policy.max_actions_per_hour
        return _check(
            "rate_limit",
            passed,
            f"Within rate limit ({recent}/{policy.max_actions_per_hour})" if passed else
            f"Rate limit exceeded: {recent} actions in the last hour (max: {policy.max_actions_per_hour})",
            CheckSeverity.ERROR,
        )

    def check_concurrency(self, action: AutomatedAction, policy: SafetyPolicy) -> SafetyCheck:
        running = self.executions.count_executing(action.organization_id)
        passed = running < policy.max_concurrent_executions
        return _check(
            "concurrent_limit",
            passed,
            f"Within concurrent limit ({running}/{policy.max_concurrent_executions})" if passed else
            f"Too many concurrent executions: {running} active (max: {policy.max_concurrent_executions})",
            CheckSeverity.ERROR,
        )

    @staticmethod
    def check_affected_entities(
        pattern: Optional[DetectedPattern],
        policy: SafetyPolicy
    ) -> SafetyCheck:
        if pattern is None:
            return _check(
                "affected_entities", True,
                "No pattern provided, skipping entity limit check",
                CheckSeverity.INFO,
            )

        count = len(pattern.affected_entities)
        passed = count <= policy.max_affected_entities
        return _check(
            "affected_entities",
            passed,
            f"Within entity limit ({count}/{policy.max_affected_entities})" if passed else
            f"Too many affected entities: {count} (max: {policy.max_affected_entities})",
            CheckSeverity.INFO if passed else CheckSeverity.WARNING,
        )

    def check_cooldown(
        self,
        action: AutomatedAction,
        policy: SafetyPolicy,
        exclude_id: Optional[str] = None
    ) -> SafetyCheck:
        if policy.min_action_cooldown_minutes <= 0:
            return _check("cooldown", True, "Cooldown check disabled", CheckSeverity.INFO)

        since = self._clock() - timedelta(minutes=policy.min_action_cooldown_minutes)
        latest = self.executions.latest_for_action(action.id, COOLDOWN_STATUSES, exclude_id)
        passed = latest is None or latest.started_at < since
        return _check(
            "cooldown",
            passed,
            "Cooldown period satisfied" if passed else
            f"Action was executed recently (cooldown: {policy.min_action_cooldown_minutes} minutes)",
            CheckSeverity.ERROR,
        )

    def check_time_restriction(self, policy: SafetyPolicy) -> SafetyCheck:
        now = self._clock()
        hour, day = now.hour, now.weekday()

        if hour in policy.blocked_hours:
            return _check(
                "time_restriction", False,
                f"Execution blocked during hour {hour} UTC",
                CheckSeverity.ERROR,
            )
        if day in policy.blocked_days:
            return _check(
                "time_restriction", False,
                f"Execution blocked on {DAY_NAMES[day]}",
                CheckSeverity.ERROR,
            )
        return _check("time_restriction", True, "Within allowed execution window", CheckSeverity.INFO)

    def check_approval_requirement(
        self,
        action: AutomatedAction,
        pattern: Optional[DetectedPattern],
        policy: SafetyPolicy
    ) -> SafetyCheck:
        required = self._requires_approval(action, pattern, policy)
        return _check(
            "approval_required",
            True,
            "Action requires approval before execution" if required else
            "Action can execute automatically",
            CheckSeverity.INFO,
        )

    @staticmethod
    def _requires_approval(
        action: AutomatedAction,
        pattern: Optional[DetectedPattern],
        policy: SafetyPolicy
    ) -> bool:
        return (
            action.requires_approval
            or action.action_type in policy.require_approval_types
            or (pattern is not None and pattern.severity in policy.require_approval_severities)
        )

    def check_configuration(self, action: AutomatedAction) -> tuple[SafetyCheck, Optional[Any]]:
        """Parse the action config; returns the check and the typed config (or None)."""
        try:
            validation = self.registry.validate(action)
        except ConfigurationError as e:
            return _check("configuration", False, str(e), CheckSeverity.ERROR), None

        if not validation.valid:
            return _check(
                "configuration",
                False,
                f"Configuration issues: {', '.join(validation.errors)}",
                CheckSeverity.ERROR,
            ), None
        return _check("configuration", True, "Action configuration is valid", CheckSeverity.INFO), validation.config

    async def check_target_availability(
        self,
        action: AutomatedAction,
        config: Optional[Any]
    ) -> SafetyCheck:
        if config is None:
            return _check(
                "target_availability", True,
                "Configuration invalid, target check skipped",
                CheckSeverity.INFO,
            )

        targets = self._named_targets(action.action_type, config)
        if not targets:
            return _check(
                "target_availability", True,
                "No specific target to validate",
                CheckSeverity.INFO,
            )

        unresolved = []
        for target_type, target_id in targets:
            recipients = await self.directory.resolve(action.organization_id, target_type, target_id)
            if not any(r.available for r in recipients):
                unresolved.append(f"{target_type}:{target_id}")

        if len(unresolved) == len(targets):
            return _check(
                "target_availability", False,
                f"No target is available: {', '.join(unresolved)}",
                CheckSeverity.ERROR,
            )
        if unresolved:
            return _check(
                "target_availability", False,
                f"Some targets are unavailable: {', '.join(unresolved)}",
                CheckSeverity.WARNING,
            )
        return _check("target_availability", True, "Targets are available", CheckSeverity.INFO)

    @staticmethod
    def _named_targets(action_type: ActionType, config: Any) -> list[tuple[str, str]]:
        """(target_type, target_id) pairs an action names explicitly."""
        if action_type == ActionType.REMINDER:
            if config.target:
                target_type = "person" if config.target_type == TargetType.ASSIGNED_PERSON \
                    else config.target_type.value
                return [(target_type, config.target)]
            return []
        if action_type == ActionType.ESCALATION:
            targets = []
            for level in config.escalation_chain:
                if level.target_type == "person":
                    targets.append(("person", level.target_id))
                elif level.target_type == "role":
                    targets.append(("role", level.role))
                elif level.target_id:
                    targets.append(("manager", level.target_id))
            return targets
        if action_type == ActionType.REDISTRIBUTE:
            return [("person", person_id) for person_id in config.target_pool]
        if action_type == ActionType.NOTIFY:
            return list(dict.fromkeys((r.type, r.id) for r in config.recipients))
        return []


def validate_action_safety(
    action: AutomatedAction,
    registry: ActionRegistry,
    is_production: bool = False
) -> None:
    """
    Pre-gate validation of an action definition.

    Raises:
        ConfigurationError: With every problem found
    """
    errors = []

    if not registry.is_registered(action.action_type):
        errors.append(f"Unknown action type: {getattr(action.action_type, 'value', action.action_type)}")

    try:
        TriggerType(action.trigger_type)
    except ValueError:
        errors.append(f"Unknown trigger type: {action.trigger_type}")

    if action.action_type == ActionType.CUSTOM:
        url = (action.action_config or {}).get("webhook_url")
        if url:
            problem = webhook_url_problem(url, require_https=is_production)
            if problem:
                errors.append(problem)

    if errors:
        raise ConfigurationError(f"Action {action.id} failed validation: {'; '.join(errors)}", errors)
