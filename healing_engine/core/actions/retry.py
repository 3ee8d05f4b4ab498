"""
Self-Healing Engine - Retry Action
==================================

Re-invokes a failed job, integration call, or process step.

One attempt is made per execution. Attempt counts and the next allowed
attempt time are kept per (action, target) so repeated triggers back off
exponentially and stop at ``max_attempts``.
"""

from datetime import datetime, timedelta
from typing import Optional

from healing_shared.constants import ActionType, Defaults
from healing_shared.schemas.actions import (
    ActionExecution,
    AutomatedAction,
    ExecutionChange,
    ExecutionResult,
    RetryActionConfig,
)
from healing_shared.utils.retry import calculate_delay

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext
from healing_engine.core.adapters import OperationOutcome


class RetryExecutor(ActionExecutor):
    action_type = ActionType.RETRY
    can_rollback = True

    STATE_NAMESPACE = "retry"

    @staticmethod
    def _target_id(config: RetryActionConfig, context: ExecutionContext) -> Optional[str]:
        if config.target_id:
            return config.target_id
        if context.pattern:
            for entity in context.pattern.affected_entities:
                if entity.type == config.target_type:
                    return entity.id
        return None

    @staticmethod
    def backoff_seconds(config: RetryActionConfig, attempt: int) -> float:
        """Delay after the given (1-based) attempt, capped at one hour."""
        return calculate_delay(
            attempt - 1,
            config.delay_seconds,
            Defaults.MAX_RETRY_DELAY_SECONDS,
            config.backoff_multiplier,
        )

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: RetryActionConfig = context.config
        target_id = self._target_id(config, context)
        if not target_id:
            return ExecutionResult(
                success=False,
                error_message=f"Could not determine {config.target_type} to retry",
            )

        state_store = context.services.state
        state = state_store.get(self.STATE_NAMESPACE, action.id, target_id) or {"attempts": 0}
        attempt = state["attempts"] + 1

        if attempt > config.max_attempts:
            return ExecutionResult(
                success=False,
                affected_entities=[target_id],
                metrics={"attempts_made": state["attempts"], "max_attempts": config.max_attempts},
                error_message=f"Max retry attempts ({config.max_attempts}) exceeded",
            )

        now = context.clock()
        next_at = state.get("next_attempt_at")
        if next_at and now < datetime.fromisoformat(next_at):
            remaining = (datetime.fromisoformat(next_at) - now).total_seconds()
            return ExecutionResult(
                success=True,
                affected_entities=[target_id],
                metrics={"scheduled_for_later": 1, "delay_seconds": round(remaining, 3)},
            )

        operations = context.services.operations
        org = context.organization_id
        previous_status = await operations.get_status(org, config.target_type, target_id)

        def record(outcome: OperationOutcome) -> ExecutionChange:
            return ExecutionChange(
                entity_type=config.target_type,
                entity_id=target_id,
                change_type="update",
                before={"status": outcome.previous_status},
                after={"status": outcome.new_status, "retry_attempt": attempt},
            )

        outcome = await context.perform(
            ExecutionChange(
                entity_type=config.target_type,
                entity_id=target_id,
                change_type="update",
                before={"status": previous_status},
                after={"retry_attempt": attempt},
            ),
            lambda: operations.retry(org, config.target_type, target_id),
            finalize=record,
        )

        if outcome is None:
            return ExecutionResult(
                success=True,
                affected_entities=[target_id],
                metrics={"attempt": attempt, "simulated": context.simulated},
            )

        if outcome.success:
            state_store.delete(self.STATE_NAMESPACE, action.id, target_id)
            return ExecutionResult(
                success=True,
                affected_entities=[target_id],
                metrics={"attempts_until_success": attempt},
                rollback_data={
                    "target_type": config.target_type,
                    "target_id": target_id,
                    "previous_status": outcome.previous_status,
                },
            )

        delay = self.backoff_seconds(config, attempt)
        state_store.set(self.STATE_NAMESPACE, action.id, target_id, {
            "attempts": attempt,
            "last_attempt_at": now.isoformat(),
            "next_attempt_at": (now + timedelta(seconds=delay)).isoformat(),
        })
        return ExecutionResult(
            success=False,
            affected_entities=[target_id],
            metrics={
                "attempt": attempt,
                "max_attempts": config.max_attempts,
                "next_retry_delay_seconds": delay if attempt < config.max_attempts else 0,
            },
            error_message=outcome.error or f"Retry attempt {attempt} failed",
        )

    async def rollback(self, execution: ActionExecution, context: ExecutionContext) -> ExecutionResult:
        data = execution.rollback_data or {}
        operations = context.services.operations
        org = context.organization_id
        target_type, target_id = data["target_type"], data["target_id"]
        current = await operations.get_status(org, target_type, target_id)

        await context.perform(
            ExecutionChange(
                entity_type=target_type,
                entity_id=target_id,
                change_type="update",
                before={"status": current},
                after={"status": data["previous_status"]},
            ),
            lambda: operations.set_status(org, target_type, target_id, data["previous_status"]),
        )
        return ExecutionResult(
            success=True,
            affected_entities=[target_id],
            changes=list(context.changes),
            metrics={"restored": 1},
        )
