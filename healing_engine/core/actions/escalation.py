"""
Self-Healing Engine - Escalation Action
=======================================

Walks an ordered escalation chain until one handler is reached.

Each trigger for the same (action, pattern) resumes after the last level
reached, so a pattern that keeps recurring climbs the chain. When every
level has been used the action succeeds without sending anything. Once
someone acknowledges the escalation for a pattern, later triggers stop
climbing until the escalation is rolled back.
"""

from datetime import datetime
from typing import Any, Optional

from healing_shared.constants import ActionType
from healing_shared.schemas.actions import (
    ActionExecution,
    AutomatedAction,
    EscalationConfig,
    EscalationLevel,
    ExecutionChange,
    ExecutionResult,
)
from healing_shared.utils.logging import get_logger

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext, render_template
from healing_engine.core.adapters import DeliveryMessage, Recipient
from healing_engine.core.errors import InvalidTransition
from healing_engine.core.stores import KeyedStateStore

logger = get_logger(__name__)


class EscalationExecutor(ActionExecutor):
    action_type = ActionType.ESCALATION
    can_rollback = True

    STATE_NAMESPACE = "escalation"

    async def _candidates(self, level: EscalationLevel, context: ExecutionContext) -> list[Recipient]:
        if level.target_type == "person":
            return await context.resolve("person", level.target_id)
        if level.target_type == "role":
            return await context.resolve("role", level.role)

        # manager of the named person, else of the pattern people, first available wins
        return await context.managers_of(level.target_id)

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: EscalationConfig = context.config
        state_store = context.services.state
        key = context.pattern_key

        state = state_store.get(self.STATE_NAMESPACE, action.id, key) or {"level": 0, "escalated_to": []}
        if state.get("acknowledged_by"):
            return ExecutionResult(
                success=True,
                affected_entities=list(state["escalated_to"]),
                metrics={"acknowledged": 1, "escalation_level": state["level"]},
            )

        remaining = [step for step in config.escalation_chain if step.level > state["level"]]
        if not remaining:
            return ExecutionResult(
                success=True,
                affected_entities=list(state["escalated_to"]),
                metrics={"already_at_highest_level": 1},
            )

        skipped = 0
        for step in remaining:
            candidates = [r for r in await self._candidates(step, context) if r.available]
            if not candidates:
                skipped += 1
                logger.info(
                    f"Escalation level {step.level} has no available target",
                    extra={"action_id": action.id, "level": step.level}
                )
                if config.skip_unavailable:
                    continue
                break

            reached = await self._notify_first(step, candidates, config, context)
            if reached is None:
                skipped += 1
                if config.skip_unavailable:
                    continue
                break

            metrics = {"escalation_level": step.level, "levels_skipped": skipped, "notifications_sent": 1}
            if context.dry_run:
                metrics["simulated"] = context.simulated
                return ExecutionResult(success=True, affected_entities=[reached.id], metrics=metrics)

            state_store.set(self.STATE_NAMESPACE, action.id, key, {
                "level": step.level,
                "escalated_to": [*state["escalated_to"], reached.id],
                "escalated_at": context.clock().isoformat(),
            })
            return ExecutionResult(
                success=True,
                affected_entities=[reached.id],
                metrics=metrics,
                rollback_data={
                    "pattern_key": key,
                    "level": step.level,
                    "previous_level": state["level"],
                    "target_id": reached.id,
                    "channel": config.channel.value,
                },
            )

        return ExecutionResult(
            success=False,
            metrics={"levels_skipped": skipped},
            error_message=f"Escalation chain exhausted after {len(remaining)} levels without reaching a handler",
        )

    def acknowledge(
        self,
        state_store: KeyedStateStore,
        action_id: str,
        pattern_key: str,
        acknowledged_by: str,
        at: datetime
    ) -> dict[str, Any]:
        """
        Mark the escalation for a pattern as taken.

        Raises:
            InvalidTransition: Nothing has been escalated for the pattern
        """
        state = state_store.get(self.STATE_NAMESPACE, action_id, pattern_key)
        if not state:
            raise InvalidTransition(f"No active escalation of {action_id} for {pattern_key}")
        state["acknowledged_by"] = acknowledged_by
        state["acknowledged_at"] = at.isoformat()
        state_store.set(self.STATE_NAMESPACE, action_id, pattern_key, state)
        return state

    async def _notify_first(
        self,
        step: EscalationLevel,
        candidates: list[Recipient],
        config: EscalationConfig,
        context: ExecutionContext
    ) -> Optional[Recipient]:
        body = render_template(config.message_template, context.template_values(level=step.level))
        if config.include_context and context.pattern:
            body = f"{body}\n\nPattern: {context.pattern.type.value} ({context.pattern.severity.value}), " \
                   f"{context.pattern.occurrences} occurrences"
        message = DeliveryMessage(
            subject=f"Escalation level {step.level}: {context.action.name or context.action.id}",
            body=body,
            severity="warning",
            metadata={"level": step.level, "wait_minutes": step.wait_minutes},
        )
        for candidate in candidates:
            if await context.deliver(candidate, config.channel, message, entity_type="escalation"):
                return candidate
        return None

    async def rollback(self, execution: ActionExecution, context: ExecutionContext) -> ExecutionResult:
        data = execution.rollback_data or {}
        recipients = await context.resolve("person", data["target_id"])
        message = DeliveryMessage(
            subject="Escalation withdrawn",
            body=f"The level {data['level']} escalation for action {execution.action_id} has been withdrawn.",
        )
        for recipient in recipients:
            await context.deliver(recipient, data["channel"], message, entity_type="escalation")

        await context.perform(
            ExecutionChange(
                entity_type="escalation_state",
                entity_id=f"{execution.action_id}:{data['pattern_key']}",
                change_type="update",
                before={"level": data["level"]},
                after={"level": data["previous_level"]},
            ),
            self._reset_state(context, execution.action_id, data),
        )
        return ExecutionResult(
            success=True,
            affected_entities=[data["target_id"]],
            changes=list(context.changes),
            metrics={"cancelled_level": data["level"]},
        )

    def _reset_state(self, context: ExecutionContext, action_id: str, data: dict):
        async def reset() -> None:
            store = context.services.state
            previous = data["previous_level"]
            if previous:
                state = store.get(self.STATE_NAMESPACE, action_id, data["pattern_key"]) or {}
                state["level"] = previous
                state.pop("acknowledged_by", None)
                state.pop("acknowledged_at", None)
                store.set(self.STATE_NAMESPACE, action_id, data["pattern_key"], state)
            else:
                store.delete(self.STATE_NAMESPACE, action_id, data["pattern_key"])
        return reset
