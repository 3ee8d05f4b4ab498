"""
Self-Healing Engine - Reminder Action
=====================================

Reminds the people behind a pattern. Repeat tracking is keyed by
(action, pattern) in the registry's state store: once ``max_reminders``
rounds have gone out for a pattern, further triggers succeed without
sending anything.

Repeat state lives in memory and resets on restart; a restarted engine
may send up to ``max_reminders`` more rounds for an open pattern.
"""

from datetime import timedelta

from healing_shared.constants import ActionType, TargetType
from healing_shared.schemas.actions import AutomatedAction, ExecutionResult, ReminderConfig

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext, render_template
from healing_engine.core.adapters import DeliveryMessage, Recipient
from healing_engine.core.errors import TargetUnavailable


class ReminderExecutor(ActionExecutor):
    action_type = ActionType.REMINDER
    can_rollback = False

    STATE_NAMESPACE = "reminder"

    async def _recipients(self, config: ReminderConfig, context: ExecutionContext) -> list[Recipient]:
        if config.target_type == TargetType.ASSIGNED_PERSON:
            people = [config.target] if config.target else context.person_entities()
            resolved: list[Recipient] = []
            for person_id in people:
                resolved.extend(await context.resolve("person", person_id))
            return resolved
        if config.target_type == TargetType.MANAGER:
            return await context.managers_of(config.target)
        return await context.resolve(config.target_type.value, config.target)

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: ReminderConfig = context.config
        state_store = context.services.state
        key = context.pattern_key

        state = state_store.get(self.STATE_NAMESPACE, action.id, key) or {"count": 0}
        if state["count"] >= config.max_reminders:
            return ExecutionResult(
                success=True,
                metrics={"skipped": 1, "max_reminders_reached": 1, "reminders_sent": state["count"]},
            )

        recipients = await self._recipients(config, context)
        available = [r for r in recipients if r.available]
        if not available:
            raise TargetUnavailable(
                f"No available recipient for reminder target "
                f"{config.target_type.value}:{config.target or 'pattern'}"
            )

        number = state["count"] + 1
        body = render_template(
            config.message_template,
            context.template_values(reminder={"number": number, "max": config.max_reminders}),
        )
        message = DeliveryMessage(
            subject=f"Reminder: {action.name or 'action required'}",
            body=body,
            metadata={"action_id": action.id, "pattern_id": context.pattern_key, "reminder": number},
        )

        sent = 0
        for recipient in available:
            if await context.deliver(recipient, config.channel, message, entity_type="reminder"):
                sent += 1

        metrics = {
            "sent": sent,
            "recipients": len(available),
            "unavailable_recipients": len(recipients) - len(available),
            "reminder_number": number,
        }
        if context.dry_run:
            metrics["simulated"] = context.simulated
            return ExecutionResult(success=True, affected_entities=[r.id for r in available], metrics=metrics)

        if sent == 0:
            return ExecutionResult(
                success=False,
                affected_entities=[r.id for r in available],
                metrics=metrics,
                error_message="Reminder was not accepted by any recipient",
            )

        now = context.clock()
        state = {"count": number, "last_sent_at": now.isoformat()}
        if config.repeat_interval_minutes and number < config.max_reminders:
            next_due = now + timedelta(minutes=config.repeat_interval_minutes)
            state["next_due_at"] = next_due.isoformat()
            metrics["next_reminder_due_at"] = next_due.isoformat()
        state_store.set(self.STATE_NAMESPACE, action.id, key, state)

        return ExecutionResult(
            success=True,
            affected_entities=[r.id for r in available],
            metrics=metrics,
        )

