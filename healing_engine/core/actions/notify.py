"""
Self-Healing Engine - Notify Action
===================================
"""

from healing_shared.constants import ActionType
from healing_shared.schemas.actions import AutomatedAction, ExecutionResult, NotifyConfig

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext, render_template
from healing_engine.core.adapters import DeliveryMessage
from healing_engine.core.errors import TargetUnavailable


class NotifyExecutor(ActionExecutor):
    """One-off notification to people, roles or teams. Not reversible."""

    action_type = ActionType.NOTIFY
    can_rollback = False

    def check(self, config: NotifyConfig) -> list[str]:
        seen = set()
        errors = []
        for recipient in config.recipients:
            key = (recipient.type, recipient.id, recipient.channel)
            if key in seen:
                errors.append(f"duplicate recipient {recipient.type}:{recipient.id} on {recipient.channel.value}")
            seen.add(key)
        return errors

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: NotifyConfig = context.config

        extra = {}
        if config.include_data and context.pattern:
            extra["evidence"] = context.pattern.evidence
        message = DeliveryMessage(
            subject=f"[{config.severity}] {action.name or 'Self-healing notification'}",
            body=render_template(config.message_template, context.template_values()),
            severity=config.severity,
            metadata={"action_id": action.id, "pattern_id": context.pattern_key, **extra},
        )

        sent = 0
        unresolved: list[str] = []
        reached: list[str] = []
        delivered_to: set[tuple[str, str]] = set()
        for target in config.recipients:
            recipients = [r for r in await context.resolve(target.type, target.id) if r.available]
            if not recipients:
                unresolved.append(f"{target.type}:{target.id}")
                continue
            for recipient in recipients:
                key = (recipient.id, target.channel.value)
                if key in delivered_to:
                    continue
                delivered_to.add(key)
                if await context.deliver(recipient, target.channel, message):
                    sent += 1
                    reached.append(recipient.id)

        if not delivered_to:
            raise TargetUnavailable(f"No notification recipient could be resolved: {', '.join(unresolved)}")

        metrics = {
            "sent": sent,
            "attempted": len(delivered_to),
            "unresolved_targets": len(unresolved),
        }
        if context.dry_run:
            metrics["simulated"] = context.simulated

        success = sent > 0
        return ExecutionResult(
            success=success,
            affected_entities=sorted(set(reached)),
            metrics=metrics,
            error_message=None if success else "Notification was not accepted by any recipient",
        )
