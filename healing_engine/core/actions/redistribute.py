"""
Self-Healing Engine - Redistribute Action
=========================================

Moves open work items from an overloaded assignee to people in a target
pool. Supported strategies:

- round_robin: cycle through the pool in order
- least_loaded: always pick whoever currently holds the least work
- skill_based: prefer pool members with the item's required skill,
  falling back to least loaded

Every reassignment is recorded in ``rollback_data`` so the whole move can
be reversed.
"""

from healing_shared.constants import ActionType
from healing_shared.schemas.actions import (
    ActionExecution,
    AutomatedAction,
    ExecutionChange,
    ExecutionResult,
    RedistributeConfig,
)

from healing_engine.core.action_registry import ActionExecutor, ExecutionContext
from healing_engine.core.adapters import Recipient, WorkItem
from healing_engine.core.errors import TargetUnavailable


class RedistributeExecutor(ActionExecutor):
    action_type = ActionType.REDISTRIBUTE
    can_rollback = True

    def check(self, config: RedistributeConfig) -> list[str]:
        errors = []
        if len(set(config.target_pool)) != len(config.target_pool):
            errors.append("target_pool contains duplicates")
        if config.from_assignee and config.from_assignee in config.target_pool:
            errors.append("from_assignee cannot be part of target_pool")
        return errors

    async def _pool(self, config: RedistributeConfig, source: str, context: ExecutionContext) -> list[Recipient]:
        members: list[Recipient] = []
        for person_id in config.target_pool:
            for recipient in await context.resolve("person", person_id):
                if recipient.available and recipient.id != source:
                    members.append(recipient)
        return members

    @staticmethod
    def _plan(
        strategy: str,
        items: list[WorkItem],
        members: list[Recipient],
        loads: dict[str, int]
    ) -> list[tuple[WorkItem, str]]:
        plan = []
        for index, item in enumerate(items):
            if strategy == "round_robin":
                target = members[index % len(members)]
            else:
                candidates = members
                if strategy == "skill_based" and item.required_skill:
                    skilled = [m for m in members if item.required_skill in m.skills]
                    candidates = skilled or members
                target = min(candidates, key=lambda m: (loads[m.id], m.id))
            loads[target.id] += 1
            plan.append((item, target.id))
        return plan

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        config: RedistributeConfig = context.config
        source = config.from_assignee or next(iter(context.person_entities()), None)
        if source is None:
            return ExecutionResult(
                success=False,
                error_message="Could not determine the assignee to redistribute from",
            )

        members = await self._pool(config, source, context)
        if not members:
            raise TargetUnavailable("No available member in the redistribution target pool")

        work = context.services.work_items
        org = context.organization_id
        items = await work.list_items(org, source)
        if config.max_items:
            items = items[:config.max_items]
        if not items:
            return ExecutionResult(
                success=True,
                affected_entities=[source],
                metrics={"no_items_to_redistribute": 1},
            )

        loads = {m.id: await work.load(org, m.id) for m in members}
        plan = self._plan(config.strategy, items, members, loads)

        moved = []
        for item, target in plan:
            await context.perform(
                ExecutionChange(
                    entity_type="work_item",
                    entity_id=item.id,
                    change_type="update",
                    before={"assignee": source},
                    after={"assignee": target},
                ),
                lambda item_id=item.id, to=target: work.reassign(org, item_id, to),
            )
            if not context.dry_run:
                moved.append({"item_id": item.id, "to_assignee": target})

        if context.dry_run:
            return ExecutionResult(
                success=True,
                affected_entities=[source],
                metrics={"planned": len(plan), "simulated": context.simulated},
            )

        targets = sorted({m["to_assignee"] for m in moved})
        return ExecutionResult(
            success=True,
            affected_entities=[source, *targets],
            metrics={"items_moved": len(moved), "targets": len(targets), "strategy": config.strategy},
            rollback_data={
                "from_assignee": source,
                "to_assignee": targets[0] if len(targets) == 1 else targets,
                "items": moved,
            },
        )

    async def rollback(self, execution: ActionExecution, context: ExecutionContext) -> ExecutionResult:
        data = execution.rollback_data or {}
        source = data["from_assignee"]
        work = context.services.work_items
        org = context.organization_id

        for moved in data.get("items", []):
            await context.perform(
                ExecutionChange(
                    entity_type="work_item",
                    entity_id=moved["item_id"],
                    change_type="update",
                    before={"assignee": moved["to_assignee"]},
                    after={"assignee": source},
                ),
                lambda item_id=moved["item_id"]: work.reassign(org, item_id, source),
            )

        return ExecutionResult(
            success=True,
            affected_entities=[source],
            changes=list(context.changes),
            metrics={"items_restored": len(context.changes)},
        )
