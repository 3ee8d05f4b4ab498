"""
Self-Healing Engine - Action Executor Registry
==============================================

Dispatch table from action type to executor.

Every executor exposes the same contract:
- ``validate(config)``: structural and semantic checks; parses the raw
  mapping into the typed config variant for its kind
- ``execute(action, context)``: performs side effects, returns ExecutionResult
- ``can_rollback`` / ``rollback(execution, context)``

Executors perform every externally visible effect through
``ExecutionContext.perform``, which writes the audit entry first, skips the
effect in dry-run mode, and appends the change only once the effect has
happened. ``context.changes`` is therefore exactly what was done, even if
the executor is cancelled by a timeout half-way through.

The registry is filled at startup and frozen; lookups of an unregistered
type raise ConfigurationError.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import ValidationError

from healing_shared.constants import ActionType, AuditAction, Channel
from healing_shared.schemas.actions import (
    ACTION_CONFIG_MODELS,
    ActionConfigBase,
    ActionExecution,
    AutomatedAction,
    ExecutionChange,
    ExecutionResult,
)
from healing_shared.schemas.events import DetectedPattern
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.adapters import (
    DeliveryMessage,
    DeliveryRouter,
    DirectoryAdapter,
    OperationAdapter,
    Recipient,
    WorkItemAdapter,
)
from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.errors import ConfigurationError, DeliveryFailure, RegistryFrozenError
from healing_engine.core.stores import KeyedStateStore

logger = get_logger(__name__)

T = TypeVar("T")

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{{dotted.path}}`` placeholders; unknown paths render empty."""
    def lookup(match: re.Match) -> str:
        current: Any = values
        for part in match.group(1).split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return ""
        return "" if current is None else str(current)

    return _PLACEHOLDER.sub(lookup, template)


@dataclass
class ConfigValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    config: Optional[ActionConfigBase] = None


@dataclass
class ExecutorServices:
    """Collaborators available to executors."""
    directory: DirectoryAdapter
    delivery: DeliveryRouter
    work_items: WorkItemAdapter
    operations: OperationAdapter
    state: KeyedStateStore
    is_production: bool = False
    webhook_timeout_seconds: float = 10.0


@dataclass
class ExecutionContext:
    """Everything one execution attempt needs, plus its running change log."""
    execution: ActionExecution
    action: AutomatedAction
    config: Any
    pattern: Optional[DetectedPattern]
    services: ExecutorServices
    audit: AuditTrail
    clock: Clock = utc_now
    changes: list[ExecutionChange] = field(default_factory=list)
    simulated: int = 0

    @property
    def organization_id(self) -> str:
        return self.execution.organization_id

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    @property
    def pattern_key(self) -> str:
        """Key for per-pattern executor state; manual runs key on the execution."""
        return self.pattern.id if self.pattern else self.execution.id

    def template_values(self, **extra: Any) -> dict[str, Any]:
        values: dict[str, Any] = {
            "organization_id": self.organization_id,
            "action": {
                "id": self.action.id,
                "name": self.action.name,
                "type": self.action.action_type.value,
            },
            "pattern": self.pattern.model_dump(mode="json") if self.pattern else {},
            "execution": {"id": self.execution.id},
        }
        values.update(extra)
        return values

    def person_entities(self) -> list[str]:
        if not self.pattern:
            return []
        return [e.id for e in self.pattern.affected_entities if e.type == "person"]

    async def perform(
        self,
        intent: ExecutionChange,
        effect: Callable[[], Awaitable[T]],
        finalize: Optional[Callable[[T], Optional[ExecutionChange]]] = None
    ) -> Optional[T]:
        """
        Audit, then perform one side effect.

        Args:
            intent: Change the effect is about to make (written to the audit trail)
            effect: Coroutine factory performing the effect
            finalize: Builds the recorded change from the effect's result;
                returning None records nothing (the effect did not happen)

        Returns:
            The effect's result, or None in dry-run mode
        """
        self.audit.record(
            self.organization_id,
            AuditAction.ACTION_EXECUTED,
            "execution",
            self.execution.id,
            {
                "action_id": self.action.id,
                "change": intent.model_dump(mode="json"),
            },
            simulated=self.dry_run,
        )
        if self.dry_run:
            self.simulated += 1
            return None

        result = await effect()
        change = finalize(result) if finalize else intent
        if change is not None:
            self.changes.append(change)
        return result

    async def deliver(
        self,
        recipient: Recipient,
        channel: Channel,
        message: DeliveryMessage,
        entity_type: str = "notification"
    ) -> bool:
        """
        Deliver a message over a channel.

        Returns True when delivered (or simulated). Adapter I/O errors are
        raised as DeliveryFailure.
        """
        adapter = self.services.delivery.get(channel)
        if adapter is None:
            raise ConfigurationError(f"No delivery adapter for channel {Channel(channel).value}")

        intent = ExecutionChange(
            entity_type=entity_type,
            entity_id=recipient.id,
            change_type="notify",
            after={"channel": Channel(channel).value, "subject": message.subject},
        )

        async def send() -> bool:
            try:
                return await adapter.deliver(recipient, message)
            except DeliveryFailure:
                raise
            except Exception as e:
                raise DeliveryFailure(
                    f"{Channel(channel).value} delivery to {recipient.id} failed: {e}"
                ) from e

        delivered = await self.perform(
            intent,
            send,
            finalize=lambda ok: intent if ok else None,
        )
        return True if self.dry_run else bool(delivered)

    async def resolve(self, target_type: str, target_id: str) -> list[Recipient]:
        return await self.services.directory.resolve(self.organization_id, target_type, target_id)

    async def managers_of(self, person_id: Optional[str] = None) -> list[Recipient]:
        """Managers of the named person, else of every person on the pattern, deduplicated."""
        subjects = [person_id] if person_id else self.person_entities()
        managers: dict[str, Recipient] = {}
        for subject in subjects:
            manager = await self.services.directory.manager_of(self.organization_id, subject)
            if manager is not None:
                managers.setdefault(manager.id, manager)
        return list(managers.values())


class ActionExecutor:
    """Base class for one action kind."""

    action_type: ActionType
    can_rollback: bool = False

    def validate(self, config: dict[str, Any]) -> ConfigValidation:
        """Parse ``config`` into this kind's variant and run semantic checks."""
        data = dict(config or {})
        declared = data.setdefault("type", self.action_type.value)
        if declared != self.action_type.value:
            return ConfigValidation(
                valid=False,
                errors=[f"config type '{declared}' does not match action type '{self.action_type.value}'"],
            )

        model = ACTION_CONFIG_MODELS[self.action_type]
        try:
            parsed = model.model_validate(data)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            ]
            return ConfigValidation(valid=False, errors=errors)

        errors = self.check(parsed)
        return ConfigValidation(valid=not errors, errors=errors, config=parsed if not errors else None)

    def check(self, config: Any) -> list[str]:
        """Semantic checks beyond the schema."""
        return []

    async def execute(self, action: AutomatedAction, context: ExecutionContext) -> ExecutionResult:
        raise NotImplementedError

    async def rollback(self, execution: ActionExecution, context: ExecutionContext) -> ExecutionResult:
        raise NotImplementedError(f"{self.action_type.value} actions cannot be rolled back")


class ActionRegistry:
    """Process-wide action type -> executor table."""

    def __init__(self, state: Optional[KeyedStateStore] = None):
        self._executors: dict[ActionType, ActionExecutor] = {}
        self._frozen = False
        self.state = state or KeyedStateStore()

    def register(self, executor: ActionExecutor) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register {executor.action_type.value}: registry is frozen"
            )
        self._executors[executor.action_type] = executor
        logger.debug(f"Registered executor for {executor.action_type.value}")

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def action_types(self) -> list[ActionType]:
        return list(self._executors)

    def is_registered(self, action_type: str) -> bool:
        try:
            return ActionType(action_type) in self._executors
        except ValueError:
            return False

    def get(self, action_type: str) -> ActionExecutor:
        """
        Executor for an action type.

        Raises:
            ConfigurationError: If no executor is registered for the type
        """
        if not self.is_registered(action_type):
            value = getattr(action_type, "value", action_type)
            raise ConfigurationError(f"No executor registered for action type '{value}'")
        return self._executors[ActionType(action_type)]

    def validate(self, action: AutomatedAction) -> ConfigValidation:
        """Validate an action's config with its executor."""
        return self.get(action.action_type).validate(action.action_config)
