"""
Self-Healing Engine - Built-in Executors
========================================
"""

from typing import Optional

from healing_engine.core.action_registry import ActionRegistry
from healing_engine.core.actions.custom import CustomExecutor
from healing_engine.core.actions.escalation import EscalationExecutor
from healing_engine.core.actions.notify import NotifyExecutor
from healing_engine.core.actions.redistribute import RedistributeExecutor
from healing_engine.core.actions.reminder import ReminderExecutor
from healing_engine.core.actions.retry import RetryExecutor
from healing_engine.core.adapters import webhook_url_problem
from healing_engine.core.stores import KeyedStateStore


def build_default_registry(
    state: Optional[KeyedStateStore] = None,
    custom: Optional[CustomExecutor] = None
) -> ActionRegistry:
    """Registry with every built-in executor, frozen."""
    registry = ActionRegistry(state)
    for executor in (
        ReminderExecutor(),
        EscalationExecutor(),
        RetryExecutor(),
        RedistributeExecutor(),
        NotifyExecutor(),
        custom or CustomExecutor(),
    ):
        registry.register(executor)
    registry.freeze()
    return registry


__all__ = [
    "build_default_registry",
    "CustomExecutor",
    "EscalationExecutor",
    "NotifyExecutor",
    "RedistributeExecutor",
    "ReminderExecutor",
    "RetryExecutor",
    "webhook_url_problem",
]
