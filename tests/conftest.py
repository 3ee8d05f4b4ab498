"""
Self-Healing Engine - Test Fixtures
===================================

In-memory adapters, stores and a fully wired engine with a clock the
tests can move.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from healing_shared.constants import ActionType, Channel, PatternType, Severity, TriggerType
from healing_shared.schemas.actions import AutomatedAction, SafetyPolicy
from healing_shared.schemas.events import DetectedPattern, EntityRef

from healing_engine.config import Settings
from healing_engine.core.adapters import (
    DeliveryRouter,
    InMemoryDelivery,
    InMemoryDirectory,
    InMemoryOperations,
    InMemoryPatternStore,
    InMemoryWorkItems,
)
from healing_engine.core.engine import build_engine

ORG = "org-1"


class FakeClock:
    """Callable clock pinned to a moment until advanced."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # Wednesday 10:00 UTC
    return FakeClock(datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        log_json=False,
        execution_timeout_ms=5000,
        job_retry_base_delay_seconds=0.0,
        job_retry_max_delay_seconds=0.0,
    )


@pytest.fixture
def directory():
    directory = InMemoryDirectory()
    directory.add_person(ORG, "alice", "Alice", roles=["analyst"], teams=["support"], manager_id="bob")
    directory.add_person(ORG, "bob", "Bob", roles=["manager", "admin"], manager_id="erin")
    directory.add_person(ORG, "carol", "Carol", roles=["analyst"], teams=["support"], skills=["billing"])
    directory.add_person(ORG, "dave", "Dave", roles=["analyst"], teams=["support"])
    directory.add_person(ORG, "erin", "Erin", roles=["supervisor", "admin"])
    return directory


@pytest.fixture
def in_app():
    return InMemoryDelivery(Channel.IN_APP)


@pytest.fixture
def email():
    return InMemoryDelivery(Channel.EMAIL)


@pytest.fixture
def delivery(in_app, email):
    return DeliveryRouter([in_app, email, InMemoryDelivery(Channel.CHAT)])


@pytest.fixture
def pattern_store():
    return InMemoryPatternStore()


@pytest.fixture
def work_items():
    return InMemoryWorkItems()


@pytest.fixture
def operations():
    return InMemoryOperations()


@pytest.fixture
def engine(settings, pattern_store, directory, delivery, work_items, operations, clock):
    return build_engine(settings, pattern_store, directory, delivery, work_items, operations, clock=clock)


@pytest.fixture
def set_policy(engine):
    """Override the organization's safety policy."""
    def _set(**overrides: Any) -> SafetyPolicy:
        policy = SafetyPolicy(**{"min_action_cooldown_minutes": 0, **overrides})
        engine.policies.set(ORG, policy)
        return policy
    return _set


@pytest.fixture
def make_action(engine):
    """Register an action in the engine's catalog."""
    def _make(
        action_type: ActionType,
        config: dict[str, Any],
        pattern_type: Optional[PatternType] = None,
        **fields: Any
    ) -> AutomatedAction:
        trigger_config = {"pattern_type": pattern_type.value} if pattern_type else {}
        action = AutomatedAction(
            organization_id=ORG,
            name=fields.pop("name", f"{action_type.value} action"),
            trigger_type=TriggerType.PATTERN if pattern_type else TriggerType.EVENT,
            trigger_config=fields.pop("trigger_config", trigger_config),
            action_type=action_type,
            action_config=config,
            **fields,
        )
        return engine.register_action(action)
    return _make


@pytest.fixture
def make_pattern(engine, clock):
    """Store a detected pattern the engine can execute against."""
    def _make(
        pattern_type: PatternType = PatternType.STUCK_PROCESS,
        severity: Severity = Severity.MEDIUM,
        people: tuple[str, ...] = ("alice",),
        **fields: Any
    ) -> DetectedPattern:
        pattern = DetectedPattern(
            organization_id=ORG,
            type=pattern_type,
            severity=severity,
            confidence=0.8,
            occurrences=fields.pop("occurrences", 4),
            description=fields.pop("description", f"{pattern_type.value} detected"),
            affected_entities=[EntityRef(id=p, type="person", name=p.title()) for p in people],
            detected_at=clock(),
            **fields,
        )
        return engine.patterns.save(pattern)
    return _make
