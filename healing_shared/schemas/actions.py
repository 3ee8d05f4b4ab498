"""
Self-Healing Engine - Action Schemas
====================================

Pydantic models for automated actions and everything that happens to them:
per-kind configuration variants, executions and their results, safety
policy and gate results, and approval requests.

Action configuration arrives as a plain mapping on ``AutomatedAction`` and
is parsed exactly once, by the safety gate's configuration check, into the
variant matching the action type (``ACTION_CONFIG_MODELS``).
"""

from datetime import datetime
from typing import Literal, Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator

from healing_shared.constants import (
    ActionType,
    ApprovalPriority,
    ApprovalStatus,
    Channel,
    CheckSeverity,
    Defaults,
    ExecutionStatus,
    REMINDER_CHANNELS,
    Severity,
    TargetType,
    TriggerType,
    TriggeredBy,
)
from healing_shared.schemas.events import new_id
from healing_shared.utils.clock import utc_now


# =============================================================================
# ACTION CONFIGURATION VARIANTS
# =============================================================================

class ActionConfigBase(BaseModel):
    """Fields common to every action kind."""

    timeout_ms: Optional[int] = Field(
        None,
        gt=0,
        description="Per-execution timeout, overrides the engine default"
    )


class ReminderConfig(ActionConfigBase):
    """Remind people about an open pattern."""

    type: Literal["reminder"] = "reminder"
    target_type: TargetType = Field(default=TargetType.ASSIGNED_PERSON)
    target: Optional[str] = Field(None, description="Person id, role or team")
    message_template: str = Field(..., min_length=1)
    channel: Channel = Field(default=Channel.IN_APP)
    repeat_interval_minutes: Optional[int] = Field(None, ge=1)
    max_reminders: int = Field(default=1, ge=1)

    @field_validator("channel")
    @classmethod
    def channel_supported(cls, value: Channel) -> Channel:
        if value not in REMINDER_CHANNELS:
            supported = ", ".join(sorted(c.value for c in REMINDER_CHANNELS))
            raise ValueError(f"reminder channel must be one of {supported}")
        return value

    @model_validator(mode="after")
    def target_present(self) -> "ReminderConfig":
        if self.target_type in (TargetType.PERSON, TargetType.ROLE, TargetType.TEAM) and not self.target:
            raise ValueError(f"target is required for target_type {self.target_type.value}")
        return self


class EscalationLevel(BaseModel):
    """One step of an escalation chain."""

    level: int = Field(..., ge=1)
    target_type: Literal["person", "role", "manager"] = Field(...)
    target_id: Optional[str] = None
    role: Optional[str] = None
    wait_minutes: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def target_complete(self) -> "EscalationLevel":
        if self.target_type == "person" and not self.target_id:
            raise ValueError(f"level {self.level}: person target requires target_id")
        if self.target_type == "role" and not self.role:
            raise ValueError(f"level {self.level}: role target requires role")
        return self


class EscalationConfig(ActionConfigBase):
    """Walk an ordered chain of handlers until one is reached."""

    type: Literal["escalation"] = "escalation"
    escalation_chain: list[EscalationLevel] = Field(..., min_length=1)
    skip_unavailable: bool = Field(default=True)
    include_context: bool = Field(default=True)
    channel: Channel = Field(default=Channel.IN_APP)
    message_template: str = Field(
        default="Escalation (level {{level}}): {{pattern.description}}"
    )

    @field_validator("escalation_chain")
    @classmethod
    def unique_levels(cls, chain: list[EscalationLevel]) -> list[EscalationLevel]:
        levels = [step.level for step in chain]
        if len(levels) != len(set(levels)):
            raise ValueError("escalation_chain contains duplicate levels")
        return sorted(chain, key=lambda step: step.level)


class RetryActionConfig(ActionConfigBase):
    """Re-invoke a failed job, integration call, or process step."""

    type: Literal["retry"] = "retry"
    target_type: Literal["job", "integration", "process_step"] = Field(...)
    target_id: Optional[str] = Field(None, description="Defaults to the pattern's matching entity")
    max_attempts: int = Field(default=3, ge=1, le=Defaults.MAX_RETRY_ATTEMPTS)
    delay_seconds: float = Field(default=300, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class RedistributeConfig(ActionConfigBase):
    """Move open work from one assignee to others."""

    type: Literal["redistribute"] = "redistribute"
    strategy: Literal["round_robin", "least_loaded", "skill_based"] = Field(default="least_loaded")
    target_pool: list[str] = Field(..., min_length=1)
    from_assignee: Optional[str] = Field(None, description="Defaults to the pattern's first person")
    max_items: Optional[int] = Field(None, ge=1)
    preserve_history: bool = Field(default=True)


class NotifyRecipient(BaseModel):
    """Who a notification goes to and over which channel."""

    type: Literal["person", "role", "team"] = "person"
    id: str = Field(..., min_length=1)
    channel: Channel = Field(default=Channel.IN_APP)


class NotifyConfig(ActionConfigBase):
    """Send a one-off notification."""

    type: Literal["notify"] = "notify"
    recipients: list[NotifyRecipient] = Field(..., min_length=1)
    message_template: str = Field(..., min_length=1)
    severity: Literal["info", "warning", "critical"] = Field(default="info")
    include_data: bool = Field(default=False)


class CustomConfig(ActionConfigBase):
    """Call an operator-registered webhook."""

    type: Literal["custom"] = "custom"
    webhook_url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT"] = Field(default="POST")
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)


ACTION_CONFIG_MODELS: dict[ActionType, type[ActionConfigBase]] = {
    ActionType.REMINDER: ReminderConfig,
    ActionType.ESCALATION: EscalationConfig,
    ActionType.RETRY: RetryActionConfig,
    ActionType.REDISTRIBUTE: RedistributeConfig,
    ActionType.NOTIFY: NotifyConfig,
    ActionType.CUSTOM: CustomConfig,
}


# =============================================================================
# ACTIONS AND EXECUTIONS
# =============================================================================

class AutomatedAction(BaseModel):
    """An organization's configured remediation."""

    id: str = Field(default_factory=new_id)
    organization_id: str = Field(...)
    name: str = Field(default="")
    trigger_type: TriggerType = Field(default=TriggerType.PATTERN)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType = Field(...)
    action_config: dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = Field(default=False)
    is_active: bool = Field(default=True)

    def matches_pattern_type(self, pattern_type: str) -> bool:
        """Whether this action is triggered by patterns of the given type."""
        return (
            self.is_active
            and self.trigger_type == TriggerType.PATTERN
            and self.trigger_config.get("pattern_type") == pattern_type
        )


class ExecutionChange(BaseModel):
    """One side effect actually performed by an executor."""

    entity_type: str = Field(...)
    entity_id: str = Field(...)
    change_type: Literal["create", "update", "delete", "notify"] = Field(...)
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class ExecutionResult(BaseModel):
    """What an executor reports back."""

    success: bool = Field(...)
    affected_entities: list[str] = Field(default_factory=list)
    changes: list[ExecutionChange] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None


class ActionExecution(BaseModel):
    """One attempt at running an automated action."""

    id: str = Field(default_factory=new_id)
    action_id: str = Field(...)
    organization_id: str = Field(...)
    triggered_by: TriggeredBy = Field(default=TriggeredBy.MANUAL)
    pattern_id: Optional[str] = None
    status: ExecutionStatus = Field(default=ExecutionStatus.CREATED)
    dry_run: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    result: Optional[ExecutionResult] = None
    error_message: Optional[str] = None
    blocked_reason: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


# =============================================================================
# SAFETY
# =============================================================================

class SafetyPolicy(BaseModel):
    """Per-organization admission limits."""

    max_actions_per_hour: int = Field(default=Defaults.MAX_ACTIONS_PER_HOUR, ge=0)
    max_concurrent_executions: int = Field(default=Defaults.MAX_CONCURRENT_EXECUTIONS, ge=0)
    max_affected_entities: int = Field(default=Defaults.MAX_AFFECTED_ENTITIES, ge=0)
    min_action_cooldown_minutes: int = Field(default=Defaults.MIN_ACTION_COOLDOWN_MINUTES, ge=0)
    require_approval_types: list[ActionType] = Field(
        default_factory=lambda: [ActionType.REDISTRIBUTE]
    )
    require_approval_severities: list[Severity] = Field(
        default_factory=lambda: [Severity.CRITICAL]
    )
    blocked_hours: list[int] = Field(default_factory=list, description="UTC hours 0-23")
    blocked_days: list[int] = Field(default_factory=list, description="0=Monday .. 6=Sunday")
    dry_run_mode: bool = Field(default=False)


class SafetyCheck(BaseModel):
    """Outcome of one check in the battery."""

    name: str
    passed: bool
    severity: CheckSeverity
    message: str


class SafetyCheckResult(BaseModel):
    """Aggregated gate decision."""

    passed: bool
    checks: list[SafetyCheck] = Field(default_factory=list)
    blocked_reason: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    requires_approval: bool = False
    # Parsed config variant from the configuration check, handed to the executor
    config: Optional[Any] = Field(default=None, exclude=True)


# =============================================================================
# APPROVALS
# =============================================================================

class ApproverRef(BaseModel):
    """One approver in an escalation chain."""

    target_type: Literal["person", "role"] = "person"
    target_id: str = Field(..., min_length=1)


class ApprovalRequest(BaseModel):
    """Human sign-off request for a gated execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str = Field(...)
    organization_id: str = Field(...)
    action_id: str = Field(...)
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    priority: ApprovalPriority = Field(default=ApprovalPriority.NORMAL)
    requested_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime = Field(...)
    escalation_chain: list[ApproverRef] = Field(default_factory=list)
    current_escalation_level: int = Field(default=0, ge=0)
    level_started_at: datetime = Field(default_factory=utc_now)
    assigned_to: Optional[str] = Field(None, description="Person asked to review ahead of the chain")
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_reason: Optional[str] = None

    @property
    def current_approver(self) -> Optional[ApproverRef]:
        if self.current_escalation_level < len(self.escalation_chain):
            return self.escalation_chain[self.current_escalation_level]
        return None
