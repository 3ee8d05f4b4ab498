"""
Self-Healing Engine - Shared Constants
======================================

Enumerations and default values used across the engine.
Defaults can be overridden via environment variables (see config.py).
"""

from enum import Enum


class Severity(str, Enum):
    """Severity of a detected pattern."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PatternType(str, Enum):
    """Recurring organizational anomalies the detector knows about."""
    STUCK_PROCESS = "stuck_process"
    INTEGRATION_FAILURE = "integration_failure"
    WORKLOAD_IMBALANCE = "workload_imbalance"
    APPROVAL_BOTTLENECK = "approval_bottleneck"
    RESPONSE_DELAY = "response_delay"
    REPEATED_ERRORS = "repeated_errors"
    COMMUNICATION_GAP = "communication_gap"


class TriggerType(str, Enum):
    """What causes an automated action to fire."""
    PATTERN = "pattern"
    THRESHOLD = "threshold"
    SCHEDULE = "schedule"
    EVENT = "event"


class ActionType(str, Enum):
    """Closed set of remediation kinds."""
    REMINDER = "reminder"
    ESCALATION = "escalation"
    RETRY = "retry"
    REDISTRIBUTE = "redistribute"
    NOTIFY = "notify"
    CUSTOM = "custom"


class TriggeredBy(str, Enum):
    """Origin of an execution."""
    SCHEDULE = "schedule"
    PATTERN = "pattern"
    MANUAL = "manual"


class ExecutionStatus(str, Enum):
    """Lifecycle of an action execution."""
    CREATED = "created"
    GATING = "gating"
    BLOCKED = "blocked"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


# Legal moves of the execution state machine
EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.CREATED: frozenset({ExecutionStatus.GATING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.GATING: frozenset({
        ExecutionStatus.BLOCKED,
        ExecutionStatus.AWAITING_APPROVAL,
        ExecutionStatus.EXECUTING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.AWAITING_APPROVAL: frozenset({
        ExecutionStatus.EXECUTING,
        ExecutionStatus.BLOCKED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.EXECUTING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset({ExecutionStatus.ROLLED_BACK}),
    ExecutionStatus.BLOCKED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.ROLLED_BACK: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

# Executions that were admitted by the gate (used for rate limiting)
ADMITTED_STATUSES = frozenset({
    ExecutionStatus.AWAITING_APPROVAL,
    ExecutionStatus.EXECUTING,
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.ROLLED_BACK,
})


class ApprovalStatus(str, Enum):
    """Lifecycle of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    ESCALATED = "escalated"


OPEN_APPROVAL_STATUSES = frozenset({ApprovalStatus.PENDING, ApprovalStatus.ESCALATED})


class ApprovalPriority(str, Enum):
    """Ordering hint for approvers."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    ApprovalPriority.LOW: 0,
    ApprovalPriority.NORMAL: 1,
    ApprovalPriority.HIGH: 2,
    ApprovalPriority.URGENT: 3,
}


class CheckSeverity(str, Enum):
    """Severity attached to a safety check outcome."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


BLOCKING_SEVERITIES = frozenset({CheckSeverity.ERROR, CheckSeverity.CRITICAL})


class AuditAction(str, Enum):
    """Kinds of audit entries."""
    PATTERN_DETECTED = "pattern_detected"
    SAFETY_PASS = "safety_pass"
    SAFETY_BLOCK = "safety_block"
    ACTION_TRIGGERED = "action_triggered"
    ACTION_EXECUTED = "action_executed"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_ESCALATED = "approval_escalated"
    APPROVAL_ASSIGNED = "approval_assigned"
    ESCALATION_ACKNOWLEDGED = "escalation_acknowledged"
    MAPPING_APPROVED = "mapping_approved"
    ROLLBACK_COMPLETED = "rollback_completed"
    EXECUTION_BLOCKED = "execution_blocked"
    EXECUTION_CANCELLED = "execution_cancelled"
    CONFIGURATION_REJECTED = "configuration_rejected"


class Channel(str, Enum):
    """Delivery channels."""
    EMAIL = "email"
    CHAT = "chat"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


# Channels a reminder may use
REMINDER_CHANNELS = frozenset({Channel.EMAIL, Channel.CHAT, Channel.IN_APP})


class TargetType(str, Enum):
    """How an action names who it is aimed at."""
    PERSON = "person"
    ROLE = "role"
    TEAM = "team"
    MANAGER = "manager"
    ASSIGNED_PERSON = "assigned_person"


class JobType(str, Enum):
    """Background operations submitted to the job runner."""
    PATTERN_SCAN = "pattern_scan"
    ACTION_EXECUTION = "action_execution"
    APPROVAL_MAINTENANCE = "approval_maintenance"
    LEARNING_ANALYSIS = "learning_analysis"


class Defaults:
    """Default policy and timing values."""
    MAX_ACTIONS_PER_HOUR = 100
    MAX_CONCURRENT_EXECUTIONS = 10
    MAX_AFFECTED_ENTITIES = 50
    MIN_ACTION_COOLDOWN_MINUTES = 5
    EXECUTION_TIMEOUT_MS = 60_000
    MAX_RETRY_ATTEMPTS = 10
    MAX_RETRY_DELAY_SECONDS = 3600
    APPROVAL_EXPIRATION_HOURS = 24
    APPROVAL_ESCALATE_AFTER_HOURS = 4
    APPROVAL_AUTO_APPROVE_LOW_PRIORITY_HOURS = 0


class Timing:
    """Recurring job intervals."""
    PATTERN_SCAN_INTERVAL_SECONDS = 15 * 60
    APPROVAL_MAINTENANCE_INTERVAL_SECONDS = 60 * 60
    LEARNING_ANALYSIS_INTERVAL_SECONDS = 24 * 60 * 60
    DEFAULT_SCAN_WINDOW_MINUTES = 60
