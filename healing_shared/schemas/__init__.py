"""
Self-Healing Engine - Shared Schemas
====================================

Pydantic models shared by the engine core, its adapters and its API.
"""

from healing_shared.schemas.events import (
    ActivitySignal,
    AuditEntry,
    DetectedPattern,
    EntityRef,
    new_id,
)
from healing_shared.schemas.jobs import (
    JOB_MODELS,
    ActionExecutionJob,
    ApprovalMaintenanceJob,
    Job,
    JobResult,
    LearningAnalysisJob,
    PatternScanJob,
)
from healing_shared.schemas.actions import (
    ACTION_CONFIG_MODELS,
    ActionExecution,
    ApprovalRequest,
    ApproverRef,
    AutomatedAction,
    CustomConfig,
    EscalationConfig,
    EscalationLevel,
    ExecutionChange,
    ExecutionResult,
    NotifyConfig,
    NotifyRecipient,
    RedistributeConfig,
    ReminderConfig,
    RetryActionConfig,
    SafetyCheck,
    SafetyCheckResult,
    SafetyPolicy,
)

__all__ = [
    # Events
    "ActivitySignal",
    "AuditEntry",
    "DetectedPattern",
    "EntityRef",
    "new_id",
    # Actions
    "ACTION_CONFIG_MODELS",
    "ActionExecution",
    "ApprovalRequest",
    "ApproverRef",
    "AutomatedAction",
    "CustomConfig",
    "EscalationConfig",
    "EscalationLevel",
    "ExecutionChange",
    "ExecutionResult",
    "NotifyConfig",
    "NotifyRecipient",
    "RedistributeConfig",
    "ReminderConfig",
    "RetryActionConfig",
    "SafetyCheck",
    "SafetyCheckResult",
    "SafetyPolicy",
    # Jobs
    "JOB_MODELS",
    "ActionExecutionJob",
    "ApprovalMaintenanceJob",
    "Job",
    "JobResult",
    "LearningAnalysisJob",
    "PatternScanJob",
]
