"""
Self-Healing Engine - Job Schemas
=================================

The four background operations the engine runs, and the result record
every job returns.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field

from healing_shared.constants import JobType, PatternType, Timing, TriggeredBy
from healing_shared.schemas.events import new_id
from healing_shared.utils.clock import utc_now


class JobBase(BaseModel):
    job_id: str = Field(default_factory=new_id)
    organization_id: str = Field(..., min_length=1)


class PatternScanJob(JobBase):
    """Scan an organization's signals, optionally running matching actions."""

    job_type: Literal["pattern_scan"] = "pattern_scan"
    pattern_types: Optional[list[PatternType]] = None
    time_window_minutes: int = Field(default=Timing.DEFAULT_SCAN_WINDOW_MINUTES, ge=1)
    auto_execute: bool = False
    dry_run: bool = False


class ActionExecutionJob(JobBase):
    """Gate and run one automated action."""

    job_type: Literal["action_execution"] = "action_execution"
    action_id: str = Field(..., min_length=1)
    execution_id: Optional[str] = None
    pattern_id: Optional[str] = None
    dry_run: bool = False
    triggered_by: TriggeredBy = TriggeredBy.MANUAL


class ApprovalMaintenanceJob(JobBase):
    """Expire and escalate open approval requests."""

    job_type: Literal["approval_maintenance"] = "approval_maintenance"


class LearningAnalysisJob(JobBase):
    """Recompute pattern -> action weights."""

    job_type: Literal["learning_analysis"] = "learning_analysis"
    analysis_window_days: int = Field(default=30, ge=1)


Job = Annotated[
    Union[PatternScanJob, ActionExecutionJob, ApprovalMaintenanceJob, LearningAnalysisJob],
    Field(discriminator="job_type"),
]

JOB_MODELS: dict[JobType, type[JobBase]] = {
    JobType.PATTERN_SCAN: PatternScanJob,
    JobType.ACTION_EXECUTION: ActionExecutionJob,
    JobType.APPROVAL_MAINTENANCE: ApprovalMaintenanceJob,
    JobType.LEARNING_ANALYSIS: LearningAnalysisJob,
}


class JobResult(BaseModel):
    """Outcome of one job run."""

    job_id: str
    job_type: JobType
    organization_id: str
    success: bool
    duration_ms: float
    attempts: int = 1
    completed_at: datetime = Field(default_factory=utc_now)
    error: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
