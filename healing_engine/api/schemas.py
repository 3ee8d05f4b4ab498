"""
Self-Healing Engine - API Schemas
=================================
"""

from typing import Any, Optional
from pydantic import BaseModel, Field

from healing_shared.constants import ActionType, TriggerType
from healing_shared.schemas.actions import ActionExecution, ApprovalRequest
from healing_shared.schemas.events import AuditEntry

from healing_engine.core.stores import MappingWeight


class JobAccepted(BaseModel):
    """Returned when a job is queued rather than awaited."""
    job_id: str
    job_type: str
    organization_id: str
    status: str = "accepted"


class DecisionRequest(BaseModel):
    """Approve / reject body."""
    decided_by: str = Field(..., min_length=1)
    reason: Optional[str] = None


class OperatorRequest(BaseModel):
    """Rollback / cancel body."""
    performed_by: str = Field(default="system", min_length=1)


class AssignRequest(BaseModel):
    """Hand an approval request to a reviewer."""
    assigned_to: str = Field(..., min_length=1)
    assigned_by: str = Field(default="system", min_length=1)


class AcknowledgeRequest(BaseModel):
    """Take ownership of an escalation for one pattern."""
    organization_id: str = Field(..., min_length=1)
    pattern_id: str = Field(..., min_length=1)
    acknowledged_by: str = Field(..., min_length=1)


class MappingApproval(BaseModel):
    organization_id: str = Field(..., min_length=1)
    approved_by: str = Field(..., min_length=1)


class ActionCreate(BaseModel):
    """Definition of an automated action to register."""
    organization_id: str = Field(..., min_length=1)
    name: str = Field(default="")
    trigger_type: TriggerType = Field(default=TriggerType.PATTERN)
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType = Field(...)
    action_config: dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    is_active: bool = True


class ExecutionList(BaseModel):
    executions: list[ActionExecution]
    count: int


class ApprovalList(BaseModel):
    approvals: list[ApprovalRequest]
    count: int


class AuditList(BaseModel):
    entries: list[AuditEntry]
    count: int



class MappingList(BaseModel):
    mappings: list[MappingWeight]
    count: int
