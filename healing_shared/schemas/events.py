"""
Self-Healing Engine - Event Schemas
===================================

Pydantic models for the records that flow through the detection loop:
activity signals read from the pattern store, the patterns detected from
them, and the audit entries written for every step.
"""

from datetime import datetime
from typing import Optional, Any
from pydantic import BaseModel, Field
import uuid

from healing_shared.constants import AuditAction, PatternType, Severity
from healing_shared.utils.clock import utc_now


def new_id() -> str:
    """Generate a record identifier."""
    return str(uuid.uuid4())


class EntityRef(BaseModel):
    """Reference to an organizational entity (person, team, process, integration...)."""

    id: str = Field(..., description="Entity identifier")
    type: str = Field(..., description="Entity type, e.g. person, integration")
    name: str = Field(default="", description="Display name")

    class Config:
        frozen = True


class ActivitySignal(BaseModel):
    """
    One raw observation returned by the pattern store.

    Signals are grouped by the detectors; a single signal never becomes a
    pattern on its own.
    """

    signal_type: PatternType = Field(..., description="Pattern family this signal feeds")
    entity: EntityRef = Field(..., description="Entity the signal is about")
    occurred_at: datetime = Field(default_factory=utc_now)
    value: float = Field(default=1.0, description="Magnitude (count, minutes, load...)")
    source: str = Field(default="activity", description="System that produced the signal")
    attributes: dict[str, Any] = Field(default_factory=dict)


class DetectedPattern(BaseModel):
    """
    A recurring anomaly found in organizational activity.

    Immutable once created. Corrections are new patterns.
    """

    id: str = Field(default_factory=new_id)
    organization_id: str = Field(...)
    type: PatternType = Field(...)
    severity: Severity = Field(...)
    confidence: float = Field(..., ge=0.0, le=1.0)
    occurrences: int = Field(..., ge=0)
    description: str = Field(default="")
    affected_entities: list[EntityRef] = Field(default_factory=list)
    evidence: dict[str, Any] = Field(default_factory=dict)
    suggested_actions: list[str] = Field(
        default_factory=list,
        description="Action types ordered by learned effectiveness"
    )
    detected_at: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True

    def fingerprint(self) -> dict[str, Any]:
        """Pattern content without identity or timestamp."""
        return self.model_dump(exclude={"id", "detected_at"}, mode="json")


class AuditEntry(BaseModel):
    """Append-only audit record."""

    id: str = Field(default_factory=new_id)
    organization_id: str = Field(...)
    action: AuditAction = Field(...)
    entity_type: str = Field(..., description="pattern, execution, action, approval")
    entity_id: str = Field(...)
    performed_by: str = Field(default="system")
    details: dict[str, Any] = Field(default_factory=dict)
    simulated: bool = Field(default=False, description="Recorded by a dry run")
    correlation_id: Optional[str] = Field(None)
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True
