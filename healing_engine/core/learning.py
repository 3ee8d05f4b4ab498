"""
Self-Healing Engine - Learning Feedback Loop
============================================

Batch analysis of past detections and executions. For each pattern type
it measures how often the pattern occurs, which action types resolved it
and how reliably, and writes pattern -> action weights that the pattern
detector uses to order suggested actions.

Only reads the audit trail and executions that got past gating; never
modifies either.
"""

import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from healing_shared.constants import ActionType, AuditAction, ExecutionStatus
from healing_shared.schemas.actions import ActionExecution
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.stores import (
    ActionCatalog,
    ExecutionStore,
    MappingWeight,
    MappingWeightStore,
    PatternRepository,
)

logger = get_logger(__name__)

# Executions that actually ran
RAN_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.ROLLED_BACK,
})

TREND_MIN_SAMPLES = 10
SEASONALITY_MIN_SAMPLES = 20


@dataclass
class LearningConfig:
    min_occurrences: int = 5
    min_success_rate: float = 0.7
    confidence_threshold: float = 0.6
    analysis_window_days: int = 30


class ResolutionInfo(BaseModel):
    """How one action type fared against one pattern type."""
    action_type: str
    usage_count: int
    success_rate: float
    avg_minutes_to_resolution: float


class PatternAnalysis(BaseModel):
    pattern_type: str
    occurrences: int
    executions: int
    success_rate: float
    avg_resolution_minutes: float
    common_resolutions: list[ResolutionInfo] = Field(default_factory=list)
    trend: str = "stable"
    peak_hours: list[int] = Field(default_factory=list)
    peak_days: list[int] = Field(default_factory=list)


class ResolutionSuggestion(BaseModel):
    kind: str
    pattern_type: str
    description: str
    confidence: float
    based_on_history: int
    suggested_action: dict[str, Any]


class LearningResult(BaseModel):
    new_pattern_mappings: list[MappingWeight] = Field(default_factory=list)
    updated_mappings: list[MappingWeight] = Field(default_factory=list)
    suggestions: list[ResolutionSuggestion] = Field(default_factory=list)
    analyses: list[PatternAnalysis] = Field(default_factory=list)


def calculate_trend(timestamps: list[datetime]) -> str:
    """Compare the occurrence rate of the second half against the first."""
    if len(timestamps) < TREND_MIN_SAMPLES:
        return "stable"

    ordered = sorted(timestamps)
    midpoint = len(ordered) // 2
    first, second = ordered[:midpoint], ordered[midpoint:]

    def rate(chunk: list[datetime]) -> float:
        days = (chunk[-1] - chunk[0]).total_seconds() / 86400
        return len(chunk) / max(days, 1.0)

    ratio = rate(second) / max(rate(first), 0.1)
    if ratio > 1.2:
        return "increasing"
    if ratio < 0.8:
        return "decreasing"
    return "stable"


def find_peaks(timestamps: list[datetime]) -> tuple[list[int], list[int]]:
    """Hours (UTC) and weekdays with more than 1.5x the average occurrences."""
    if len(timestamps) < SEASONALITY_MIN_SAMPLES:
        return [], []

    hours = [0] * 24
    days = [0] * 7
    for moment in timestamps:
        hours[moment.hour] += 1
        days[moment.weekday()] += 1

    hour_threshold = len(timestamps) / 24 * 1.5
    day_threshold = len(timestamps) / 7 * 1.5
    return (
        [h for h, count in enumerate(hours) if count > hour_threshold],
        [d for d, count in enumerate(days) if count > day_threshold],
    )


def mapping_confidence(resolution: ResolutionInfo, occurrences: int) -> float:
    """0.5 * success + 0.3 * usage share + 0.2 * resolution-time consistency."""
    usage = min(1.0, resolution.usage_count / max(occurrences, 1))
    consistency = 1.0 if 0 < resolution.avg_minutes_to_resolution < 60 else 0.5
    return round(0.5 * resolution.success_rate + 0.3 * usage + 0.2 * consistency, 4)


def default_action_config(action_type: str, **overrides: Any) -> dict[str, Any]:
    """
    Starting configuration for a suggested action.

    Redistribute has no default target_pool; pass one in ``overrides``.
    """
    defaults: dict[str, dict[str, Any]] = {
        ActionType.REMINDER.value: {
            "type": "reminder",
            "target_type": "assigned_person",
            "message_template": "Please review: {{pattern.description}}",
            "channel": "in_app",
            "repeat_interval_minutes": 60,
            "max_reminders": 3,
        },
        ActionType.ESCALATION.value: {
            "type": "escalation",
            "escalation_chain": [
                {"level": 1, "target_type": "manager", "wait_minutes": 60},
                {"level": 2, "target_type": "role", "role": "supervisor", "wait_minutes": 120},
            ],
            "include_context": True,
            "skip_unavailable": True,
        },
        ActionType.RETRY.value: {
            "type": "retry",
            "target_type": "job",
            "max_attempts": 3,
            "delay_seconds": 300,
            "backoff_multiplier": 2,
        },
        ActionType.REDISTRIBUTE.value: {
            "type": "redistribute",
            "strategy": "least_loaded",
            "preserve_history": True,
        },
        ActionType.NOTIFY.value: {
            "type": "notify",
            "recipients": [{"type": "role", "id": "admin", "channel": "email"}],
            "message_template": "{{pattern.description}}",
            "severity": "warning",
        },
    }
    return {**defaults.get(action_type, {"type": action_type}), **overrides}


class LearningService:
    """Derives pattern -> action weights from execution history."""

    def __init__(
        self,
        executions: ExecutionStore,
        catalog: ActionCatalog,
        patterns: PatternRepository,
        audit: AuditTrail,
        weights: MappingWeightStore,
        config: Optional[LearningConfig] = None,
        clock: Clock = utc_now
    ):
        self.executions = executions
        self.catalog = catalog
        self.patterns = patterns
        self.audit = audit
        self.weights = weights
        self.config = config or LearningConfig()
        self._clock = clock

    def analyze(self, organization_id: str, window_days: Optional[int] = None) -> LearningResult:
        """
        Analyze the trailing window and update mapping weights.

        Args:
            organization_id: Organization to analyze
            window_days: History to consider (default from config)

        Returns:
            LearningResult with new/updated mappings, suggestions and the
            per-pattern-type analyses
        """
        window_days = window_days or self.config.analysis_window_days
        now = self._clock()
        since = now - timedelta(days=window_days)

        detections = self._detections_by_type(organization_id, since)
        executions = self._executions_by_type(organization_id, since)

        result = LearningResult()
        for pattern_type in sorted(set(detections) | set(executions)):
            analysis = self._analyze_type(
                pattern_type,
                detections.get(pattern_type, []),
                executions.get(pattern_type, []),
            )
            result.analyses.append(analysis)

            for resolution in analysis.common_resolutions:
                if resolution.usage_count < self.config.min_occurrences:
                    continue
                mapping = MappingWeight(
                    pattern_type=pattern_type,
                    action_type=resolution.action_type,
                    weight=mapping_confidence(resolution, max(analysis.occurrences, analysis.executions)),
                    samples=resolution.usage_count,
                    success_rate=resolution.success_rate,
                    updated_at=now,
                )
                if self.weights.upsert(organization_id, mapping):
                    result.new_pattern_mappings.append(mapping)
                else:
                    result.updated_mappings.append(mapping)

            result.suggestions.extend(self._suggest(organization_id, analysis))

        logger.info(
            "Learning analysis completed",
            extra={
                "organization_id": organization_id,
                "pattern_types": len(result.analyses),
                "new_mappings": len(result.new_pattern_mappings),
                "updated_mappings": len(result.updated_mappings),
                "suggestions": len(result.suggestions),
            }
        )
        return result

    def approve_mapping(
        self,
        organization_id: str,
        pattern_type: str,
        action_type: str,
        approved_by: str
    ) -> MappingWeight:
        """
        Record a person's sign-off on a learned mapping.

        Later analyses keep refreshing the weight; the approval stays.

        Raises:
            NotFoundError: No mapping for the pair
        """
        mapping = self.weights.approve(organization_id, pattern_type, action_type, approved_by, self._clock())
        self.audit.record(
            organization_id,
            AuditAction.MAPPING_APPROVED,
            "mapping",
            f"{pattern_type}:{action_type}",
            {"weight": mapping.weight, "samples": mapping.samples, "success_rate": mapping.success_rate},
            performed_by=approved_by,
        )
        logger.info(
            f"Mapping {pattern_type} -> {action_type} approved by {approved_by}",
            extra={"organization_id": organization_id, "weight": mapping.weight}
        )
        return mapping

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------

    def _detections_by_type(self, organization_id: str, since: datetime) -> dict[str, list[datetime]]:
        grouped: dict[str, list[datetime]] = {}
        for entry in self.audit.query(organization_id, action=AuditAction.PATTERN_DETECTED, since=since):
            pattern_type = entry.details.get("pattern_type")
            if pattern_type:
                grouped.setdefault(pattern_type, []).append(entry.created_at)
        return grouped

    def _executions_by_type(
        self,
        organization_id: str,
        since: datetime
    ) -> dict[str, list[tuple[ActionExecution, str]]]:
        grouped: dict[str, list[tuple[ActionExecution, str]]] = {}
        history = self.executions.query(organization_id, since=since, limit=1_000_000)
        for execution in history:
            if execution.status not in RAN_STATUSES or execution.dry_run:
                continue
            action = self.catalog.get(execution.action_id)
            if action is None:
                continue
            pattern_type = self._pattern_type(execution) or action.trigger_config.get("pattern_type")
            if pattern_type:
                grouped.setdefault(pattern_type, []).append((execution, action.action_type.value))
        return grouped

    def _pattern_type(self, execution: ActionExecution) -> Optional[str]:
        if not execution.pattern_id:
            return None
        pattern = self.patterns.get(execution.pattern_id)
        return pattern.type.value if pattern else None

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def _analyze_type(
        self,
        pattern_type: str,
        detected_at: list[datetime],
        executions: list[tuple[ActionExecution, str]]
    ) -> PatternAnalysis:
        by_action: dict[str, list[ActionExecution]] = {}
        for execution, action_type in executions:
            by_action.setdefault(action_type, []).append(execution)

        resolutions = []
        for action_type, runs in by_action.items():
            succeeded = [e for e in runs if e.status == ExecutionStatus.COMPLETED]
            minutes = [e.duration_ms / 60000 for e in succeeded if e.duration_ms is not None]
            resolutions.append(ResolutionInfo(
                action_type=action_type,
                usage_count=len(runs),
                success_rate=len(succeeded) / len(runs),
                avg_minutes_to_resolution=statistics.fmean(minutes) if minutes else 0.0,
            ))
        resolutions.sort(key=lambda r: (-r.usage_count, r.action_type))

        runs = [e for e, _ in executions]
        succeeded = [e for e in runs if e.status == ExecutionStatus.COMPLETED]
        resolution_minutes = [e.duration_ms / 60000 for e in succeeded if e.duration_ms is not None]

        # Without detection history (manual-only runs) fall back to execution times
        timeline = detected_at or [e.started_at for e in runs]
        peak_hours, peak_days = find_peaks(timeline)

        return PatternAnalysis(
            pattern_type=pattern_type,
            occurrences=len(detected_at),
            executions=len(runs),
            success_rate=len(succeeded) / len(runs) if runs else 0.0,
            avg_resolution_minutes=statistics.fmean(resolution_minutes) if resolution_minutes else 0.0,
            common_resolutions=resolutions,
            trend=calculate_trend(timeline),
            peak_hours=peak_hours,
            peak_days=peak_days,
        )

    def _known_pool(self, organization_id: str) -> list[str]:
        """People already used as redistribution targets in this organization."""
        pool = set()
        for action in self.catalog.for_organization(organization_id):
            if action.action_type == ActionType.REDISTRIBUTE:
                pool.update(action.action_config.get("target_pool") or [])
        return sorted(pool)

    def _suggest(self, organization_id: str, analysis: PatternAnalysis) -> list[ResolutionSuggestion]:
        configured = {
            a.action_type.value for a in self.catalog.for_organization(organization_id)
            if a.trigger_config.get("pattern_type") == analysis.pattern_type
        }
        history = max(analysis.occurrences, analysis.executions)
        suggestions = []

        for resolution in analysis.common_resolutions:
            if resolution.action_type in configured:
                continue
            if resolution.success_rate < self.config.min_success_rate:
                continue
            confidence = mapping_confidence(resolution, history)
            if confidence < self.config.confidence_threshold:
                continue
            overrides = {}
            if resolution.action_type == ActionType.REDISTRIBUTE.value:
                pool = self._known_pool(organization_id)
                if not pool:
                    continue
                overrides["target_pool"] = pool
            suggestions.append(ResolutionSuggestion(
                kind="resolution",
                pattern_type=analysis.pattern_type,
                description=(
                    f"{analysis.pattern_type} ({history} occurrences, "
                    f"{round(resolution.success_rate * 100)}% resolved by {resolution.action_type})"
                ),
                confidence=confidence,
                based_on_history=history,
                suggested_action={
                    "name": f"Auto-{resolution.action_type} for {analysis.pattern_type}",
                    "trigger_type": "pattern",
                    "trigger_config": {"pattern_type": analysis.pattern_type},
                    "action_type": resolution.action_type,
                    "action_config": default_action_config(resolution.action_type, **overrides),
                    "requires_approval": confidence < 0.8,
                    "is_active": False,
                },
            ))

        if analysis.trend == "increasing" and history >= self.config.min_occurrences:
            suggestions.append(ResolutionSuggestion(
                kind="trend_alert",
                pattern_type=analysis.pattern_type,
                description=f"{analysis.pattern_type} is increasing in frequency",
                confidence=0.7,
                based_on_history=history,
                suggested_action={
                    "name": f"Alert on increasing {analysis.pattern_type}",
                    "trigger_type": "pattern",
                    "trigger_config": {"pattern_type": analysis.pattern_type},
                    "action_type": ActionType.NOTIFY.value,
                    "action_config": {
                        **default_action_config(ActionType.NOTIFY.value),
                        "message_template": f"Pattern {analysis.pattern_type} is occurring more frequently",
                        "include_data": True,
                    },
                    "requires_approval": False,
                    "is_active": False,
                },
            ))

        if analysis.peak_hours:
            check_hour = (analysis.peak_hours[0] - 1) % 24
            suggestions.append(ResolutionSuggestion(
                kind="preventive_check",
                pattern_type=analysis.pattern_type,
                description=f"{analysis.pattern_type} peaks during hours {analysis.peak_hours} UTC",
                confidence=0.6,
                based_on_history=history,
                suggested_action={
                    "name": f"Preventive check for {analysis.pattern_type}",
                    "trigger_type": "schedule",
                    "trigger_config": {"cron_expression": f"0 {check_hour} * * *", "timezone": "UTC"},
                    "action_type": ActionType.NOTIFY.value,
                    "action_config": default_action_config(ActionType.NOTIFY.value),
                    "requires_approval": False,
                    "is_active": False,
                },
            ))

        return suggestions


__all__ = [
    "LearningConfig",
    "LearningResult",
    "LearningService",
    "PatternAnalysis",
    "ResolutionInfo",
    "ResolutionSuggestion",
    "calculate_trend",
    "default_action_config",
    "find_peaks",
    "mapping_confidence",
]
