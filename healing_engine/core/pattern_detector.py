"""
Self-Healing Engine - Pattern Detector
======================================

Turns raw activity signals into typed ``DetectedPattern`` records.

Detection methods are pluggable per pattern type. Built in:
- RecurrenceDetector: an entity keeps producing the same kind of signal
- IntegrationFailureDetector: failure count or error rate of an integration
- WorkloadImbalanceDetector: spread of open work across a team
- ApprovalBottleneckDetector: approvers with long or deep pending queues

A scan is all-or-nothing: if the pattern store cannot be queried, no
pattern is returned or recorded and the scan error propagates to the job
runner. Given the same signal snapshot, a scan yields the same patterns
(up to id and detection time).
"""

import statistics
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Optional

from healing_shared.constants import ActionType, PatternType, Severity
from healing_shared.schemas.events import ActivitySignal, DetectedPattern, EntityRef
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger

from healing_engine.core.adapters import PatternStoreAdapter, TimeWindow
from healing_engine.core.audit_trail import AuditTrail
from healing_engine.core.errors import PatternScanError
from healing_engine.core.stores import MappingWeightStore, PatternRepository

logger = get_logger(__name__)


def evidence_confidence(occurrences: int, threshold: int, sources: int = 1) -> float:
    """
    Confidence from evidence strength.

    Non-decreasing in both ``occurrences`` and ``sources`` (distinct systems
    corroborating the pattern).
    """
    if occurrences <= 0:
        return 0.0
    base = 1 - 0.5 ** (occurrences / max(threshold, 1))
    corroborated = 1 - (1 - base) * (0.9 ** max(sources - 1, 0))
    return round(min(1.0, corroborated), 4)


def severity_for_ratio(ratio: float) -> Severity:
    """Map how far past its threshold a finding is onto a severity."""
    if ratio >= 4:
        return Severity.CRITICAL
    if ratio >= 2.5:
        return Severity.HIGH
    if ratio >= 1.5:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class PatternFinding:
    """Detector output before identity and suggestions are attached."""
    type: PatternType
    severity: Severity
    confidence: float
    occurrences: int
    description: str
    affected_entities: list[EntityRef]
    evidence: dict[str, Any] = field(default_factory=dict)


class Detector:
    """Base class for a detection method bound to one pattern type."""

    pattern_type: PatternType

    def detect(self, signals: list[ActivitySignal]) -> list[PatternFinding]:
        raise NotImplementedError


def _group_by_entity(signals: Iterable[ActivitySignal]) -> dict[str, list[ActivitySignal]]:
    groups: dict[str, list[ActivitySignal]] = {}
    for signal in signals:
        groups.setdefault(signal.entity.id, []).append(signal)
    return dict(sorted(groups.items()))


class RecurrenceDetector(Detector):
    """An entity producing at least ``min_occurrences`` signals of one type."""

    def __init__(self, pattern_type: PatternType, min_occurrences: int = 3):
        self.pattern_type = pattern_type
        self.min_occurrences = min_occurrences

    def detect(self, signals: list[ActivitySignal]) -> list[PatternFinding]:
        findings = []
        for entity_id, group in _group_by_entity(signals).items():
            occurrences = len(group)
            if occurrences < self.min_occurrences:
                continue

            entity = group[0].entity
            sources = len({s.source for s in group})
            label = self.pattern_type.value.replace("_", " ")
            findings.append(PatternFinding(
                type=self.pattern_type,
                severity=severity_for_ratio(occurrences / self.min_occurrences),
                confidence=evidence_confidence(occurrences, self.min_occurrences, sources),
                occurrences=occurrences,
                description=f"{entity.name or entity_id}: {occurrences} {label} signals",
                affected_entities=[entity],
                evidence={
                    "total_value": round(sum(s.value for s in group), 4),
                    "sources": sorted({s.source for s in group}),
                },
            ))
        return findings


class IntegrationFailureDetector(Detector):
    """
    Integrations that keep failing.

    Signals carry ``attributes["outcome"]`` of ``success`` or ``failure``.
    """

    pattern_type = PatternType.INTEGRATION_FAILURE

    def __init__(self, failure_threshold: int = 3, error_rate_threshold: float = 0.1, min_calls: int = 10):
        self.failure_threshold = failure_threshold
        self.error_rate_threshold = error_rate_threshold
        self.min_calls = min_calls

    def detect(self, signals: list[ActivitySignal]) -> list[PatternFinding]:
        findings = []
        for entity_id, group in _group_by_entity(signals).items():
            calls = len(group)
            failures = sum(1 for s in group if s.attributes.get("outcome", "failure") != "success")
            error_rate = failures / calls if calls else 0.0

            by_count = failures >= self.failure_threshold
            by_rate = calls >= self.min_calls and error_rate >= self.error_rate_threshold
            if not (by_count or by_rate):
                continue

            ratio = failures / self.failure_threshold
            severity = Severity.CRITICAL if error_rate >= 0.5 and failures >= self.failure_threshold \
                else severity_for_ratio(ratio)
            entity = group[0].entity
            findings.append(PatternFinding(
                type=self.pattern_type,
                severity=severity,
                confidence=evidence_confidence(failures, self.failure_threshold, len({s.source for s in group})),
                occurrences=failures,
                description=(
                    f"Integration {entity.name or entity_id} failed {failures} of {calls} calls "
                    f"({error_rate:.0%} error rate)"
                ),
                affected_entities=[entity],
                evidence={"failures": failures, "calls": calls, "error_rate": round(error_rate, 4)},
            ))
        return findings


class WorkloadImbalanceDetector(Detector):
    """
    Uneven open work within a team.

    Signals carry a person's open-item count as ``value`` and optionally the
    team in ``attributes["team"]``. The latest signal per person wins.
    """

    pattern_type = PatternType.WORKLOAD_IMBALANCE

    def __init__(self, min_score: float = 40.0, min_people: int = 2):
        self.min_score = min_score
        self.min_people = min_people

    @staticmethod
    def _severity(score: float) -> Severity:
        if score >= 80:
            return Severity.CRITICAL
        if score >= 60:
            return Severity.HIGH
        if score >= 40:
            return Severity.MEDIUM
        return Severity.LOW

    def detect(self, signals: list[ActivitySignal]) -> list[PatternFinding]:
        teams: dict[str, dict[str, ActivitySignal]] = {}
        ordered = sorted(signals, key=lambda s: (s.occurred_at, s.entity.id))
        for signal in ordered:
            team = str(signal.attributes.get("team", "organization"))
            teams.setdefault(team, {})[signal.entity.id] = signal

        findings = []
        for team, latest in sorted(teams.items()):
            if len(latest) < self.min_people:
                continue
            loads = [s.value for s in latest.values()]
            mean = statistics.fmean(loads)
            if mean <= 0:
                continue
            std_dev = statistics.pstdev(loads)
            score = min(100.0, std_dev / mean * 100)
            if score < self.min_score:
                continue

            overloaded = sorted(
                (s for s in latest.values() if s.value > mean),
                key=lambda s: (-s.value, s.entity.id),
            )
            findings.append(PatternFinding(
                type=self.pattern_type,
                severity=self._severity(score),
                confidence=evidence_confidence(len(latest), 3, len({s.source for s in latest.values()})),
                occurrences=len(overloaded),
                description=(
                    f"Workload imbalance in {team}: score {score:.0f}, "
                    f"{len(overloaded)} of {len(latest)} people above average"
                ),
                affected_entities=[s.entity for s in overloaded],
                evidence={
                    "team": team,
                    "imbalance_score": round(score, 2),
                    "mean_load": round(mean, 2),
                    "std_dev": round(std_dev, 2),
                    "range": max(loads) - min(loads),
                },
            ))
        return findings


class ApprovalBottleneckDetector(Detector):
    """
    Approvers with deep or slow pending queues.

    Each signal is one pending approval; ``value`` is hours waited.
    """

    pattern_type = PatternType.APPROVAL_BOTTLENECK

    def __init__(self, pending_threshold: int = 5, wait_hours_threshold: float = 24.0):
        self.pending_threshold = pending_threshold
        self.wait_hours_threshold = wait_hours_threshold

    def detect(self, signals: list[ActivitySignal]) -> list[PatternFinding]:
        findings = []
        for entity_id, group in _group_by_entity(signals).items():
            pending = len(group)
            average_wait = statistics.fmean(s.value for s in group)
            if pending < self.pending_threshold and average_wait < self.wait_hours_threshold:
                continue

            ratio = max(pending / self.pending_threshold, average_wait / self.wait_hours_threshold)
            entity = group[0].entity
            findings.append(PatternFinding(
                type=self.pattern_type,
                severity=severity_for_ratio(ratio),
                confidence=evidence_confidence(pending, self.pending_threshold, len({s.source for s in group})),
                occurrences=pending,
                description=(
                    f"{entity.name or entity_id} has {pending} pending approvals "
                    f"averaging {average_wait:.1f}h"
                ),
                affected_entities=[entity],
                evidence={"pending": pending, "average_wait_hours": round(average_wait, 2)},
            ))
        return findings


@dataclass
class DetectionResult:
    patterns: list[DetectedPattern]
    scan_duration_ms: float


class PatternDetector:
    """
    Runs the registered detectors over one organization's signals.

    Suggested actions on each pattern come from learned mapping weights,
    falling back to ``PATTERN_ACTION_MAP``.
    """

    PATTERN_ACTION_MAP: dict[PatternType, list[ActionType]] = {
        PatternType.STUCK_PROCESS: [ActionType.REMINDER, ActionType.ESCALATION],
        PatternType.INTEGRATION_FAILURE: [ActionType.RETRY, ActionType.NOTIFY],
        PatternType.WORKLOAD_IMBALANCE: [ActionType.REDISTRIBUTE, ActionType.NOTIFY],
        PatternType.APPROVAL_BOTTLENECK: [ActionType.REMINDER, ActionType.ESCALATION],
        PatternType.RESPONSE_DELAY: [ActionType.REMINDER, ActionType.ESCALATION],
        PatternType.REPEATED_ERRORS: [ActionType.NOTIFY, ActionType.RETRY],
        PatternType.COMMUNICATION_GAP: [ActionType.NOTIFY, ActionType.REMINDER],
    }

    def __init__(
        self,
        store: PatternStoreAdapter,
        audit: AuditTrail,
        repository: PatternRepository,
        weights: MappingWeightStore,
        clock: Clock = utc_now
    ):
        self._store = store
        self._audit = audit
        self._repository = repository
        self._weights = weights
        self._clock = clock
        self._detectors: dict[PatternType, Detector] = {
            pattern_type: RecurrenceDetector(pattern_type) for pattern_type in PatternType
        }
        for detector in (
            IntegrationFailureDetector(),
            WorkloadImbalanceDetector(),
            ApprovalBottleneckDetector(),
        ):
            self.register_detector(detector)

    def register_detector(self, detector: Detector) -> None:
        """Replace the detection method for a pattern type."""
        self._detectors[detector.pattern_type] = detector

    def suggested_actions(self, organization_id: str, pattern_type: PatternType) -> list[str]:
        learned = [w.action_type for w in self._weights.weights_for(organization_id, pattern_type.value)]
        defaults = [a.value for a in self.PATTERN_ACTION_MAP.get(pattern_type, [])]
        return learned + [a for a in defaults if a not in learned]

    async def detect(
        self,
        organization_id: str,
        pattern_types: Optional[list[PatternType]] = None,
        time_window_minutes: int = 60
    ) -> DetectionResult:
        """
        Scan one organization's signals for patterns.

        Args:
            organization_id: Organization to scan
            pattern_types: Restrict to these types (all registered if None)
            time_window_minutes: Look-back window ending now

        Returns:
            DetectionResult with the recorded patterns and scan duration

        Raises:
            PatternScanError: If the pattern store query fails
        """
        started = time.perf_counter()
        now = self._clock()
        window = TimeWindow(start=now - timedelta(minutes=time_window_minutes), end=now)
        types = sorted(
            set(pattern_types) if pattern_types else set(self._detectors),
            key=lambda t: t.value,
        )

        try:
            signals = await self._store.query_activity_signals(organization_id, window)
        except Exception as e:
            logger.error(
                f"Pattern store query failed for {organization_id}: {e}",
                extra={"organization_id": organization_id}
            )
            raise PatternScanError(f"Pattern store query failed: {e}") from e

        findings: list[PatternFinding] = []
        for pattern_type in types:
            detector = self._detectors.get(pattern_type)
            if detector is None:
                continue
            typed = [s for s in signals if s.signal_type == pattern_type]
            if typed:
                findings.extend(detector.detect(typed))

        findings.sort(key=lambda f: (
            f.type.value,
            f.affected_entities[0].id if f.affected_entities else "",
        ))

        patterns = [
            DetectedPattern(
                organization_id=organization_id,
                type=f.type,
                severity=f.severity,
                confidence=f.confidence,
                occurrences=f.occurrences,
                description=f.description,
                affected_entities=f.affected_entities,
                evidence=f.evidence,
                suggested_actions=self.suggested_actions(organization_id, f.type),
                detected_at=now,
            )
            for f in findings
        ]

        for pattern in patterns:
            self._repository.save(pattern)
            self._audit.pattern_detected(pattern)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Pattern scan found {len(patterns)} patterns in {len(signals)} signals",
            extra={
                "organization_id": organization_id,
                "pattern_count": len(patterns),
                "signal_count": len(signals),
                "scan_duration_ms": round(duration_ms, 2),
            }
        )
        return DetectionResult(patterns=patterns, scan_duration_ms=duration_ms)
