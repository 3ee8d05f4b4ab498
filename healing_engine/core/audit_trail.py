"""
Self-Healing Engine - Audit Trail
=================================

Append-only record of every detection, gate decision, trigger, execution
outcome, approval decision, and rollback.

``record`` is synchronous and returns only once the entry is stored, so
callers write the entry before performing the side effect it describes.
The log is therefore always a superset of real-world effects. Entries are
never updated or removed here; retention is handled outside the engine.
"""

import csv
import io
import json
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Optional

from healing_shared.constants import AuditAction
from healing_shared.schemas.actions import (
    ActionExecution,
    ApprovalRequest,
    AutomatedAction,
    SafetyCheckResult,
)
from healing_shared.schemas.events import AuditEntry, DetectedPattern
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

EXPORT_COLUMNS = (
    "timestamp",
    "action",
    "entity_type",
    "entity_id",
    "performed_by",
    "simulated",
    "correlation_id",
    "details",
)


class AuditTrail:
    """In-memory append-only audit log."""

    def __init__(self, clock: Clock = utc_now):
        self._entries: list[AuditEntry] = []
        self._lock = Lock()
        self._clock = clock

    def record(
        self,
        organization_id: str,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        details: Optional[dict[str, Any]] = None,
        performed_by: str = "system",
        simulated: bool = False
    ) -> AuditEntry:
        """Append one entry and return it."""
        entry = AuditEntry(
            organization_id=organization_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            performed_by=performed_by,
            details=details or {},
            simulated=simulated,
            correlation_id=get_correlation_id(),
            created_at=self._clock(),
        )
        with self._lock:
            self._entries.append(entry)

        logger.debug(
            f"Audit {action.value} on {entity_type} {entity_id}",
            extra={"audit_action": action.value, "simulated": simulated}
        )
        return entry

    # -------------------------------------------------------------------------
    # Lifecycle helpers
    # -------------------------------------------------------------------------

    def pattern_detected(self, pattern: DetectedPattern) -> AuditEntry:
        return self.record(
            pattern.organization_id,
            AuditAction.PATTERN_DETECTED,
            "pattern",
            pattern.id,
            {
                "pattern_type": pattern.type.value,
                "severity": pattern.severity.value,
                "confidence": pattern.confidence,
                "occurrences": pattern.occurrences,
                "affected_entities": [e.id for e in pattern.affected_entities],
            },
        )

    def safety_evaluated(
        self,
        execution: ActionExecution,
        result: SafetyCheckResult
    ) -> AuditEntry:
        return self.record(
            execution.organization_id,
            AuditAction.SAFETY_PASS if result.passed else AuditAction.SAFETY_BLOCK,
            "execution",
            execution.id,
            {
                "action_id": execution.action_id,
                "pattern_id": execution.pattern_id,
                "blocked_reason": result.blocked_reason,
                "warnings": result.warnings,
                "requires_approval": result.requires_approval,
                "checks": [c.model_dump(mode="json") for c in result.checks],
            },
            simulated=execution.dry_run,
        )

    def action_triggered(
        self,
        action: AutomatedAction,
        execution: ActionExecution
    ) -> AuditEntry:
        return self.record(
            execution.organization_id,
            AuditAction.ACTION_TRIGGERED,
            "execution",
            execution.id,
            {
                "action_id": action.id,
                "action_type": action.action_type.value,
                "pattern_id": execution.pattern_id,
                "triggered_by": execution.triggered_by.value,
            },
            simulated=execution.dry_run,
        )

    def execution_finished(self, execution: ActionExecution) -> AuditEntry:
        result = execution.result
        succeeded = result is not None and result.success
        return self.record(
            execution.organization_id,
            AuditAction.ACTION_COMPLETED if succeeded else AuditAction.ACTION_FAILED,
            "execution",
            execution.id,
            {
                "action_id": execution.action_id,
                "pattern_id": execution.pattern_id,
                "error_message": execution.error_message,
                "changes": len(result.changes) if result else 0,
                "metrics": result.metrics if result else {},
                "duration_ms": execution.duration_ms,
            },
            simulated=execution.dry_run,
        )

    def execution_blocked(self, execution: ActionExecution, reason: str) -> AuditEntry:
        return self.record(
            execution.organization_id,
            AuditAction.EXECUTION_BLOCKED,
            "execution",
            execution.id,
            {"action_id": execution.action_id, "reason": reason},
            simulated=execution.dry_run,
        )

    def approval_event(
        self,
        action: AuditAction,
        request: ApprovalRequest,
        performed_by: str = "system",
        details: Optional[dict[str, Any]] = None
    ) -> AuditEntry:
        payload = {
            "execution_id": request.execution_id,
            "status": request.status.value,
            "level": request.current_escalation_level,
        }
        payload.update(details or {})
        return self.record(
            request.organization_id,
            action,
            "approval",
            request.id,
            payload,
            performed_by=performed_by,
        )

    # -------------------------------------------------------------------------
    # Read surface
    # -------------------------------------------------------------------------

    def query(
        self,
        organization_id: str,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        performed_by: Optional[str] = None
    ) -> list[AuditEntry]:
        """Entries for an organization in insertion order, filtered."""
        with self._lock:
            entries = [e for e in self._entries if e.organization_id == organization_id]

        if action:
            entries = [e for e in entries if e.action == action]
        if entity_type:
            entries = [e for e in entries if e.entity_type == entity_type]
        if entity_id:
            entries = [e for e in entries if e.entity_id == entity_id]
        if performed_by:
            entries = [e for e in entries if e.performed_by == performed_by]
        if since:
            entries = [e for e in entries if e.created_at >= since]

        return entries[-limit:] if limit else entries

    def user_activity(
        self,
        organization_id: str,
        performed_by: str,
        days: int = 7,
        limit: int = 100
    ) -> list[AuditEntry]:
        """What one person did over the last ``days``, newest first."""
        since = self._clock() - timedelta(days=days)
        entries = self.query(organization_id, since=since, performed_by=performed_by)
        return list(reversed(entries))[:limit]

    def export_csv(self, organization_id: str, **filters: Any) -> str:
        """
        Render the filtered trail as CSV, one row per entry in insertion order.

        ``filters`` are passed to ``query``. Details are written as JSON.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)
        for entry in self.query(organization_id, **filters):
            writer.writerow([
                entry.created_at.isoformat(),
                entry.action.value,
                entry.entity_type,
                entry.entity_id,
                entry.performed_by,
                str(entry.simulated).lower(),
                entry.correlation_id or "",
                json.dumps(entry.details, sort_keys=True, default=str),
            ])
        return buffer.getvalue()

    def count_by_action(self, organization_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.query(organization_id):
            counts[entry.action.value] = counts.get(entry.action.value, 0) + 1
        return counts

    def group_by_entity(self, organization_id: str, entity_type: str) -> dict[str, list[AuditEntry]]:
        groups: dict[str, list[AuditEntry]] = {}
        for entry in self.query(organization_id, entity_type=entity_type):
            groups.setdefault(entry.entity_id, []).append(entry)
        return groups

    def __len__(self) -> int:
        return len(self._entries)
