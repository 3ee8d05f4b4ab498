"""
Self-Healing Engine - Job Runner
================================

Runs the engine's four background operations:

- pattern_scan: detect patterns, optionally auto-execute matching actions
- action_execution: gate and run one action
- approval_maintenance: expire / escalate open approval requests
- learning_analysis: recompute pattern -> action weights

Each job kind has its own concurrency cap. Transient failures
(DeliveryFailure, PatternScanError) are retried with exponential backoff;
anything else, or a failure past the attempt budget, ends the job with
``success=False`` and is logged at error level.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Any, Optional

from healing_shared.constants import JobType
from healing_shared.schemas.events import new_id
from healing_shared.schemas.jobs import (
    ActionExecutionJob,
    ApprovalMaintenanceJob,
    JobBase,
    JobResult,
    LearningAnalysisJob,
    PatternScanJob,
)
from healing_shared.utils.clock import Clock, utc_now
from healing_shared.utils.logging import get_logger, set_correlation_id, set_organization_id
from healing_shared.utils.retry import RetryConfig, retry_async

from healing_engine.core.engine import SelfHealingEngine
from healing_engine.core.errors import DeliveryFailure, PatternScanError, SelfHealingError

logger = get_logger(__name__)

RETRYABLE_ERRORS = (DeliveryFailure, PatternScanError)

DEFAULT_CONCURRENCY = {
    JobType.PATTERN_SCAN: 2,
    JobType.ACTION_EXECUTION: 5,
    JobType.APPROVAL_MAINTENANCE: 1,
    JobType.LEARNING_ANALYSIS: 1,
}

DEFAULT_RESULTS_LIMIT = 1000


class JobRunner:
    """Bounded, retrying executor for engine jobs."""

    def __init__(
        self,
        engine: SelfHealingEngine,
        concurrency: Optional[dict[JobType, int]] = None,
        retry: Optional[RetryConfig] = None,
        clock: Clock = utc_now,
        results_limit: int = DEFAULT_RESULTS_LIMIT
    ):
        self.engine = engine
        limits = {**DEFAULT_CONCURRENCY, **(concurrency or {})}
        self._semaphores = {kind: asyncio.Semaphore(limit) for kind, limit in limits.items()}
        self._retry = replace(retry or RetryConfig(), retryable_exceptions=RETRYABLE_ERRORS)
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()
        self._recurring: list[asyncio.Task] = []
        self.results_limit = results_limit
        # Finished jobs in completion order, oldest evicted past results_limit
        self.results: OrderedDict[str, JobResult] = OrderedDict()

    @classmethod
    def from_settings(cls, engine: SelfHealingEngine, settings: Any) -> "JobRunner":
        return cls(
            engine,
            concurrency={
                JobType.PATTERN_SCAN: settings.pattern_scan_concurrency,
                JobType.ACTION_EXECUTION: settings.action_execution_concurrency,
                JobType.APPROVAL_MAINTENANCE: settings.approval_maintenance_concurrency,
                JobType.LEARNING_ANALYSIS: settings.learning_analysis_concurrency,
            },
            retry=RetryConfig(
                max_attempts=settings.job_max_attempts,
                base_delay=settings.job_retry_base_delay_seconds,
                max_delay=settings.job_retry_max_delay_seconds,
            ),
            results_limit=settings.job_results_limit,
        )

    async def run(self, job: JobBase) -> JobResult:
        """
        Run one job to completion, retrying transient failures.

        Returns:
            JobResult; never raises for job-level failures
        """
        job_type = JobType(job.job_type)
        set_correlation_id(job.job_id)
        set_organization_id(job.organization_id)

        attempts = 0

        async def attempt() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            return await self._dispatch(job, first_attempt=attempts == 1)

        async with self._semaphores[job_type]:
            started = time.perf_counter()
            error: Optional[str] = None
            data: dict[str, Any] = {}
            try:
                data = await retry_async(attempt, config=self._retry)
            except SelfHealingError as e:
                error = f"{type(e).__name__}: {e}"
            except Exception as e:
                logger.exception(f"Job {job.job_id} crashed")
                error = f"{type(e).__name__}: {e}"

            result = JobResult(
                job_id=job.job_id,
                job_type=job_type,
                organization_id=job.organization_id,
                success=error is None,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
                attempts=attempts,
                completed_at=self._clock(),
                error=error,
                data=data,
            )

        self._store_result(result)
        if error:
            logger.error(
                f"Job {job.job_id} ({job_type.value}) failed after {attempts} attempt(s): {error}",
                extra={"job_id": job.job_id, "job_type": job_type.value, "attempts": attempts}
            )
        else:
            logger.info(
                f"Job {job.job_id} ({job_type.value}) completed",
                extra={"job_id": job.job_id, "job_type": job_type.value, "duration_ms": result.duration_ms}
            )
        return result

    def _store_result(self, result: JobResult) -> None:
        self.results[result.job_id] = result
        self.results.move_to_end(result.job_id)
        while len(self.results) > self.results_limit:
            self.results.popitem(last=False)

    async def _dispatch(self, job: JobBase, first_attempt: bool = True) -> dict[str, Any]:
        engine = self.engine

        if isinstance(job, PatternScanJob):
            outcome = await engine.scan(
                job.organization_id,
                job.pattern_types,
                job.time_window_minutes,
                auto_execute=job.auto_execute,
                dry_run=job.dry_run,
            )
            return {
                "patterns": [p.model_dump(mode="json") for p in outcome.detection.patterns],
                "scan_duration_ms": round(outcome.detection.scan_duration_ms, 3),
                "executions": [e.model_dump(mode="json") for e in outcome.executions],
            }

        if isinstance(job, ActionExecutionJob):
            # A retried attempt gets a fresh execution; the failed one stays on record
            execution = await engine.execute_action(
                job.organization_id,
                job.action_id,
                pattern_id=job.pattern_id,
                execution_id=job.execution_id if first_attempt else None,
                dry_run=job.dry_run,
                triggered_by=job.triggered_by,
            )
            return {"execution": execution.model_dump(mode="json")}

        if isinstance(job, ApprovalMaintenanceJob):
            return await engine.run_approval_maintenance(job.organization_id)

        if isinstance(job, LearningAnalysisJob):
            return engine.analyze(job.organization_id, job.analysis_window_days).model_dump(mode="json")

        raise ValueError(f"Unsupported job type: {job.job_type}")

    def submit(self, job: JobBase) -> asyncio.Task:
        """Run a job in the background."""
        task = asyncio.create_task(self.run(job), name=f"job-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_recurring(self, job: JobBase, interval_seconds: float) -> asyncio.Task:
        """Run a copy of ``job`` every ``interval_seconds`` until shutdown."""
        async def loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                await self.run(job.model_copy(update={"job_id": new_id()}))

        task = asyncio.create_task(loop(), name=f"recurring-{job.job_type}-{job.organization_id}")
        self._recurring.append(task)
        logger.info(
            f"Scheduled {job.job_type} for {job.organization_id} every {interval_seconds}s",
            extra={"job_type": job.job_type, "interval_seconds": interval_seconds}
        )
        return task

    async def shutdown(self) -> None:
        """Cancel recurring schedules and in-flight jobs."""
        tasks = [*self._recurring, *self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._recurring.clear()
        self._tasks.clear()
