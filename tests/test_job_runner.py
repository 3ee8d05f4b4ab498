"""
Self-Healing Engine - Job Runner Tests
======================================
"""

import asyncio
from datetime import timedelta

import pytest

from healing_shared.constants import ActionType, ExecutionStatus, JobType, PatternType
from healing_shared.schemas.events import ActivitySignal, EntityRef
from healing_shared.schemas.jobs import (
    ActionExecutionJob,
    ApprovalMaintenanceJob,
    LearningAnalysisJob,
    PatternScanJob,
)
from healing_shared.utils.logging import get_correlation_id

from healing_engine.core.job_runner import JobRunner

from conftest import ORG

NOTIFY_ALICE = {
    "recipients": [{"type": "person", "id": "alice"}],
    "message_template": "Heads up",
}


@pytest.fixture
def runner(engine, settings):
    return JobRunner.from_settings(engine, settings)


class TestJobRunner:
    """Tests for running each job kind."""

    @pytest.mark.asyncio
    async def test_action_execution_job(self, runner, engine, make_action, set_policy):
        """Test an execution job records the execution under the job's id."""
        set_policy()
        action = make_action(ActionType.NOTIFY, NOTIFY_ALICE)
        job = ActionExecutionJob(organization_id=ORG, action_id=action.id, execution_id="exec-job")

        result = await runner.run(job)

        assert result.success is True
        assert result.job_type == JobType.ACTION_EXECUTION
        assert result.attempts == 1
        assert result.data["execution"]["id"] == "exec-job"
        assert result.data["execution"]["status"] == "completed"
        assert runner.results[job.job_id] is result

    @pytest.mark.asyncio
    async def test_delivery_failure_is_retried(self, runner, engine, make_action, set_policy, in_app):
        """Test a transient delivery failure is retried with a fresh execution."""
        set_policy()
        action = make_action(ActionType.NOTIFY, NOTIFY_ALICE)
        in_app.fail_with = ConnectionError("push gateway down")

        original_deliver = in_app.deliver
        calls = {"count": 0}

        async def flaky(recipient, message):
            calls["count"] += 1
            if calls["count"] == 2:
                in_app.fail_with = None
            return await original_deliver(recipient, message)

        in_app.deliver = flaky
        job = ActionExecutionJob(organization_id=ORG, action_id=action.id, execution_id="exec-first")

        result = await runner.run(job)

        assert result.success is True
        assert result.attempts == 2
        assert engine.executions.get("exec-first").status == ExecutionStatus.FAILED
        assert result.data["execution"]["id"] != "exec-first"
        assert result.data["execution"]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, runner, engine, make_action, set_policy, in_app, settings):
        """Test a persistent delivery failure ends the job unsuccessfully after every attempt."""
        set_policy()
        action = make_action(ActionType.NOTIFY, NOTIFY_ALICE)
        in_app.fail_with = ConnectionError("push gateway down")

        result = await runner.run(ActionExecutionJob(organization_id=ORG, action_id=action.id))

        assert result.success is False
        assert result.attempts == settings.job_max_attempts
        assert result.error.startswith("DeliveryFailure:")
        statuses = [e.status for e in engine.executions.query(ORG)]
        assert statuses == [ExecutionStatus.FAILED] * settings.job_max_attempts

    @pytest.mark.asyncio
    async def test_configuration_error_not_retried(self, runner, engine):
        """Test non-transient errors fail the job on the first attempt."""
        result = await runner.run(ActionExecutionJob(organization_id=ORG, action_id="missing"))

        assert result.success is False
        assert result.attempts == 1
        assert result.error == "NotFoundError: Action missing not found"

    @pytest.mark.asyncio
    async def test_pattern_scan_job(self, runner, pattern_store, clock):
        """Test a scan job returns the detected patterns."""
        pattern_store.add(ORG, *[
            ActivitySignal(
                signal_type=PatternType.REPEATED_ERRORS,
                entity=EntityRef(id="svc-a", type="service"),
                occurred_at=clock() - timedelta(minutes=5),
            )
            for _ in range(3)
        ])

        result = await runner.run(PatternScanJob(organization_id=ORG))

        assert result.success is True
        assert [p["type"] for p in result.data["patterns"]] == ["repeated_errors"]
        assert result.data["executions"] == []

    @pytest.mark.asyncio
    async def test_scan_failure_is_retried(self, runner, pattern_store, settings):
        """Test a failing pattern store is retried, then reported."""
        pattern_store.fail_with = RuntimeError("activity service down")

        result = await runner.run(PatternScanJob(organization_id=ORG))

        assert result.success is False
        assert result.attempts == settings.job_max_attempts
        assert "activity service down" in result.error

    @pytest.mark.asyncio
    async def test_maintenance_and_learning_jobs(self, runner):
        """Test the maintenance and learning jobs return their summaries."""
        maintenance = await runner.run(ApprovalMaintenanceJob(organization_id=ORG))
        learning = await runner.run(LearningAnalysisJob(organization_id=ORG, analysis_window_days=7))

        assert maintenance.data == {"expired": 0, "escalated": 0, "exhausted": 0, "auto_approved": 0}
        assert learning.success is True
        assert learning.data["analyses"] == []

    @pytest.mark.asyncio
    async def test_correlation_id_is_job_id(self, runner, engine, make_action, set_policy):
        """Test audit entries written during a job carry the job id."""
        set_policy()
        action = make_action(ActionType.NOTIFY, NOTIFY_ALICE)
        job = ActionExecutionJob(organization_id=ORG, action_id=action.id)

        await runner.run(job)

        assert get_correlation_id() == job.job_id
        executed = [e for e in engine.audit.query(ORG) if e.entity_type == "execution"]
        assert executed
        assert all(e.correlation_id == job.job_id for e in executed)


class TestConcurrencyLimits:
    """Tests for per-kind concurrency caps."""

    @pytest.mark.asyncio
    async def test_kind_limit_serializes_jobs(self, engine):
        """Test a limit of one runs jobs of that kind one at a time."""
        runner = JobRunner(engine, concurrency={JobType.APPROVAL_MAINTENANCE: 1})
        active = {"now": 0, "peak": 0}

        async def slow_maintenance(organization_id):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return {"expired": 0, "escalated": 0, "exhausted": 0, "auto_approved": 0}

        engine.run_approval_maintenance = slow_maintenance
        await asyncio.gather(*[runner.run(ApprovalMaintenanceJob(organization_id=ORG)) for _ in range(3)])

        assert active["peak"] == 1


class TestBackgroundJobs:
    """Tests for submitted and recurring jobs."""

    @pytest.mark.asyncio
    async def test_submit_records_result(self, runner):
        """Test a submitted job's result is stored when it finishes."""
        job = ApprovalMaintenanceJob(organization_id=ORG)

        task = runner.submit(job)
        await task

        assert runner.results[job.job_id].success is True

    @pytest.mark.asyncio
    async def test_results_are_bounded(self, engine):
        """Test only the most recent results_limit job results are kept."""
        runner = JobRunner(engine, results_limit=2)
        jobs = [ApprovalMaintenanceJob(organization_id=ORG) for _ in range(3)]

        for job in jobs:
            await runner.run(job)

        assert list(runner.results) == [jobs[1].job_id, jobs[2].job_id]

    def test_results_limit_from_settings(self, engine, settings):
        """Test the results limit is read from settings."""
        runner = JobRunner.from_settings(engine, settings.model_copy(update={"job_results_limit": 5}))

        assert runner.results_limit == 5

    @pytest.mark.asyncio
    async def test_recurring_until_shutdown(self, runner):
        """Test a recurring job runs repeatedly with fresh ids and stops on shutdown."""
        template = ApprovalMaintenanceJob(organization_id=ORG)

        runner.schedule_recurring(template, interval_seconds=0.01)
        await asyncio.sleep(0.1)
        await runner.shutdown()
        count = len(runner.results)
        await asyncio.sleep(0.05)

        assert count >= 2
        assert template.job_id not in runner.results
        assert len(runner.results) == count
