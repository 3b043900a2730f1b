"""Tests for the scheduler engine: firing, retries, concurrency, cancel and recovery."""

import asyncio
import sys
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import select

from scheduler_platform.core.errors import (
    ConcurrencyConflict,
    InvalidStatusTransition,
    NotFoundError,
)
from scheduler_platform.jobs.api_call import execute_api_call
from scheduler_platform.jobs.base import ExecutionOutcome
from scheduler_platform.models import JobExecution, JobParameter, JobStatus, JobType, Schedule
from scheduler_platform.services import execution_recorder as recorder
from scheduler_platform.services.scheduler_engine import (
    compute_next_run_time,
    resolve_timeout_seconds,
    retry_delay,
)

T0 = datetime(2026, 1, 10, 2, 0)
NEXT_DAY = datetime(2026, 1, 11, 2, 0)


async def succeed(config, parameters, timeout):
    return ExecutionOutcome(success=True, output="done", duration_seconds=0.1)


def http_status_executor(status_code: int):
    """ApiCall executor whose upstream always answers with ``status_code``."""
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, text="boom"))

    async def execute(config, parameters, timeout):
        return await execute_api_call(config, parameters, timeout, transport=transport)

    return execute


class BlockingExecutor:
    """Executor that waits until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, config, parameters, timeout):
        self.entered.set()
        await self.release.wait()
        return ExecutionOutcome(success=True, output="released")


async def _executions(db, schedule_id: int) -> list[JobExecution]:
    result = await db.execute(
        select(JobExecution)
        .where(JobExecution.schedule_id == schedule_id)
        .order_by(JobExecution.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestPureHelpers:
    """Tests for next-run, retry delay and timeout helpers."""

    def test_compute_next_run_time_is_naive_utc(self):
        """Should return the next occurrence as naive UTC."""
        schedule = Schedule(
            cron_expression="0 0 2 * * ?", time_zone="America/New_York", is_enabled=True, is_deleted=False
        )
        assert compute_next_run_time(schedule, T0) == datetime(2026, 1, 10, 7, 0)

    def test_compute_next_run_time_disabled(self):
        """Should return None for a disabled schedule."""
        schedule = Schedule(cron_expression="0 2 * * *", time_zone="UTC", is_enabled=False, is_deleted=False)
        assert compute_next_run_time(schedule, T0) is None

    def test_retry_delay_doubles_and_caps(self):
        """Should double the delay per attempt up to the cap."""
        schedule = Schedule(retry_delay_minutes=5)

        assert retry_delay(schedule, 0, 1440) == timedelta(minutes=5)
        assert retry_delay(schedule, 2, 1440) == timedelta(minutes=20)
        assert retry_delay(schedule, 3, 15) == timedelta(minutes=15)

    def test_timeout_precedence(self):
        """Should prefer the schedule timeout, then the job config, then the default."""
        schedule = Schedule(timeout_minutes=2, job_configuration={"TimeoutSeconds": 30})
        assert resolve_timeout_seconds(schedule, 300) == 120

        schedule.timeout_minutes = None
        assert resolve_timeout_seconds(schedule, 300) == 30

        schedule.job_configuration = {}
        assert resolve_timeout_seconds(schedule, 300) == 300


class TestTick:
    """Tests for SchedulerEngine.tick."""

    async def test_fires_due_schedule(self, engine_factory, schedule_factory, db_session, notifier):
        """Should run a due schedule, record it and re-arm from the cron."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(next_run_time=T0)

        fired = await engine.tick()
        await engine.drain()

        assert fired == [schedule.id]
        await db_session.refresh(schedule)
        assert schedule.next_run_time == NEXT_DAY
        assert schedule.last_run_time == T0
        assert schedule.retry_attempt == 0

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.COMPLETED
        assert execution.output == "done"
        assert execution.triggered_by == "Scheduler"
        assert execution.retry_count == 0

        assert notifier.executions == [
            {
                "success": True,
                "execution_id": execution.id,
                "status": JobStatus.COMPLETED,
                "schedule_name": "Nightly export",
            }
        ]

    async def test_skips_future_disabled_and_deleted(self, engine_factory, schedule_factory):
        """Should only select enabled, live schedules whose time has come."""
        engine = engine_factory({JobType.API_CALL: succeed})
        await schedule_factory(name="future", next_run_time=T0 + timedelta(minutes=1))
        await schedule_factory(name="disabled", next_run_time=T0, is_enabled=False)
        await schedule_factory(name="deleted", next_run_time=T0, is_deleted=True)
        await schedule_factory(name="unarmed", next_run_time=None)

        assert await engine.tick() == []

    async def test_running_execution_drops_fire(
        self, engine_factory, schedule_factory, execution_factory, db_session
    ):
        """Should drop, not queue, a fire while an execution is Running."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(next_run_time=T0)
        await execution_factory(schedule, status=JobStatus.RUNNING, start_time=T0 - timedelta(minutes=1))

        await engine.tick()
        await engine.drain()

        executions = await _executions(db_session, schedule.id)
        assert len(executions) == 1
        await db_session.refresh(schedule)
        assert schedule.next_run_time == T0


class TestRetryPolicy:
    """Tests for retry and backoff after failures."""

    async def test_backoff_then_return_to_cadence(
        self, engine_factory, schedule_factory, db_session, clock, notifier
    ):
        """Should retry after 5, 10 and 20 minutes, then return to the daily cadence."""
        engine = engine_factory({JobType.API_CALL: http_status_executor(500)})
        schedule = await schedule_factory(next_run_time=T0, max_retries=3, retry_delay_minutes=5)

        for gap in (5, 10, 20):
            await engine.tick()
            await engine.drain()
            await db_session.refresh(schedule)
            assert schedule.next_run_time == clock.now + timedelta(minutes=gap)
            clock.set(schedule.next_run_time)

        await engine.tick()
        await engine.drain()
        await db_session.refresh(schedule)

        assert clock.now == T0 + timedelta(minutes=35)
        assert schedule.next_run_time == NEXT_DAY
        assert schedule.retry_attempt == 0

        executions = await _executions(db_session, schedule.id)
        assert [e.status for e in executions] == [JobStatus.FAILED] * 4
        assert [e.retry_count for e in executions] == [0, 1, 2, 3]
        assert executions[0].error_message.startswith("HTTP 500")

        # Only the final failure notifies
        assert len(notifier.executions) == 1
        assert notifier.executions[0]["success"] is False

    async def test_configuration_error_not_retried(self, engine_factory, schedule_factory, db_session, notifier):
        """Should skip retries for configuration errors."""
        engine = engine_factory()
        schedule = await schedule_factory(
            job_type=JobType.PROCESS,
            job_configuration={"Arguments": ["--export"]},
            next_run_time=T0,
        )

        await engine.tick()
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message.startswith("configuration:")

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 0
        assert schedule.next_run_time == NEXT_DAY
        assert len(notifier.executions) == 1

    async def test_timeout_schedules_retry(self, engine_factory, schedule_factory, db_session, clock):
        """Should record a timeout and schedule the first retry."""
        engine = engine_factory()
        schedule = await schedule_factory(
            job_type=JobType.PROCESS,
            job_configuration={
                "ExecutablePath": sys.executable,
                "Arguments": ["-c", "import time; time.sleep(30)"],
                "TimeoutSeconds": 1,
            },
            next_run_time=T0,
        )

        await engine.tick()
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message.startswith("timeout:")

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 1
        assert schedule.next_run_time == clock.now + timedelta(minutes=5)

    async def test_missing_executable_is_retried(self, engine_factory, schedule_factory, db_session, notifier):
        """Should treat a launch failure as an executor failure and retry it."""
        engine = engine_factory()
        schedule = await schedule_factory(
            job_type=JobType.PROCESS,
            job_configuration={"ExecutablePath": "/nonexistent/tool"},
            next_run_time=T0,
        )

        await engine.tick()
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message.startswith("Cannot start '/nonexistent/tool'")

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 1
        assert notifier.executions == []

    async def test_parameter_failure_is_retried(self, engine_factory, schedule_factory, db_session, data_source):
        """Should fail the execution and retry when a dynamic parameter cannot resolve."""
        data_source.scalars["GetRunDate"] = RuntimeError("source offline")
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(
            next_run_time=T0,
            parameters=[
                JobParameter(
                    parameter_name="RunDate",
                    is_dynamic=True,
                    source_query="GetRunDate",
                    display_order=0,
                )
            ],
        )

        await engine.tick()
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message.startswith("parameters:")
        assert "source offline" in execution.error_message

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 1

    async def test_zero_max_retries(self, engine_factory, schedule_factory, db_session):
        """Should return straight to the cadence when retries are disabled."""
        engine = engine_factory({JobType.API_CALL: http_status_executor(503)})
        schedule = await schedule_factory(next_run_time=T0, max_retries=0)

        await engine.tick()
        await engine.drain()

        await db_session.refresh(schedule)
        assert schedule.next_run_time == NEXT_DAY
        assert schedule.retry_attempt == 0


class TestFireDeadline:
    """Tests for the wall-clock deadline around a fire."""

    async def test_slow_executor_is_cut_off(self, engine_factory, schedule_factory, db_session, clock):
        """Should stop an executor that outlives the timeout and record a timeout."""
        started = asyncio.Event()

        async def crawl(config, parameters, timeout):
            started.set()
            await asyncio.sleep(30)
            return ExecutionOutcome(success=True, output="too late")

        engine = engine_factory({JobType.API_CALL: crawl})
        schedule = await schedule_factory(job_configuration={"TimeoutSeconds": 0.2}, next_run_time=T0)

        await engine.tick()
        await asyncio.wait_for(engine.drain(), timeout=5)

        assert started.is_set()
        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message == "timeout: Execution timed out after 0.2 seconds"

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 1
        assert schedule.next_run_time == clock.now + timedelta(minutes=5)

    async def test_parameter_resolution_counts_against_timeout(
        self, engine_factory, schedule_factory, db_session, data_source
    ):
        """Should include dynamic parameter resolution in the deadline."""
        data_source.scalars["GetRunDate"] = "2026-01-10"
        data_source.delay = 30
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(
            job_configuration={"TimeoutSeconds": 0.2},
            next_run_time=T0,
            parameters=[
                JobParameter(
                    parameter_name="RunDate",
                    is_dynamic=True,
                    source_query="GetRunDate",
                    display_order=0,
                )
            ],
        )

        await engine.tick()
        await asyncio.wait_for(engine.drain(), timeout=5)

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.FAILED
        assert execution.error_message.startswith("timeout:")


class TestManualCommands:
    """Tests for trigger, retry and cancel."""

    async def test_trigger_runs_out_of_band(self, engine_factory, schedule_factory, db_session):
        """Should fire immediately and record who triggered it."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(next_run_time=NEXT_DAY)

        await engine.trigger(schedule.id, "Manual by alice")
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.COMPLETED
        assert execution.triggered_by == "Manual by alice"

    async def test_trigger_unknown_schedule(self, engine):
        """Should raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await engine.trigger(9999, "Manual by alice")

    async def test_trigger_while_running(self, engine_factory, schedule_factory, db_session):
        """Should refuse a second trigger while the first is in flight."""
        blocking = BlockingExecutor()
        engine = engine_factory({JobType.API_CALL: blocking})
        schedule = await schedule_factory()

        await engine.trigger(schedule.id, "Manual by alice")
        await asyncio.wait_for(blocking.entered.wait(), timeout=5)

        with pytest.raises(ConcurrencyConflict):
            await engine.trigger(schedule.id, "Manual by bob")

        blocking.release.set()
        await engine.drain()

        executions = await _executions(db_session, schedule.id)
        assert len(executions) == 1
        assert executions[0].status == JobStatus.COMPLETED

    async def test_trigger_resets_retry_sequence(self, engine_factory, schedule_factory, db_session):
        """Should start a manual fire from attempt zero."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(next_run_time=T0 + timedelta(minutes=20), retry_attempt=2)

        await engine.trigger(schedule.id, "Manual by alice")
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.retry_count == 0
        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 0
        assert schedule.next_run_time == NEXT_DAY

    async def test_retry_execution(self, engine_factory, schedule_factory, execution_factory, db_session):
        """Should re-fire the schedule behind a finished execution."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory()
        failed = await execution_factory(schedule, status=JobStatus.FAILED)

        await engine.retry_execution(failed.id, "bob")
        await engine.drain()

        executions = await _executions(db_session, schedule.id)
        assert len(executions) == 2
        assert executions[-1].triggered_by == "Retry by bob"

    async def test_retry_running_execution(self, engine, schedule_factory, execution_factory):
        """Should refuse to retry an execution that is still running."""
        schedule = await schedule_factory()
        running = await execution_factory(schedule, status=JobStatus.RUNNING)

        with pytest.raises(InvalidStatusTransition):
            await engine.retry_execution(running.id, "bob")

    async def test_cancel_running_execution(self, engine_factory, schedule_factory, db_session, notifier):
        """Should stop the job, record the cancellation and skip retries."""
        blocking = BlockingExecutor()
        engine = engine_factory({JobType.API_CALL: blocking})
        schedule = await schedule_factory(next_run_time=T0 + timedelta(minutes=5))

        await engine.trigger(schedule.id, "Manual by alice")
        await asyncio.wait_for(blocking.entered.wait(), timeout=5)
        [execution_id] = list(engine.in_flight)

        cancelled = await engine.cancel(execution_id, "alice")

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancelled_by == "alice"
        assert cancelled.error_message == "Cancelled by alice"
        assert cancelled.end_time is not None
        assert engine.in_flight == {}

        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 0
        assert schedule.next_run_time == NEXT_DAY
        assert notifier.executions == []

    async def test_cancel_orphaned_execution(self, engine, schedule_factory, execution_factory):
        """Should close a Running row this process does not own."""
        schedule = await schedule_factory()
        running = await execution_factory(schedule, status=JobStatus.RUNNING)

        cancelled = await engine.cancel(running.id, "ops")

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancelled_by == "ops"

    async def test_cancel_while_result_is_recorded(
        self, engine_factory, schedule_factory, db_session, monkeypatch
    ):
        """Should refuse a cancel that arrives after the executor has returned."""
        recording = asyncio.Event()
        proceed = asyncio.Event()
        close_execution = recorder.close_execution

        async def slow_close(*args, **kwargs):
            recording.set()
            await proceed.wait()
            return await close_execution(*args, **kwargs)

        monkeypatch.setattr(recorder, "close_execution", slow_close)
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory()

        await engine.trigger(schedule.id, "Manual by alice")
        await asyncio.wait_for(recording.wait(), timeout=5)
        [execution_id] = list(engine.in_flight)

        with pytest.raises(InvalidStatusTransition, match="finishing"):
            await engine.cancel(execution_id, "ops")

        proceed.set()
        await engine.drain()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.COMPLETED
        assert execution.cancelled_by is None
        await db_session.refresh(schedule)
        assert schedule.next_run_time == NEXT_DAY

    async def test_cancel_orphan_while_schedule_fires(self, engine, schedule_factory, execution_factory):
        """Should refuse to close a foreign row while this process holds the schedule."""
        schedule = await schedule_factory()
        running = await execution_factory(schedule, status=JobStatus.RUNNING)
        assert engine.try_acquire(schedule.id)

        with pytest.raises(ConcurrencyConflict):
            await engine.cancel(running.id, "ops")

        engine.release(schedule.id)

    async def test_cancel_finished_execution(self, engine, schedule_factory, execution_factory):
        """Should refuse to cancel an execution that is not running."""
        schedule = await schedule_factory()
        done = await execution_factory(schedule, status=JobStatus.COMPLETED)

        with pytest.raises(InvalidStatusTransition):
            await engine.cancel(done.id, "ops")

    async def test_shutdown_records_cancellation(self, engine_factory, schedule_factory, db_session):
        """Should cancel in-flight work on shutdown."""
        blocking = BlockingExecutor()
        engine = engine_factory({JobType.API_CALL: blocking})
        schedule = await schedule_factory()

        await engine.trigger(schedule.id, "Manual by alice")
        await asyncio.wait_for(blocking.entered.wait(), timeout=5)
        await engine.shutdown()

        [execution] = await _executions(db_session, schedule.id)
        assert execution.status == JobStatus.CANCELLED
        assert execution.cancelled_by == "shutdown"


class TestRecover:
    """Tests for the startup recovery sweep."""

    async def test_recovers_stale_and_arms_schedules(
        self, engine, schedule_factory, execution_factory, db_session, clock
    ):
        """Should fail orphaned executions, apply retries and arm unarmed schedules."""
        orphaned = await schedule_factory(name="orphaned", next_run_time=T0 + timedelta(hours=1))
        stale = await execution_factory(orphaned, status=JobStatus.RUNNING, start_time=T0 - timedelta(hours=2))
        fresh_schedule = await schedule_factory(name="fresh", next_run_time=T0 + timedelta(hours=1))
        fresh = await execution_factory(
            fresh_schedule, status=JobStatus.RUNNING, start_time=T0 - timedelta(minutes=10)
        )
        unarmed = await schedule_factory(name="unarmed", next_run_time=None)

        stats = await engine.recover()

        assert stats == {"recovered_executions": 1, "armed_schedules": 1}

        await db_session.refresh(stale)
        assert stale.status == JobStatus.FAILED
        assert stale.error_message == "recovered after restart"
        await db_session.refresh(fresh)
        assert fresh.status == JobStatus.RUNNING

        await db_session.refresh(orphaned)
        assert orphaned.retry_attempt == 1
        assert orphaned.next_run_time == clock.now + timedelta(minutes=5)

        await db_session.refresh(unarmed)
        assert unarmed.next_run_time == NEXT_DAY

    async def test_orphan_younger_than_ceiling_is_failed_by_a_later_tick(
        self, engine_factory, schedule_factory, execution_factory, db_session, clock
    ):
        """Should fail an orphan once it passes its ceiling, then fire the schedule again."""
        engine = engine_factory({JobType.API_CALL: succeed})
        schedule = await schedule_factory(next_run_time=T0)
        orphan = await execution_factory(schedule, status=JobStatus.RUNNING, start_time=T0 - timedelta(minutes=10))

        await engine.recover()
        await engine.tick()
        await engine.drain()

        # Still younger than the 60 minute ceiling: the fire is dropped
        assert len(await _executions(db_session, schedule.id)) == 1
        await db_session.refresh(orphan)
        assert orphan.status == JobStatus.RUNNING

        clock.set(T0 + timedelta(minutes=50))
        assert await engine.tick() == []

        await db_session.refresh(orphan)
        assert orphan.status == JobStatus.FAILED
        assert orphan.error_message == "recovered after restart"
        await db_session.refresh(schedule)
        assert schedule.retry_attempt == 1
        assert schedule.next_run_time == clock.now + timedelta(minutes=5)

        clock.advance(minutes=5)
        assert await engine.tick() == [schedule.id]
        await engine.drain()

        executions = await _executions(db_session, schedule.id)
        assert [e.status for e in executions] == [JobStatus.FAILED, JobStatus.COMPLETED]

    async def test_broken_cron_disables_schedule(self, engine, schedule_factory, db_session):
        """Should disable a schedule whose cron can no longer be evaluated."""
        schedule = await schedule_factory(cron_expression="0 0 12 1 1 ? 2020", next_run_time=None)

        await engine.recover()

        await db_session.refresh(schedule)
        assert schedule.is_enabled is False
        assert schedule.next_run_time is None

