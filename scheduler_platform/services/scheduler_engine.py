"""
Scheduler engine: fires due schedules, serializes executions per schedule,
applies retry/backoff and keeps NextRunTime current.

The engine is driven by ``tick()``. In the running service an APScheduler
interval job calls it (see ``scheduler_platform.core.scheduler``); tests
and the CLI call it directly with an explicit ``now``.

Per-schedule serialization uses two checks: an in-process lock set
(atomic check-and-add on the event loop) and a ``Running`` execution row in
the database. A fire that fails either check is dropped, never queued.
Every tick also fails ``Running`` rows that no fire in this process owns
once they pass their staleness ceiling, so an execution orphaned by a
restart cannot block its schedule.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scheduler_platform.config import SchedulerConfig, get_config
from scheduler_platform.core.cron import next_fire_time
from scheduler_platform.core.datetime_utils import to_naive_utc, utc_now
from scheduler_platform.core.errors import (
    ConcurrencyConflict,
    InvalidStatusTransition,
    NotFoundError,
    ScheduleConfigurationError,
    TimeoutExceeded,
)
from scheduler_platform.core.logging import get_logger
from scheduler_platform.core.retry import backoff_delay
from scheduler_platform.jobs.base import ExecutionOutcome, Executor
from scheduler_platform.jobs.parameters import resolve_parameters
from scheduler_platform.jobs.registry import EXECUTORS
from scheduler_platform.models.job_execution import JobExecution, JobStatus
from scheduler_platform.models.schedule import JobType, Schedule
from scheduler_platform.services import execution_recorder as recorder
from scheduler_platform.services.data_source import AuxiliaryDataSource, SqlAuxiliaryDataSource
from scheduler_platform.services.notifications import BaseNotifier, NullNotifier, notify_safely

logger = get_logger(__name__)

SCHEDULER_TRIGGER = "Scheduler"


def compute_next_run_time(schedule: Schedule, now: datetime) -> datetime | None:
    """Next cron occurrence after ``now`` as naive UTC, or None when disabled.

    Pure with respect to its inputs, so recomputing from the same ``now``
    always gives the same value.
    """
    if not schedule.is_enabled or schedule.is_deleted:
        return None
    return to_naive_utc(next_fire_time(schedule.cron_expression, schedule.time_zone, now))


def retry_delay(schedule: Schedule, attempt: int, max_backoff_minutes: int) -> timedelta:
    """Delay before retry ``attempt + 1``: RetryDelayMinutes x 2^attempt, capped."""
    minutes = backoff_delay(attempt, schedule.retry_delay_minutes, max_backoff_minutes)
    return timedelta(minutes=minutes)


def resolve_timeout_seconds(schedule: Schedule, default_seconds: int) -> float:
    """Schedule timeout, else the job configuration's, else the default."""
    if schedule.timeout_minutes:
        return float(schedule.timeout_minutes * 60)
    config = schedule.job_configuration or {}
    configured = config.get("timeout_seconds") or config.get("TimeoutSeconds")
    if configured:
        return float(configured)
    return float(default_seconds)


class SchedulerEngine:
    """Fires schedules and owns their in-flight executions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: SchedulerConfig | None = None,
        data_source: AuxiliaryDataSource | None = None,
        notifier: BaseNotifier | None = None,
        executors: dict[JobType, Executor] | None = None,
        default_connection_string: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or get_config().scheduler
        self._data_source = data_source or SqlAuxiliaryDataSource()
        self._notifier = notifier or NullNotifier()
        self._executors = {**EXECUTORS, **(executors or {})}
        self._default_connection_string = default_connection_string
        self._clock = clock

        self._pool = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._locks: set[int] = set()
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._running: dict[int, int] = {}  # execution id -> schedule id
        self._finishing: set[int] = set()  # executor done, result being recorded
        self._cancellations: dict[int, str] = {}  # execution id -> cancelled by

    # ------------------------------------------------------------------
    # Lock table
    # ------------------------------------------------------------------

    def try_acquire(self, schedule_id: int) -> bool:
        """Atomically claim a schedule's execution slot."""
        if schedule_id in self._locks:
            return False
        self._locks.add(schedule_id)
        return True

    def release(self, schedule_id: int) -> None:
        self._locks.discard(schedule_id)

    def is_locked(self, schedule_id: int) -> bool:
        return schedule_id in self._locks

    @property
    def in_flight(self) -> dict[int, int]:
        """Running executions owned by this process (execution id -> schedule id)."""
        return dict(self._running)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> list[int]:
        """
        Dispatch every enabled schedule whose NextRunTime has passed.

        Returns:
            Ids of the schedules dispatched on this tick
        """
        now = now or self._clock()
        async with self._session_factory() as db:
            await self._fail_orphaned(db, now)
            await db.commit()

            result = await db.execute(
                select(Schedule.id)
                .where(
                    Schedule.is_enabled.is_(True),
                    Schedule.is_deleted.is_(False),
                    Schedule.next_run_time.is_not(None),
                    Schedule.next_run_time <= now,
                )
                .order_by(Schedule.next_run_time)
            )
            due = list(result.scalars().all())

        dispatched = []
        for schedule_id in due:
            if not self.try_acquire(schedule_id):
                logger.bind(schedule_id=schedule_id).info("disallowed_concurrent_execution")
                continue
            self._spawn(schedule_id, SCHEDULER_TRIGGER, manual=False)
            dispatched.append(schedule_id)

        if dispatched:
            logger.bind(count=len(dispatched), schedule_ids=dispatched).debug("schedules_dispatched")
        return dispatched

    async def drain(self) -> None:
        """Wait for every in-flight fire to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight fires (recorded as cancelled by shutdown).

        Fires already recording their result are left to finish.
        """
        finishing = {self._running[e] for e in self._finishing if e in self._running}
        for execution_id in list(self._running):
            self._cancellations.setdefault(execution_id, "shutdown")
        for schedule_id, task in list(self._tasks.items()):
            if schedule_id not in finishing:
                task.cancel()
        await self.drain()

    def _spawn(self, schedule_id: int, triggered_by: str, manual: bool) -> None:
        task = asyncio.create_task(
            self._run_fire(schedule_id, triggered_by, manual),
            name=f"schedule-{schedule_id}",
        )
        self._tasks[schedule_id] = task

    async def _run_fire(self, schedule_id: int, triggered_by: str, manual: bool) -> None:
        try:
            async with self._pool:
                await self._fire(schedule_id, triggered_by, manual)
        except asyncio.CancelledError:
            logger.bind(schedule_id=schedule_id).info("schedule_fire_cancelled")
            raise
        except Exception as e:
            # One schedule's failure never stops the poll loop
            logger.bind(schedule_id=schedule_id, error=str(e)).exception("schedule_fire_crashed")
        finally:
            self.release(schedule_id)
            self._tasks.pop(schedule_id, None)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def _fire(self, schedule_id: int, triggered_by: str, manual: bool) -> None:
        async with self._session_factory() as db:
            schedule = await db.get(Schedule, schedule_id)
            if schedule is None or schedule.is_deleted:
                logger.bind(schedule_id=schedule_id).warning("schedule_fire_missing_schedule")
                return

            if await recorder.has_running_execution(db, schedule.id):
                logger.bind(schedule_id=schedule.id).info("disallowed_concurrent_execution")
                return

            if manual:
                schedule.retry_attempt = 0
            execution = await recorder.open_execution(
                db, schedule, triggered_by, retry_count=schedule.retry_attempt, now=self._clock()
            )
            schedule.last_run_time = execution.start_time
            await db.commit()

            # Owned until the final commit so cancel() never races the recording
            self._running[execution.id] = schedule.id
            try:
                finished = await self._execute(db, schedule, execution)
            finally:
                self._running.pop(execution.id, None)
                self._finishing.discard(execution.id)

        if finished:
            await notify_safely(
                self._notifier.send_job_execution_notification(
                    execution.status == JobStatus.COMPLETED, execution, schedule.name
                ),
                "job_execution",
            )

    async def _execute(self, db: AsyncSession, schedule: Schedule, execution: JobExecution) -> bool:
        outcome: ExecutionOutcome | None = None
        error: Exception | None = None
        try:
            outcome = await self._dispatch(schedule)
        except asyncio.CancelledError:
            self._finishing.add(execution.id)
            await self._record_cancellation(db, schedule, execution)
            raise
        except Exception as e:
            error = e
            logger.bind(
                schedule_id=schedule.id,
                execution_id=execution.id,
                error=str(e),
            ).warning("schedule_fire_failed")
        self._finishing.add(execution.id)

        await recorder.close_execution(db, execution, outcome, error, now=self._clock())

        # Pick up pause/delete issued while the job was running
        await db.refresh(schedule, ["is_enabled", "is_deleted"])
        finished = self.apply_retry_policy(
            schedule, execution.status == JobStatus.COMPLETED, error, self._clock()
        )
        await db.commit()
        return finished

    async def _dispatch(self, schedule: Schedule) -> ExecutionOutcome:
        """Resolve parameters and run the executor under one wall-clock deadline."""
        executor = self._executors.get(schedule.job_type)
        if executor is None:
            raise ScheduleConfigurationError(f"No executor for job type {schedule.job_type}")
        timeout = resolve_timeout_seconds(schedule, self.config.default_timeout_seconds)
        try:
            async with asyncio.timeout(timeout):
                parameters = await resolve_parameters(
                    schedule.parameters,
                    self._data_source,
                    self._default_connection_string,
                )
                return await executor(schedule.job_configuration or {}, parameters, timeout)
        except TimeoutError:
            logger.bind(schedule_id=schedule.id, timeout=timeout).warning("schedule_fire_timed_out")
            raise TimeoutExceeded(timeout) from None

    async def _record_cancellation(
        self,
        db: AsyncSession,
        schedule: Schedule,
        execution: JobExecution,
    ) -> None:
        cancelled_by = self._cancellations.pop(execution.id, "system")
        await recorder.cancel_execution(db, execution, cancelled_by, now=self._clock())
        schedule.retry_attempt = 0
        self.advance_to_cron(schedule, self._clock())
        await db.commit()

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------

    def advance_to_cron(self, schedule: Schedule, now: datetime) -> None:
        """Set NextRunTime from the cron cadence; disable on a broken expression."""
        try:
            schedule.next_run_time = compute_next_run_time(schedule, now)
        except ScheduleConfigurationError as e:
            logger.bind(schedule_id=schedule.id, error=str(e)).error("schedule_disabled_invalid_cron")
            schedule.is_enabled = False
            schedule.next_run_time = None

    def apply_retry_policy(
        self,
        schedule: Schedule,
        succeeded: bool,
        error: BaseException | None,
        now: datetime,
    ) -> bool:
        """
        Decide what happens after a fire.

        Success, exhausted retries and configuration errors return the
        schedule to its cron cadence. Other failures schedule a retry at
        ``now + RetryDelayMinutes x 2^attempt`` (capped), which preempts the
        cadence.

        Returns:
            True when the fire is final (notification-worthy), False when
            a retry was scheduled
        """
        if succeeded:
            schedule.retry_attempt = 0
            self.advance_to_cron(schedule, now)
            return True

        retriable = not isinstance(error, ScheduleConfigurationError)
        if retriable and schedule.is_enabled and schedule.retry_attempt < schedule.max_retries:
            delay = retry_delay(schedule, schedule.retry_attempt, self.config.max_backoff_minutes)
            schedule.next_run_time = now + delay
            schedule.retry_attempt += 1
            logger.bind(
                schedule_id=schedule.id,
                retry=schedule.retry_attempt,
                max_retries=schedule.max_retries,
                delay_minutes=delay.total_seconds() / 60,
            ).info("schedule_retry_scheduled")
            return False

        if not succeeded and retriable and schedule.max_retries:
            logger.bind(schedule_id=schedule.id, retries=schedule.retry_attempt).warning(
                "schedule_retries_exhausted"
            )
        schedule.retry_attempt = 0
        self.advance_to_cron(schedule, now)
        return True

    # ------------------------------------------------------------------
    # Out-of-band commands
    # ------------------------------------------------------------------

    async def trigger(self, schedule_id: int, triggered_by: str) -> None:
        """
        Fire a schedule now, outside its cadence.

        Raises:
            NotFoundError: Unknown or deleted schedule
            ConcurrencyConflict: The schedule already has a running execution
        """
        async with self._session_factory() as db:
            schedule = await db.get(Schedule, schedule_id)
            if schedule is None or schedule.is_deleted:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            if await recorder.has_running_execution(db, schedule_id):
                raise ConcurrencyConflict(schedule_id)

        if not self.try_acquire(schedule_id):
            raise ConcurrencyConflict(schedule_id)
        logger.bind(schedule_id=schedule_id, triggered_by=triggered_by).info("schedule_triggered")
        self._spawn(schedule_id, triggered_by, manual=True)

    async def retry_execution(self, execution_id: int, requested_by: str) -> None:
        """Re-fire the schedule of a finished execution."""
        async with self._session_factory() as db:
            execution = await db.get(JobExecution, execution_id)
            if execution is None:
                raise NotFoundError(f"Job execution {execution_id} not found")
            if execution.status == JobStatus.RUNNING:
                raise InvalidStatusTransition(f"Job execution {execution_id} is still running")
            schedule_id = execution.schedule_id
        await self.trigger(schedule_id, f"Retry by {requested_by}")

    async def cancel(self, execution_id: int, cancelled_by: str) -> JobExecution:
        """
        Cancel a running execution. Cancelled executions are not retried.

        Raises:
            NotFoundError: Unknown execution
            InvalidStatusTransition: The execution is not running, or its
                executor has already returned and the result is being recorded
            ConcurrencyConflict: A fire of the same schedule is in flight here
        """
        async with self._session_factory() as db:
            execution = await db.get(JobExecution, execution_id)
            if execution is None:
                raise NotFoundError(f"Job execution {execution_id} not found")
            if execution.status != JobStatus.RUNNING:
                raise InvalidStatusTransition(
                    f"Job execution {execution_id} is {execution.status.value}, not Running"
                )
            if execution_id in self._finishing:
                raise InvalidStatusTransition(f"Job execution {execution_id} is already finishing")

            schedule_id = self._running.get(execution_id)
            task = self._tasks.get(schedule_id) if schedule_id is not None else None
            if task is None or task.done():
                if self.is_locked(execution.schedule_id):
                    raise ConcurrencyConflict(execution.schedule_id)
                # Not owned by this process: close the row directly
                schedule = await db.get(Schedule, execution.schedule_id)
                await recorder.cancel_execution(db, execution, cancelled_by, now=self._clock())
                if schedule is not None:
                    schedule.retry_attempt = 0
                    self.advance_to_cron(schedule, self._clock())
                await db.commit()
                return execution

        self._cancellations[execution_id] = cancelled_by
        task.cancel()
        await asyncio.wait({task})

        async with self._session_factory() as db:
            cancelled = await db.get(JobExecution, execution_id)
            if cancelled is None:
                raise NotFoundError(f"Job execution {execution_id} not found")
            return cancelled

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def recover(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Startup sweep: fail executions orphaned by a restart, then arm schedules.

        Recovered executions go through the retry policy like any failure.
        Enabled schedules without a NextRunTime get one.
        """
        now = now or self._clock()
        async with self._session_factory() as db:
            recovered = await self._fail_orphaned(db, now)

            result = await db.execute(
                select(Schedule).where(
                    Schedule.is_enabled.is_(True),
                    Schedule.is_deleted.is_(False),
                    Schedule.next_run_time.is_(None),
                )
            )
            armed = 0
            for schedule in result.scalars().all():
                self.advance_to_cron(schedule, now)
                armed += 1
            await db.commit()

        stats = {"recovered_executions": recovered, "armed_schedules": armed}
        logger.bind(**stats).info("scheduler_recovery_completed")
        return stats

    async def _fail_orphaned(self, db: AsyncSession, now: datetime) -> int:
        """Fail stale Running rows of schedules with no fire in this process."""
        recovered = await recorder.recover_stale_executions(
            db,
            self.config.stale_execution_minutes,
            now=now,
            exclude_schedule_ids=set(self._locks),
        )
        for _execution, schedule in recovered:
            self.apply_retry_policy(schedule, False, None, now)
        return len(recovered)


async def pause_schedule(db: AsyncSession, schedule: Schedule) -> Schedule:
    """Disable a schedule; a running execution finishes but is not re-armed."""
    schedule.is_enabled = False
    schedule.next_run_time = None
    schedule.retry_attempt = 0
    await db.flush()
    logger.bind(schedule_id=schedule.id).info("schedule_paused")
    return schedule


async def resume_schedule(db: AsyncSession, schedule: Schedule, now: datetime | None = None) -> Schedule:
    """Re-enable a schedule and arm it from its cron cadence."""
    schedule.is_enabled = True
    schedule.retry_attempt = 0
    schedule.next_run_time = compute_next_run_time(schedule, now or utc_now())
    await db.flush()
    logger.bind(schedule_id=schedule.id, next_run_time=schedule.next_run_time).info("schedule_resumed")
    return schedule
