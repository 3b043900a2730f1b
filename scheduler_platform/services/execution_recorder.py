"""Execution bookkeeping: opens, closes and recovers JobExecution rows.

Functions here flush but never commit; the caller owns the transaction.
"""

import traceback
from collections.abc import Collection
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.errors import SchedulerPlatformError
from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.base import ExecutionOutcome
from scheduler_platform.models.job_execution import JobExecution, JobStatus
from scheduler_platform.models.schedule import Schedule

logger = get_logger(__name__)

RECOVERED_ERROR = "recovered after restart"


def describe_error(error: BaseException) -> str:
    """Error text with the taxonomy tag in front, e.g. ``timeout: ...``."""
    if isinstance(error, SchedulerPlatformError):
        return f"{error.tag}: {error}"
    return f"{type(error).__name__}: {error}"


async def has_running_execution(db: AsyncSession, schedule_id: int) -> bool:
    result = await db.execute(
        select(JobExecution.id)
        .where(JobExecution.schedule_id == schedule_id, JobExecution.status == JobStatus.RUNNING)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def open_execution(
    db: AsyncSession,
    schedule: Schedule,
    triggered_by: str,
    retry_count: int = 0,
    now: datetime | None = None,
) -> JobExecution:
    """Insert a Running execution for a schedule being dispatched."""
    execution = JobExecution(
        schedule_id=schedule.id,
        start_time=now or utc_now(),
        status=JobStatus.RUNNING,
        retry_count=retry_count,
        triggered_by=triggered_by,
    )
    db.add(execution)
    await db.flush()
    logger.bind(
        execution_id=execution.id,
        schedule_id=schedule.id,
        retry_count=retry_count,
        triggered_by=triggered_by,
    ).info("job_execution_started")
    return execution


def _finish(execution: JobExecution, status: JobStatus, now: datetime | None) -> None:
    execution.status = status
    execution.end_time = now or utc_now()
    execution.duration_seconds = (execution.end_time - execution.start_time).total_seconds()


async def close_execution(
    db: AsyncSession,
    execution: JobExecution,
    outcome: ExecutionOutcome | None = None,
    error: BaseException | None = None,
    now: datetime | None = None,
) -> JobExecution:
    """
    Close an execution from an executor outcome or a raised error.

    Args:
        db: Database session
        execution: The Running execution
        outcome: Executor result, when the executor returned
        error: Exception raised before or during dispatch
        now: Completion time (defaults to utc_now)

    Returns:
        The closed execution (Completed or Failed)
    """
    if outcome is not None and outcome.success and error is None:
        _finish(execution, JobStatus.COMPLETED, now)
        execution.output = outcome.output
    else:
        _finish(execution, JobStatus.FAILED, now)
        if outcome is not None:
            execution.output = outcome.output
            execution.error_message = outcome.error_message or "Execution failed"
        if error is not None:
            execution.error_message = describe_error(error)
            if not isinstance(error, SchedulerPlatformError):
                execution.stack_trace = "".join(traceback.format_exception(error))

    await db.flush()
    logger.bind(
        execution_id=execution.id,
        schedule_id=execution.schedule_id,
        status=execution.status.value,
        duration=execution.duration_seconds,
    ).info("job_execution_finished")
    return execution


async def cancel_execution(
    db: AsyncSession,
    execution: JobExecution,
    cancelled_by: str,
    now: datetime | None = None,
) -> JobExecution:
    """Mark a Running execution as Cancelled."""
    _finish(execution, JobStatus.CANCELLED, now)
    execution.cancelled_by = cancelled_by
    execution.error_message = f"Cancelled by {cancelled_by}"
    await db.flush()
    logger.bind(execution_id=execution.id, cancelled_by=cancelled_by).info("job_execution_cancelled")
    return execution


async def recover_stale_executions(
    db: AsyncSession,
    default_ceiling_minutes: int,
    now: datetime | None = None,
    exclude_schedule_ids: Collection[int] = (),
) -> list[tuple[JobExecution, Schedule]]:
    """
    Fail executions left Running by a process that no longer owns them.

    An execution is stale once it is older than its schedule's timeout, or
    ``default_ceiling_minutes`` when the schedule has none. Schedules in
    ``exclude_schedule_ids`` have a live fire and are left alone.

    Returns:
        The recovered executions with their schedules
    """
    now = now or utc_now()
    result = await db.execute(
        select(JobExecution, Schedule)
        .join(Schedule, Schedule.id == JobExecution.schedule_id)
        .where(JobExecution.status == JobStatus.RUNNING)
    )

    recovered: list[tuple[JobExecution, Schedule]] = []
    for execution, schedule in result.all():
        if schedule.id in exclude_schedule_ids:
            continue
        ceiling = timedelta(minutes=schedule.timeout_minutes or default_ceiling_minutes)
        if now - execution.start_time < ceiling:
            continue
        _finish(execution, JobStatus.FAILED, now)
        execution.error_message = RECOVERED_ERROR
        recovered.append((execution, schedule))
        logger.bind(execution_id=execution.id, schedule_id=schedule.id).warning(
            "job_execution_recovered"
        )

    await db.flush()
    return recovered
