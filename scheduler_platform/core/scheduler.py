"""
APScheduler integration for FastAPI.

APScheduler drives the engine's poll loop in-process; schedule state lives
in the database, so the APScheduler data store is in-memory.

Jobs:
- Schedule poll: fires due schedules (every ``scheduler.poll_seconds``)
"""

from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy, JobOutcome, JobReleased
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.interval import IntervalTrigger

from scheduler_platform.config import get_config
from scheduler_platform.core.database import AsyncSessionLocal
from scheduler_platform.core.logging import get_logger
from scheduler_platform.services.notifications import get_notifier
from scheduler_platform.services.scheduler_engine import SchedulerEngine
from scheduler_platform.services.system_schedules import ensure_system_schedules

logger = get_logger(__name__)

POLL_SCHEDULE_ID = "schedule_poll"

# Global scheduler instances
scheduler: AsyncScheduler | None = None
_engine: SchedulerEngine | None = None


def get_engine() -> SchedulerEngine:
    """Process-wide scheduler engine."""
    global _engine
    if _engine is None:
        config = get_config()
        _engine = SchedulerEngine(
            AsyncSessionLocal,
            config=config.scheduler,
            notifier=get_notifier(),
            default_connection_string=config.settings.auxiliary_connection_string or None,
        )
    return _engine


async def poll_job() -> None:
    """Poll job - dispatches every schedule whose NextRunTime has passed."""
    try:
        await get_engine().tick()
    except Exception as e:
        logger.bind(error=str(e)).error("schedule_poll_failed")
        raise  # Re-raise so APScheduler records the failure


async def _on_job_released(event: Any) -> None:
    """Log poll failures reported by APScheduler."""
    if isinstance(event, JobReleased) and event.outcome == JobOutcome.error:
        exception = getattr(event, "exception", None)
        logger.bind(
            schedule=event.schedule_id,
            error=str(exception) if exception else None,
        ).error("schedule_poll_job_error")


async def start_scheduler() -> AsyncScheduler | None:
    """Recover engine state, seed system schedules and start polling."""
    global scheduler

    config = get_config()
    if not config.scheduler.enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    engine = get_engine()
    async with AsyncSessionLocal() as db:
        await ensure_system_schedules(db, config)
        await db.commit()
    await engine.recover()

    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()
    scheduler.subscribe(_on_job_released)

    await scheduler.add_schedule(
        poll_job,
        IntervalTrigger(seconds=config.scheduler.poll_seconds),
        id=POLL_SCHEDULE_ID,
        conflict_policy=ConflictPolicy.replace,
    )

    await scheduler.start_in_background()

    logger.bind(poll_seconds=config.scheduler.poll_seconds).info("scheduler_started")
    return scheduler


async def stop_scheduler() -> None:
    """Stop polling and cancel in-flight fires."""
    global scheduler
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        scheduler = None
        logger.info("scheduler_stopped")
    if _engine is not None:
        await _engine.shutdown()


async def get_scheduler_status() -> dict[str, Any]:
    """Poll schedule state and in-flight executions."""
    poll: dict[str, Any] | None = None
    if scheduler:
        for s in await scheduler.get_schedules():
            if s.id == POLL_SCHEDULE_ID:
                poll = {
                    "trigger": str(s.trigger),
                    "next_fire_time": s.next_fire_time.isoformat() if s.next_fire_time else None,
                    "last_fire_time": s.last_fire_time.isoformat() if s.last_fire_time else None,
                }

    return {
        "running": scheduler is not None,
        "poll": poll,
        "in_flight_executions": [
            {"execution_id": execution_id, "schedule_id": schedule_id}
            for execution_id, schedule_id in get_engine().in_flight.items()
        ],
    }
