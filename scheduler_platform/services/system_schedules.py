"""Platform schedules that must always exist."""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scheduler_platform.config import AppConfig
from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.schedule import JobType, Schedule
from scheduler_platform.services.scheduler_engine import compute_next_run_time

logger = get_logger(__name__)

ADR_SCHEDULE_NAME = "ADR Full Cycle"


def adr_schedule_configuration(config: AppConfig) -> dict:
    """ApiCall job that starts a background ADR orchestration on this service."""
    settings = config.settings
    job: dict = {
        "url": f"{settings.service_base_url.rstrip('/')}/api/adr/orchestrate/run-background",
        "method": "POST",
        "headers": {"X-User": "system"},
        "timeout_seconds": 60,
    }
    if settings.service_api_key:
        job["auth_type"] = "ApiKey"
        job["api_key"] = settings.service_api_key
    return job


async def ensure_system_schedules(
    db: AsyncSession,
    config: AppConfig,
    now: datetime | None = None,
) -> Schedule:
    """
    Create the ADR orchestration system schedule if it does not exist.

    An existing system schedule keeps its cron and enabled state (it may
    have been retimed or toggled); only its target configuration is
    refreshed.
    """
    result = await db.execute(
        select(Schedule).where(Schedule.is_system.is_(True), Schedule.name == ADR_SCHEDULE_NAME)
    )
    schedule = result.scalar_one_or_none()

    if schedule is None:
        schedule = Schedule(
            name=ADR_SCHEDULE_NAME,
            description="Runs the daily ADR orchestration in the background",
            job_type=JobType.API_CALL,
            cron_expression=config.adr.orchestration_cron,
            time_zone=config.adr.orchestration_time_zone,
            job_configuration=adr_schedule_configuration(config),
            is_enabled=True,
            is_system=True,
            max_retries=1,
            retry_delay_minutes=15,
            parameters=[],
        )
        schedule.next_run_time = compute_next_run_time(schedule, now or utc_now())
        db.add(schedule)
        await db.flush()
        logger.bind(schedule_id=schedule.id).info("system_schedule_created")
    else:
        schedule.job_configuration = adr_schedule_configuration(config)
        schedule.is_deleted = False
        await db.flush()

    return schedule
