"""Schedule management endpoints."""

from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select

from scheduler_platform.core.cron import next_fire_times, validate_cron_expression
from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.errors import NotFoundError, ScheduleConfigurationError
from scheduler_platform.core.logging import get_logger
from scheduler_platform.core.scheduler import get_scheduler_status
from scheduler_platform.dependencies import CurrentUser, DBSession, Engine
from scheduler_platform.jobs.registry import validate_job_configuration
from scheduler_platform.models.schedule import JobParameter, JobType, Schedule
from scheduler_platform.schemas.schedule import (
    CronValidationRequest,
    CronValidationResponse,
    JobParameterIn,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
    TriggerResponse,
)
from scheduler_platform.services.scheduler_engine import (
    compute_next_run_time,
    pause_schedule,
    resume_schedule,
)

logger = get_logger(__name__)

router = APIRouter()

# Fields a system schedule may change
SYSTEM_EDITABLE_FIELDS = {"cron_expression", "time_zone", "is_enabled"}


async def _get_schedule(db: DBSession, schedule_id: int) -> Schedule:
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None or schedule.is_deleted:
        raise NotFoundError(f"Schedule {schedule_id} not found")
    return schedule


def _build_parameters(parameters: list[JobParameterIn]) -> list[JobParameter]:
    return [JobParameter(**p.model_dump()) for p in parameters]


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(
    db: DBSession,
    client_id: int | None = Query(default=None),
    job_type: JobType | None = Query(default=None),
    is_enabled: bool | None = Query(default=None),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[Schedule]:
    """List schedules, newest first."""
    query = select(Schedule).where(Schedule.is_deleted.is_(False))
    if client_id is not None:
        query = query.where(Schedule.client_id == client_id)
    if job_type is not None:
        query = query.where(Schedule.job_type == job_type)
    if is_enabled is not None:
        query = query.where(Schedule.is_enabled.is_(is_enabled))

    result = await db.execute(query.order_by(Schedule.id.desc()).offset(offset).limit(limit))
    return list(result.scalars().all())


@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(body: ScheduleCreate, db: DBSession, user: CurrentUser) -> Schedule:
    """
    Create a schedule.

    The cron expression and job configuration are validated up front;
    NextRunTime is armed immediately when the schedule is enabled.
    """
    validate_cron_expression(body.cron_expression, body.time_zone)
    validate_job_configuration(body.job_type, body.job_configuration)

    schedule = Schedule(
        **body.model_dump(exclude={"parameters"}),
        is_system=False,
        is_deleted=False,
        retry_attempt=0,
        parameters=_build_parameters(body.parameters),
    )
    schedule.next_run_time = compute_next_run_time(schedule, utc_now())
    db.add(schedule)
    await db.flush()

    logger.bind(schedule_id=schedule.id, created_by=user).info("schedule_created")
    return schedule


@router.post("/schedules/validate-cron", response_model=CronValidationResponse)
async def validate_cron(body: CronValidationRequest) -> CronValidationResponse:
    """Check a cron expression and preview its next fire times."""
    try:
        fire_times = next_fire_times(body.expression, body.time_zone, datetime.now(UTC), body.count)
    except ScheduleConfigurationError as e:
        return CronValidationResponse(valid=False, error=str(e))
    return CronValidationResponse(valid=True, next_fire_times=fire_times)


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(schedule_id: int, db: DBSession) -> Schedule:
    return await _get_schedule(db, schedule_id)


@router.put("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: int,
    body: ScheduleUpdate,
    db: DBSession,
    user: CurrentUser,
) -> Schedule:
    """
    Update a schedule.

    System schedules can only be retimed or toggled. Changing the cron,
    time zone or enabled flag re-arms NextRunTime from the cadence.
    """
    schedule = await _get_schedule(db, schedule_id)
    changes = body.model_dump(exclude_unset=True)

    if schedule.is_system and set(changes) - SYSTEM_EDITABLE_FIELDS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="System schedules can only change cron_expression, time_zone and is_enabled",
        )

    cron = changes.get("cron_expression", schedule.cron_expression)
    time_zone = changes.get("time_zone", schedule.time_zone)
    if "cron_expression" in changes or "time_zone" in changes:
        validate_cron_expression(cron, time_zone)
    if "job_configuration" in changes:
        validate_job_configuration(schedule.job_type, changes["job_configuration"])

    parameters = changes.pop("parameters", None)
    for name, value in changes.items():
        setattr(schedule, name, value)
    if parameters is not None:
        schedule.parameters = _build_parameters(body.parameters or [])

    if {"cron_expression", "time_zone", "is_enabled"} & set(changes):
        schedule.retry_attempt = 0
        schedule.next_run_time = compute_next_run_time(schedule, utc_now())

    await db.flush()
    logger.bind(schedule_id=schedule.id, updated_by=user, fields=sorted(changes)).info("schedule_updated")
    return schedule


@router.delete("/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(schedule_id: int, db: DBSession, user: CurrentUser) -> None:
    """Soft-delete a schedule. System schedules cannot be deleted."""
    schedule = await _get_schedule(db, schedule_id)
    if schedule.is_system:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="System schedules cannot be deleted",
        )
    schedule.is_deleted = True
    schedule.is_enabled = False
    schedule.next_run_time = None
    await db.flush()
    logger.bind(schedule_id=schedule.id, deleted_by=user).info("schedule_deleted")


@router.post(
    "/schedules/{schedule_id}/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_schedule(schedule_id: int, engine: Engine, user: CurrentUser) -> TriggerResponse:
    """Fire a schedule now; 409 if it already has a running execution."""
    triggered_by = f"Manual by {user}"
    await engine.trigger(schedule_id, triggered_by)
    return TriggerResponse(schedule_id=schedule_id, triggered_by=triggered_by)


@router.post("/schedules/{schedule_id}/pause", response_model=ScheduleResponse)
async def pause(schedule_id: int, db: DBSession, user: CurrentUser) -> Schedule:
    schedule = await _get_schedule(db, schedule_id)
    return await pause_schedule(db, schedule)


@router.post("/schedules/{schedule_id}/resume", response_model=ScheduleResponse)
async def resume(schedule_id: int, db: DBSession, user: CurrentUser) -> Schedule:
    schedule = await _get_schedule(db, schedule_id)
    return await resume_schedule(db, schedule)


@router.get("/scheduler/status")
async def scheduler_status() -> dict:
    """Poll loop state and in-flight executions."""
    return await get_scheduler_status()
