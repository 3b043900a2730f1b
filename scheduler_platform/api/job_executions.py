from fastapi import APIRouter, Query, status
from sqlalchemy import select

from scheduler_platform.core.errors import NotFoundError
from scheduler_platform.dependencies import CurrentUser, DBSession, Engine
from scheduler_platform.models.job_execution import JobExecution, JobStatus
from scheduler_platform.schemas.execution import JobExecutionDetail, JobExecutionResponse

router = APIRouter()


@router.get("/jobexecutions", response_model=list[JobExecutionResponse])
async def list_executions(
    db: DBSession,
    schedule_id: int | None = Query(default=None),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[JobExecution]:
    """List executions, most recent first."""
    query = select(JobExecution)
    if schedule_id is not None:
        query = query.where(JobExecution.schedule_id == schedule_id)
    if status_filter is not None:
        query = query.where(JobExecution.status == status_filter)

    result = await db.execute(
        query.order_by(JobExecution.start_time.desc(), JobExecution.id.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


@router.get("/jobexecutions/{execution_id}", response_model=JobExecutionDetail)
async def get_execution(execution_id: int, db: DBSession) -> JobExecution:
    execution = await db.get(JobExecution, execution_id)
    if execution is None:
        raise NotFoundError(f"Job execution {execution_id} not found")
    return execution


@router.post("/jobexecutions/{execution_id}/cancel", response_model=JobExecutionResponse)
async def cancel_execution(execution_id: int, engine: Engine, user: CurrentUser) -> JobExecution:
    """Cancel a running execution; 409 if it is not running."""
    return await engine.cancel(execution_id, user)


@router.post("/jobexecutions/{execution_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_execution(execution_id: int, engine: Engine, user: CurrentUser) -> dict:
    """Re-fire the schedule behind a finished execution."""
    await engine.retry_execution(execution_id, user)
    return {"execution_id": execution_id, "message": "Retry triggered"}
