from datetime import datetime

from pydantic import BaseModel, ConfigDict

from scheduler_platform.models.job_execution import JobStatus


class JobExecutionResponse(BaseModel):
    """One run of a schedule."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    schedule_id: int
    start_time: datetime
    end_time: datetime | None
    status: JobStatus
    output: str | None
    error_message: str | None
    retry_count: int
    duration_seconds: float | None
    triggered_by: str
    cancelled_by: str | None


class JobExecutionDetail(JobExecutionResponse):
    stack_trace: str | None
