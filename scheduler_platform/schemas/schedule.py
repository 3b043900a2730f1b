from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from scheduler_platform.core.datetime_utils import is_valid_timezone
from scheduler_platform.models.schedule import JobType

PARAMETER_TYPES = {"string", "int", "bigint", "decimal", "bool", "bit", "datetime", "date"}


class JobParameterIn(BaseModel):
    """A parameter declared on a schedule."""

    parameter_name: str = Field(min_length=1, max_length=100)
    parameter_type: str = "string"
    parameter_value: str | None = None
    is_dynamic: bool = False
    source_query: str | None = Field(default=None, max_length=256)
    source_connection_string: str | None = None
    display_order: int = 0

    @field_validator("parameter_type")
    @classmethod
    def check_type(cls, v: str) -> str:
        if v.lower() not in PARAMETER_TYPES:
            raise ValueError(f"parameter_type must be one of {sorted(PARAMETER_TYPES)}")
        return v.lower()


class JobParameterResponse(JobParameterIn):
    model_config = ConfigDict(from_attributes=True)

    id: int


def _check_time_zone(v: str) -> str:
    if not is_valid_timezone(v):
        raise ValueError(f"Unknown time zone '{v}'")
    return v


TimeZone = Annotated[str, AfterValidator(_check_time_zone)]


class ScheduleCreate(BaseModel):
    """Request body for creating a schedule."""

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    client_id: int | None = None
    job_type: JobType
    cron_expression: str = Field(min_length=1, max_length=120)
    time_zone: TimeZone = "UTC"
    job_configuration: dict[str, Any] = Field(default_factory=dict)
    is_enabled: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_minutes: int = Field(default=5, ge=1)
    timeout_minutes: int | None = Field(default=None, ge=1)
    parameters: list[JobParameterIn] = Field(default_factory=list)


class ScheduleUpdate(BaseModel):
    """Partial update; omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    client_id: int | None = None
    cron_expression: str | None = Field(default=None, min_length=1, max_length=120)
    time_zone: TimeZone | None = None
    job_configuration: dict[str, Any] | None = None
    is_enabled: bool | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)
    retry_delay_minutes: int | None = Field(default=None, ge=1)
    timeout_minutes: int | None = Field(default=None, ge=1)
    parameters: list[JobParameterIn] | None = None


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str | None
    client_id: int | None
    job_type: JobType
    cron_expression: str
    time_zone: str
    job_configuration: dict[str, Any]
    is_enabled: bool
    is_system: bool
    max_retries: int
    retry_delay_minutes: int
    timeout_minutes: int | None
    retry_attempt: int
    next_run_time: datetime | None
    last_run_time: datetime | None
    parameters: list[JobParameterResponse] = Field(default_factory=list)


class CronValidationRequest(BaseModel):
    expression: str
    time_zone: str = "UTC"
    count: int = Field(default=5, ge=1, le=50)


class CronValidationResponse(BaseModel):
    valid: bool
    error: str | None = None
    next_fire_times: list[datetime] = Field(default_factory=list)


class TriggerResponse(BaseModel):
    schedule_id: int
    triggered_by: str
    message: str = "Schedule triggered"
