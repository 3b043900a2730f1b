"""Executor registry: one execute function and one config model per job type."""

from typing import Any

from pydantic import BaseModel

from scheduler_platform.core.errors import ScheduleConfigurationError
from scheduler_platform.jobs.api_call import execute_api_call
from scheduler_platform.jobs.base import Executor, parse_config
from scheduler_platform.jobs.process import execute_process
from scheduler_platform.jobs.stored_procedure import execute_stored_procedure
from scheduler_platform.models.schedule import JobType
from scheduler_platform.schemas.jobs import ApiCallJobConfig, ProcessJobConfig, StoredProcedureJobConfig

EXECUTORS: dict[JobType, Executor] = {
    JobType.PROCESS: execute_process,
    JobType.STORED_PROCEDURE: execute_stored_procedure,
    JobType.API_CALL: execute_api_call,
}

CONFIG_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.PROCESS: ProcessJobConfig,
    JobType.STORED_PROCEDURE: StoredProcedureJobConfig,
    JobType.API_CALL: ApiCallJobConfig,
}


def validate_job_configuration(job_type: JobType, config: dict[str, Any]) -> None:
    """Check a job configuration against its job type's model at edit time."""
    model = CONFIG_MODELS.get(job_type)
    if model is None:
        raise ScheduleConfigurationError(f"No executor registered for job type '{job_type}'")
    parse_config(model, config)
