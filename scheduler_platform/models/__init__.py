from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.models.adr_blacklist import AdrAccountBlacklist, ExclusionType
from scheduler_platform.models.adr_job import (
    AdrJob,
    AdrJobExecution,
    AdrJobStatus,
    AdrRequestType,
)
from scheduler_platform.models.adr_orchestration_run import (
    AdrOrchestrationRun,
    OrchestrationStatus,
)
from scheduler_platform.models.base import Base
from scheduler_platform.models.job_execution import JobExecution, JobStatus
from scheduler_platform.models.schedule import JobParameter, JobType, Schedule

__all__ = [
    "Base",
    "Schedule",
    "JobParameter",
    "JobType",
    "JobExecution",
    "JobStatus",
    "AdrAccount",
    "AdrAccountBlacklist",
    "ExclusionType",
    "AdrJob",
    "AdrJobExecution",
    "AdrJobStatus",
    "AdrRequestType",
    "AdrOrchestrationRun",
    "OrchestrationStatus",
]
