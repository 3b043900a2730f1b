from scheduler_platform.schemas.adr import (
    AdrAccountResponse,
    BillingOverrideRequest,
    OrchestrationResultResponse,
    OrchestrationRunResponse,
)
from scheduler_platform.schemas.execution import JobExecutionDetail, JobExecutionResponse
from scheduler_platform.schemas.jobs import ApiCallJobConfig, ProcessJobConfig, StoredProcedureJobConfig
from scheduler_platform.schemas.schedule import ScheduleCreate, ScheduleResponse, ScheduleUpdate

__all__ = [
    "AdrAccountResponse",
    "BillingOverrideRequest",
    "OrchestrationResultResponse",
    "OrchestrationRunResponse",
    "JobExecutionResponse",
    "JobExecutionDetail",
    "ApiCallJobConfig",
    "ProcessJobConfig",
    "StoredProcedureJobConfig",
    "ScheduleCreate",
    "ScheduleResponse",
    "ScheduleUpdate",
]
