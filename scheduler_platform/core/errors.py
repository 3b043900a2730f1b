"""Error taxonomy for the scheduling and ADR orchestration engine.

Every error carries a short ``tag`` used in logs and in recorded
execution errors, so history can be filtered by failure kind.
"""

from typing import Any


class SchedulerPlatformError(Exception):
    """Base class for all engine errors."""

    tag = "error"


class ScheduleConfigurationError(SchedulerPlatformError):
    """Malformed cron expression or job configuration. Never retried."""

    tag = "configuration"


class ExecutorFailure(SchedulerPlatformError):
    """Executor reported failure (non-zero exit, non-2xx, SQL error)."""

    tag = "executor"

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(message)
        self.output = output


class TimeoutExceeded(ExecutorFailure):
    """Executor did not finish within its timeout."""

    tag = "timeout"

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Execution timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class ParameterResolutionFailed(SchedulerPlatformError):
    """A dynamic job parameter could not be resolved."""

    tag = "parameters"

    def __init__(self, parameter_name: str, reason: str) -> None:
        super().__init__(f"Failed to resolve parameter '{parameter_name}': {reason}")
        self.parameter_name = parameter_name


class ConcurrencyConflict(SchedulerPlatformError):
    """A fire was refused because the schedule already has a running execution."""

    tag = "concurrency"

    def __init__(self, schedule_id: int) -> None:
        super().__init__(f"Schedule {schedule_id} already has a running execution")
        self.schedule_id = schedule_id


class CredentialVerificationFailed(SchedulerPlatformError):
    """Vendor credentials were rejected for an ADR job."""

    tag = "credentials"

    def __init__(
        self,
        credential_id: int,
        reason: str = "credential verification failed",
        result: Any = None,
    ) -> None:
        super().__init__(f"Credential {credential_id}: {reason}")
        self.credential_id = credential_id
        self.reason = reason
        self.result = result


class OrchestrationAlreadyRunning(SchedulerPlatformError):
    """An ADR orchestration run already holds the global run slot."""

    tag = "orchestration"

    def __init__(self, request_id: str) -> None:
        super().__init__(f"ADR orchestration {request_id} is already in progress")
        self.request_id = request_id


class InvalidStatusTransition(SchedulerPlatformError):
    """An ADR job status change not allowed by the lifecycle."""

    tag = "lifecycle"


class NotFoundError(SchedulerPlatformError):
    """A requested entity does not exist (or is soft-deleted)."""

    tag = "not_found"
