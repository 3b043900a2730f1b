from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from scheduler_platform.core.errors import ScheduleConfigurationError

M = TypeVar("M", bound=BaseModel)

# Captured output/error text kept per execution
MAX_CAPTURED_CHARS = 64_000


@dataclass
class ExecutionOutcome:
    """Result of one executor invocation."""

    success: bool
    output: str | None = None
    error_message: str | None = None
    duration_seconds: float = 0.0


# execute(config, parameters, timeout_seconds) -> outcome
Executor = Callable[[dict[str, Any], dict[str, str], float], Awaitable[ExecutionOutcome]]


def truncate(value: str | None, limit: int = MAX_CAPTURED_CHARS) -> str | None:
    if value is None or len(value) <= limit:
        return value
    return value[:limit] + f"\n... [truncated {len(value) - limit} chars]"


def parse_config(model: type[M], config: dict[str, Any]) -> M:
    """Validate a job configuration, mapping validation errors to configuration errors."""
    try:
        return model.model_validate(config)
    except ValidationError as e:
        raise ScheduleConfigurationError(f"Invalid {model.__name__}: {e}") from e
