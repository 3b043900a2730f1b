"""Stored procedure executor."""

import asyncio
import time
from typing import Any

from sqlalchemy.exc import ArgumentError, NoSuchModuleError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler_platform.core.errors import ScheduleConfigurationError, TimeoutExceeded
from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.base import ExecutionOutcome, parse_config, truncate
from scheduler_platform.jobs.parameters import substitute_placeholders
from scheduler_platform.jobs.sql import bind_value, build_routine_call
from scheduler_platform.schemas.jobs import StoredProcedureJobConfig

logger = get_logger(__name__)


async def execute_stored_procedure(
    config: dict[str, Any],
    parameters: dict[str, str],
    timeout: float,
) -> ExecutionOutcome:
    """Invoke the configured procedure with its arguments bound by declared type.

    ``Scalar`` mode captures the first column of the first row as output; when
    ``return_value_is_error`` is set a truthy scalar fails the execution.
    """
    job = parse_config(StoredProcedureJobConfig, substitute_placeholders(config, parameters))
    values = {p.name.lstrip("@"): bind_value(p.type, p.value) for p in job.parameters}

    try:
        engine = create_async_engine(job.connection_string)
    except (ArgumentError, NoSuchModuleError) as e:
        raise ScheduleConfigurationError(f"Invalid connection string: {e}") from e
    statement = build_routine_call(
        engine.dialect.name,
        job.procedure_name,
        [p.name for p in job.parameters],
        mode=job.execution_mode,
    )
    started = time.monotonic()

    try:
        async with asyncio.timeout(timeout):
            async with engine.begin() as conn:
                result = await conn.execute(statement, values)
                scalar = result.scalar() if job.execution_mode == "Scalar" else None
    except TimeoutError:
        raise TimeoutExceeded(timeout) from None
    except SQLAlchemyError as e:
        logger.bind(procedure=job.procedure_name, error=str(e)).warning("stored_procedure_failed")
        return ExecutionOutcome(
            success=False,
            error_message=truncate(f"{type(e).__name__}: {e}"),
            duration_seconds=time.monotonic() - started,
        )
    finally:
        await engine.dispose()

    duration = time.monotonic() - started
    if job.execution_mode == "Scalar":
        output = f"Return value: {scalar}"
        if job.return_value_is_error and scalar:
            return ExecutionOutcome(
                success=False,
                output=output,
                error_message=f"Procedure {job.procedure_name} returned error value {scalar}",
                duration_seconds=duration,
            )
    else:
        output = f"Procedure {job.procedure_name} executed"

    return ExecutionOutcome(success=True, output=output, duration_seconds=duration)
