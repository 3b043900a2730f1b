"""Process executor: runs an executable and captures its output."""

import asyncio
import os
import shlex
import signal
import time
from typing import Any

from scheduler_platform.core.errors import TimeoutExceeded
from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.base import ExecutionOutcome, parse_config, truncate
from scheduler_platform.jobs.parameters import substitute_placeholders
from scheduler_platform.schemas.jobs import ProcessJobConfig

logger = get_logger(__name__)


def _build_argv(config: ProcessJobConfig) -> list[str]:
    if config.arguments is None:
        args: list[str] = []
    elif isinstance(config.arguments, str):
        args = shlex.split(config.arguments)
    else:
        args = list(config.arguments)
    return [config.executable_path, *args]


def _launch_failed(job: ProcessJobConfig, message: str) -> ExecutionOutcome:
    logger.bind(executable=job.executable_path, error=message).warning("process_launch_failed")
    return ExecutionOutcome(success=False, error_message=truncate(message))


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill the process and everything in its session, then reap it."""
    if proc.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


async def execute_process(
    config: dict[str, Any],
    parameters: dict[str, str],
    timeout: float,
) -> ExecutionOutcome:
    """
    Launch the configured executable and wait for it to exit.

    The process runs without a shell in its own session so that a timeout
    or cancellation can kill the whole process tree.

    A missing executable or working directory is a failed outcome and is
    retried like any other executor failure.

    Raises:
        ScheduleConfigurationError: The job configuration is malformed
        TimeoutExceeded: Process did not exit within ``timeout`` seconds
    """
    job = parse_config(ProcessJobConfig, substitute_placeholders(config, parameters))
    argv = _build_argv(job)

    if job.working_directory and not os.path.isdir(job.working_directory):
        return _launch_failed(job, f"Working directory not found: {job.working_directory}")

    env = {**os.environ, **job.environment_variables}
    started = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=job.working_directory or None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        return _launch_failed(job, f"Cannot start '{job.executable_path}': {e}")

    logger.bind(pid=proc.pid, executable=job.executable_path).debug("process_started")

    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await proc.communicate()
    except TimeoutError:
        await _kill_process_tree(proc)
        logger.bind(pid=proc.pid, timeout=timeout).warning("process_killed_on_timeout")
        raise TimeoutExceeded(timeout) from None
    except asyncio.CancelledError:
        await _kill_process_tree(proc)
        logger.bind(pid=proc.pid).warning("process_killed_on_cancel")
        raise

    duration = time.monotonic() - started
    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    output = out
    if err.strip():
        output = f"{out}\nSTDERR:\n{err}" if out else f"STDERR:\n{err}"

    if proc.returncode == 0:
        return ExecutionOutcome(success=True, output=truncate(output), duration_seconds=duration)

    message = f"Process exited with code {proc.returncode}"
    if err.strip():
        message = f"{message}: {err.strip()}"
    return ExecutionOutcome(
        success=False,
        output=truncate(output),
        error_message=truncate(message),
        duration_seconds=duration,
    )
