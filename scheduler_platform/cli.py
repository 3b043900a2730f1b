"""
Scheduler Platform CLI - Command line interface for operating the engine.

Usage:
    scheduler-platform --help                  Show all commands
    scheduler-platform tick                    Fire every due schedule once
    scheduler-platform next-run "0 2 * * *"    Preview cron fire times
    scheduler-platform recover                 Run the startup recovery sweep
    scheduler-platform adr-cycle               Run a full ADR orchestration cycle
    scheduler-platform adr-step create-jobs    Run a single ADR step
"""

import asyncio

import typer

app = typer.Typer(
    name="scheduler-platform",
    help="Scheduler Platform CLI - job scheduling and ADR orchestration",
    no_args_is_help=True,
)


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


def _print_result(result) -> None:
    for name, step in (
        ("sync-accounts", result.account_sync),
        ("create-jobs", result.job_creation),
        ("verify-credentials", result.credential_verification),
        ("process-scraping", result.scrape),
        ("check-statuses", result.status_check),
        ("cleanup", result.stale_jobs),
    ):
        if step is None:
            continue
        counts = {k: v for k, v in vars(step).items() if k not in ("error_messages", "duration_seconds")}
        line = f"{name}: " + ", ".join(f"{k}={v}" for k, v in counts.items())
        if step.errors:
            _print_warning(line)
        else:
            _print_success(line)
    typer.echo(f"\nStatus: {result.status} ({result.total_errors} errors)")


@app.command()
def tick():
    """Fire every schedule whose NextRunTime has passed, then wait for them."""
    from scheduler_platform.core.logging import setup_logging
    from scheduler_platform.core.scheduler import get_engine

    setup_logging()

    async def run() -> list[int]:
        engine = get_engine()
        fired = await engine.tick()
        await engine.drain()
        return fired

    fired = asyncio.run(run())
    _print_success(f"Fired {len(fired)} schedule(s): {fired}")


@app.command()
def next_run(
    expression: str = typer.Argument(..., help="Cron expression (5, 6 or 7 fields)"),
    tz: str = typer.Option("UTC", "--tz", "-z", help="IANA time zone"),
    count: int = typer.Option(5, "--count", "-c", help="Number of fire times"),
):
    """Preview the next fire times of a cron expression."""
    from datetime import UTC, datetime
    from zoneinfo import ZoneInfo

    from scheduler_platform.core.cron import next_fire_times
    from scheduler_platform.core.errors import ScheduleConfigurationError

    try:
        times = next_fire_times(expression, tz, datetime.now(UTC), count)
    except ScheduleConfigurationError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e

    zone = ZoneInfo(tz)
    for t in times:
        typer.echo(f"  {t.isoformat()}  ({t.astimezone(zone).isoformat()})")


@app.command()
def recover():
    """Fail orphaned executions, arm schedules and mark interrupted ADR runs."""
    from scheduler_platform.adr.runs import recover_interrupted_runs
    from scheduler_platform.core.database import AsyncSessionLocal
    from scheduler_platform.core.logging import setup_logging
    from scheduler_platform.core.scheduler import get_engine

    setup_logging()

    async def run() -> tuple[dict, int]:
        stats = await get_engine().recover()
        async with AsyncSessionLocal() as db:
            interrupted = await recover_interrupted_runs(db)
            await db.commit()
        return stats, interrupted

    stats, interrupted = asyncio.run(run())
    _print_success(f"Recovered executions: {stats['recovered_executions']}")
    _print_success(f"Armed schedules: {stats['armed_schedules']}")
    _print_success(f"Interrupted ADR runs: {interrupted}")


@app.command()
def adr_cycle(
    requested_by: str = typer.Option("cli", "--requested-by", "-u", help="Recorded requester"),
):
    """Run a full ADR orchestration cycle and print the step results."""
    from scheduler_platform.adr.runs import get_orchestration_runner
    from scheduler_platform.core.logging import setup_logging

    setup_logging()

    result = asyncio.run(get_orchestration_runner().run_full_cycle(requested_by))
    _print_result(result)
    if result.status != "Completed":
        raise typer.Exit(1)


@app.command()
def adr_step(
    step: str = typer.Argument(..., help="create-jobs, verify-credentials, process-scraping, ..."),
    requested_by: str = typer.Option("cli", "--requested-by", "-u", help="Recorded requester"),
):
    """Run a single ADR orchestration step."""
    from scheduler_platform.adr.runs import get_orchestration_runner
    from scheduler_platform.core.errors import NotFoundError
    from scheduler_platform.core.logging import setup_logging

    setup_logging()

    try:
        result = asyncio.run(get_orchestration_runner().run_single_step(step, requested_by))
    except NotFoundError as e:
        _print_error(str(e))
        raise typer.Exit(1) from e
    _print_result(result)


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    cmd = ["uvicorn", "scheduler_platform.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
