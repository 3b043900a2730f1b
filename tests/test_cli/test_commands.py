"""Tests for the scheduler-platform CLI."""

from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from scheduler_platform.adr.results import JobCreationResult, OrchestrationResult
from scheduler_platform.cli import app
from scheduler_platform.core.errors import NotFoundError

cli = CliRunner()


def _runner_mock(**methods) -> MagicMock:
    runner = MagicMock()
    for name, value in methods.items():
        setattr(runner, name, AsyncMock(**value))
    return runner


class TestNextRun:
    """Tests for next-run."""

    def test_prints_fire_times(self):
        """Should print one line per fire time."""
        result = cli.invoke(app, ["next-run", "0 2 * * *", "--count", "3"])

        assert result.exit_code == 0
        assert len(result.output.strip().splitlines()) == 3

    def test_invalid_expression(self):
        """Should exit non-zero on an invalid expression."""
        result = cli.invoke(app, ["next-run", "not a cron"])

        assert result.exit_code == 1


class TestAdrCommands:
    """Tests for adr-cycle and adr-step."""

    def test_adr_step(self):
        """Should run the named step and print its counts."""
        outcome = OrchestrationResult(request_id="r", requested_by="cli", status="Completed")
        outcome.job_creation = JobCreationResult(jobs_created=2)
        runner = _runner_mock(run_single_step={"return_value": outcome})

        with (
            patch("scheduler_platform.adr.runs.get_orchestration_runner", return_value=runner),
            patch("scheduler_platform.core.logging.setup_logging"),
        ):
            result = cli.invoke(app, ["adr-step", "create-jobs", "-u", "ops"])

        assert result.exit_code == 0
        assert "create-jobs: errors=0, jobs_created=2, jobs_skipped=0" in result.output
        runner.run_single_step.assert_awaited_once_with("create-jobs", "ops")

    def test_adr_step_unknown(self):
        """Should exit non-zero for an unknown step."""
        runner = _runner_mock(run_single_step={"side_effect": NotFoundError("Unknown orchestration step 'x'")})

        with (
            patch("scheduler_platform.adr.runs.get_orchestration_runner", return_value=runner),
            patch("scheduler_platform.core.logging.setup_logging"),
        ):
            result = cli.invoke(app, ["adr-step", "x"])

        assert result.exit_code == 1

    def test_adr_cycle_failed(self):
        """Should exit non-zero when the cycle does not complete."""
        outcome = OrchestrationResult(request_id="r", requested_by="cli", status="Failed")
        runner = _runner_mock(run_full_cycle={"return_value": outcome})

        with (
            patch("scheduler_platform.adr.runs.get_orchestration_runner", return_value=runner),
            patch("scheduler_platform.core.logging.setup_logging"),
        ):
            result = cli.invoke(app, ["adr-cycle"])

        assert result.exit_code == 1
        assert "Status: Failed" in result.output
