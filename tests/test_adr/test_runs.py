"""Tests for orchestration run tracking."""

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select

from scheduler_platform.adr.runs import INTERRUPTED_ERROR, recover_interrupted_runs
from scheduler_platform.core.errors import NotFoundError, OrchestrationAlreadyRunning
from scheduler_platform.models.adr_orchestration_run import AdrOrchestrationRun, OrchestrationStatus


async def _run_row(session_maker, request_id: str) -> AdrOrchestrationRun:
    async with session_maker() as db:
        result = await db.execute(
            select(AdrOrchestrationRun).where(AdrOrchestrationRun.request_id == request_id)
        )
        return result.scalar_one()


class TestFullCycle:
    """Tests for synchronous full cycles."""

    async def test_persists_and_notifies(self, runner, notifier, session_maker):
        """Should persist a completed run and send its summary."""
        result = await runner.run_full_cycle("ops@example.com")

        assert result.status == "Completed"
        run = await _run_row(session_maker, result.request_id)
        assert run.status == OrchestrationStatus.COMPLETED
        assert run.requested_by == "ops@example.com"
        assert run.completed_date_time is not None
        assert run.total_errors == 0
        assert notifier.summaries[0]["request_id"] == result.request_id
        assert runner.current() is None

    async def test_failed_step_persisted(self, runner, account_source, session_maker):
        """Should persist Failed with the step error."""
        account_source.error = RuntimeError("source down")

        result = await runner.run_full_cycle("ops")

        run = await _run_row(session_maker, result.request_id)
        assert run.status == OrchestrationStatus.FAILED
        assert run.error_message == "sync-accounts: source down"

    async def test_single_step_not_persisted(self, runner, session_maker):
        """Should run one step without a history row."""
        result = await runner.run_single_step("create-jobs", "ops")

        assert result.job_creation is not None
        assert result.account_sync is None
        async with session_maker() as db:
            assert (await db.execute(select(AdrOrchestrationRun))).first() is None

    async def test_unknown_single_step(self, runner):
        """Should reject unknown steps before claiming the slot."""
        with pytest.raises(NotFoundError):
            await runner.run_single_step("reticulate", "ops")
        assert runner.current() is None


class TestBackgroundRuns:
    """Tests for background runs, the run slot and cancellation."""

    async def test_slot_is_exclusive_and_cancel_stops_run(
        self, runner, account_source, session_maker, db_session
    ):
        """Should refuse a second run and stop the first after its current step."""
        account_source.gate = asyncio.Event()

        request_id = await runner.start_background("ops")
        await asyncio.wait_for(account_source.entered.wait(), timeout=5)

        live = await runner.get_status(db_session, request_id)
        assert live["status"] == "Running"
        assert live["current_step"] == "sync-accounts"
        assert runner.current()["request_id"] == request_id

        with pytest.raises(OrchestrationAlreadyRunning):
            await runner.run_full_cycle("someone-else")
        with pytest.raises(OrchestrationAlreadyRunning):
            await runner.run_single_step("check-statuses", "someone-else")
        with pytest.raises(OrchestrationAlreadyRunning):
            await runner.start_background("someone-else")

        progress = runner.cancel(request_id)
        assert progress.cancel_requested is True

        account_source.gate.set()
        await runner.wait_for_background()

        run = await _run_row(session_maker, request_id)
        assert run.status == OrchestrationStatus.CANCELLED
        assert run.started_date_time is not None
        assert runner.current() is None

        persisted = await runner.get_status(db_session, request_id)
        assert persisted["status"] == "Cancelled"

    async def test_background_completes(self, runner, session_maker):
        """Should queue, run and persist a background cycle."""
        request_id = await runner.start_background("ops")
        await runner.wait_for_background()

        run = await _run_row(session_maker, request_id)
        assert run.status == OrchestrationStatus.COMPLETED

    async def test_shutdown_interrupts(self, runner, account_source, session_maker):
        """Should mark a background run Interrupted when shut down."""
        account_source.gate = asyncio.Event()
        request_id = await runner.start_background("ops")
        await asyncio.wait_for(account_source.entered.wait(), timeout=5)

        await runner.shutdown()

        run = await _run_row(session_maker, request_id)
        assert run.status == OrchestrationStatus.INTERRUPTED
        assert runner.current() is None

    def test_cancel_unknown(self, runner):
        """Should raise for a request id that is not running."""
        with pytest.raises(NotFoundError):
            runner.cancel("nope")


class TestStatusAndHistory:
    """Tests for status lookup, history and restart recovery."""

    async def test_unknown_status(self, runner, db_session):
        """Should raise for an unknown request id."""
        with pytest.raises(NotFoundError):
            await runner.get_status(db_session, "missing")

    async def test_history_newest_first(self, runner, clock, db_session):
        """Should list persisted runs newest first."""
        first = await runner.run_full_cycle("ops")
        clock.advance(hours=1)
        second = await runner.run_full_cycle("ops")

        history = await runner.get_history(db_session, limit=10)

        assert [run.request_id for run in history] == [second.request_id, first.request_id]
        assert len(await runner.get_history(db_session, limit=1)) == 1

    async def test_recover_interrupted_runs(self, db_session):
        """Should mark queued and running rows Interrupted."""
        now = datetime(2026, 1, 10, 7, 0)
        for request_id, status in (
            ("queued", OrchestrationStatus.QUEUED),
            ("running", OrchestrationStatus.RUNNING),
            ("done", OrchestrationStatus.COMPLETED),
        ):
            db_session.add(
                AdrOrchestrationRun(
                    request_id=request_id,
                    requested_by="ops",
                    requested_date_time=datetime(2026, 1, 10, 6, 0),
                    status=status,
                )
            )
        await db_session.commit()

        assert await recover_interrupted_runs(db_session, now) == 2

        result = await db_session.execute(
            select(AdrOrchestrationRun).order_by(AdrOrchestrationRun.request_id)
        )
        runs = {run.request_id: run for run in result.scalars().all()}
        assert runs["done"].status == OrchestrationStatus.COMPLETED
        assert runs["queued"].status == OrchestrationStatus.INTERRUPTED
        assert runs["running"].error_message == INTERRUPTED_ERROR
        assert runs["running"].completed_date_time == now
