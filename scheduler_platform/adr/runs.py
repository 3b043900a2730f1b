"""
Orchestration run tracking.

One global slot holds the run in progress. Sync runs, background runs and
single steps all claim it by compare-and-set; a second claim fails fast
with OrchestrationAlreadyRunning. Full-cycle runs are persisted as
AdrOrchestrationRun rows.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scheduler_platform.adr.account_sync import SqlAccountSource
from scheduler_platform.adr.api_client import AdrApiClient
from scheduler_platform.adr.credentials import AdrApiCredentialVerifier
from scheduler_platform.adr.orchestrator import FULL_CYCLE_STEPS, AdrOrchestrator, RunProgress
from scheduler_platform.adr.results import OrchestrationResult
from scheduler_platform.config import get_config
from scheduler_platform.core.database import AsyncSessionLocal
from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.errors import NotFoundError, OrchestrationAlreadyRunning
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.adr_orchestration_run import AdrOrchestrationRun, OrchestrationStatus
from scheduler_platform.services.data_source import SqlAuxiliaryDataSource
from scheduler_platform.services.notifications import (
    BaseNotifier,
    NullNotifier,
    get_notifier,
    notify_safely,
)

logger = get_logger(__name__)

INTERRUPTED_ERROR = "interrupted by restart"

_RESULT_STATUS = {
    "Completed": OrchestrationStatus.COMPLETED,
    "Failed": OrchestrationStatus.FAILED,
    "Cancelled": OrchestrationStatus.CANCELLED,
}


class OrchestrationSlot:
    """Holds at most one run descriptor."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._current: RunProgress | None = None

    @property
    def current(self) -> RunProgress | None:
        return self._current

    async def claim(self, progress: RunProgress) -> None:
        async with self._lock:
            if self._current is not None:
                raise OrchestrationAlreadyRunning(self._current.request_id)
            self._current = progress

    async def release(self, progress: RunProgress) -> None:
        async with self._lock:
            if self._current is progress:
                self._current = None


def apply_result_to_run(run: AdrOrchestrationRun, result: OrchestrationResult) -> None:
    """Copy step counts and durations onto the persisted run."""
    run.status = _RESULT_STATUS.get(result.status, OrchestrationStatus.FAILED)
    run.completed_date_time = result.completed_at
    run.current_step = None
    run.current_progress = None
    run.total_errors = result.total_errors
    run.error_message = result.error_message

    if result.status_check is not None:
        run.status_checks = result.status_check.jobs_checked
        run.jobs_completed = result.status_check.jobs_completed
        run.jobs_needing_review = result.status_check.jobs_needing_review
        run.status_check_duration_seconds = result.status_check.duration_seconds
    if result.scrape is not None:
        run.requests_sent = result.scrape.requests_sent
        run.scraping_duration_seconds = result.scrape.duration_seconds
    if result.credential_verification is not None:
        run.credentials_verified = result.credential_verification.credentials_verified
        run.credentials_failed = result.credential_verification.credentials_failed
        run.credential_verification_duration_seconds = result.credential_verification.duration_seconds
    if result.job_creation is not None:
        run.jobs_created = result.job_creation.jobs_created
        run.job_creation_duration_seconds = result.job_creation.duration_seconds
    if result.account_sync is not None:
        run.accounts_synced = result.account_sync.accounts_synced
        run.account_sync_duration_seconds = result.account_sync.duration_seconds
    if result.stale_jobs is not None:
        run.stale_jobs_finalized = result.stale_jobs.jobs_finalized
        run.cleanup_duration_seconds = result.stale_jobs.duration_seconds


class OrchestrationRunner:
    """Starts, tracks and cancels orchestration runs."""

    def __init__(
        self,
        orchestrator: AdrOrchestrator,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: BaseNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.orchestrator = orchestrator
        self._session_factory = session_factory
        self._notifier = notifier or NullNotifier()
        self._clock = clock
        self.slot = OrchestrationSlot()
        self._task: asyncio.Task[None] | None = None

    def _new_progress(self, requested_by: str, steps: tuple[str, ...]) -> RunProgress:
        return RunProgress(
            request_id=str(uuid.uuid4()),
            requested_by=requested_by,
            started_at=self._clock(),
            steps=steps,
        )

    async def _create_run(self, progress: RunProgress, status: OrchestrationStatus) -> None:
        async with self._session_factory() as db:
            db.add(
                AdrOrchestrationRun(
                    request_id=progress.request_id,
                    requested_by=progress.requested_by,
                    requested_date_time=progress.started_at,
                    started_date_time=progress.started_at if status == OrchestrationStatus.RUNNING else None,
                    status=status,
                )
            )
            await db.commit()

    async def _get_run(self, db: AsyncSession, request_id: str) -> AdrOrchestrationRun | None:
        result = await db.execute(
            select(AdrOrchestrationRun).where(AdrOrchestrationRun.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def _update_run(self, request_id: str, **fields: Any) -> None:
        async with self._session_factory() as db:
            run = await self._get_run(db, request_id)
            if run is None:
                return
            for name, value in fields.items():
                setattr(run, name, value)
            await db.commit()

    async def _execute(self, progress: RunProgress) -> OrchestrationResult:
        result = await self.orchestrator.run(progress)

        async with self._session_factory() as db:
            run = await self._get_run(db, progress.request_id)
            if run is not None:
                apply_result_to_run(run, result)
                await db.commit()

        logger.bind(
            request_id=progress.request_id,
            status=result.status,
            errors=result.total_errors,
            duration_seconds=result.duration_seconds,
        ).info("adr_orchestration_finished")
        await notify_safely(
            self._notifier.send_orchestration_summary(result.to_dict()),
            "adr_orchestration",
        )
        return result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_full_cycle(self, requested_by: str) -> OrchestrationResult:
        """
        Run every step and wait for the result.

        Raises:
            OrchestrationAlreadyRunning: Another run holds the slot
        """
        progress = self._new_progress(requested_by, FULL_CYCLE_STEPS)
        await self.slot.claim(progress)
        try:
            logger.bind(request_id=progress.request_id, requested_by=requested_by).info(
                "adr_orchestration_started"
            )
            await self._create_run(progress, OrchestrationStatus.RUNNING)
            return await self._execute(progress)
        finally:
            await self.slot.release(progress)

    async def start_background(self, requested_by: str) -> str:
        """
        Start a full cycle in a background task.

        Returns:
            The run's request id

        Raises:
            OrchestrationAlreadyRunning: Another run holds the slot
        """
        progress = self._new_progress(requested_by, FULL_CYCLE_STEPS)
        await self.slot.claim(progress)
        try:
            await self._create_run(progress, OrchestrationStatus.QUEUED)
        except Exception:
            await self.slot.release(progress)
            raise

        self._task = asyncio.create_task(
            self._run_background(progress),
            name=f"adr-orchestration-{progress.request_id}",
        )
        logger.bind(request_id=progress.request_id, requested_by=requested_by).info(
            "adr_orchestration_queued"
        )
        return progress.request_id

    async def _run_background(self, progress: RunProgress) -> None:
        try:
            await self._update_run(
                progress.request_id,
                status=OrchestrationStatus.RUNNING,
                started_date_time=self._clock(),
            )
            await self._execute(progress)
        except asyncio.CancelledError:
            await self._update_run(
                progress.request_id,
                status=OrchestrationStatus.INTERRUPTED,
                completed_date_time=self._clock(),
                error_message="interrupted by shutdown",
            )
            raise
        except Exception as e:
            logger.bind(request_id=progress.request_id, error=str(e)).exception(
                "adr_background_orchestration_crashed"
            )
            await self._update_run(
                progress.request_id,
                status=OrchestrationStatus.FAILED,
                completed_date_time=self._clock(),
                error_message=str(e),
            )
        finally:
            await self.slot.release(progress)
            self._task = None

    async def run_single_step(self, step: str, requested_by: str) -> OrchestrationResult:
        """Run one step under the run slot; single steps are not persisted."""
        if step not in FULL_CYCLE_STEPS:
            raise NotFoundError(f"Unknown orchestration step '{step}'")
        progress = self._new_progress(requested_by, (step,))
        await self.slot.claim(progress)
        try:
            return await self.orchestrator.run(progress)
        finally:
            await self.slot.release(progress)

    async def wait_for_background(self) -> None:
        """Wait for the background run, if any, to finish."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def current(self) -> dict[str, Any] | None:
        progress = self.slot.current
        if progress is None:
            return None
        return {"status": OrchestrationStatus.RUNNING.value, **progress.to_dict()}

    async def get_status(self, db: AsyncSession, request_id: str) -> dict[str, Any]:
        """
        Live progress for the current run, else the persisted row.

        Raises:
            NotFoundError: Unknown request id
        """
        progress = self.slot.current
        if progress is not None and progress.request_id == request_id:
            return {"status": OrchestrationStatus.RUNNING.value, **progress.to_dict()}

        run = await self._get_run(db, request_id)
        if run is None:
            raise NotFoundError(f"Orchestration run {request_id} not found")
        return run_to_dict(run)

    async def get_history(self, db: AsyncSession, limit: int = 50, offset: int = 0) -> list[AdrOrchestrationRun]:
        result = await db.execute(
            select(AdrOrchestrationRun)
            .order_by(AdrOrchestrationRun.requested_date_time.desc(), AdrOrchestrationRun.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    def cancel(self, request_id: str) -> RunProgress:
        """
        Ask the current run to stop after its current step.

        Raises:
            NotFoundError: No active run has this request id
        """
        progress = self.slot.current
        if progress is None or progress.request_id != request_id:
            raise NotFoundError(f"No active orchestration run {request_id}")
        progress.cancel_requested = True
        logger.bind(request_id=request_id, step=progress.current_step).info(
            "adr_orchestration_cancel_requested"
        )
        return progress


def run_to_dict(run: AdrOrchestrationRun) -> dict[str, Any]:
    return {
        "request_id": run.request_id,
        "requested_by": run.requested_by,
        "status": run.status.value,
        "requested_date_time": run.requested_date_time.isoformat(),
        "started_date_time": run.started_date_time.isoformat() if run.started_date_time else None,
        "completed_date_time": run.completed_date_time.isoformat() if run.completed_date_time else None,
        "current_step": run.current_step,
        "current_progress": run.current_progress,
        "accounts_synced": run.accounts_synced,
        "jobs_created": run.jobs_created,
        "credentials_verified": run.credentials_verified,
        "credentials_failed": run.credentials_failed,
        "requests_sent": run.requests_sent,
        "status_checks": run.status_checks,
        "jobs_completed": run.jobs_completed,
        "jobs_needing_review": run.jobs_needing_review,
        "stale_jobs_finalized": run.stale_jobs_finalized,
        "total_errors": run.total_errors,
        "error_message": run.error_message,
    }


async def recover_interrupted_runs(db: AsyncSession, now: datetime | None = None) -> int:
    """Mark runs left Queued or Running by a previous process as Interrupted."""
    now = now or utc_now()
    result = await db.execute(
        select(AdrOrchestrationRun).where(
            AdrOrchestrationRun.status.in_([OrchestrationStatus.QUEUED, OrchestrationStatus.RUNNING])
        )
    )
    runs = list(result.scalars().all())
    for run in runs:
        run.status = OrchestrationStatus.INTERRUPTED
        run.completed_date_time = now
        run.error_message = INTERRUPTED_ERROR
    await db.flush()

    if runs:
        logger.bind(count=len(runs)).warning("adr_orchestration_runs_interrupted")
    return len(runs)


_runner: OrchestrationRunner | None = None


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
) -> AdrOrchestrator:
    """Orchestrator wired to the configured API, verifier and account source."""
    config = get_config()
    client = AdrApiClient(config.adr)
    return AdrOrchestrator(
        session_factory,
        config.adr,
        api_client=client,
        verifier=AdrApiCredentialVerifier(client),
        account_source=SqlAccountSource(
            SqlAuxiliaryDataSource(),
            config.settings.auxiliary_connection_string,
            config.adr.account_sync_routine,
        ),
    )


def get_orchestration_runner() -> OrchestrationRunner:
    """Process-wide runner; the slot is only meaningful if shared."""
    global _runner
    if _runner is None:
        _runner = OrchestrationRunner(build_orchestrator(), AsyncSessionLocal, notifier=get_notifier())
    return _runner
