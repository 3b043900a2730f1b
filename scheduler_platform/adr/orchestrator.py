"""
ADR orchestrator: the daily invoice-retrieval cycle.

Steps, in run order:

1. check statuses    - poll ADRRequestSent jobs not yet checked today
2. send requests     - DownloadInvoice for verified jobs whose window is open
3. verify credentials - AttemptLogin ahead of each window
4. create jobs       - one job per due account and billing window
5. sync accounts     - refresh accounts and billing cycles from the source
6. cleanup           - fail jobs whose window has closed

Each job is processed in its own session and committed on its own, so one
failing job never rolls back another. Step methods are safe to call on
their own; mutual exclusion between runs is handled by ``runs``.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from datetime import time as dt_time
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scheduler_platform.adr.account_sync import BaseAccountSource, sync_accounts
from scheduler_platform.adr.api_client import AdrApiClient
from scheduler_platform.adr.billing import WindowPolicy
from scheduler_platform.adr.credentials import BaseCredentialVerifier
from scheduler_platform.adr.lifecycle import (
    TERMINAL_STATUSES,
    apply_status_result,
    build_execution_record,
    create_job_for_account,
    finalize_stale,
    mark_credential_failed,
    mark_credential_verified,
    mark_request_sent,
)
from scheduler_platform.adr.results import (
    AccountSyncResult,
    CredentialVerificationResult,
    JobCreationResult,
    OrchestrationResult,
    ScrapeResult,
    StalePendingJobsResult,
    StatusCheckResult,
)
from scheduler_platform.config import AdrConfig
from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.errors import CredentialVerificationFailed, NotFoundError
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.adr_account import MISSING_BILLING_STATUS, AdrAccount
from scheduler_platform.models.adr_blacklist import AdrAccountBlacklist, ExclusionType
from scheduler_platform.models.adr_job import AdrJob, AdrJobStatus, AdrRequestType

logger = get_logger(__name__)

STEP_CHECK_STATUSES = "check-statuses"
STEP_SEND_REQUESTS = "process-scraping"
STEP_VERIFY_CREDENTIALS = "verify-credentials"
STEP_CREATE_JOBS = "create-jobs"
STEP_SYNC_ACCOUNTS = "sync-accounts"
STEP_CLEANUP = "cleanup"

FULL_CYCLE_STEPS = (
    STEP_CHECK_STATUSES,
    STEP_SEND_REQUESTS,
    STEP_VERIFY_CREDENTIALS,
    STEP_CREATE_JOBS,
    STEP_SYNC_ACCOUNTS,
    STEP_CLEANUP,
)


@dataclass
class RunProgress:
    """Live state of an orchestration run, shared with status polling."""

    request_id: str
    requested_by: str
    started_at: datetime
    steps: tuple[str, ...] = FULL_CYCLE_STEPS
    current_step: str | None = None
    current_progress: str | None = None
    cancel_requested: bool = False
    result: OrchestrationResult | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "requested_by": self.requested_by,
            "started_at": self.started_at.isoformat(),
            "steps": list(self.steps),
            "current_step": self.current_step,
            "current_progress": self.current_progress,
            "cancel_requested": self.cancel_requested,
        }


def _day_start(today: date) -> datetime:
    return datetime.combine(today, dt_time.min)


def _active_job_filter() -> Any:
    return and_(AdrJob.is_deleted.is_(False), AdrJob.is_missing.is_(False))


def _is_blacklisted(account: AdrAccount, entries: list[AdrAccountBlacklist]) -> bool:
    for entry in entries:
        if entry.matches(account):
            logger.bind(account_id=account.id, blacklist_id=entry.id, reason=entry.reason).debug(
                "adr_account_blacklisted"
            )
            return True
    return False


class AdrOrchestrator:
    """Runs the ADR steps against the database and the retrieval API."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: AdrConfig,
        api_client: AdrApiClient,
        verifier: BaseCredentialVerifier,
        account_source: BaseAccountSource,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.config = config
        self.api_client = api_client
        self.verifier = verifier
        self.account_source = account_source
        self._clock = clock

    @property
    def window_policy(self) -> WindowPolicy:
        return WindowPolicy(self.config.window_days_before, self.config.window_days_after)

    def _progress(self, progress: RunProgress | None, message: str) -> None:
        if progress is not None:
            progress.current_progress = message

    async def _job_ids(self, *criteria: Any) -> list[int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AdrJob.id).where(_active_job_filter(), *criteria).order_by(AdrJob.id)
            )
            return list(result.scalars().all())

    async def _load(self, db: AsyncSession, job_id: int) -> tuple[AdrJob, AdrAccount]:
        job = await db.get(AdrJob, job_id)
        if job is None:
            raise NotFoundError(f"AdrJob {job_id} not found")
        account = await db.get(AdrAccount, job.adr_account_id)
        if account is None:
            raise NotFoundError(f"AdrAccount {job.adr_account_id} not found")
        return job, account

    async def _load_blacklist(self, exclusion_type: ExclusionType, today: date) -> list[AdrAccountBlacklist]:
        """Active entries in effect today for ``exclusion_type`` or All."""
        async with self._session_factory() as db:
            rows = await db.execute(
                select(AdrAccountBlacklist).where(
                    AdrAccountBlacklist.is_active.is_(True),
                    AdrAccountBlacklist.exclusion_type.in_([ExclusionType.ALL, exclusion_type]),
                    or_(
                        AdrAccountBlacklist.effective_start_date.is_(None),
                        AdrAccountBlacklist.effective_start_date <= today,
                    ),
                    or_(
                        AdrAccountBlacklist.effective_end_date.is_(None),
                        AdrAccountBlacklist.effective_end_date >= today,
                    ),
                )
            )
            return list(rows.scalars().all())

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def check_statuses(self, progress: RunProgress | None = None) -> StatusCheckResult:
        """Poll every ADRRequestSent job not yet checked today."""
        started = time.monotonic()
        result = StatusCheckResult()
        now = self._clock()
        today = now.date()

        job_ids = await self._job_ids(
            AdrJob.status == AdrJobStatus.ADR_REQUEST_SENT,
            or_(
                AdrJob.last_status_check_date_time.is_(None),
                AdrJob.last_status_check_date_time < _day_start(today),
            ),
        )

        for index, job_id in enumerate(job_ids, 1):
            self._progress(progress, f"Checking status {index}/{len(job_ids)}")
            try:
                async with self._session_factory() as db:
                    job, account = await self._load(db, job_id)
                    call_started = self._clock()
                    api_result = await self.api_client.check_status(job.id, job.adr_index_id)
                    db.add(
                        build_execution_record(
                            job, AdrRequestType.STATUS_CHECK, api_result, call_started, self._clock()
                        )
                    )
                    new_status = apply_status_result(job, api_result, now, account)
                    await db.commit()

                result.jobs_checked += 1
                if not api_result.success:
                    result.add_error(f"Job {job_id}: {api_result.error_message}")
                elif new_status == AdrJobStatus.COMPLETED:
                    result.jobs_completed += 1
                elif new_status == AdrJobStatus.NEEDS_REVIEW:
                    result.jobs_needing_review += 1
                else:
                    result.jobs_still_pending += 1
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).error("adr_status_check_failed")
                result.add_error(f"Job {job_id}: {e}")

        result.duration_seconds = time.monotonic() - started
        logger.bind(
            checked=result.jobs_checked,
            completed=result.jobs_completed,
            review=result.jobs_needing_review,
            errors=result.errors,
        ).info("adr_status_check_completed")
        return result

    async def send_requests(self, progress: RunProgress | None = None) -> ScrapeResult:
        """Send DownloadInvoice requests for verified jobs whose window is open."""
        started = time.monotonic()
        result = ScrapeResult()
        now = self._clock()
        today = now.date()

        job_ids = await self._job_ids(
            AdrJob.status.in_([AdrJobStatus.CREDENTIAL_VERIFIED, AdrJobStatus.ADR_REQUEST_SENT]),
            AdrJob.next_range_start <= today,
            AdrJob.next_range_end >= today,
            or_(
                AdrJob.last_request_sent_date_time.is_(None),
                AdrJob.last_request_sent_date_time < _day_start(today),
            ),
        )

        for index, job_id in enumerate(job_ids, 1):
            self._progress(progress, f"Sending request {index}/{len(job_ids)}")
            try:
                async with self._session_factory() as db:
                    job, account = await self._load(db, job_id)
                    call_started = self._clock()
                    api_result = await self.api_client.send_request(
                        AdrRequestType.DOWNLOAD_INVOICE,
                        credential_id=job.credential_id,
                        job_id=job.id,
                        account_id=account.external_account_id,
                        interface_account_id=account.interface_account_id,
                        start_date=job.billing_period_start,
                        end_date=job.billing_period_end,
                        is_last_attempt=job.next_range_end == today,
                    )
                    db.add(
                        build_execution_record(
                            job, AdrRequestType.DOWNLOAD_INVOICE, api_result, call_started, self._clock()
                        )
                    )
                    accepted = mark_request_sent(job, api_result, now)
                    if accepted and api_result.is_final:
                        apply_status_result(job, api_result, now, account)
                    await db.commit()

                result.jobs_processed += 1
                if accepted:
                    result.requests_sent += 1
                else:
                    result.requests_failed += 1
                    result.add_error(f"Job {job_id}: {api_result.error_message}")
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).error("adr_request_send_failed")
                result.add_error(f"Job {job_id}: {e}")

        result.duration_seconds = time.monotonic() - started
        logger.bind(
            processed=result.jobs_processed,
            sent=result.requests_sent,
            failed=result.requests_failed,
        ).info("adr_requests_sent")
        return result

    async def verify_credentials(self, progress: RunProgress | None = None) -> CredentialVerificationResult:
        """
        Verify credentials for jobs whose window opens within the lead time.

        CredentialFailed jobs are re-checked once their account's credential
        has changed.
        """
        started = time.monotonic()
        result = CredentialVerificationResult()
        now = self._clock()
        today = now.date()
        horizon = today + timedelta(days=self.config.credential_check_lead_days)

        pending = await self._job_ids(
            AdrJob.status == AdrJobStatus.PENDING,
            AdrJob.next_range_start <= horizon,
            AdrJob.next_range_end >= today,
        )
        async with self._session_factory() as db:
            rows = await db.execute(
                select(AdrJob.id)
                .join(AdrAccount, AdrAccount.id == AdrJob.adr_account_id)
                .where(
                    _active_job_filter(),
                    AdrJob.status == AdrJobStatus.CREDENTIAL_FAILED,
                    AdrJob.next_range_end >= today,
                    AdrAccount.credential_id != AdrJob.credential_id,
                )
                .order_by(AdrJob.id)
            )
            changed = list(rows.scalars().all())
        job_ids = pending + changed
        blacklist = await self._load_blacklist(ExclusionType.CREDENTIAL_CHECK, today)

        for index, job_id in enumerate(job_ids, 1):
            self._progress(progress, f"Verifying credentials {index}/{len(job_ids)}")
            try:
                async with self._session_factory() as db:
                    job, account = await self._load(db, job_id)
                    if _is_blacklisted(account, blacklist):
                        result.jobs_blacklisted += 1
                        continue
                    call_started = self._clock()
                    try:
                        api_result = await self.verifier.verify_credentials(account.credential_id, job, account)
                    except CredentialVerificationFailed as e:
                        if e.result is not None:
                            db.add(
                                build_execution_record(
                                    job, AdrRequestType.ATTEMPT_LOGIN, e.result, call_started, self._clock()
                                )
                            )
                        mark_credential_failed(job, account, e.reason)
                        await db.commit()
                        result.jobs_processed += 1
                        result.credentials_failed += 1
                        result.add_error(f"Job {job_id}: {e}")
                        continue

                    if api_result is not None:
                        db.add(
                            build_execution_record(
                                job, AdrRequestType.ATTEMPT_LOGIN, api_result, call_started, self._clock()
                            )
                        )
                    mark_credential_verified(job, account, now)
                    await db.commit()
                result.jobs_processed += 1
                result.credentials_verified += 1
            except Exception as e:
                logger.bind(job_id=job_id, error=str(e)).error("adr_credential_verification_error")
                result.add_error(f"Job {job_id}: {e}")

        result.duration_seconds = time.monotonic() - started
        logger.bind(
            processed=result.jobs_processed,
            verified=result.credentials_verified,
            failed=result.credentials_failed,
            blacklisted=result.jobs_blacklisted,
        ).info("adr_credentials_verified")
        return result

    async def create_jobs(self, progress: RunProgress | None = None) -> JobCreationResult:
        """Create a job for each active account whose next run is within the creation lead."""
        started = time.monotonic()
        result = JobCreationResult()
        today = self._clock().date()
        horizon = today + timedelta(days=self.config.job_creation_lead_days)

        async with self._session_factory() as db:
            rows = await db.execute(
                select(AdrAccount.id)
                .where(
                    AdrAccount.is_active.is_(True),
                    AdrAccount.is_deleted.is_(False),
                    AdrAccount.next_run_date.is_not(None),
                    AdrAccount.next_run_date <= horizon,
                    or_(
                        AdrAccount.historical_billing_status.is_(None),
                        AdrAccount.historical_billing_status != MISSING_BILLING_STATUS,
                    ),
                )
                .order_by(AdrAccount.id)
            )
            account_ids = list(rows.scalars().all())
        blacklist = await self._load_blacklist(ExclusionType.DOWNLOAD, today)

        for index, account_id in enumerate(account_ids, 1):
            self._progress(progress, f"Creating jobs {index}/{len(account_ids)}")
            try:
                async with self._session_factory() as db:
                    account = await db.get(AdrAccount, account_id)
                    if account is None:
                        continue
                    if _is_blacklisted(account, blacklist):
                        result.jobs_skipped += 1
                        result.jobs_blacklisted += 1
                        continue
                    job = await create_job_for_account(db, account, today)
                    await db.commit()
                if job is None:
                    result.jobs_skipped += 1
                else:
                    result.jobs_created += 1
            except Exception as e:
                logger.bind(account_id=account_id, error=str(e)).error("adr_job_creation_failed")
                result.add_error(f"Account {account_id}: {e}")

        result.duration_seconds = time.monotonic() - started
        logger.bind(
            created=result.jobs_created,
            skipped=result.jobs_skipped,
            blacklisted=result.jobs_blacklisted,
        ).info("adr_jobs_created")
        return result

    async def sync_accounts(self, progress: RunProgress | None = None) -> AccountSyncResult:
        """Refresh accounts and their billing cycles from the account source."""
        self._progress(progress, "Syncing accounts")
        now = self._clock()
        async with self._session_factory() as db:
            result = await sync_accounts(db, self.account_source, now.date(), now, self.window_policy)
            await db.commit()
        return result

    async def cleanup_stale_jobs(self, progress: RunProgress | None = None) -> StalePendingJobsResult:
        """Fail every non-terminal job whose window closed before today."""
        started = time.monotonic()
        result = StalePendingJobsResult()
        today = self._clock().date()
        self._progress(progress, "Finalizing stale jobs")

        async with self._session_factory() as db:
            rows = await db.execute(
                select(AdrJob).where(
                    AdrJob.is_deleted.is_(False),
                    AdrJob.status.not_in(list(TERMINAL_STATUSES)),
                    AdrJob.next_range_end < today,
                )
            )
            for job in rows.scalars().all():
                try:
                    if finalize_stale(job, today):
                        result.jobs_finalized += 1
                except Exception as e:
                    logger.bind(job_id=job.id, error=str(e)).error("adr_stale_job_cleanup_failed")
                    result.add_error(f"Job {job.id}: {e}")
            await db.commit()

        result.duration_seconds = time.monotonic() - started
        logger.bind(finalized=result.jobs_finalized).info("adr_stale_jobs_finalized")
        return result

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    async def run_step(self, step: str, result: OrchestrationResult, progress: RunProgress | None = None) -> None:
        """Run one named step and store its result on ``result``."""
        if progress is not None:
            progress.current_step = step
            progress.current_progress = None

        match step:
            case "check-statuses":
                result.status_check = await self.check_statuses(progress)
            case "process-scraping":
                result.scrape = await self.send_requests(progress)
            case "verify-credentials":
                result.credential_verification = await self.verify_credentials(progress)
            case "create-jobs":
                result.job_creation = await self.create_jobs(progress)
            case "sync-accounts":
                result.account_sync = await self.sync_accounts(progress)
            case "cleanup":
                result.stale_jobs = await self.cleanup_stale_jobs(progress)
            case _:
                raise ValueError(f"Unknown orchestration step '{step}'")

    async def run(self, progress: RunProgress) -> OrchestrationResult:
        """
        Run ``progress.steps`` in order.

        The cancel flag is checked between steps: the current step always
        finishes, the rest are skipped and the run ends Cancelled. A step
        that raises is recorded and the remaining steps still run; the run
        then ends Failed.
        """
        result = OrchestrationResult(
            request_id=progress.request_id,
            requested_by=progress.requested_by,
            started_at=progress.started_at,
        )
        progress.result = result
        step_errors: list[str] = []
        cancelled = False

        for step in progress.steps:
            if progress.cancel_requested:
                cancelled = True
                logger.bind(request_id=progress.request_id, next_step=step).info(
                    "adr_orchestration_cancelled"
                )
                break
            try:
                await self.run_step(step, result, progress)
            except Exception as e:
                logger.bind(request_id=progress.request_id, step=step, error=str(e)).exception(
                    "adr_orchestration_step_failed"
                )
                step_errors.append(f"{step}: {e}")

        if step_errors:
            result.error_message = "; ".join(step_errors)
        if cancelled:
            result.status = "Cancelled"
        elif step_errors:
            result.status = "Failed"
        else:
            result.status = "Completed"

        result.completed_at = self._clock()
        progress.current_step = None
        progress.current_progress = None
        return result
