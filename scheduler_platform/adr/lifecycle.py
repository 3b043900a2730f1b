"""
ADR job lifecycle.

Status changes go through ``transition`` and the ALLOWED_TRANSITIONS
table:

    Pending            -> CredentialVerified | CredentialFailed
    CredentialFailed   -> CredentialVerified | CredentialFailed  (credential changed)
    CredentialVerified -> ADRRequestSent
    ADRRequestSent     -> ADRRequestSent | Completed | Failed | NeedsReview

Cleanup moves any non-terminal job to Failed once its window has closed.
"""

from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scheduler_platform.adr.api_client import AdrApiResult
from scheduler_platform.adr.billing import next_success_download_date
from scheduler_platform.adr.status import REVIEW_STATUSES, AdrStatus
from scheduler_platform.core.errors import InvalidStatusTransition
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.models.adr_job import AdrJob, AdrJobExecution, AdrJobStatus

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[AdrJobStatus, frozenset[AdrJobStatus]] = {
    AdrJobStatus.PENDING: frozenset({AdrJobStatus.CREDENTIAL_VERIFIED, AdrJobStatus.CREDENTIAL_FAILED}),
    AdrJobStatus.CREDENTIAL_FAILED: frozenset(
        {AdrJobStatus.CREDENTIAL_VERIFIED, AdrJobStatus.CREDENTIAL_FAILED}
    ),
    AdrJobStatus.CREDENTIAL_VERIFIED: frozenset({AdrJobStatus.ADR_REQUEST_SENT}),
    AdrJobStatus.ADR_REQUEST_SENT: frozenset(
        {
            AdrJobStatus.ADR_REQUEST_SENT,
            AdrJobStatus.COMPLETED,
            AdrJobStatus.FAILED,
            AdrJobStatus.NEEDS_REVIEW,
        }
    ),
    AdrJobStatus.NEEDS_REVIEW: frozenset(),
    AdrJobStatus.COMPLETED: frozenset(),
    AdrJobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({AdrJobStatus.COMPLETED, AdrJobStatus.FAILED})


def transition(job: AdrJob, new_status: AdrJobStatus) -> AdrJobStatus:
    """
    Move a job to a new status.

    Returns:
        The previous status

    Raises:
        InvalidStatusTransition: If the table does not allow the change
    """
    previous = job.status
    if new_status not in ALLOWED_TRANSITIONS[previous]:
        raise InvalidStatusTransition(
            f"AdrJob {job.id}: {previous.value} -> {new_status.value} is not allowed"
        )
    job.status = new_status
    return previous


def credential_changed(job: AdrJob, account: AdrAccount) -> bool:
    return account.credential_id != job.credential_id


async def find_job_for_period(
    db: AsyncSession,
    account_id: int,
    period_start: date,
    period_end: date,
) -> AdrJob | None:
    result = await db.execute(
        select(AdrJob).where(
            AdrJob.adr_account_id == account_id,
            AdrJob.billing_period_start == period_start,
            AdrJob.billing_period_end == period_end,
        )
    )
    return result.scalar_one_or_none()


async def create_job_for_account(db: AsyncSession, account: AdrAccount, today: date) -> AdrJob | None:
    """
    Create the job for the account's next billing window.

    Returns:
        The new job, or None when the account is skipped or a job for the
        window already exists
    """
    if not account.is_active or account.is_deleted:
        return None
    if account.is_missing:
        logger.bind(account_id=account.id).debug("adr_job_skipped_missing_account")
        return None
    if account.next_run_date is None or account.next_range_start is None or account.next_range_end is None:
        return None

    existing = await find_job_for_period(db, account.id, account.next_range_start, account.next_range_end)
    if existing is not None:
        return None

    job = AdrJob(
        adr_account_id=account.id,
        credential_id=account.credential_id,
        vendor_code=account.vendor_code,
        account_number=account.account_number,
        period_type=account.period_type,
        billing_period_start=account.next_range_start,
        billing_period_end=account.next_range_end,
        next_run_date=account.next_run_date,
        next_range_start=account.next_range_start,
        next_range_end=account.next_range_end,
        status=AdrJobStatus.PENDING,
        is_missing=False,
        retry_count=0,
    )
    db.add(job)
    await db.flush()

    logger.bind(
        job_id=job.id,
        account_id=account.id,
        period_start=str(job.billing_period_start),
        today=str(today),
    ).info("adr_job_created")
    return job


def mark_credential_verified(job: AdrJob, account: AdrAccount, now: datetime) -> None:
    """
    Record a successful credential check.

    A CredentialFailed job is only re-verified after the account's
    credential has changed; the job adopts the new credential.
    """
    if job.status == AdrJobStatus.CREDENTIAL_FAILED and not credential_changed(job, account):
        raise InvalidStatusTransition(
            f"AdrJob {job.id}: credential {job.credential_id} has not changed since it failed"
        )
    transition(job, AdrJobStatus.CREDENTIAL_VERIFIED)
    job.credential_id = account.credential_id
    job.credential_verified_date_time = now
    job.error_message = None


def mark_credential_failed(job: AdrJob, account: AdrAccount, reason: str) -> None:
    if job.status == AdrJobStatus.CREDENTIAL_FAILED and not credential_changed(job, account):
        raise InvalidStatusTransition(
            f"AdrJob {job.id}: credential {job.credential_id} has not changed since it failed"
        )
    transition(job, AdrJobStatus.CREDENTIAL_FAILED)
    job.credential_id = account.credential_id
    job.error_message = f"Credential verification failed: {reason}"


def _record_response(job: AdrJob, result: AdrApiResult) -> None:
    if result.status_id is not None:
        job.adr_status_id = result.status_id
        job.adr_status_description = result.status_description
    if result.index_id is not None:
        job.adr_index_id = result.index_id


def mark_request_sent(job: AdrJob, result: AdrApiResult, now: datetime) -> bool:
    """
    Record a DownloadInvoice request.

    Returns:
        True if the API accepted the request
    """
    if not result.success:
        job.retry_count += 1
        job.error_message = result.error_message
        return False

    previous = transition(job, AdrJobStatus.ADR_REQUEST_SENT)
    if previous == AdrJobStatus.ADR_REQUEST_SENT:
        job.retry_count += 1
    _record_response(job, result)
    job.last_request_sent_date_time = now
    job.error_message = None
    return True


def apply_status_result(
    job: AdrJob,
    result: AdrApiResult,
    now: datetime,
    account: AdrAccount | None = None,
) -> AdrJobStatus:
    """
    Advance an ADRRequestSent job from a status response.

    Complete (11) finishes the job and moves the account's last successful
    download date forward; NeedsHumanReview (9) and
    FailedToProcessAllDocuments (14) park it for review. Anything else
    leaves it waiting.
    """
    job.last_status_check_date_time = now
    if not result.success:
        job.error_message = result.error_message
        return job.status

    _record_response(job, result)
    status = result.status

    if status == AdrStatus.COMPLETE:
        transition(job, AdrJobStatus.COMPLETED)
        job.scraping_completed_date_time = now
        job.error_message = None
        if account is not None:
            account.last_success_download_date = next_success_download_date(
                account.last_success_download_date,
                job.billing_period_start,
                account.period_days,
            )
    elif status in REVIEW_STATUSES:
        transition(job, AdrJobStatus.NEEDS_REVIEW)
        job.error_message = result.status_description or status.description

    return job.status


def finalize_stale(job: AdrJob, today: date) -> bool:
    """
    Fail a non-terminal job whose window has closed.

    Returns:
        True if the job was finalized
    """
    if job.status in TERMINAL_STATUSES or job.next_range_end is None:
        return False
    if today <= job.next_range_end:
        return False

    previous = job.status
    job.status = AdrJobStatus.FAILED
    job.error_message = (
        f"Billing window closed on {job.next_range_end.isoformat()} "
        f"while job was {previous.value}"
    )
    logger.bind(job_id=job.id, previous_status=previous.value).info("adr_job_window_closed")
    return True


def build_execution_record(
    job: AdrJob,
    request_type_id: int,
    result: AdrApiResult,
    started: datetime,
    finished: datetime,
) -> AdrJobExecution:
    """Append-only record of one API round-trip."""
    return AdrJobExecution(
        adr_job_id=job.id,
        adr_request_type_id=int(request_type_id),
        start_date_time=started,
        end_date_time=finished,
        adr_status_id=result.status_id,
        adr_status_description=result.status_description,
        adr_index_id=result.index_id,
        is_error=result.is_error,
        is_final=result.is_final,
        is_success=result.success and not result.is_error,
        http_status_code=result.http_status_code,
        request_payload=result.request_payload,
        response_payload=result.response_payload,
        error_message=result.error_message,
    )
