"""
ADR orchestration and account endpoints.

Synchronous runs and single steps hold the request open until they finish;
run-background returns a request id to poll instead. Every entry point
shares one run slot, so a second concurrent request gets 409.
"""

from typing import Any

from fastapi import APIRouter, Query, status
from sqlalchemy import select

from scheduler_platform.adr.billing import clear_manual_override, set_manual_override
from scheduler_platform.adr.orchestrator import (
    STEP_CHECK_STATUSES,
    STEP_CREATE_JOBS,
    STEP_SEND_REQUESTS,
    STEP_VERIFY_CREDENTIALS,
)
from scheduler_platform.adr.results import OrchestrationResult
from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.core.errors import NotFoundError
from scheduler_platform.core.logging import get_logger
from scheduler_platform.dependencies import Config, CurrentUser, DBSession, Runner
from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.models.adr_orchestration_run import AdrOrchestrationRun
from scheduler_platform.schemas.adr import (
    AdrAccountResponse,
    BillingOverrideRequest,
    CancelResponse,
    OrchestrationResultResponse,
    OrchestrationRunResponse,
    OrchestrationStartedResponse,
)

logger = get_logger(__name__)

router = APIRouter()


def _result_response(result: OrchestrationResult) -> OrchestrationResultResponse:
    return OrchestrationResultResponse.model_validate(result.to_dict())


async def _run_step(runner: Runner, step: str, user: str) -> OrchestrationResultResponse:
    return _result_response(await runner.run_single_step(step, user))


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------


@router.post("/adr/orchestrate/create-jobs", response_model=OrchestrationResultResponse)
async def orchestrate_create_jobs(runner: Runner, user: CurrentUser) -> OrchestrationResultResponse:
    return await _run_step(runner, STEP_CREATE_JOBS, user)


@router.post("/adr/orchestrate/verify-credentials", response_model=OrchestrationResultResponse)
async def orchestrate_verify_credentials(runner: Runner, user: CurrentUser) -> OrchestrationResultResponse:
    return await _run_step(runner, STEP_VERIFY_CREDENTIALS, user)


@router.post("/adr/orchestrate/process-scraping", response_model=OrchestrationResultResponse)
async def orchestrate_process_scraping(runner: Runner, user: CurrentUser) -> OrchestrationResultResponse:
    return await _run_step(runner, STEP_SEND_REQUESTS, user)


@router.post("/adr/orchestrate/check-statuses", response_model=OrchestrationResultResponse)
async def orchestrate_check_statuses(runner: Runner, user: CurrentUser) -> OrchestrationResultResponse:
    return await _run_step(runner, STEP_CHECK_STATUSES, user)


@router.post("/adr/orchestrate/run-full-cycle", response_model=OrchestrationResultResponse)
async def orchestrate_full_cycle(runner: Runner, user: CurrentUser) -> OrchestrationResultResponse:
    """Run every step and wait for the aggregate result."""
    return _result_response(await runner.run_full_cycle(user))


@router.post(
    "/adr/orchestrate/run-background",
    response_model=OrchestrationStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def orchestrate_background(runner: Runner, user: CurrentUser) -> OrchestrationStartedResponse:
    """Start a full cycle and return immediately with its request id."""
    request_id = await runner.start_background(user)
    return OrchestrationStartedResponse(request_id=request_id)


@router.get("/adr/orchestrate/current")
async def orchestrate_current(runner: Runner) -> dict[str, Any]:
    current = runner.current()
    return {"is_running": current is not None, "run": current}


@router.get("/adr/orchestrate/status/{request_id}")
async def orchestrate_status(request_id: str, runner: Runner, db: DBSession) -> dict[str, Any]:
    """Live progress for the active run, else the persisted outcome."""
    return await runner.get_status(db, request_id)


@router.get("/adr/orchestrate/history", response_model=list[OrchestrationRunResponse])
async def orchestrate_history(
    runner: Runner,
    db: DBSession,
    config: Config,
    limit: int | None = Query(default=None, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdrOrchestrationRun]:
    """Persisted runs, newest first."""
    return await runner.get_history(db, limit=limit or config.adr.history_limit, offset=offset)


@router.post("/adr/orchestrate/{request_id}/cancel", response_model=CancelResponse)
async def orchestrate_cancel(request_id: str, runner: Runner, user: CurrentUser) -> CancelResponse:
    """Ask the active run to stop after its current step."""
    progress = runner.cancel(request_id)
    logger.bind(request_id=request_id, cancelled_by=user).info("adr_orchestration_cancel_api")
    return CancelResponse(request_id=request_id, current_step=progress.current_step)


# ----------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------


async def _get_account(db: DBSession, account_id: int) -> AdrAccount:
    account = await db.get(AdrAccount, account_id)
    if account is None or account.is_deleted:
        raise NotFoundError(f"ADR account {account_id} not found")
    return account


@router.get("/adr/accounts", response_model=list[AdrAccountResponse])
async def list_accounts(
    db: DBSession,
    is_active: bool | None = Query(default=True),
    next_run_status: str | None = Query(default=None),
    vendor_code: str | None = Query(default=None),
    client_id: int | None = Query(default=None),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AdrAccount]:
    """List accounts ordered by their next run date."""
    query = select(AdrAccount).where(AdrAccount.is_deleted.is_(False))
    if is_active is not None:
        query = query.where(AdrAccount.is_active.is_(is_active))
    if next_run_status:
        query = query.where(AdrAccount.next_run_status == next_run_status)
    if vendor_code:
        query = query.where(AdrAccount.vendor_code == vendor_code)
    if client_id is not None:
        query = query.where(AdrAccount.client_id == client_id)

    result = await db.execute(
        query.order_by(AdrAccount.next_run_date.asc(), AdrAccount.id.asc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


@router.get("/adr/accounts/{account_id}", response_model=AdrAccountResponse)
async def get_account(account_id: int, db: DBSession) -> AdrAccount:
    return await _get_account(db, account_id)


@router.post("/adr/accounts/{account_id}/override", response_model=AdrAccountResponse)
async def override_account_billing(
    account_id: int,
    body: BillingOverrideRequest,
    db: DBSession,
    user: CurrentUser,
) -> AdrAccount:
    """Pin billing dates on an account; account sync leaves them alone."""
    account = await _get_account(db, account_id)
    set_manual_override(account, user, utc_now(), **body.model_dump())
    await db.flush()
    logger.bind(account_id=account.id, overridden_by=user).info("adr_billing_override_set")
    return account


@router.delete("/adr/accounts/{account_id}/override", response_model=AdrAccountResponse)
async def clear_account_override(account_id: int, db: DBSession, user: CurrentUser) -> AdrAccount:
    """Release an override; the next account sync recomputes the cycle."""
    account = await _get_account(db, account_id)
    clear_manual_override(account)
    await db.flush()
    logger.bind(account_id=account.id, cleared_by=user).info("adr_billing_override_cleared")
    return account
