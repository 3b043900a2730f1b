from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from scheduler_platform.adr.billing import PERIODS_BY_TYPE
from scheduler_platform.models.adr_orchestration_run import OrchestrationStatus


class AdrAccountResponse(BaseModel):
    """ADR account with its computed billing cycle."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    external_account_id: int
    interface_account_id: str | None
    account_number: str
    vendor_code: str | None
    client_id: int | None
    credential_id: int
    period_type: str | None
    period_days: int | None
    median_days: float | None
    invoice_count: int
    last_invoice_date: date | None
    last_success_download_date: date | None
    expected_next_date: date | None
    expected_range_start: date | None
    expected_range_end: date | None
    next_run_date: date | None
    next_range_start: date | None
    next_range_end: date | None
    days_until_next_run: int | None
    next_run_status: str | None
    historical_billing_status: str | None
    is_manually_overridden: bool
    overridden_by: str | None
    overridden_date_time: datetime | None
    is_active: bool
    last_synced_date_time: datetime | None


class BillingOverrideRequest(BaseModel):
    """Manual billing override; at least one field is required."""

    next_run_date: date | None = None
    next_range_start: date | None = None
    next_range_end: date | None = None
    period_type: str | None = None

    @model_validator(mode="after")
    def check_fields(self) -> "BillingOverrideRequest":
        if not any(
            v is not None
            for v in (self.next_run_date, self.next_range_start, self.next_range_end, self.period_type)
        ):
            raise ValueError("At least one override field is required")
        if self.period_type is not None and self.period_type.lower() not in PERIODS_BY_TYPE:
            raise ValueError(f"Unknown period_type '{self.period_type}'")
        if (
            self.next_range_start is not None
            and self.next_range_end is not None
            and self.next_range_end < self.next_range_start
        ):
            raise ValueError("next_range_end must not be before next_range_start")
        return self


class OrchestrationStartedResponse(BaseModel):
    request_id: str
    status: OrchestrationStatus = OrchestrationStatus.QUEUED
    message: str = "Orchestration started in the background"


class OrchestrationRunResponse(BaseModel):
    """Persisted orchestration run."""

    model_config = ConfigDict(from_attributes=True)

    request_id: str
    requested_by: str
    requested_date_time: datetime
    started_date_time: datetime | None
    completed_date_time: datetime | None
    status: OrchestrationStatus
    accounts_synced: int
    jobs_created: int
    credentials_verified: int
    credentials_failed: int
    requests_sent: int
    status_checks: int
    jobs_completed: int
    jobs_needing_review: int
    stale_jobs_finalized: int
    total_errors: int
    status_check_duration_seconds: float | None
    scraping_duration_seconds: float | None
    credential_verification_duration_seconds: float | None
    job_creation_duration_seconds: float | None
    account_sync_duration_seconds: float | None
    cleanup_duration_seconds: float | None
    error_message: str | None


class CancelResponse(BaseModel):
    request_id: str
    cancel_requested: bool = True
    current_step: str | None = None


class OrchestrationResultResponse(BaseModel):
    """Aggregate result of a synchronous run or step."""

    request_id: str
    requested_by: str
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    total_errors: int
    error_message: str | None = None
    status_check: dict[str, Any] | None = None
    scrape: dict[str, Any] | None = None
    credential_verification: dict[str, Any] | None = None
    job_creation: dict[str, Any] | None = None
    account_sync: dict[str, Any] | None = None
    stale_jobs: dict[str, Any] | None = None
