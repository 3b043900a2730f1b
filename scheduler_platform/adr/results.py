"""Per-step and aggregate results of an ADR orchestration."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

MAX_ERROR_MESSAGES = 200


@dataclass
class StepResult:
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def add_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_ERROR_MESSAGES:
            self.error_messages.append(message)


@dataclass
class StatusCheckResult(StepResult):
    jobs_checked: int = 0
    jobs_completed: int = 0
    jobs_needing_review: int = 0
    jobs_still_pending: int = 0


@dataclass
class ScrapeResult(StepResult):
    jobs_processed: int = 0
    requests_sent: int = 0
    requests_failed: int = 0


@dataclass
class CredentialVerificationResult(StepResult):
    jobs_processed: int = 0
    credentials_verified: int = 0
    credentials_failed: int = 0
    jobs_blacklisted: int = 0


@dataclass
class JobCreationResult(StepResult):
    jobs_created: int = 0
    jobs_skipped: int = 0
    jobs_blacklisted: int = 0


@dataclass
class AccountSyncResult(StepResult):
    accounts_inserted: int = 0
    accounts_updated: int = 0
    accounts_deactivated: int = 0
    billing_recomputed: int = 0
    overrides_preserved: int = 0

    @property
    def accounts_synced(self) -> int:
        return self.accounts_inserted + self.accounts_updated


@dataclass
class StalePendingJobsResult(StepResult):
    jobs_finalized: int = 0


@dataclass
class OrchestrationResult:
    """Aggregate of every step a run executed; skipped steps stay None."""

    request_id: str
    requested_by: str
    status: str = "Running"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    status_check: StatusCheckResult | None = None
    scrape: ScrapeResult | None = None
    credential_verification: CredentialVerificationResult | None = None
    job_creation: JobCreationResult | None = None
    account_sync: AccountSyncResult | None = None
    stale_jobs: StalePendingJobsResult | None = None
    error_message: str | None = None

    def steps(self) -> list[StepResult]:
        return [
            step
            for step in (
                self.status_check,
                self.scrape,
                self.credential_verification,
                self.job_creation,
                self.account_sync,
                self.stale_jobs,
            )
            if step is not None
        ]

    @property
    def total_errors(self) -> int:
        return sum(step.errors for step in self.steps())

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["total_errors"] = self.total_errors
        data["duration_seconds"] = self.duration_seconds
        if self.account_sync is not None:
            data["account_sync"]["accounts_synced"] = self.account_sync.accounts_synced
        return data
