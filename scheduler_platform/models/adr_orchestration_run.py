"""Persisted history of ADR orchestration runs."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.models.base import Base, enum_values


class OrchestrationStatus(str, enum.Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"


class AdrOrchestrationRun(Base):
    """One orchestration invocation, sync or background."""

    __tablename__ = "adr_orchestration_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    requested_by: Mapped[str] = mapped_column(String(200))
    requested_date_time: Mapped[datetime] = mapped_column(default=utc_now, index=True)
    started_date_time: Mapped[datetime | None] = mapped_column()
    completed_date_time: Mapped[datetime | None] = mapped_column()

    status: Mapped[OrchestrationStatus] = mapped_column(
        Enum(OrchestrationStatus, values_callable=enum_values, native_enum=False, length=20),
        default=OrchestrationStatus.QUEUED,
    )
    current_step: Mapped[str | None] = mapped_column(String(50))
    current_progress: Mapped[str | None] = mapped_column(String(200))

    # Step counts
    accounts_synced: Mapped[int] = mapped_column(Integer, default=0)
    jobs_created: Mapped[int] = mapped_column(Integer, default=0)
    credentials_verified: Mapped[int] = mapped_column(Integer, default=0)
    credentials_failed: Mapped[int] = mapped_column(Integer, default=0)
    requests_sent: Mapped[int] = mapped_column(Integer, default=0)
    status_checks: Mapped[int] = mapped_column(Integer, default=0)
    jobs_completed: Mapped[int] = mapped_column(Integer, default=0)
    jobs_needing_review: Mapped[int] = mapped_column(Integer, default=0)
    stale_jobs_finalized: Mapped[int] = mapped_column(Integer, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, default=0)

    # Step durations (seconds)
    status_check_duration_seconds: Mapped[float | None] = mapped_column(Float)
    scraping_duration_seconds: Mapped[float | None] = mapped_column(Float)
    credential_verification_duration_seconds: Mapped[float | None] = mapped_column(Float)
    job_creation_duration_seconds: Mapped[float | None] = mapped_column(Float)
    account_sync_duration_seconds: Mapped[float | None] = mapped_column(Float)
    cleanup_duration_seconds: Mapped[float | None] = mapped_column(Float)

    error_message: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<AdrOrchestrationRun {self.request_id} status={self.status.value}>"
