"""ADR job models: billing-cycle attempts and their API round-trips."""

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from scheduler_platform.core.datetime_utils import utc_now
from scheduler_platform.models.base import Base, BigIntPK, TimestampMixin, enum_values


class AdrJobStatus(str, enum.Enum):
    """Status of one billing-cycle attempt."""

    PENDING = "Pending"
    CREDENTIAL_VERIFIED = "CredentialVerified"
    CREDENTIAL_FAILED = "CredentialFailed"
    ADR_REQUEST_SENT = "ADRRequestSent"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NEEDS_REVIEW = "NeedsReview"


class AdrRequestType(int, enum.Enum):
    """Request kinds sent to the document retrieval API."""

    ATTEMPT_LOGIN = 1
    DOWNLOAD_INVOICE = 2
    STATUS_CHECK = 3


class AdrJob(Base, TimestampMixin):
    """One account's attempt to retrieve the invoice for a billing period."""

    __tablename__ = "adr_jobs"
    __table_args__ = (
        UniqueConstraint(
            "adr_account_id",
            "billing_period_start",
            "billing_period_end",
            name="uq_adr_jobs_account_period",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    adr_account_id: Mapped[int] = mapped_column(ForeignKey("adr_accounts.id"), index=True)
    credential_id: Mapped[int] = mapped_column(Integer)
    vendor_code: Mapped[str | None] = mapped_column(String(128))
    account_number: Mapped[str] = mapped_column(String(128))
    period_type: Mapped[str | None] = mapped_column(String(20))

    billing_period_start: Mapped[date] = mapped_column(Date)
    billing_period_end: Mapped[date] = mapped_column(Date)
    next_run_date: Mapped[date | None] = mapped_column(Date)
    next_range_start: Mapped[date | None] = mapped_column(Date)
    next_range_end: Mapped[date | None] = mapped_column(Date)

    status: Mapped[AdrJobStatus] = mapped_column(
        Enum(AdrJobStatus, values_callable=enum_values, native_enum=False, length=30),
        default=AdrJobStatus.PENDING,
        index=True,
    )
    is_missing: Mapped[bool] = mapped_column(Boolean, default=False)

    # Last vendor API response
    adr_status_id: Mapped[int | None] = mapped_column(Integer)
    adr_status_description: Mapped[str | None] = mapped_column(String(100))
    adr_index_id: Mapped[int | None] = mapped_column(Integer)

    credential_verified_date_time: Mapped[datetime | None] = mapped_column()
    scraping_completed_date_time: Mapped[datetime | None] = mapped_column()
    last_request_sent_date_time: Mapped[datetime | None] = mapped_column()
    last_status_check_date_time: Mapped[datetime | None] = mapped_column()

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<AdrJob {self.id} account={self.adr_account_id} "
            f"{self.billing_period_start}..{self.billing_period_end} status={self.status.value}>"
        )


class AdrJobExecution(Base):
    """Append-only record of one request to the document retrieval API."""

    __tablename__ = "adr_job_executions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    adr_job_id: Mapped[int] = mapped_column(ForeignKey("adr_jobs.id"), index=True)
    adr_request_type_id: Mapped[int] = mapped_column(Integer)
    start_date_time: Mapped[datetime] = mapped_column(default=utc_now)
    end_date_time: Mapped[datetime | None] = mapped_column()

    adr_status_id: Mapped[int | None] = mapped_column(Integer)
    adr_status_description: Mapped[str | None] = mapped_column(String(100))
    adr_index_id: Mapped[int | None] = mapped_column(Integer)
    is_error: Mapped[bool] = mapped_column(Boolean, default=False)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False)
    is_success: Mapped[bool] = mapped_column(Boolean, default=False)
    http_status_code: Mapped[int | None] = mapped_column(Integer)

    request_payload: Mapped[str | None] = mapped_column(Text)
    response_payload: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
