"""ADR account model: one vendor account under automated invoice retrieval."""

from datetime import date, datetime

from sqlalchemy import Boolean, Date, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from scheduler_platform.models.base import Base, TimestampMixin

MISSING_BILLING_STATUS = "Missing"


class AdrAccount(Base, TimestampMixin):
    """Vendor account with its computed billing cycle."""

    __tablename__ = "adr_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_account_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    interface_account_id: Mapped[str | None] = mapped_column(String(100))
    account_number: Mapped[str] = mapped_column(String(128))
    vendor_code: Mapped[str | None] = mapped_column(String(128))
    client_id: Mapped[int | None] = mapped_column(Integer, index=True)
    credential_id: Mapped[int] = mapped_column(Integer)

    # Billing pattern derived from invoice history
    period_type: Mapped[str | None] = mapped_column(String(20))
    period_days: Mapped[int | None] = mapped_column(Integer)
    median_days: Mapped[float | None] = mapped_column(Float)
    invoice_count: Mapped[int] = mapped_column(Integer, default=0)
    last_invoice_date: Mapped[date | None] = mapped_column(Date)
    last_success_download_date: Mapped[date | None] = mapped_column(Date)

    # Current expected cycle
    expected_next_date: Mapped[date | None] = mapped_column(Date)
    expected_range_start: Mapped[date | None] = mapped_column(Date)
    expected_range_end: Mapped[date | None] = mapped_column(Date)

    # Next cycle the orchestrator will work
    next_run_date: Mapped[date | None] = mapped_column(Date, index=True)
    next_range_start: Mapped[date | None] = mapped_column(Date)
    next_range_end: Mapped[date | None] = mapped_column(Date)
    days_until_next_run: Mapped[int | None] = mapped_column(Integer)
    next_run_status: Mapped[str | None] = mapped_column(String(20))
    historical_billing_status: Mapped[str | None] = mapped_column(String(20))

    # Manual override freezes the billing fields above
    is_manually_overridden: Mapped[bool] = mapped_column(Boolean, default=False)
    overridden_by: Mapped[str | None] = mapped_column(String(200))
    overridden_date_time: Mapped[datetime | None] = mapped_column()

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    last_synced_date_time: Mapped[datetime | None] = mapped_column()

    @property
    def is_missing(self) -> bool:
        return self.historical_billing_status == MISSING_BILLING_STATUS

    def __repr__(self) -> str:
        return f"<AdrAccount {self.id} {self.vendor_code}/{self.account_number} next={self.next_run_date}>"
