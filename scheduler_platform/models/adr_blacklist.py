"""Blacklist entries that keep ADR accounts out of orchestration steps."""

import enum
from datetime import date, datetime

from sqlalchemy import Boolean, Date, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.models.base import Base, TimestampMixin, enum_values


class ExclusionType(str, enum.Enum):
    ALL = "All"
    CREDENTIAL_CHECK = "CredentialCheck"
    DOWNLOAD = "Download"


class AdrAccountBlacklist(Base, TimestampMixin):
    """
    Excludes accounts by vendor, account or credential.

    Every matcher that is set is checked on its own: an entry with both a
    vendor code and a credential id excludes accounts matching either.
    """

    __tablename__ = "adr_account_blacklist"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vendor_code: Mapped[str | None] = mapped_column(String(128))
    external_account_id: Mapped[int | None] = mapped_column(Integer)
    account_number: Mapped[str | None] = mapped_column(String(128))
    credential_id: Mapped[int | None] = mapped_column(Integer)

    exclusion_type: Mapped[ExclusionType] = mapped_column(
        Enum(ExclusionType, values_callable=enum_values, native_enum=False, length=20),
        default=ExclusionType.ALL,
    )
    reason: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    effective_start_date: Mapped[date | None] = mapped_column(Date)
    effective_end_date: Mapped[date | None] = mapped_column(Date)
    blacklisted_by: Mapped[str | None] = mapped_column(String(200))
    blacklisted_date_time: Mapped[datetime | None] = mapped_column()

    def matches(self, account: AdrAccount) -> bool:
        if self.vendor_code and self.vendor_code == account.vendor_code:
            return True
        if self.external_account_id is not None and self.external_account_id == account.external_account_id:
            return True
        if self.account_number and self.account_number == account.account_number:
            return True
        return self.credential_id is not None and self.credential_id == account.credential_id

    def __repr__(self) -> str:
        return f"<AdrAccountBlacklist {self.id} {self.exclusion_type.value} active={self.is_active}>"
