"""
Account sync: reconcile AdrAccount rows with the invoice history source.

The source returns one row per invoice; rows are grouped per account and
each account's billing cycle is recomputed unless it is manually
overridden.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scheduler_platform.adr.billing import WindowPolicy, apply_billing, calculate_billing
from scheduler_platform.adr.results import AccountSyncResult
from scheduler_platform.core.errors import ScheduleConfigurationError
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.adr_account import AdrAccount
from scheduler_platform.services.data_source import AuxiliaryDataSource

logger = get_logger(__name__)


@dataclass
class AccountRecord:
    """One account as reported by the source, with its invoice dates."""

    external_account_id: int
    account_number: str
    credential_id: int
    interface_account_id: str | None = None
    vendor_code: str | None = None
    client_id: int | None = None
    period_type: str | None = None
    invoice_dates: list[date] = field(default_factory=list)


class BaseAccountSource(ABC):
    """Supplies the current account list."""

    @abstractmethod
    async def fetch_accounts(self) -> list[AccountRecord]:
        pass


def _column(row: dict[str, Any], name: str) -> Any:
    if name in row:
        return row[name]
    lowered = name.lower().replace("_", "")
    for key, value in row.items():
        if key.lower().replace("_", "") == lowered:
            return value
    return None


def _as_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def group_invoice_rows(rows: list[dict[str, Any]]) -> list[AccountRecord]:
    """Fold invoice rows into one AccountRecord per AccountId, first-seen order."""
    records: dict[int, AccountRecord] = {}
    for row in rows:
        account_id = _column(row, "AccountId")
        if account_id is None:
            continue
        account_id = int(account_id)
        record = records.get(account_id)
        if record is None:
            client_id = _column(row, "ClientId")
            interface_id = _column(row, "InterfaceAccountId")
            record = AccountRecord(
                external_account_id=account_id,
                account_number=str(_column(row, "AccountNumber") or ""),
                credential_id=int(_column(row, "CredentialId") or 0),
                interface_account_id=str(interface_id) if interface_id is not None else None,
                vendor_code=_column(row, "VendorCode"),
                client_id=int(client_id) if client_id is not None else None,
                period_type=_column(row, "PeriodType"),
            )
            records[account_id] = record
        invoice_date = _as_date(_column(row, "InvoiceDate"))
        if invoice_date is not None:
            record.invoice_dates.append(invoice_date)
    return list(records.values())


class SqlAccountSource(BaseAccountSource):
    """Calls the configured routine on the auxiliary database."""

    def __init__(self, data_source: AuxiliaryDataSource, connection_string: str, routine: str) -> None:
        self.data_source = data_source
        self.connection_string = connection_string
        self.routine = routine

    async def fetch_accounts(self) -> list[AccountRecord]:
        if not self.connection_string:
            raise ScheduleConfigurationError("AUXILIARY_CONNECTION_STRING is not configured")
        rows = await self.data_source.fetch_rows(self.connection_string, self.routine)
        return group_invoice_rows(rows)


def _apply_identity(account: AdrAccount, record: AccountRecord) -> None:
    account.account_number = record.account_number
    account.interface_account_id = record.interface_account_id
    account.vendor_code = record.vendor_code
    account.client_id = record.client_id
    account.credential_id = record.credential_id


async def sync_accounts(
    db: AsyncSession,
    source: BaseAccountSource,
    today: date,
    now: datetime,
    policy: WindowPolicy | None = None,
) -> AccountSyncResult:
    """
    Insert new accounts, refresh existing ones and deactivate missing ones.

    An empty source result leaves existing accounts active.
    """
    started = time.monotonic()
    result = AccountSyncResult()

    records = await source.fetch_accounts()
    rows = await db.execute(select(AdrAccount))
    existing = {account.external_account_id: account for account in rows.scalars().all()}
    seen: set[int] = set()

    for record in records:
        seen.add(record.external_account_id)
        try:
            account = existing.get(record.external_account_id)
            if account is None:
                account = AdrAccount(
                    external_account_id=record.external_account_id,
                    is_active=True,
                    is_deleted=False,
                    is_manually_overridden=False,
                    invoice_count=0,
                )
                _apply_identity(account, record)
                db.add(account)
                existing[record.external_account_id] = account
                result.accounts_inserted += 1
            else:
                _apply_identity(account, record)
                account.is_active = True
                result.accounts_updated += 1

            calc = calculate_billing(
                record.invoice_dates,
                today,
                period_type=record.period_type or account.period_type,
                policy=policy,
            )
            if apply_billing(account, calc):
                result.billing_recomputed += 1
            else:
                result.overrides_preserved += 1
            account.last_synced_date_time = now
        except Exception as e:
            logger.bind(external_account_id=record.external_account_id, error=str(e)).error(
                "adr_account_sync_failed"
            )
            result.add_error(f"Account {record.external_account_id}: {e}")

    if records:
        for external_id, account in existing.items():
            if external_id not in seen and account.is_active:
                account.is_active = False
                account.last_synced_date_time = now
                result.accounts_deactivated += 1
    else:
        logger.warning("adr_account_source_empty")

    await db.flush()
    result.duration_seconds = time.monotonic() - started

    logger.bind(
        inserted=result.accounts_inserted,
        updated=result.accounts_updated,
        deactivated=result.accounts_deactivated,
        errors=result.errors,
    ).info("adr_accounts_synced")
    return result
