"""
ADR billing calculator.

Derives an account's billing cycle from its invoice history:

- MedianDays: median gap between consecutive invoice dates
- Period classification (type, length, status window) from the median
- ExpectedNextDate = last invoice + MedianDays, with a search window around it
- NextRunDate: the window the orchestrator works next, rolled forward by
  whole calendar periods once the expected window has passed
- Historical and next-run status tags

Everything here is a pure function of its inputs; "today" is always passed
in, never read from the clock.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from statistics import median
from typing import TYPE_CHECKING

from scheduler_platform.core.logging import get_logger

if TYPE_CHECKING:
    from scheduler_platform.models.adr_account import AdrAccount

logger = get_logger(__name__)

DEFAULT_MEDIAN_DAYS = 30
DEFAULT_PERIOD_DAYS = 30
UPCOMING_HORIZON_DAYS = 30
DUE_SOON_RUN_DAYS = 7
MAX_ROLL_FORWARD_PERIODS = 500


@dataclass(frozen=True)
class BillingPeriod:
    period_type: str
    period_days: int
    window_days: int
    months: int = 0  # calendar months per period, 0 for day-based periods


BI_WEEKLY = BillingPeriod("Bi-Weekly", 14, 3)
MONTHLY = BillingPeriod("Monthly", 30, 5, months=1)
BI_MONTHLY = BillingPeriod("Bi-Monthly", 60, 7, months=2)
QUARTERLY = BillingPeriod("Quarterly", 90, 10, months=3)
SEMI_ANNUALLY = BillingPeriod("Semi-Annually", 180, 14, months=6)
ANNUALLY = BillingPeriod("Annually", 365, 21, months=12)

# (lower bound inclusive, upper bound exclusive, period)
_MEDIAN_RANGES: list[tuple[float, float, BillingPeriod]] = [
    (7, 22, BI_WEEKLY),
    (22, 46, MONTHLY),
    (46, 76, BI_MONTHLY),
    (76, 136, QUARTERLY),
    (136, 271, SEMI_ANNUALLY),
    (271, float("inf"), ANNUALLY),
]

PERIODS_BY_TYPE = {
    p.period_type.lower(): p
    for p in (BI_WEEKLY, MONTHLY, BI_MONTHLY, QUARTERLY, SEMI_ANNUALLY, ANNUALLY)
}


@dataclass(frozen=True)
class WindowPolicy:
    """Search window around the expected invoice date."""

    days_before: int = 0
    days_after: int = 4


@dataclass(frozen=True)
class BillingCalculation:
    """Computed billing cycle for one account."""

    median_days: float | None
    period_type: str
    period_days: int
    window_days: int
    invoice_count: int
    last_invoice_date: date | None
    expected_next_date: date | None
    expected_range_start: date | None
    expected_range_end: date | None
    next_run_date: date | None
    next_range_start: date | None
    next_range_end: date | None
    days_until_next_run: int | None
    next_run_status: str
    historical_billing_status: str


def median_gap_days(invoice_dates: list[date]) -> float | None:
    """Median of positive gaps between sorted distinct dates, None with fewer than two."""
    ordered = sorted(set(invoice_dates))
    gaps = [(b - a).days for a, b in zip(ordered, ordered[1:], strict=False)]
    gaps = [g for g in gaps if g > 0]
    if not gaps:
        return None
    return float(median(gaps))


def classify_period(median_days: float | None) -> BillingPeriod:
    """Map a median gap to its billing period; anything unclassifiable is Monthly."""
    if median_days is None:
        return MONTHLY
    for lower, upper, period in _MEDIAN_RANGES:
        if lower <= median_days < upper:
            return period
    return MONTHLY


def period_for_type(period_type: str | None) -> BillingPeriod:
    return PERIODS_BY_TYPE.get((period_type or "").lower(), MONTHLY)


def add_months_with_anchor(value: date, months: int, anchor_day: int | None = None) -> date:
    """
    Add calendar months, keeping the anchor day where the month allows.

    ``add_months_with_anchor(date(2025, 1, 31), 1)`` is Feb 28; stepping on
    from there with ``anchor_day=31`` returns Mar 31, not Mar 28.
    """
    anchor = anchor_day or value.day
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_one_period(value: date, period: BillingPeriod, anchor_day: int) -> date:
    if period.months:
        return add_months_with_anchor(value, period.months, anchor_day)
    return value + timedelta(days=period.period_days)


def historical_status(days_until_expected: int, period: BillingPeriod) -> str:
    if days_until_expected < -2 * period.period_days:
        return "Missing"
    if days_until_expected < -period.window_days:
        return "Overdue"
    if days_until_expected < 0:
        return "Due Now"
    if days_until_expected <= period.window_days:
        return "Due Soon"
    if days_until_expected <= UPCOMING_HORIZON_DAYS:
        return "Upcoming"
    return "Future"


def next_run_status(days_until_run: int, historical: str) -> str:
    if historical == "Missing":
        return "Missing"
    if days_until_run <= 0:
        return "Run Now"
    if days_until_run <= DUE_SOON_RUN_DAYS:
        return "Due Soon"
    if days_until_run <= UPCOMING_HORIZON_DAYS:
        return "Upcoming"
    return "Future"


def calculate_billing(
    invoice_dates: list[date],
    today: date,
    period_type: str | None = None,
    policy: WindowPolicy | None = None,
) -> BillingCalculation:
    """
    Compute an account's billing cycle from its invoice history.

    Args:
        invoice_dates: Invoice dates in any order (duplicates ignored)
        today: Reference date for staleness and status tags
        period_type: Known period type, used when history is too short
            to derive a median
        policy: Search window around the expected date

    Returns:
        BillingCalculation; with no invoices at all the dates are None and
        both status tags are "Unknown"
    """
    policy = policy or WindowPolicy()
    dates = sorted(set(invoice_dates))
    measured = median_gap_days(dates)

    if measured is not None:
        period = classify_period(measured)
        median_days = measured
    else:
        period = period_for_type(period_type)
        median_days = float(period.period_days if period_type else DEFAULT_MEDIAN_DAYS)

    if not dates:
        return BillingCalculation(
            median_days=None,
            period_type=period.period_type,
            period_days=period.period_days,
            window_days=period.window_days,
            invoice_count=0,
            last_invoice_date=None,
            expected_next_date=None,
            expected_range_start=None,
            expected_range_end=None,
            next_run_date=None,
            next_range_start=None,
            next_range_end=None,
            days_until_next_run=None,
            next_run_status="Unknown",
            historical_billing_status="Unknown",
        )

    last_invoice = dates[-1]
    expected = last_invoice + timedelta(days=int(median_days))
    range_start = expected - timedelta(days=policy.days_before)
    range_end = expected + timedelta(days=policy.days_after)

    # Roll the window forward by whole periods until it has not yet closed
    next_expected = expected
    anchor_day = expected.day
    rolls = 0
    while next_expected + timedelta(days=policy.days_after) < today:
        next_expected = advance_one_period(next_expected, period, anchor_day)
        rolls += 1
        if rolls >= MAX_ROLL_FORWARD_PERIODS:
            break
    next_range_start = next_expected - timedelta(days=policy.days_before)
    next_range_end = next_expected + timedelta(days=policy.days_after)

    historical = historical_status((expected - today).days, period)
    days_until_run = (next_range_start - today).days

    return BillingCalculation(
        median_days=median_days,
        period_type=period.period_type,
        period_days=period.period_days,
        window_days=period.window_days,
        invoice_count=len(dates),
        last_invoice_date=last_invoice,
        expected_next_date=expected,
        expected_range_start=range_start,
        expected_range_end=range_end,
        next_run_date=next_range_start,
        next_range_start=next_range_start,
        next_range_end=next_range_end,
        days_until_next_run=days_until_run,
        next_run_status=next_run_status(days_until_run, historical),
        historical_billing_status=historical,
    )


def apply_billing(account: "AdrAccount", calc: BillingCalculation) -> bool:
    """
    Copy a calculation onto an account.

    Manually overridden accounts are left untouched.

    Returns:
        True if the account was updated
    """
    if account.is_manually_overridden:
        logger.bind(account_id=account.id).debug("billing_recompute_skipped_override")
        return False

    account.median_days = calc.median_days
    account.period_type = calc.period_type
    account.period_days = calc.period_days
    account.invoice_count = calc.invoice_count
    account.last_invoice_date = calc.last_invoice_date
    account.expected_next_date = calc.expected_next_date
    account.expected_range_start = calc.expected_range_start
    account.expected_range_end = calc.expected_range_end
    account.next_run_date = calc.next_run_date
    account.next_range_start = calc.next_range_start
    account.next_range_end = calc.next_range_end
    account.days_until_next_run = calc.days_until_next_run
    account.next_run_status = calc.next_run_status
    account.historical_billing_status = calc.historical_billing_status
    return True


def set_manual_override(
    account: "AdrAccount",
    overridden_by: str,
    now: datetime,
    next_run_date: date | None = None,
    next_range_start: date | None = None,
    next_range_end: date | None = None,
    period_type: str | None = None,
) -> None:
    """Pin billing fields on an account; later recomputes leave them alone."""
    if period_type is not None:
        period = period_for_type(period_type)
        account.period_type = period.period_type
        account.period_days = period.period_days
    if next_run_date is not None:
        account.next_run_date = next_run_date
        account.next_range_start = next_range_start or next_run_date
        account.next_range_end = next_range_end or next_run_date
    elif next_range_start is not None or next_range_end is not None:
        account.next_range_start = next_range_start or account.next_range_start
        account.next_range_end = next_range_end or account.next_range_end
    account.is_manually_overridden = True
    account.overridden_by = overridden_by
    account.overridden_date_time = now


def clear_manual_override(account: "AdrAccount") -> None:
    """Release an override; the next account sync recomputes the cycle."""
    account.is_manually_overridden = False
    account.overridden_by = None
    account.overridden_date_time = None


def next_success_download_date(
    previous: date | None,
    job_date: date,
    period_days: int | None,
) -> date:
    """
    Last successful download date after a retrieval completes.

    A late download must not push the cycle forward: when the job's date
    is beyond one period after the previous success, the expected date
    (previous + period) is used instead.
    """
    if previous is None:
        return job_date
    expected = previous + timedelta(days=period_days or DEFAULT_PERIOD_DAYS)
    return job_date if job_date <= expected else expected
