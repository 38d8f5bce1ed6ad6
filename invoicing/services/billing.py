from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence


CENT = Decimal("0.01")

FREQUENCY_CHOICES = [
    ("daily", "Daily"),
    ("weekly", "Weekly"),
    ("biweekly", "Bi-weekly"),
    ("monthly", "Monthly"),
    ("quarterly", "Quarterly"),
    ("yearly", "Yearly"),
    ("custom", "Custom (days)"),
]
FREQUENCIES = tuple(code for code, _ in FREQUENCY_CHOICES)

PLAN_FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly")

DEFAULT_BACKOFF_HOURS = (1, 6, 24)
DEFAULT_MAX_RETRIES = 3

# Guard for schedules that would otherwise emit unbounded dates in one month.
MAX_GENERATIONS_PER_WINDOW = 12


class BillingError(ValueError):
    """A business rule refused the operation; views answer with 400."""


def _d(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x or "0"))


def money(x) -> Decimal:
    return _d(x).quantize(CENT, rounding=ROUND_HALF_UP)


# -------------------------
# INVOICE TOTALS
# -------------------------

@dataclass
class InvoiceTotals:
    subtotal: Decimal
    tax: Decimal
    custom_tax: Decimal

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax + self.custom_tax


def _field(item, name, default=None):
    if isinstance(item, dict):
        # Template items may carry the camelCase key.
        if name == "tax_rate":
            return item.get("tax_rate", item.get("taxRate", default))
        return item.get(name, default)
    return getattr(item, name, default)


def compute_totals(items: Iterable, custom_tax_amounts: Iterable = ()) -> InvoiceTotals:
    """
    subtotal   = sum(price * quantity)
    tax        = sum(price * quantity * tax_rate / 100)
    custom_tax = sum of profile-derived tax lines

    Items may be model instances or plain dicts.
    """
    subtotal = Decimal("0")
    tax = Decimal("0")
    for item in items:
        line = _d(_field(item, "price")) * _d(_field(item, "quantity"))
        subtotal += line
        tax += line * _d(_field(item, "tax_rate")) / Decimal("100")

    custom = sum((_d(a) for a in custom_tax_amounts), Decimal("0"))
    return InvoiceTotals(subtotal=subtotal, tax=tax, custom_tax=custom)


def derive_invoice_status(*, current: str, total, paid, has_overdue_installment=False) -> str:
    """
    Status after money moved on an invoice.
    Cancelled invoices keep their status.
    """
    if current == "cancelled":
        return current
    if _d(total) > 0 and _d(paid) >= _d(total):
        return "paid"
    if current == "draft" and _d(paid) > 0:
        return "sent"
    if has_overdue_installment:
        return "overdue"
    if current == "paid":
        return "sent"
    return current


# -------------------------
# CALENDAR ARITHMETIC
# -------------------------

def add_months(d: date, months: int) -> date:
    """Month arithmetic that clamps to the last day of the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def add_years(d: date, years: int) -> date:
    return add_months(d, 12 * years)


def next_generation_date(frequency: str, interval: int, current: date) -> date:
    interval = int(interval or 1)

    if frequency == "daily":
        return current + timedelta(days=interval)
    if frequency == "weekly":
        return current + timedelta(days=7 * interval)
    if frequency == "biweekly":
        return current + timedelta(days=14 * interval)
    if frequency == "monthly":
        return add_months(current, interval)
    if frequency == "quarterly":
        return add_months(current, 3 * interval)
    if frequency == "yearly":
        return add_years(current, interval)
    if frequency == "custom":
        return current + timedelta(days=interval)

    return add_months(current, 1)


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def month_bounds(d: date):
    last = calendar.monthrange(d.year, d.month)[1]
    return d.replace(day=1), d.replace(day=last)


def generation_dates(
    *,
    frequency: str,
    interval: int,
    start: date,
    until: date,
    end_date: Optional[date] = None,
    limit: int = MAX_GENERATIONS_PER_WINDOW,
) -> List[date]:
    """
    Dates a schedule produces from ``start`` up to and including ``until``,
    stopping at ``end_date`` and after ``limit`` dates.
    """
    out: List[date] = []
    cursor = start
    while cursor <= until and (end_date is None or cursor <= end_date):
        out.append(cursor)
        if len(out) >= limit:
            break
        cursor = next_generation_date(frequency, interval, cursor)
    return out


def generations_in_month(
    *,
    frequency: str,
    interval: int,
    next_date: date,
    month: date,
    end_date: Optional[date] = None,
) -> int:
    first, last = month_bounds(month)

    count = 0
    cursor = next_date
    while cursor <= last and (end_date is None or cursor <= end_date):
        if cursor >= first:
            count += 1
            if count >= MAX_GENERATIONS_PER_WINDOW:
                break
        cursor = next_generation_date(frequency, interval, cursor)
    return count


# -------------------------
# PAYMENT RETRIES
# -------------------------

@dataclass
class RetrySchedule:
    retry_count: int
    retry_status: str
    next_retry_at: Optional[datetime]

    @property
    def should_retry(self) -> bool:
        return self.retry_status == "scheduled"


def retry_delay_hours(attempt: int, table: Sequence[int] = DEFAULT_BACKOFF_HOURS) -> int:
    if not table:
        raise ValueError("Backoff table must not be empty")
    attempt = max(0, int(attempt))
    return table[min(attempt, len(table) - 1)]


def schedule_after_attempt(
    *,
    retry_count: int,
    max_retries: int,
    now: datetime,
    table: Sequence[int] = DEFAULT_BACKOFF_HOURS,
) -> RetrySchedule:
    """
    Bookkeeping after one failed (or errored) charge attempt.
    The count always moves forward; the retry is exhausted once it reaches the maximum.
    """
    new_count = int(retry_count or 0) + 1
    if new_count < int(max_retries):
        return RetrySchedule(
            retry_count=new_count,
            retry_status="scheduled",
            next_retry_at=now + timedelta(hours=retry_delay_hours(new_count, table)),
        )
    return RetrySchedule(retry_count=new_count, retry_status="exhausted", next_retry_at=None)


def first_retry_at(now: datetime, table: Sequence[int] = DEFAULT_BACKOFF_HOURS) -> datetime:
    return now + timedelta(hours=retry_delay_hours(0, table))


# -------------------------
# PAYMENT PLANS
# -------------------------

def split_installments(total, count: int) -> List[Decimal]:
    """
    Equal cent-rounded shares; the last one absorbs the rounding remainder
    so the shares always add back up to ``total``.
    """
    if count < 2:
        raise ValueError("A payment plan needs at least 2 installments")

    total = money(total)
    share = money(total / count)
    amounts = [share] * (count - 1)
    amounts.append(total - share * (count - 1))
    return amounts


def installment_due_dates(start: date, count: int, frequency: str) -> List[date]:
    dates = []
    for i in range(count):
        if frequency == "weekly":
            dates.append(start + timedelta(days=7 * i))
        elif frequency == "biweekly":
            dates.append(start + timedelta(days=14 * i))
        elif frequency == "quarterly":
            dates.append(add_months(start, 3 * i))
        else:
            dates.append(add_months(start, i))
    return dates


# -------------------------
# REMINDERS
# -------------------------

def reminder_type(
    *,
    due_date: date,
    today: date,
    days_before: int = 3,
    overdue_days: Sequence[int] = (7, 14),
    final_days: int = 30,
) -> Optional[str]:
    days_until_due = (due_date - today).days

    if days_until_due == days_before:
        return "upcoming"
    if days_until_due == 0:
        return "due"

    days_overdue = -days_until_due
    if days_overdue >= final_days:
        return "final"
    if days_overdue in overdue_days:
        return "overdue"
    return None


# -------------------------
# FORECASTING
# -------------------------

@dataclass
class Trend:
    average: Decimal
    slope: Decimal


def revenue_trend(values: Sequence) -> Trend:
    """
    Mean of the non-zero monthly revenues and the least-squares slope over
    their positions. Fewer than three points give a flat trend.
    """
    points = [_d(v) for v in values if _d(v) > 0]
    if not points:
        return Trend(average=Decimal("0"), slope=Decimal("0"))

    n = len(points)
    average = sum(points, Decimal("0")) / n
    if n < 3:
        return Trend(average=average, slope=Decimal("0"))

    sum_x = Decimal(n * (n - 1) // 2)
    sum_y = sum(points, Decimal("0"))
    sum_xy = sum((Decimal(i) * v for i, v in enumerate(points)), Decimal("0"))
    sum_x2 = Decimal(n * (n - 1) * (2 * n - 1) // 6)

    denominator = n * sum_x2 - sum_x * sum_x
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    return Trend(average=average, slope=slope)


@dataclass
class MonthProjection:
    recurring: Decimal
    trend: Decimal
    projected: Decimal
    confidence: int


RECURRING_WEIGHT = Decimal("0.6")
TREND_WEIGHT = Decimal("0.4")


def project_month(*, recurring, trend: Trend, months_ahead: int) -> MonthProjection:
    recurring = _d(recurring)
    trend_revenue = max(Decimal("0"), trend.average + trend.slope * months_ahead)
    projected = recurring * RECURRING_WEIGHT + trend_revenue * TREND_WEIGHT

    raw_confidence = Decimal("50") + recurring / max(projected, Decimal("1")) * Decimal("50")
    confidence = min(Decimal("100"), max(Decimal("30"), raw_confidence))

    return MonthProjection(
        recurring=money(recurring),
        trend=money(trend_revenue),
        projected=money(projected),
        confidence=int(confidence.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
    )


# -------------------------
# CUSTOMER LIFETIME VALUE
# -------------------------

HIGH_VALUE_THRESHOLD = Decimal("50000")
MEDIUM_VALUE_THRESHOLD = Decimal("10000")


def purchase_frequency(invoice_count: int, span_days) -> Decimal:
    """Invoices per year; all invoices on one day counts as the raw count."""
    if invoice_count <= 0:
        return Decimal("0")
    span = _d(span_days)
    if span > 0:
        return Decimal(invoice_count) / span * Decimal("365")
    return Decimal(invoice_count)


def lifespan_years(age_days: int) -> Decimal:
    return max(Decimal("1"), Decimal(age_days) / Decimal("365"))


def value_score(total_clv, age_days: int) -> int:
    per_year = _d(total_clv) / lifespan_years(age_days)
    score = min(Decimal("100"), max(Decimal("0"), per_year / Decimal("10000") * Decimal("100")))
    return int(score.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def value_segment(total_clv) -> str:
    total_clv = _d(total_clv)
    if total_clv > HIGH_VALUE_THRESHOLD:
        return "High Value"
    if total_clv > MEDIUM_VALUE_THRESHOLD:
        return "Medium Value"
    return "Low Value"


def growth_percent(current, previous) -> Decimal:
    current, previous = _d(current), _d(previous)
    if previous > 0:
        return money((current - previous) / previous * Decimal("100"))
    return Decimal("0.00")
