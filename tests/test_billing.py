"""Tests for the pure billing arithmetic in invoicing.services.billing."""

from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from invoicing.services.billing import (
    MAX_GENERATIONS_PER_WINDOW,
    Trend,
    add_months,
    compute_totals,
    derive_invoice_status,
    first_retry_at,
    generation_dates,
    generations_in_month,
    growth_percent,
    installment_due_dates,
    lifespan_years,
    money,
    next_generation_date,
    project_month,
    purchase_frequency,
    reminder_type,
    retry_delay_hours,
    revenue_trend,
    schedule_after_attempt,
    split_installments,
    value_score,
    value_segment,
)


class TestMoney:
    def test_rounds_half_up_to_cents(self):
        assert money(Decimal("2.005")) == Decimal("2.01")
        assert money("10") == Decimal("10.00")
        assert money(None) == Decimal("0.00")


class TestComputeTotals:
    def test_dict_items_and_custom_tax(self):
        items = [
            {"price": "100.00", "quantity": 2, "tax_rate": "10"},
            {"price": "19.99", "quantity": 3, "taxRate": "0"},
        ]
        totals = compute_totals(items, [Decimal("5"), "2.50"])

        assert totals.subtotal == Decimal("259.97")
        assert totals.tax == Decimal("20")
        assert totals.custom_tax == Decimal("7.50")
        assert money(totals.total) == Decimal("287.47")

    def test_object_items(self):
        items = [SimpleNamespace(price=Decimal("50"), quantity=4, tax_rate=Decimal("5"))]
        totals = compute_totals(items)

        assert totals.subtotal == Decimal("200")
        assert totals.tax == Decimal("10")
        assert totals.custom_tax == Decimal("0")

    def test_no_items(self):
        assert compute_totals([]).total == Decimal("0")


class TestDeriveInvoiceStatus:
    def test_cancelled_is_sticky(self):
        assert derive_invoice_status(current="cancelled", total=100, paid=100) == "cancelled"

    def test_fully_paid(self):
        assert derive_invoice_status(current="sent", total=100, paid=100) == "paid"
        assert derive_invoice_status(current="overdue", total=100, paid=120) == "paid"

    def test_partial_payment_on_draft_marks_sent(self):
        assert derive_invoice_status(current="draft", total=100, paid=50) == "sent"

    def test_overdue_installment(self):
        assert derive_invoice_status(current="sent", total=100, paid=50, has_overdue_installment=True) == "overdue"

    def test_paid_invoice_that_is_no_longer_covered(self):
        assert derive_invoice_status(current="paid", total=100, paid=50) == "sent"

    def test_zero_total_is_never_paid(self):
        assert derive_invoice_status(current="draft", total=0, paid=0) == "draft"


class TestAddMonths:
    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_crosses_year(self):
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_negative(self):
        assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
        assert add_months(date(2024, 1, 10), -2) == date(2023, 11, 10)


class TestNextGenerationDate:
    @pytest.mark.parametrize(
        "frequency, interval, current, expected",
        [
            ("daily", 3, date(2024, 1, 1), date(2024, 1, 4)),
            ("weekly", 2, date(2024, 1, 1), date(2024, 1, 15)),
            ("biweekly", 1, date(2024, 1, 1), date(2024, 1, 15)),
            ("monthly", 1, date(2024, 1, 31), date(2024, 2, 29)),
            ("monthly", 2, date(2024, 1, 15), date(2024, 3, 15)),
            ("quarterly", 1, date(2024, 11, 30), date(2025, 2, 28)),
            ("yearly", 1, date(2024, 2, 29), date(2025, 2, 28)),
            ("custom", 10, date(2024, 1, 1), date(2024, 1, 11)),
            ("fortnightly", 1, date(2024, 1, 1), date(2024, 2, 1)),
        ],
    )
    def test_frequencies(self, frequency, interval, current, expected):
        assert next_generation_date(frequency, interval, current) == expected

    def test_missing_interval_counts_as_one(self):
        assert next_generation_date("weekly", 0, date(2024, 1, 1)) == date(2024, 1, 8)


class TestGenerationDates:
    def test_until_is_inclusive(self):
        dates = generation_dates(
            frequency="monthly", interval=1, start=date(2024, 1, 15), until=date(2024, 4, 15)
        )
        assert dates == [date(2024, 1, 15), date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15)]

    def test_stops_at_end_date(self):
        dates = generation_dates(
            frequency="monthly",
            interval=1,
            start=date(2024, 1, 15),
            until=date(2024, 12, 31),
            end_date=date(2024, 2, 20),
        )
        assert dates == [date(2024, 1, 15), date(2024, 2, 15)]

    def test_limit(self):
        dates = generation_dates(
            frequency="daily", interval=1, start=date(2024, 1, 1), until=date(2024, 12, 31), limit=5
        )
        assert len(dates) == 5


class TestGenerationsInMonth:
    def test_weekly_in_march(self):
        count = generations_in_month(
            frequency="weekly", interval=1, next_date=date(2024, 3, 1), month=date(2024, 3, 10)
        )
        assert count == 5

    def test_schedule_starting_after_month(self):
        count = generations_in_month(
            frequency="monthly", interval=1, next_date=date(2024, 5, 20), month=date(2024, 4, 1)
        )
        assert count == 0

    def test_schedule_started_before_month(self):
        count = generations_in_month(
            frequency="monthly", interval=1, next_date=date(2024, 1, 20), month=date(2024, 4, 1)
        )
        assert count == 1

    def test_end_date(self):
        count = generations_in_month(
            frequency="weekly",
            interval=1,
            next_date=date(2024, 3, 1),
            month=date(2024, 3, 1),
            end_date=date(2024, 3, 10),
        )
        assert count == 2

    def test_daily_is_capped(self):
        count = generations_in_month(
            frequency="daily", interval=1, next_date=date(2024, 3, 1), month=date(2024, 3, 1)
        )
        assert count == MAX_GENERATIONS_PER_WINDOW


class TestRetryBackoff:
    NOW = datetime(2024, 3, 1, 12, 0)

    def test_first_failure_schedules_second_slot(self):
        schedule = schedule_after_attempt(retry_count=0, max_retries=3, now=self.NOW)
        assert schedule.retry_count == 1
        assert schedule.retry_status == "scheduled"
        assert schedule.should_retry
        assert schedule.next_retry_at == self.NOW + timedelta(hours=6)

    def test_second_failure(self):
        schedule = schedule_after_attempt(retry_count=1, max_retries=3, now=self.NOW)
        assert schedule.retry_count == 2
        assert schedule.next_retry_at == self.NOW + timedelta(hours=24)

    def test_exhausted_at_max(self):
        schedule = schedule_after_attempt(retry_count=2, max_retries=3, now=self.NOW)
        assert schedule.retry_count == 3
        assert schedule.retry_status == "exhausted"
        assert schedule.next_retry_at is None
        assert not schedule.should_retry

    def test_custom_table(self):
        schedule = schedule_after_attempt(retry_count=0, max_retries=5, now=self.NOW, table=(2, 4))
        assert schedule.next_retry_at == self.NOW + timedelta(hours=4)

    def test_first_retry_at(self):
        assert first_retry_at(self.NOW) == self.NOW + timedelta(hours=1)

    def test_delay_past_table_end_uses_last_slot(self):
        assert retry_delay_hours(10) == 24

    def test_empty_table(self):
        with pytest.raises(ValueError):
            retry_delay_hours(0, table=())


class TestInstallments:
    def test_last_share_absorbs_remainder(self):
        assert split_installments("100.00", 3) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        amounts = split_installments("220.00", 3)
        assert amounts == [Decimal("73.33"), Decimal("73.33"), Decimal("73.34")]
        assert sum(amounts) == Decimal("220.00")

    def test_needs_two_installments(self):
        with pytest.raises(ValueError):
            split_installments("100.00", 1)

    def test_monthly_due_dates_clamp(self):
        assert installment_due_dates(date(2024, 1, 31), 3, "monthly") == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
        ]

    def test_weekly_biweekly_quarterly(self):
        start = date(2024, 1, 1)
        assert installment_due_dates(start, 3, "weekly") == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)]
        assert installment_due_dates(start, 2, "biweekly") == [date(2024, 1, 1), date(2024, 1, 15)]
        assert installment_due_dates(date(2024, 1, 31), 3, "quarterly") == [
            date(2024, 1, 31),
            date(2024, 4, 30),
            date(2024, 7, 31),
        ]


class TestReminderType:
    TODAY = date(2024, 3, 10)

    @pytest.mark.parametrize(
        "due, expected",
        [
            (date(2024, 3, 13), "upcoming"),
            (date(2024, 3, 12), None),
            (date(2024, 3, 10), "due"),
            (date(2024, 3, 3), "overdue"),
            (date(2024, 2, 25), "overdue"),
            (date(2024, 2, 29), None),
            (date(2024, 2, 9), "final"),
            (date(2024, 1, 1), "final"),
        ],
    )
    def test_schedule(self, due, expected):
        assert reminder_type(due_date=due, today=self.TODAY) == expected

    def test_custom_schedule(self):
        assert reminder_type(due_date=date(2024, 3, 15), today=self.TODAY, days_before=5) == "upcoming"
        assert reminder_type(due_date=date(2024, 3, 5), today=self.TODAY, overdue_days=(5,)) == "overdue"


class TestRevenueTrend:
    def test_regression_over_non_zero_months(self):
        trend = revenue_trend([0, 0, 100, 200, 300, 0])
        assert trend.average == Decimal("200")
        assert trend.slope == Decimal("100")

    def test_flat_with_fewer_than_three_points(self):
        trend = revenue_trend([100, 0, 300])
        assert trend.average == Decimal("200")
        assert trend.slope == Decimal("0")

    def test_empty(self):
        trend = revenue_trend([0, 0, 0])
        assert trend.average == Decimal("0")
        assert trend.slope == Decimal("0")


class TestProjectMonth:
    def test_recurring_only(self):
        projection = project_month(
            recurring=Decimal("1000"), trend=Trend(Decimal("0"), Decimal("0")), months_ahead=1
        )
        assert projection.projected == Decimal("600.00")
        assert projection.recurring == Decimal("1000.00")
        assert projection.trend == Decimal("0.00")
        assert projection.confidence == 100

    def test_trend_only(self):
        projection = project_month(recurring=0, trend=Trend(Decimal("500"), Decimal("0")), months_ahead=1)
        assert projection.projected == Decimal("200.00")
        assert projection.confidence == 50

    def test_negative_trend_is_floored(self):
        projection = project_month(recurring=0, trend=Trend(Decimal("100"), Decimal("-200")), months_ahead=1)
        assert projection.trend == Decimal("0.00")
        assert projection.projected == Decimal("0.00")

    def test_mixed_confidence(self):
        projection = project_month(
            recurring=Decimal("100"), trend=Trend(Decimal("1000"), Decimal("0")), months_ahead=3
        )
        assert projection.projected == Decimal("460.00")
        assert projection.confidence == 61


class TestCustomerValue:
    def test_purchase_frequency(self):
        assert money(purchase_frequency(4, 365)) == Decimal("4.00")
        assert money(purchase_frequency(2, 730)) == Decimal("1.00")
        assert purchase_frequency(3, 0) == Decimal("3")
        assert purchase_frequency(0, 100) == Decimal("0")

    def test_lifespan_is_at_least_a_year(self):
        assert lifespan_years(100) == Decimal("1")
        assert lifespan_years(730) == Decimal("2")

    def test_value_score(self):
        assert value_score(Decimal("50000"), 0) == 100
        assert value_score(Decimal("5000"), 730) == 25
        assert value_score(0, 0) == 0

    def test_segments(self):
        assert value_segment(Decimal("50000.01")) == "High Value"
        assert value_segment(Decimal("50000")) == "Medium Value"
        assert value_segment(Decimal("10000.01")) == "Medium Value"
        assert value_segment(Decimal("10000")) == "Low Value"

    def test_growth_percent(self):
        assert growth_percent(150, 100) == Decimal("50.00")
        assert growth_percent(50, 100) == Decimal("-50.00")
        assert growth_percent(10, 0) == Decimal("0.00")
