"""Tests for filtered reports and their export tables."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from django.utils import timezone

from invoicing.models import Customer, Payment
from invoicing.services.billing import BillingError
from invoicing.services.payments import record_payment
from invoicing.services.reports import build_report, report_table


@pytest.fixture
def january(make_invoice):
    return make_invoice(status="sent", issue_date=date(2024, 1, 15))


@pytest.fixture
def february(make_invoice):
    return make_invoice(status="draft", issue_date=date(2024, 2, 10))


@pytest.mark.django_db
class TestInvoiceReport:
    def test_rows(self, organization, january):
        record_payment(invoice=january, amount="20", method="cash", send_confirmation=False)

        report = build_report(organization)

        assert report["report_type"] == "invoices"
        assert report["grouped"] is False
        row = report["results"][0]
        assert row["invoice_no"] == january.invoice_no
        assert row["customer_name"] == "Globex"
        assert row["total"] == Decimal("220.00")
        assert row["total_paid"] == Decimal("20.00")
        assert row["balance"] == Decimal("200.00")
        assert report["summary"] == {
            "total_revenue": Decimal("220.00"),
            "total_count": 1,
            "average_amount": Decimal("220.00"),
        }

    def test_date_status_and_customer_filters(self, organization, january, february):
        in_january = build_report(organization, start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))
        assert [r["id"] for r in in_january["results"]] == [january.pk]

        drafts = build_report(organization, status="draft")
        assert [r["id"] for r in drafts["results"]] == [february.pk]

        other = Customer.objects.create(organization=organization, name="Initrode")
        assert build_report(organization, customer_id=other.pk)["results"] == []
        assert build_report(organization, customer_id=january.customer_id)["summary"]["total_count"] == 2

    def test_newest_first(self, organization, january, february):
        assert [r["id"] for r in build_report(organization)["results"]] == [february.pk, january.pk]

    def test_group_by_month_is_chronological(self, organization, january, february):
        report = build_report(organization, group_by="month")

        assert report["grouped"] is True
        assert [g["group"] for g in report["results"]] == ["January 2024", "February 2024"]
        assert report["results"][0] == {
            "group": "January 2024",
            "count": 1,
            "total": Decimal("220.00"),
            "average": Decimal("220.00"),
        }
        assert report["summary"]["total_count"] == 2

    def test_group_by_status(self, organization, january, february, make_invoice):
        make_invoice(status="sent", issue_date=date(2024, 1, 20))

        groups = {g["group"]: g for g in build_report(organization, group_by="status")["results"]}

        assert groups["sent"]["count"] == 2
        assert groups["sent"]["total"] == Decimal("440.00")
        assert groups["draft"]["average"] == Decimal("220.00")

    def test_group_by_customer(self, organization, january, february):
        groups = build_report(organization, group_by="customer")["results"]
        assert groups == [{"group": "Globex", "count": 2, "total": Decimal("440.00"), "average": Decimal("220.00")}]

    def test_other_organizations_are_excluded(self, other_organization, january):
        report = build_report(other_organization)
        assert report["results"] == []
        assert report["summary"]["average_amount"] == Decimal("0.00")


@pytest.mark.django_db
class TestOtherReports:
    def test_payments_skip_failed_attempts(self, organization, january):
        record_payment(
            invoice=january,
            amount="50",
            method="cash",
            paid_on=timezone.make_aware(datetime(2024, 1, 20, 12, 0)),
            send_confirmation=False,
        )
        record_payment(
            invoice=january,
            amount="30",
            method="check",
            paid_on=timezone.make_aware(datetime(2024, 2, 3, 12, 0)),
            send_confirmation=False,
        )
        Payment.objects.create(invoice=january, amount=Decimal("140"), method="stripe", stripe_status="failed")

        report = build_report(organization, report_type="payments")
        assert [r["method"] for r in report["results"]] == ["check", "cash"]
        assert report["summary"] == {"total_revenue": Decimal("80.00"), "total_count": 2}

        by_month = build_report(organization, report_type="payments", group_by="month")
        assert [(g["group"], g["total"]) for g in by_month["results"]] == [
            ("January 2024", Decimal("50.00")),
            ("February 2024", Decimal("30.00")),
        ]

    def test_customers(self, organization, january, february):
        Customer.objects.create(organization=organization, name="Initrode")

        report = build_report(organization, report_type="customers", start_date=date(2024, 2, 1))

        rows = {r["name"]: r for r in report["results"]}
        assert rows["Globex"]["total_invoices"] == 1
        assert rows["Globex"]["total_revenue"] == Decimal("220.00")
        assert rows["Initrode"]["total_invoices"] == 0
        assert report["summary"] == {"total_count": 2, "total_revenue": Decimal("220.00")}

    def test_products_count_usage_in_range(self, organization, product, make_invoice):
        line = [{"product": product, "description": "", "quantity": 1, "price": Decimal("100"), "tax_rate": 0}]
        make_invoice(items=line, issue_date=date(2024, 1, 5))
        make_invoice(items=line, issue_date=date(2024, 3, 5))

        assert build_report(organization, report_type="products")["results"][0]["times_used"] == 2

        in_march = build_report(organization, report_type="products", start_date=date(2024, 3, 1))
        assert in_march["results"][0]["times_used"] == 1
        assert in_march["summary"] == {"total_count": 1}

    def test_revenue_by_month(self, organization, january, february, make_invoice):
        make_invoice(status="sent", issue_date=date(2024, 1, 28))

        report = build_report(organization, report_type="revenue")

        assert report["grouped"] is False
        assert report["results"][0] == {
            "period": "January 2024",
            "revenue": Decimal("440.00"),
            "count": 2,
            "average": Decimal("220.00"),
        }
        assert report["results"][1]["period"] == "February 2024"
        assert report["summary"] == {"total_revenue": Decimal("660.00"), "total_count": 3}

    def test_unsupported_grouping_is_ignored(self, organization, january):
        report = build_report(organization, report_type="customers", group_by="month")
        assert report["grouped"] is False
        assert report["results"][0]["name"] == "Globex"


@pytest.mark.django_db
class TestValidationAndTables:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"report_type": "ledger"},
            {"group_by": "week"},
            {"status": "lost"},
            {"start_date": date(2024, 2, 1), "end_date": date(2024, 1, 1)},
        ],
    )
    def test_rejects_bad_filters(self, organization, kwargs):
        with pytest.raises(BillingError):
            build_report(organization, **kwargs)

    def test_table_follows_columns(self, organization, january):
        headers, rows = report_table(build_report(organization))

        assert headers == ["Invoice No", "Customer", "Issue Date", "Due Date", "Status", "Total", "Paid", "Balance"]
        assert rows[0][:2] == [january.invoice_no, "Globex"]
        assert rows[0][5] == Decimal("220.00")

    def test_grouped_table(self, organization, january):
        headers, rows = report_table(build_report(organization, group_by="status"))

        assert headers == ["Group", "Count", "Total", "Average"]
        assert rows == [["sent", 1, Decimal("220.00"), Decimal("220.00")]]
