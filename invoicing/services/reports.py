"""
Filtered reports over invoices, payments, customers, products and monthly
revenue. Results keep Decimal and date values; JsonResponse and the export
writers format them.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Optional

from django.db.models import Count, Prefetch, Q
from django.utils import timezone

from .billing import BillingError, money, month_key
from .forecasting import invoice_total, paid_amount


REPORT_TYPES = ("invoices", "payments", "customers", "products", "revenue")
GROUP_BY_CHOICES = ("none", "customer", "status", "month")

# group_by values each report understands; anything else is ignored
GROUPINGS = {
    "invoices": ("customer", "status", "month"),
    "payments": ("month",),
}

COLUMNS = {
    "invoices": [
        ("invoice_no", "Invoice No"),
        ("customer_name", "Customer"),
        ("issue_date", "Issue Date"),
        ("due_date", "Due Date"),
        ("status", "Status"),
        ("total", "Total"),
        ("total_paid", "Paid"),
        ("balance", "Balance"),
    ],
    "payments": [
        ("date", "Date"),
        ("invoice_no", "Invoice No"),
        ("customer_name", "Customer"),
        ("method", "Method"),
        ("amount", "Amount"),
    ],
    "customers": [
        ("name", "Name"),
        ("email", "Email"),
        ("total_invoices", "Invoices"),
        ("total_revenue", "Revenue"),
    ],
    "products": [
        ("name", "Name"),
        ("price", "Price"),
        ("tax_rate", "Tax Rate %"),
        ("times_used", "Times Used"),
    ],
    "revenue": [
        ("period", "Period"),
        ("revenue", "Revenue"),
        ("count", "Invoices"),
        ("average", "Average"),
    ],
}
GROUP_COLUMNS = [("group", "Group"), ("count", "Count"), ("total", "Total"), ("average", "Average")]


def _month_label(key: str) -> str:
    year, month = key.split("-")
    return date(int(year), int(month), 1).strftime("%B %Y")


def _group(rows, key_fn, amount_key: str, *, by_month: bool = False):
    buckets = OrderedDict()
    for row in rows:
        key = key_fn(row)
        bucket = buckets.setdefault(key, {"group": key, "count": 0, "total": Decimal("0")})
        bucket["count"] += 1
        bucket["total"] += row[amount_key]

    keys = sorted(buckets) if by_month else list(buckets)
    grouped = []
    for key in keys:
        bucket = buckets[key]
        grouped.append(
            {
                "group": _month_label(key) if by_month else bucket["group"],
                "count": bucket["count"],
                "total": money(bucket["total"]),
                "average": money(bucket["total"] / bucket["count"]),
            }
        )
    return grouped


def _issue_date_filter(prefix: str, start_date: Optional[date], end_date: Optional[date]) -> Q:
    q = Q()
    if start_date:
        q &= Q(**{f"{prefix}issue_date__gte": start_date})
    if end_date:
        q &= Q(**{f"{prefix}issue_date__lte": end_date})
    return q


def _invoices(organization, *, start_date, end_date, status, customer_id):
    from invoicing.models import Invoice

    qs = (
        Invoice.objects.filter(organization=organization)
        .filter(_issue_date_filter("", start_date, end_date))
        .select_related("customer")
        .prefetch_related("items", "taxes", "payments")
    )
    if status:
        qs = qs.filter(status=status)
    if customer_id:
        qs = qs.filter(customer_id=customer_id)
    return qs


# -------------------------
# REPORTS
# -------------------------

def invoice_report(organization, *, start_date, end_date, status, customer_id, group_by):
    qs = _invoices(
        organization, start_date=start_date, end_date=end_date, status=status, customer_id=customer_id
    ).order_by("-issue_date", "-id")

    rows = []
    for inv in qs:
        total = money(invoice_total(inv))
        paid = money(paid_amount(inv))
        rows.append(
            {
                "id": inv.pk,
                "invoice_no": inv.invoice_no,
                "customer_name": inv.customer.name,
                "issue_date": inv.issue_date,
                "due_date": inv.due_date,
                "status": inv.status,
                "total": total,
                "total_paid": paid,
                "balance": money(total - paid),
            }
        )

    revenue = sum((r["total"] for r in rows), Decimal("0"))
    summary = {
        "total_revenue": money(revenue),
        "total_count": len(rows),
        "average_amount": money(revenue / len(rows)) if rows else money(0),
    }

    if group_by == "customer":
        rows = _group(rows, lambda r: r["customer_name"] or "Unknown", "total")
    elif group_by == "status":
        rows = _group(rows, lambda r: r["status"], "total")
    elif group_by == "month":
        rows = _group(rows, lambda r: month_key(r["issue_date"]), "total", by_month=True)
    return rows, summary


def payment_report(organization, *, start_date, end_date, status, customer_id, group_by):
    from invoicing.models import Payment

    qs = (
        Payment.objects.filter(invoice__organization=organization, stripe_status="succeeded")
        .filter(_issue_date_filter("invoice__", start_date, end_date))
        .select_related("invoice", "invoice__customer")
        .order_by("-date", "-id")
    )
    if customer_id:
        qs = qs.filter(invoice__customer_id=customer_id)

    rows = [
        {
            "id": p.pk,
            "date": timezone.localtime(p.date).date() if timezone.is_aware(p.date) else p.date.date(),
            "invoice_no": p.invoice.invoice_no,
            "customer_name": p.invoice.customer.name,
            "method": p.method,
            "amount": money(p.amount),
        }
        for p in qs
    ]

    summary = {
        "total_revenue": money(sum((r["amount"] for r in rows), Decimal("0"))),
        "total_count": len(rows),
    }

    if group_by == "month":
        rows = _group(rows, lambda r: month_key(r["date"]), "amount", by_month=True)
    return rows, summary


def customer_report(organization, *, start_date, end_date, status, customer_id, group_by):
    from invoicing.models import Customer, Invoice

    invoices = Invoice.objects.filter(_issue_date_filter("", start_date, end_date)).prefetch_related(
        "items", "taxes"
    )
    qs = (
        Customer.objects.filter(organization=organization)
        .prefetch_related(Prefetch("invoices", queryset=invoices))
        .order_by("name", "id")
    )

    rows = []
    for customer in qs:
        customer_invoices = list(customer.invoices.all())
        rows.append(
            {
                "id": customer.pk,
                "name": customer.name,
                "email": customer.email,
                "total_invoices": len(customer_invoices),
                "total_revenue": money(sum((invoice_total(inv) for inv in customer_invoices), Decimal("0"))),
            }
        )

    summary = {
        "total_count": len(rows),
        "total_revenue": money(sum((r["total_revenue"] for r in rows), Decimal("0"))),
    }
    return rows, summary


def product_report(organization, *, start_date, end_date, status, customer_id, group_by):
    from invoicing.models import Product

    used = _issue_date_filter("invoice_items__invoice__", start_date, end_date)
    qs = (
        Product.objects.filter(organization=organization)
        .annotate(times_used=Count("invoice_items", filter=used or None))
        .order_by("name", "id")
    )

    rows = [
        {
            "id": p.pk,
            "name": p.name,
            "price": money(p.price),
            "tax_rate": p.tax_rate,
            "times_used": p.times_used,
        }
        for p in qs
    ]
    return rows, {"total_count": len(rows)}


def revenue_report(organization, *, start_date, end_date, status, customer_id, group_by):
    qs = _invoices(
        organization, start_date=start_date, end_date=end_date, status=status, customer_id=customer_id
    ).order_by("issue_date", "id")

    buckets = OrderedDict()
    count = 0
    for inv in qs:
        count += 1
        bucket = buckets.setdefault(month_key(inv.issue_date), {"revenue": Decimal("0"), "count": 0})
        bucket["revenue"] += invoice_total(inv)
        bucket["count"] += 1

    rows = [
        {
            "period": _month_label(key),
            "revenue": money(b["revenue"]),
            "count": b["count"],
            "average": money(b["revenue"] / b["count"]),
        }
        for key, b in buckets.items()
    ]
    summary = {
        "total_revenue": money(sum((r["revenue"] for r in rows), Decimal("0"))),
        "total_count": count,
    }
    return rows, summary


BUILDERS = {
    "invoices": invoice_report,
    "payments": payment_report,
    "customers": customer_report,
    "products": product_report,
    "revenue": revenue_report,
}


def build_report(
    organization,
    *,
    report_type: str = "invoices",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: str = "",
    customer_id: Optional[int] = None,
    group_by: str = "none",
) -> dict:
    from invoicing.models import Invoice

    report_type = report_type or "invoices"
    group_by = group_by or "none"
    if report_type not in REPORT_TYPES:
        raise BillingError(f"Unknown report type: {report_type}")
    if group_by not in GROUP_BY_CHOICES:
        raise BillingError(f"Unknown groupBy: {group_by}")
    if status and status not in dict(Invoice.STATUS_CHOICES):
        raise BillingError(f"Invalid status: {status}")
    if start_date and end_date and start_date > end_date:
        raise BillingError("startDate must be on or before endDate")

    results, summary = BUILDERS[report_type](
        organization,
        start_date=start_date,
        end_date=end_date,
        status=status,
        customer_id=customer_id,
        group_by=group_by,
    )
    grouped = group_by in GROUPINGS.get(report_type, ())

    return {
        "report_type": report_type,
        "grouped": grouped,
        "results": results,
        "summary": summary,
        "filters": {
            "start_date": start_date,
            "end_date": end_date,
            "status": status or None,
            "customer_id": customer_id,
            "group_by": group_by,
        },
    }


def report_table(report: dict):
    """Headers and rows of a built report, in export column order."""
    columns = GROUP_COLUMNS if report["grouped"] else COLUMNS[report["report_type"]]
    headers = [label for _key, label in columns]
    rows = [[row.get(key, "") for key, _label in columns] for row in report["results"]]
    return headers, rows
