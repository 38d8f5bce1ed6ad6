from __future__ import annotations

from collections import OrderedDict, defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Optional

from django.db.models import Prefetch
from django.utils import timezone

from .billing import (
    add_months,
    compute_totals,
    generation_dates,
    generations_in_month,
    growth_percent,
    lifespan_years,
    money,
    month_key,
    project_month,
    purchase_frequency,
    revenue_trend,
    value_score,
    value_segment,
)


RECENT_INVOICES_FOR_AVERAGE = 10


def _invoice_qs():
    from invoicing.models import Invoice

    return Invoice.objects.prefetch_related("items", "taxes", "payments")


def invoice_total(invoice) -> Decimal:
    return invoice.get_totals().total


def paid_amount(invoice) -> Decimal:
    return sum(
        (p.amount for p in invoice.payments.all() if p.stripe_status == "succeeded"),
        Decimal("0"),
    )


# -------------------------
# HISTORY
# -------------------------

def monthly_revenue(organization) -> Dict[str, Decimal]:
    """Invoice totals per YYYY-MM of issue date, cancelled invoices excluded."""
    buckets: Dict[str, Decimal] = defaultdict(Decimal)
    qs = _invoice_qs().filter(organization=organization).exclude(status="cancelled")
    for inv in qs:
        buckets[month_key(inv.issue_date)] += invoice_total(inv)
    return dict(buckets)


def template_average_value(template) -> Decimal:
    """
    Mean total of the template's most recent invoices, or the value of its
    item list when it has not produced any yet.
    """
    recent = list(
        _invoice_qs()
        .filter(recurring_template=template)
        .order_by("-issue_date", "-id")[:RECENT_INVOICES_FOR_AVERAGE]
    )
    if recent:
        return sum((invoice_total(inv) for inv in recent), Decimal("0")) / len(recent)
    return compute_totals(template.template_items).total


# -------------------------
# FORECAST
# -------------------------

def revenue_forecast(organization, *, months: int = 12, today: Optional[date] = None) -> dict:
    from invoicing.models import RecurringInvoiceTemplate

    today = today or timezone.localdate()
    months = max(1, int(months))

    history = monthly_revenue(organization)
    last_six = [history.get(month_key(add_months(today, -i)), Decimal("0")) for i in range(5, -1, -1)]
    trend = revenue_trend(last_six)

    templates = list(RecurringInvoiceTemplate.objects.filter(organization=organization, status="active"))
    values = {t.pk: template_average_value(t) for t in templates}

    forecasts = []
    for i in range(1, months + 1):
        month = add_months(today.replace(day=1), i)

        recurring = Decimal("0")
        for t in templates:
            count = generations_in_month(
                frequency=t.frequency,
                interval=t.interval,
                next_date=t.next_generation_date,
                month=month,
                end_date=t.end_date,
            )
            recurring += values[t.pk] * count

        projection = project_month(recurring=recurring, trend=trend, months_ahead=i)
        forecasts.append(
            {
                "month": month.strftime("%B %Y"),
                "month_key": month_key(month),
                "projected_revenue": str(projection.projected),
                "recurring_revenue": str(projection.recurring),
                "trend_revenue": str(projection.trend),
                "confidence": projection.confidence,
            }
        )

    total = sum((Decimal(f["projected_revenue"]) for f in forecasts), Decimal("0"))
    avg_confidence = Decimal(sum(f["confidence"] for f in forecasts)) / len(forecasts)

    return {
        "forecasts": forecasts,
        "summary": {
            "total_projected": str(money(total)),
            "avg_monthly_projected": str(money(total / len(forecasts))),
            "avg_confidence": int(avg_confidence.quantize(Decimal("1"))),
            "active_recurring_templates": len(templates),
            "historical_avg_monthly": str(money(trend.average)),
            "trend": str(money(trend.slope)),
        },
    }


# -------------------------
# CUSTOMER LIFETIME VALUE
# -------------------------

def _projected_value(template, *, today: date) -> Decimal:
    dates = generation_dates(
        frequency=template.frequency,
        interval=template.interval,
        start=template.next_generation_date,
        until=add_months(today, 12),
        end_date=template.end_date,
    )
    return template_average_value(template) * len(dates)


def customer_lifetime_values(organization, *, today: Optional[date] = None) -> dict:
    from invoicing.models import Customer, RecurringInvoiceTemplate

    today = today or timezone.localdate()

    customers = Customer.objects.filter(organization=organization).prefetch_related(
        Prefetch(
            "invoices",
            queryset=_invoice_qs().exclude(status="cancelled").order_by("issue_date", "id"),
        ),
        Prefetch(
            "recurring_templates",
            queryset=RecurringInvoiceTemplate.objects.filter(status="active"),
            to_attr="active_templates",
        ),
    )

    rows = []
    for customer in customers:
        invoices = list(customer.invoices.all())
        totals = [invoice_total(inv) for inv in invoices]
        total_revenue = sum(totals, Decimal("0"))

        paid_invoices = 0
        paid_revenue = Decimal("0")
        for inv, inv_total in zip(invoices, totals):
            paid = paid_amount(inv)
            if inv.status == "paid" or paid > 0:
                paid_invoices += 1
                paid_revenue += paid or inv_total

        aov = total_revenue / len(invoices) if invoices else Decimal("0")

        if invoices:
            span_days = (invoices[-1].issue_date - invoices[0].issue_date).days
            age_days = (today - invoices[0].issue_date).days
        else:
            span_days = 0
            age_days = (today - timezone.localtime(customer.created_at).date()).days
        age_days = max(0, age_days)

        frequency = purchase_frequency(len(invoices), span_days)
        historical = aov * frequency * lifespan_years(age_days)
        projected = sum(
            (_projected_value(t, today=today) for t in customer.active_templates),
            Decimal("0"),
        )
        total_clv = historical + projected

        rows.append(
            {
                "customer_id": customer.pk,
                "customer_name": customer.name,
                "customer_email": customer.email,
                "metrics": {
                    "total_revenue": str(money(total_revenue)),
                    "paid_revenue": str(money(paid_revenue)),
                    "avg_order_value": str(money(aov)),
                    "purchase_frequency": str(money(frequency)),
                    "customer_age": age_days,
                    "customer_age_years": str(money(Decimal(age_days) / Decimal("365"))),
                    "total_invoices": len(invoices),
                    "paid_invoices": paid_invoices,
                    "active_recurring_templates": len(customer.active_templates),
                },
                "clv": {
                    "historical": str(money(historical)),
                    "projected_future": str(money(projected)),
                    "total": str(money(total_clv)),
                    "predicted_12_months": str(money(projected + aov * frequency)),
                },
                "value_score": value_score(total_clv, age_days),
                "segment": value_segment(total_clv),
                "_total": total_clv,
            }
        )

    rows.sort(key=lambda r: r["_total"], reverse=True)

    grand_total = sum((r["_total"] for r in rows), Decimal("0"))
    for r in rows:
        del r["_total"]

    return {
        "customers": rows,
        "summary": {
            "total_customers": len(rows),
            "total_clv": str(money(grand_total)),
            "avg_clv": str(money(grand_total / len(rows))) if rows else "0.00",
            "high_value_customers": sum(1 for r in rows if r["segment"] == "High Value"),
            "medium_value_customers": sum(1 for r in rows if r["segment"] == "Medium Value"),
            "low_value_customers": sum(1 for r in rows if r["segment"] == "Low Value"),
        },
    }


# -------------------------
# DASHBOARD
# -------------------------

def dashboard_stats(organization, *, today: Optional[date] = None) -> dict:
    from invoicing.models import Customer, Invoice

    today = today or timezone.localdate()
    invoices = list(
        _invoice_qs().select_related("customer").filter(organization=organization).order_by("-issue_date", "-id")
    )
    totals = {inv.pk: invoice_total(inv) for inv in invoices}

    total_revenue = sum(totals.values(), Decimal("0"))
    paid_revenue = Decimal("0")
    for inv in invoices:
        paid = paid_amount(inv)
        if inv.status == "paid" or paid > 0:
            paid_revenue += paid or totals[inv.pk]

    counts = OrderedDict(total=len(invoices))
    for code, _label in Invoice.STATUS_CHOICES:
        counts[code] = sum(1 for inv in invoices if inv.status == code)

    this_month_start = today.replace(day=1)
    last_month_start = add_months(this_month_start, -1)
    this_month = sum((totals[i.pk] for i in invoices if i.issue_date >= this_month_start), Decimal("0"))
    last_month = sum(
        (totals[i.pk] for i in invoices if last_month_start <= i.issue_date < this_month_start),
        Decimal("0"),
    )

    revenue_by_day: Dict[str, Decimal] = defaultdict(Decimal)
    since_day = today - timedelta(days=90)
    for inv in invoices:
        if inv.issue_date >= since_day:
            revenue_by_day[inv.issue_date.isoformat()] += totals[inv.pk]

    invoices_by_month: Dict[str, int] = OrderedDict()
    for i in range(5, -1, -1):
        invoices_by_month[add_months(this_month_start, -i).strftime("%B %Y")] = 0
    since_month = add_months(this_month_start, -5)
    for inv in invoices:
        if inv.issue_date >= since_month:
            invoices_by_month[inv.issue_date.strftime("%B %Y")] += 1

    recent = [
        {
            "id": inv.pk,
            "invoice_no": inv.invoice_no,
            "customer_name": inv.customer.name,
            "customer_email": inv.customer.email or None,
            "amount": str(money(totals[inv.pk])),
            "status": inv.status,
            "issue_date": inv.issue_date.isoformat(),
        }
        for inv in invoices[:5]
    ]

    return {
        "total_revenue": str(money(total_revenue)),
        "paid_revenue": str(money(paid_revenue)),
        "total_customers": Customer.objects.filter(organization=organization).count(),
        "unique_customers_with_invoices": len({inv.customer_id for inv in invoices}),
        "invoice_counts": counts,
        "revenue_growth": str(growth_percent(this_month, last_month)),
        "recent_invoices": recent,
        "revenue_by_day": {k: str(money(v)) for k, v in sorted(revenue_by_day.items())},
        "invoices_by_month": invoices_by_month,
    }
