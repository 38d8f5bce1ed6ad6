from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from . import notifications
from .billing import BillingError, _d, next_generation_date
from .invoices import create_invoice


logger = logging.getLogger(__name__)


@dataclass
class GenerationOutcome:
    template_id: int
    template_name: str
    status: str
    invoice_id: int | None = None
    invoice_no: int | None = None
    email_sent: bool = False
    next_generation_date: str | None = None
    reason: str = ""
    error: str = ""

    def as_json(self):
        return {k: v for k, v in asdict(self).items() if v not in ("", None)}


@dataclass
class RunSummary:
    processed: int = 0
    generated: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[dict] = field(default_factory=list)

    def add(self, outcome: GenerationOutcome) -> None:
        if outcome.status == "success":
            self.generated += 1
        elif outcome.status == "error":
            self.failed += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        self.details.append(outcome.as_json())

    def as_json(self):
        return asdict(self)


def _format_usage(total: Decimal) -> str:
    # 150.0000 -> "150", 1.5000 -> "1.5"
    return f"{total.normalize():f}"


def _start_of_day(d) -> datetime:
    return timezone.make_aware(datetime.combine(d, time.min))


def build_items(template, *, usage_total: Optional[Decimal] = None) -> List[dict]:
    """
    Invoice line items for one generation. Usage-based templates bill
    ceil(usage * item quantity) and note the usage in the description.
    """
    from invoicing.models import Product

    product_ids = [i.get("product_id") for i in template.template_items if i.get("product_id")]
    products = {
        p.pk: p
        for p in Product.objects.filter(organization_id=template.organization_id, pk__in=product_ids)
    }

    items = []
    for raw in template.template_items:
        product = products.get(_as_int(raw.get("product_id")))
        description = raw.get("description") or (product.name if product else "")
        quantity = _d(raw.get("quantity", 1))

        if usage_total is not None:
            unit = template.usage_unit or "units"
            description = f"{description} ({_format_usage(usage_total)} {unit})"
            quantity = Decimal(math.ceil(usage_total * quantity))

        items.append(
            {
                "product": product,
                "description": description,
                "quantity": int(quantity),
                "price": _d(raw.get("price")),
                "tax_rate": _d(raw.get("tax_rate")),
            }
        )
    return items


def _as_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def generate_from_template(template, *, now: Optional[datetime] = None) -> GenerationOutcome:
    """
    Issues one invoice from a template and advances its schedule.
    Email failures are logged and reported, never raised.
    """
    from invoicing.models import RecurringInvoiceTemplate, UsageRecord

    now = now or timezone.now()
    issue_date = timezone.localtime(now).date() if timezone.is_aware(now) else now.date()
    due_date = issue_date + timedelta(days=template.days_until_due)

    usage_ids: List[int] = []
    usage_total = None
    if template.is_usage_based:
        period_start = template.last_generated_at or _start_of_day(template.start_date)
        usage = list(
            UsageRecord.objects.filter(
                recurring_template=template,
                invoice__isnull=True,
                period_start__gte=period_start,
                period_end__lte=now,
            ).order_by("period_start")
        )
        if not usage:
            return GenerationOutcome(
                template_id=template.pk,
                template_name=template.name,
                status="skipped",
                reason="No usage records found for billing period",
            )
        usage_total = sum((_d(r.quantity) for r in usage), Decimal("0"))
        usage_ids = [r.pk for r in usage]

    items = build_items(template, usage_total=usage_total)
    if not items:
        raise BillingError("Template has no items")

    currency = template.currency or template.organization.default_currency or "USD"

    with transaction.atomic():
        invoice = create_invoice(
            organization=template.organization,
            customer=template.customer,
            items=items,
            issue_date=issue_date,
            due_date=due_date,
            status="sent" if template.auto_send_email else "draft",
            notes=template.notes,
            currency=currency,
            recurring_template=template,
            with_share_token=True,
        )
        if usage_ids:
            UsageRecord.objects.filter(pk__in=usage_ids).update(invoice=invoice, is_billed=True)

        next_date = next_generation_date(template.frequency, template.interval, issue_date)
        new_status = template.status
        if template.end_date and next_date > template.end_date:
            new_status = "completed"

        RecurringInvoiceTemplate.objects.filter(pk=template.pk).update(
            next_generation_date=next_date,
            last_generated_at=now,
            total_generated=F("total_generated") + 1,
            status=new_status,
        )
        template.refresh_from_db()

    email_sent = False
    if template.auto_send_email and template.customer.email:
        email_sent = notifications.send_invoice_email(invoice)

    logger.info(
        "Generated invoice #%s from template %s; next generation %s",
        invoice.invoice_no,
        template.pk,
        next_date,
    )
    return GenerationOutcome(
        template_id=template.pk,
        template_name=template.name,
        status="success",
        invoice_id=invoice.pk,
        invoice_no=invoice.invoice_no,
        email_sent=email_sent,
        next_generation_date=next_date.isoformat(),
    )


def due_templates(*, today, force_all: bool = False, organization=None):
    from invoicing.models import RecurringInvoiceTemplate

    qs = RecurringInvoiceTemplate.objects.select_related("organization", "customer").filter(
        status="active",
        next_generation_date__lte=today,
    )
    if not force_all:
        qs = qs.filter(Q(end_date__isnull=True) | Q(end_date__gte=today))
    if organization is not None:
        qs = qs.filter(organization=organization)
    return qs.order_by("next_generation_date", "id")


def run_recurring_generation(*, now: Optional[datetime] = None, dry_run: bool = False, force_all: bool = False) -> RunSummary:
    now = now or timezone.now()
    today = timezone.localtime(now).date() if timezone.is_aware(now) else now.date()
    summary = RunSummary()

    for template in due_templates(today=today, force_all=force_all):
        summary.processed += 1

        if dry_run:
            summary.add(
                GenerationOutcome(
                    template_id=template.pk,
                    template_name=template.name,
                    status="dry_run",
                )
            )
            continue

        try:
            outcome = generate_from_template(template, now=now)
        except Exception as exc:
            logger.exception("Error processing recurring template %s", template.pk)
            outcome = GenerationOutcome(
                template_id=template.pk,
                template_name=template.name,
                status="error",
                error=str(exc),
            )
        summary.add(outcome)

    logger.info(
        "Recurring run: processed=%s generated=%s failed=%s skipped=%s",
        summary.processed,
        summary.generated,
        summary.failed,
        summary.skipped,
    )
    return summary
