from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from . import stripe_gateway
from .billing import schedule_after_attempt
from .payments import backoff_table, record_payment, refresh_invoice_status


logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[dict] = field(default_factory=list)

    def as_json(self):
        return asdict(self)


def due_retries(*, now: datetime):
    from invoicing.models import Payment

    return (
        Payment.objects.select_related("invoice", "invoice__customer", "invoice__organization")
        .filter(
            stripe_status="failed",
            retry_status="scheduled",
            retry_count__lt=F("max_retries"),
        )
        .filter(Q(next_retry_at__lte=now) | Q(next_retry_at__isnull=True))
        .order_by("next_retry_at", "id")
    )


def _exhaust(payment, reason: str, now: datetime) -> None:
    payment.retry_status = "exhausted"
    payment.next_retry_at = None
    payment.append_note(f"[{now:%Y-%m-%d %H:%M}] Retry stopped: {reason}")
    payment.save(update_fields=["retry_status", "next_retry_at", "notes", "updated_at"])


def _record_attempt(payment, *, now: datetime, note: str) -> None:
    schedule = schedule_after_attempt(
        retry_count=payment.retry_count,
        max_retries=payment.max_retries,
        now=now,
        table=backoff_table(),
    )
    payment.retry_count = schedule.retry_count
    payment.retry_status = schedule.retry_status
    payment.next_retry_at = schedule.next_retry_at
    payment.last_retry_at = now
    payment.append_note(f"[{now:%Y-%m-%d %H:%M}] Retry {schedule.retry_count}: {note}")
    payment.save(
        update_fields=[
            "retry_count",
            "retry_status",
            "next_retry_at",
            "last_retry_at",
            "notes",
            "updated_at",
        ]
    )


def _skip_reason(payment) -> Optional[str]:
    invoice = payment.invoice
    if invoice.status == "cancelled":
        return "Invoice cancelled"
    if invoice.status == "paid" or invoice.balance_due() <= 0:
        return "Invoice already paid"
    if not (payment.stripe_customer_id or invoice.customer.stripe_customer_id):
        return "No Stripe customer on file"
    if not invoice.organization.stripe_ready:
        return "Stripe Connect not active"
    return None


def _pick_card(cards, preferred_id: str) -> str:
    for card in cards:
        if preferred_id and card["id"] == preferred_id:
            return card["id"]
    return cards[0]["id"]


def retry_payment(payment, *, now: Optional[datetime] = None, dry_run: bool = False) -> dict:
    """
    One retry attempt for a failed Stripe payment. Returns a detail row
    for the run summary; status is one of succeeded, failed, skipped.
    """
    now = now or timezone.now()
    invoice = payment.invoice
    detail = {"payment_id": payment.pk, "invoice_id": invoice.pk, "retry_count": payment.retry_count}

    reason = _skip_reason(payment)
    if reason:
        if not dry_run:
            _exhaust(payment, reason, now)
        detail.update(status="skipped", reason=reason)
        return detail

    if dry_run:
        detail.update(status="skipped", reason="dry_run")
        return detail

    stripe_customer_id = payment.stripe_customer_id or invoice.customer.stripe_customer_id
    amount = min(invoice.balance_due(), payment.amount)

    try:
        cards = stripe_gateway.list_card_payment_methods(stripe_customer_id)
        if not cards:
            _exhaust(payment, "No saved card", now)
            detail.update(status="failed", reason="No saved card")
            return detail

        intent = stripe_gateway.charge_saved_card(
            invoice=invoice,
            amount=amount,
            stripe_customer_id=stripe_customer_id,
            payment_method_id=_pick_card(cards, invoice.customer.preferred_payment_method_id),
            organization=invoice.organization,
            metadata={
                "retry_of_payment_id": str(payment.pk),
                "retry_attempt": str(payment.retry_count + 1),
            },
        )
    except Exception as exc:
        logger.exception("Retry charge failed for payment %s", payment.pk)
        _record_attempt(payment, now=now, note=f"error: {exc}")
        detail.update(status="failed", error=str(exc), retry_status=payment.retry_status)
        return detail

    intent_status = stripe_gateway.field(intent, "status")
    if intent_status == "succeeded":
        with transaction.atomic():
            payment.retry_count += 1
            payment.last_retry_at = now
            payment.retry_status = "exhausted"
            payment.next_retry_at = None
            payment.append_note(f"[{now:%Y-%m-%d %H:%M}] Retry {payment.retry_count}: succeeded ({intent['id']})")
            payment.save(
                update_fields=[
                    "retry_count",
                    "last_retry_at",
                    "retry_status",
                    "next_retry_at",
                    "notes",
                    "updated_at",
                ]
            )
            recovered = record_payment(
                invoice=invoice,
                amount=amount,
                method="stripe",
                notes=f"Recovered by retry of payment {payment.pk}",
                stripe_payment_intent_id=intent["id"],
                stripe_customer_id=stripe_customer_id,
            )
            refresh_invoice_status(invoice)
        logger.info("Retry succeeded for payment %s -> payment %s", payment.pk, recovered.pk)
        detail.update(status="succeeded", new_payment_id=recovered.pk, amount=str(amount))
        return detail

    _record_attempt(payment, now=now, note=f"stripe status {intent_status}")
    detail.update(status="failed", stripe_status=intent_status, retry_status=payment.retry_status)
    return detail


def run_payment_retries(*, now: Optional[datetime] = None, dry_run: bool = False) -> RetrySummary:
    now = now or timezone.now()
    summary = RetrySummary()

    for payment in due_retries(now=now):
        summary.processed += 1
        try:
            detail = retry_payment(payment, now=now, dry_run=dry_run)
        except Exception as exc:
            logger.exception("Payment retry crashed for payment %s", payment.pk)
            detail = {
                "payment_id": payment.pk,
                "invoice_id": payment.invoice_id,
                "retry_count": payment.retry_count,
                "status": "failed",
                "error": str(exc),
            }

        status = detail["status"]
        if status == "succeeded":
            summary.succeeded += 1
        elif status == "failed":
            summary.failed += 1
        else:
            summary.skipped += 1
        summary.details.append(detail)

    logger.info(
        "Payment retry run: processed=%s succeeded=%s failed=%s skipped=%s",
        summary.processed,
        summary.succeeded,
        summary.failed,
        summary.skipped,
    )
    return summary
