from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from . import notifications
from .billing import BillingError, _d, derive_invoice_status, first_retry_at
from .payment_plans import apply_payment_to_installments, has_overdue_installment


logger = logging.getLogger(__name__)


def backoff_table():
    return tuple(getattr(settings, "PAYMENT_RETRY_BACKOFF_HOURS", (1, 6, 24)))


def default_max_retries() -> int:
    return int(getattr(settings, "PAYMENT_MAX_RETRIES", 3))


def refresh_invoice_status(invoice) -> str:
    """Re-derives the invoice status from what has been paid so far."""
    new_status = derive_invoice_status(
        current=invoice.status,
        total=invoice.calculate_total(),
        paid=invoice.amount_paid(),
        has_overdue_installment=has_overdue_installment(invoice),
    )
    if new_status != invoice.status:
        logger.info("Invoice %s status %s -> %s", invoice.pk, invoice.status, new_status)
        invoice.status = new_status
        invoice.save(update_fields=["status", "updated_at"])
    return new_status


def record_payment(
    *,
    invoice,
    amount,
    method: str,
    paid_on=None,
    notes: str = "",
    send_confirmation: bool = True,
    today: Optional[date] = None,
    **stripe_fields,
):
    """
    Records a succeeded payment, spreads it over plan installments and
    updates the invoice status. The confirmation email never fails the payment.
    """
    from invoicing.models import Payment

    amount = _d(amount)
    if amount <= 0:
        raise BillingError("Amount must be greater than zero")
    if invoice.status == "cancelled":
        raise BillingError("Cannot record a payment on a cancelled invoice")

    with transaction.atomic():
        payment = Payment(
            invoice=invoice,
            amount=amount,
            date=paid_on or timezone.now(),
            method=method,
            notes=notes or "",
            stripe_status="succeeded",
            **stripe_fields,
        )
        payment.full_clean()
        payment.save()

        apply_payment_to_installments(invoice=invoice, payment=payment, today=today)
        refresh_invoice_status(invoice)

        if send_confirmation and invoice.customer.email:
            # Sent only once the payment row is committed.
            transaction.on_commit(lambda: notifications.send_payment_confirmation(payment))

    return payment


def record_stripe_success(payment_intent, *, charge_id: str = ""):
    """
    Idempotent by payment intent id: a redelivered webhook returns the
    payment recorded the first time.
    """
    from invoicing.models import Invoice, Payment

    from .stripe_gateway import field, from_cents

    intent_id = field(payment_intent, "id")
    existing = Payment.objects.filter(stripe_payment_intent_id=intent_id).first()
    if existing is not None and existing.stripe_status == "succeeded":
        logger.info("Payment intent %s already recorded as payment %s", intent_id, existing.pk)
        return existing, False

    metadata = field(payment_intent, "metadata", {}) or {}
    invoice_id = field(metadata, "invoice_id")
    if not invoice_id:
        logger.warning("Payment intent %s has no invoice_id metadata", intent_id)
        return None, False

    invoice = Invoice.objects.select_related("customer", "organization").filter(pk=invoice_id).first()
    if invoice is None:
        logger.warning("Payment intent %s references unknown invoice %s", intent_id, invoice_id)
        return None, False

    if invoice.status == "cancelled":
        raise BillingError("Cannot record a payment on a cancelled invoice")

    amount = from_cents(field(payment_intent, "amount_received") or field(payment_intent, "amount"))

    if existing is not None:
        # A failed attempt recorded under the same intent later succeeded.
        with transaction.atomic():
            existing.stripe_status = "succeeded"
            existing.stripe_charge_id = charge_id
            existing.retry_status = ""
            existing.next_retry_at = None
            existing.amount = amount
            existing.save()
            apply_payment_to_installments(invoice=invoice, payment=existing)
            refresh_invoice_status(invoice)
            transaction.on_commit(lambda: notifications.send_payment_confirmation(existing))
        return existing, True

    payment = record_payment(
        invoice=invoice,
        amount=amount,
        method="stripe",
        notes="Stripe payment",
        stripe_payment_intent_id=intent_id,
        stripe_charge_id=charge_id,
        stripe_customer_id=field(payment_intent, "customer") or "",
    )
    return payment, True


def record_stripe_failure(payment_intent, *, now=None):
    """
    Keeps a failed payment intent as a Payment scheduled for retry, when the
    invoice still has something to collect.
    """
    from invoicing.models import Invoice, Payment

    from .stripe_gateway import field, from_cents

    now = now or timezone.now()
    intent_id = field(payment_intent, "id")
    metadata = field(payment_intent, "metadata", {}) or {}

    # Retry charges are accounted for on the payment they retry.
    retry_of = field(metadata, "retry_of_payment_id")
    if retry_of:
        logger.info("Failed intent %s is a retry of payment %s; nothing to schedule", intent_id, retry_of)
        return None

    invoice_id = field(metadata, "invoice_id")
    if not invoice_id:
        logger.warning("Failed payment intent %s has no invoice_id metadata", intent_id)
        return None

    invoice = Invoice.objects.filter(pk=invoice_id).first()
    if invoice is None:
        logger.warning("Failed payment intent %s references unknown invoice %s", intent_id, invoice_id)
        return None

    if invoice.status == "cancelled":
        logger.info("Invoice %s is cancelled; not scheduling retry for %s", invoice.pk, intent_id)
        return None

    if invoice.status == "paid" or invoice.balance_due() <= 0:
        logger.info("Invoice %s already paid; not scheduling retry for %s", invoice.pk, intent_id)
        return None

    error = field(payment_intent, "last_payment_error", {}) or {}
    message = field(error, "message", "Payment failed")

    payment, created = Payment.objects.get_or_create(
        stripe_payment_intent_id=intent_id,
        defaults={
            "invoice": invoice,
            "amount": from_cents(field(payment_intent, "amount")),
            "method": "stripe",
            "stripe_customer_id": field(payment_intent, "customer") or invoice.customer.stripe_customer_id,
            "stripe_status": "failed",
            "retry_count": 0,
            "max_retries": default_max_retries(),
            "retry_status": "scheduled",
            "next_retry_at": first_retry_at(now, backoff_table()),
            "notes": f"Payment failed: {message}",
        },
    )
    if created:
        logger.info("Scheduled retry for failed payment %s (invoice %s)", payment.pk, invoice.pk)
    return payment
