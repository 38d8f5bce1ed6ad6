from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from .billing import PLAN_FREQUENCIES, BillingError, _d, installment_due_dates, split_installments


logger = logging.getLogger(__name__)


def create_payment_plan(*, invoice, installment_count: int, frequency: str, start_date: date):
    """
    Splits the invoice's remaining balance into installments.
    Only one plan per invoice.
    """
    from invoicing.models import Installment, PaymentPlan

    try:
        installment_count = int(installment_count)
    except (TypeError, ValueError):
        raise BillingError("Installment count must be a number")

    if installment_count < 2:
        raise BillingError("Installment count must be at least 2")

    if frequency not in PLAN_FREQUENCIES:
        frequency = "monthly"

    if PaymentPlan.objects.filter(invoice=invoice).exists():
        raise BillingError("Payment plan already exists for this invoice")

    remaining = invoice.balance_due()
    if remaining <= 0:
        raise BillingError("Invoice is already fully paid")

    amounts = split_installments(remaining, installment_count)
    due_dates = installment_due_dates(start_date, installment_count, frequency)

    with transaction.atomic():
        plan = PaymentPlan.objects.create(
            invoice=invoice,
            total_amount=remaining,
            installment_count=installment_count,
            frequency=frequency,
            start_date=start_date,
            status="active",
        )
        Installment.objects.bulk_create(
            [
                Installment(
                    payment_plan=plan,
                    installment_number=i + 1,
                    amount=amount,
                    due_date=due,
                )
                for i, (amount, due) in enumerate(zip(amounts, due_dates))
            ]
        )

    logger.info("Created %s-installment plan for invoice %s (%s)", installment_count, invoice.pk, remaining)
    return plan


def apply_payment_to_installments(*, invoice, payment, today: Optional[date] = None) -> List[int]:
    """
    Fills open installments oldest-due first with the payment amount.
    Returns the ids of installments that received money.
    """
    from invoicing.models import Installment, Payment, PaymentPlan

    plan = PaymentPlan.objects.filter(invoice=invoice).first()
    if plan is None:
        return []

    today = today or timezone.localdate()
    left = _d(payment.amount)
    touched: List[int] = []

    with transaction.atomic():
        open_installments = (
            Installment.objects.select_for_update()
            .filter(payment_plan=plan, status__in=["pending", "overdue"])
            .order_by("due_date", "installment_number")
        )

        for inst in open_installments:
            if left <= 0:
                break

            owed = inst.remaining
            if owed <= 0:
                continue

            applied = min(left, owed)
            inst.amount_paid = _d(inst.amount_paid) + applied
            left -= applied

            if inst.amount_paid >= inst.amount:
                inst.status = "paid"
                inst.paid_at = timezone.now()
            elif inst.due_date < today:
                inst.status = "overdue"
            inst.save(update_fields=["amount_paid", "status", "paid_at", "updated_at"])
            touched.append(inst.id)

        if touched and payment.installment_id is None:
            Payment.objects.filter(pk=payment.pk).update(installment_id=touched[0])
            payment.installment_id = touched[0]

        _complete_if_paid(plan)

    return touched


def refresh_installment_statuses(plan, *, today: Optional[date] = None) -> int:
    """Pending installments become paid or overdue; returns how many changed."""
    today = today or timezone.localdate()
    changed = 0

    for inst in plan.installments.filter(status="pending"):
        if inst.amount_paid >= inst.amount:
            inst.status = "paid"
            inst.paid_at = inst.paid_at or timezone.now()
        elif inst.due_date < today:
            inst.status = "overdue"
        else:
            continue
        inst.save(update_fields=["status", "paid_at", "updated_at"])
        changed += 1

    if changed:
        _complete_if_paid(plan)
    return changed


def _complete_if_paid(plan) -> None:
    if plan.status != "active":
        return
    if plan.installments.exclude(status="paid").exists():
        return
    plan.status = "completed"
    plan.save(update_fields=["status", "updated_at"])


def has_overdue_installment(invoice) -> bool:
    from invoicing.models import Installment

    return Installment.objects.filter(payment_plan__invoice=invoice, status="overdue").exists()
