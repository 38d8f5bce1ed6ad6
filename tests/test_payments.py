"""Tests for recording payments, payment plans and Stripe payment outcomes."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from django.core import mail
from django.db import transaction
from django.utils import timezone

from invoicing.models import EmailLog, Installment, Payment
from invoicing.services.billing import BillingError
from invoicing.services.payment_plans import (
    apply_payment_to_installments,
    create_payment_plan,
    has_overdue_installment,
    refresh_installment_statuses,
)
from invoicing.services.payments import (
    record_payment,
    record_stripe_failure,
    record_stripe_success,
    refresh_invoice_status,
)


def _intent(invoice, **overrides):
    data = {
        "id": "pi_123",
        "amount": 22000,
        "amount_received": 22000,
        "customer": "cus_123",
        "metadata": {"invoice_id": str(invoice.pk)},
    }
    data.update(overrides)
    return data


@pytest.mark.django_db
class TestRecordPayment:
    def test_partial_payment_moves_draft_to_sent(self, make_invoice):
        invoice = make_invoice()
        record_payment(invoice=invoice, amount="100", method="cash")

        invoice.refresh_from_db()
        assert invoice.status == "sent"
        assert invoice.balance_due() == Decimal("120.00")

    def test_full_payment_marks_paid_and_confirms(self, invoice, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            payment = record_payment(invoice=invoice, amount="220.00", method="bank_transfer")

        invoice.refresh_from_db()
        assert invoice.status == "paid"
        assert payment.stripe_status == "succeeded"
        assert len(mail.outbox) == 1
        assert mail.outbox[0].to == ["ap@globex.test"]
        assert "Payment received for invoice #1" in mail.outbox[0].subject
        assert EmailLog.objects.get(invoice=invoice).email_type == "payment_confirmation"

    def test_confirmation_can_be_skipped(self, invoice, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            record_payment(invoice=invoice, amount="10", method="cash", send_confirmation=False)
        assert callbacks == []
        assert mail.outbox == []

    def test_confirmation_waits_for_commit(self, invoice, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks() as callbacks:
            record_payment(invoice=invoice, amount="10", method="cash")
            assert mail.outbox == []

        assert len(callbacks) == 1
        callbacks[0]()
        assert len(mail.outbox) == 1

    def test_rolled_back_payment_sends_no_confirmation(self, invoice, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            with pytest.raises(RuntimeError):
                with transaction.atomic():
                    record_payment(invoice=invoice, amount="220", method="cash")
                    raise RuntimeError("rolled back")

        assert callbacks == []
        assert mail.outbox == []
        assert not Payment.objects.filter(invoice=invoice).exists()

    def test_rejects_non_positive_amount(self, invoice):
        with pytest.raises(BillingError):
            record_payment(invoice=invoice, amount="0", method="cash")

    def test_rejects_cancelled_invoice(self, make_invoice):
        invoice = make_invoice(status="cancelled")
        with pytest.raises(BillingError):
            record_payment(invoice=invoice, amount="10", method="cash")

    def test_refresh_invoice_status_after_payment_removed(self, invoice):
        payment = record_payment(invoice=invoice, amount="220", method="cash", send_confirmation=False)
        payment.delete()

        invoice.refresh_from_db()
        assert refresh_invoice_status(invoice) == "sent"


@pytest.mark.django_db
class TestPaymentPlans:
    def test_splits_remaining_balance(self, invoice):
        record_payment(invoice=invoice, amount="10", method="cash", send_confirmation=False)
        plan = create_payment_plan(
            invoice=invoice, installment_count=3, frequency="monthly", start_date=date(2024, 1, 31)
        )

        installments = list(plan.installments.all())
        assert plan.total_amount == Decimal("210.00")
        assert [i.amount for i in installments] == [Decimal("70.00"), Decimal("70.00"), Decimal("70.00")]
        assert [i.due_date for i in installments] == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]
        assert [i.installment_number for i in installments] == [1, 2, 3]

    def test_unknown_frequency_falls_back_to_monthly(self, invoice):
        plan = create_payment_plan(invoice=invoice, installment_count=2, frequency="daily", start_date=date(2024, 1, 1))
        assert plan.frequency == "monthly"

    @pytest.mark.parametrize("count", [1, 0, "x", None])
    def test_needs_two_installments(self, invoice, count):
        with pytest.raises(BillingError):
            create_payment_plan(invoice=invoice, installment_count=count, frequency="monthly", start_date=date(2024, 1, 1))

    def test_one_plan_per_invoice(self, invoice):
        create_payment_plan(invoice=invoice, installment_count=2, frequency="weekly", start_date=date(2024, 1, 1))
        with pytest.raises(BillingError):
            create_payment_plan(invoice=invoice, installment_count=2, frequency="weekly", start_date=date(2024, 1, 1))

    def test_paid_invoice(self, invoice):
        record_payment(invoice=invoice, amount="220", method="cash", send_confirmation=False)
        with pytest.raises(BillingError):
            create_payment_plan(invoice=invoice, installment_count=2, frequency="monthly", start_date=date(2024, 1, 1))

    def test_payment_fills_oldest_installment_first(self, invoice):
        today = timezone.localdate()
        plan = create_payment_plan(invoice=invoice, installment_count=3, frequency="monthly", start_date=today)

        payment = record_payment(invoice=invoice, amount="100", method="cash", send_confirmation=False)

        first, second, third = plan.installments.all()
        assert first.status == "paid"
        assert first.amount_paid == Decimal("73.33")
        assert first.paid_at is not None
        assert second.status == "pending"
        assert second.amount_paid == Decimal("26.67")
        assert third.amount_paid == Decimal("0")
        payment.refresh_from_db()
        assert payment.installment_id == first.pk

    def test_plan_completes_when_all_paid(self, invoice):
        plan = create_payment_plan(
            invoice=invoice, installment_count=2, frequency="monthly", start_date=timezone.localdate()
        )
        record_payment(invoice=invoice, amount="220", method="cash", send_confirmation=False)

        plan.refresh_from_db()
        invoice.refresh_from_db()
        assert plan.status == "completed"
        assert invoice.status == "paid"
        assert not plan.installments.exclude(status="paid").exists()

    def test_no_plan_is_a_no_op(self, invoice):
        payment = Payment.objects.create(invoice=invoice, amount=Decimal("5"), method="cash")
        assert apply_payment_to_installments(invoice=invoice, payment=payment) == []

    def test_overdue_installments_mark_invoice_overdue(self, invoice):
        plan = create_payment_plan(
            invoice=invoice, installment_count=2, frequency="monthly", start_date=date(2024, 1, 1)
        )

        changed = refresh_installment_statuses(plan, today=date(2024, 1, 15))

        assert changed == 1
        assert Installment.objects.get(payment_plan=plan, installment_number=1).status == "overdue"
        assert has_overdue_installment(invoice)
        assert refresh_invoice_status(invoice) == "overdue"


@pytest.mark.django_db
class TestStripeOutcomes:
    def test_success_records_payment_once(self, invoice):
        payment, created = record_stripe_success(_intent(invoice), charge_id="ch_123")

        assert created
        assert payment.method == "stripe"
        assert payment.amount == Decimal("220.00")
        assert payment.stripe_charge_id == "ch_123"
        assert payment.stripe_customer_id == "cus_123"

        again, created_again = record_stripe_success(_intent(invoice), charge_id="ch_123")
        assert not created_again
        assert again.pk == payment.pk
        assert Payment.objects.filter(invoice=invoice).count() == 1

        invoice.refresh_from_db()
        assert invoice.status == "paid"

    def test_success_without_invoice_metadata(self, invoice):
        assert record_stripe_success(_intent(invoice, metadata={})) == (None, False)
        assert record_stripe_success(_intent(invoice, metadata={"invoice_id": "999999"})) == (None, False)

    def test_failure_schedules_first_retry(self, invoice):
        now = timezone.now()
        payment = record_stripe_failure(
            _intent(invoice, last_payment_error={"message": "Your card was declined."}), now=now
        )

        assert payment.stripe_status == "failed"
        assert payment.retry_status == "scheduled"
        assert payment.retry_count == 0
        assert payment.max_retries == 3
        assert payment.next_retry_at == now + timedelta(hours=1)
        assert "Your card was declined." in payment.notes
        assert invoice.amount_paid() == Decimal("0")

    def test_failure_is_idempotent(self, invoice):
        first = record_stripe_failure(_intent(invoice))
        second = record_stripe_failure(_intent(invoice))
        assert first.pk == second.pk

    def test_failure_on_paid_invoice_is_ignored(self, invoice):
        record_payment(invoice=invoice, amount="220", method="cash", send_confirmation=False)
        assert record_stripe_failure(_intent(invoice, id="pi_late")) is None

    def test_failed_intent_that_later_succeeds(self, invoice):
        failed = record_stripe_failure(_intent(invoice))
        payment, created = record_stripe_success(_intent(invoice), charge_id="ch_9")

        assert created
        assert payment.pk == failed.pk
        assert payment.stripe_status == "succeeded"
        assert payment.retry_status == ""
        assert payment.next_retry_at is None
        invoice.refresh_from_db()
        assert invoice.status == "paid"

    def test_failed_retry_charge_schedules_nothing(self, invoice):
        original = record_stripe_failure(_intent(invoice))

        retry = record_stripe_failure(
            _intent(
                invoice,
                id="pi_retry",
                metadata={"invoice_id": str(invoice.pk), "retry_of_payment_id": str(original.pk)},
            )
        )

        assert retry is None
        assert not Payment.objects.filter(stripe_payment_intent_id="pi_retry").exists()
        assert list(Payment.objects.filter(retry_status="scheduled")) == [original]

    def test_failure_on_cancelled_invoice_is_ignored(self, make_invoice):
        invoice = make_invoice(status="cancelled")
        assert record_stripe_failure(_intent(invoice)) is None
        assert not Payment.objects.exists()

    def test_success_on_cancelled_invoice_is_refused(self, make_invoice):
        invoice = make_invoice(status="sent")
        record_stripe_failure(_intent(invoice))
        invoice.status = "cancelled"
        invoice.save()

        with pytest.raises(BillingError):
            record_stripe_success(_intent(invoice), charge_id="ch_1")
        assert Payment.objects.get(stripe_payment_intent_id="pi_123").stripe_status == "failed"
