"""Tests for the scheduler management commands."""

from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest
from django.core import mail
from django.core.management import call_command
from django.utils import timezone

from invoicing.models import Invoice, Payment, RecurringInvoiceTemplate


def _run(name, *args):
    out = StringIO()
    call_command(name, *args, stdout=out)
    return out.getvalue()


@pytest.fixture
def due_template(organization, customer):
    today = timezone.localdate()
    return RecurringInvoiceTemplate.objects.create(
        organization=organization,
        customer=customer,
        name="Hosting",
        frequency="monthly",
        start_date=today,
        next_generation_date=today,
        template_items=[{"description": "Hosting", "quantity": 1, "price": "20.00", "tax_rate": "0"}],
    )


@pytest.mark.django_db
class TestGenerateRecurringInvoices:
    def test_generates(self, due_template):
        out = _run("generate_recurring_invoices")

        assert f"template={due_template.pk} (Hosting) -> success invoice #1" in out
        assert "Processed 1: generated=1 failed=0 skipped=0" in out
        assert Invoice.objects.get().recurring_template == due_template

    def test_dry_run(self, due_template):
        out = _run("generate_recurring_invoices", "--dry-run")

        assert "-> dry_run" in out
        assert "[dry-run] Processed 1: generated=0 failed=0 skipped=0" in out
        assert not Invoice.objects.exists()

    def test_force_all_includes_ended_templates(self, due_template):
        due_template.end_date = timezone.localdate() - timedelta(days=1)
        due_template.start_date = due_template.end_date - timedelta(days=30)
        due_template.save()

        assert "Processed 0" in _run("generate_recurring_invoices")
        assert "Processed 1" in _run("generate_recurring_invoices", "--dry-run", "--force-all")


@pytest.mark.django_db
class TestSendPaymentReminders:
    def test_sends_due_reminder(self, make_invoice):
        today = timezone.localdate()
        make_invoice(status="sent", issue_date=today - timedelta(days=30), due_date=today)

        out = _run("send_payment_reminders")

        assert "invoice #1 due -> sent" in out
        assert "Processed 1: sent=1 failed=0 skipped=0" in out
        assert mail.outbox[0].subject == "Invoice #1 is due today"

    def test_dry_run(self, make_invoice):
        today = timezone.localdate()
        make_invoice(status="sent", issue_date=today - timedelta(days=30), due_date=today)

        out = _run("send_payment_reminders", "--dry-run")

        assert "[dry-run] Processed 1: sent=0 failed=0 skipped=1" in out
        assert mail.outbox == []


@pytest.mark.django_db
class TestRetryFailedPayments:
    def test_nothing_due(self, db):
        assert "Processed 0: succeeded=0 failed=0 skipped=0" in _run("retry_failed_payments")

    def test_dry_run(self, stripe_organization, make_invoice):
        payment = Payment.objects.create(
            invoice=make_invoice(status="sent"),
            amount=Decimal("220.00"),
            method="stripe",
            stripe_payment_intent_id="pi_failed",
            stripe_customer_id="cus_123",
            stripe_status="failed",
            retry_status="scheduled",
            next_retry_at=timezone.now() - timedelta(minutes=5),
        )

        out = _run("retry_failed_payments", "--dry-run")

        assert f"payment={payment.pk} invoice={payment.invoice_id} -> skipped: dry_run" in out
        assert "[dry-run] Processed 1: succeeded=0 failed=0 skipped=1" in out
        payment.refresh_from_db()
        assert payment.retry_count == 0
