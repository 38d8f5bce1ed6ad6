"""Tests for shared invoice links, payment intents, the Stripe webhook and cron hooks."""

import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from django.utils import timezone

from invoicing.models import Invoice, Payment, RecurringInvoiceTemplate
from invoicing.services import stripe_gateway
from invoicing.services.payments import record_payment


def _intent_event(event_type, invoice, **fields):
    obj = {
        "id": "pi_123",
        "amount": 22000,
        "currency": "usd",
        "customer": "cus_123",
        "metadata": {"invoice_id": str(invoice.pk)},
        **fields,
    }
    return {"id": "evt_123", "type": event_type, "data": {"object": obj}}


def _deliver(client, event):
    with patch.object(stripe_gateway, "construct_event", return_value=event):
        return client.post(
            "/api/webhooks/stripe/",
            data=json.dumps(event),
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE="t=1,v1=test",
        )


@pytest.mark.django_db
class TestPublicInvoice:
    def test_shared_invoice(self, client, invoice):
        token = invoice.ensure_share_token()
        resp = client.get(f"/api/public/invoices/{token}/")

        assert resp.status_code == 200
        body = resp.json()["invoice"]
        assert body["total"] == "220.00"
        assert body["organization"]["name"] == "Acme Corp"
        assert body["organization"]["stripe_enabled"] is False
        assert body["customer"] == {"name": "Globex", "email": "ap@globex.test"}
        assert body["payment_plan"] is None
        assert "share_token" not in body
        assert "payments" not in body

    def test_draft_with_token_is_viewable(self, client, make_invoice):
        draft = make_invoice(status="draft")
        assert client.get(f"/api/public/invoices/{draft.ensure_share_token()}/").status_code == 200

    def test_cancelled_invoice(self, client, make_invoice):
        cancelled = make_invoice(status="cancelled")
        resp = client.get(f"/api/public/invoices/{cancelled.ensure_share_token()}/")
        assert resp.status_code == 403

    def test_unknown_token(self, client, db):
        resp = client.get("/api/public/invoices/nope/")
        assert resp.status_code == 404
        assert "error" in resp.json()


@pytest.mark.django_db
class TestPaymentIntents:
    @pytest.fixture
    def gateway(self):
        with patch.object(stripe_gateway, "get_or_create_customer", return_value="cus_123"), patch.object(
            stripe_gateway,
            "create_payment_intent",
            return_value={"id": "pi_123", "client_secret": "pi_123_secret_abc"},
        ) as create:
            yield create

    def _post(self, client, invoice, data=None):
        return client.post(
            f"/api/public/invoices/{invoice.ensure_share_token()}/payment-intent/",
            data=json.dumps(data or {}),
            content_type="application/json",
        )

    def test_requires_connected_account(self, client, invoice, gateway):
        resp = self._post(client, invoice)
        assert resp.status_code == 400
        gateway.assert_not_called()

    def test_full_balance(self, client, stripe_organization, invoice, gateway):
        resp = self._post(client, invoice)

        assert resp.status_code == 200
        assert resp.json() == {
            "client_secret": "pi_123_secret_abc",
            "payment_intent_id": "pi_123",
            "amount": "220.00",
            "currency": "USD",
        }
        assert gateway.call_args.kwargs["amount"] == Decimal("220.00")
        assert gateway.call_args.kwargs["stripe_customer_id"] == "cus_123"

    def test_partial_amount(self, client, stripe_organization, invoice, gateway):
        resp = self._post(client, invoice, {"amount": "50"})
        assert resp.json()["amount"] == "50.00"

    @pytest.mark.parametrize("amount", ["0", "-5", "220.02", "abc"])
    def test_rejects_bad_amounts(self, client, stripe_organization, invoice, gateway, amount):
        assert self._post(client, invoice, {"amount": amount}).status_code == 400
        gateway.assert_not_called()

    def test_overpay_tolerance(self, client, stripe_organization, invoice, gateway):
        assert self._post(client, invoice, {"amount": "220.01"}).status_code == 200

    def test_paid_invoice(self, client, stripe_organization, invoice, gateway):
        record_payment(invoice=invoice, amount=Decimal("220.00"), method="card", send_confirmation=False)
        invoice.refresh_from_db()

        resp = self._post(client, invoice)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invoice is paid"

    def test_stripe_error(self, client, stripe_organization, invoice):
        with patch.object(stripe_gateway, "get_or_create_customer", side_effect=stripe_gateway.StripeError("down")):
            assert self._post(client, invoice).status_code == 502

    def test_authenticated_endpoint(self, member_client, stripe_organization, invoice, gateway):
        resp = member_client.post(f"/api/invoices/{invoice.pk}/payment-intent/")
        assert resp.status_code == 200
        assert resp.json()["payment_intent_id"] == "pi_123"


@pytest.mark.django_db
class TestStripeWebhook:
    def test_missing_signature(self, client):
        resp = client.post("/api/webhooks/stripe/", data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing stripe-signature header"

    def test_invalid_signature(self, client):
        error = stripe_gateway.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with patch.object(stripe_gateway, "construct_event", side_effect=error):
            resp = client.post(
                "/api/webhooks/stripe/", data="{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="t=1,v1=bad"
            )
        assert resp.status_code == 400

    def test_secret_not_configured(self, client, settings):
        settings.STRIPE_WEBHOOK_SECRET = ""
        resp = client.post(
            "/api/webhooks/stripe/", data="{}", content_type="application/json", HTTP_STRIPE_SIGNATURE="t=1,v1=x"
        )
        assert resp.status_code == 500

    def test_payment_succeeded(self, client, invoice):
        event = _intent_event("payment_intent.succeeded", invoice, amount_received=22000, latest_charge="ch_123")

        first = _deliver(client, event).json()
        again = _deliver(client, event).json()

        assert first["received"] is True
        assert first["created"] is True
        assert again["created"] is False
        assert again["payment_id"] == first["payment_id"]

        payment = Payment.objects.get(pk=first["payment_id"])
        assert payment.method == "stripe"
        assert payment.amount == Decimal("220.00")
        assert payment.stripe_charge_id == "ch_123"
        invoice.refresh_from_db()
        assert invoice.status == "paid"

    def test_expanded_latest_charge(self, client, invoice):
        event = _intent_event("payment_intent.succeeded", invoice, latest_charge={"id": "ch_456"})
        payment_id = _deliver(client, event).json()["payment_id"]
        assert Payment.objects.get(pk=payment_id).stripe_charge_id == "ch_456"

    def test_payment_failed_schedules_retry(self, client, invoice):
        event = _intent_event(
            "payment_intent.payment_failed", invoice, last_payment_error={"message": "Your card was declined."}
        )
        before = timezone.now()

        payment_id = _deliver(client, event).json()["payment_id"]

        payment = Payment.objects.get(pk=payment_id)
        assert payment.stripe_status == "failed"
        assert payment.retry_status == "scheduled"
        assert payment.notes == "Payment failed: Your card was declined."
        assert before + timedelta(minutes=59) < payment.next_retry_at < timezone.now() + timedelta(minutes=61)
        invoice.refresh_from_db()
        assert invoice.status == "sent"

    def test_unknown_invoice_is_acknowledged(self, client, invoice):
        event = _intent_event("payment_intent.succeeded", invoice)
        event["data"]["object"]["metadata"] = {"invoice_id": "999999"}
        assert _deliver(client, event).json() == {"received": True, "payment_id": None, "created": False}

    def test_account_updated(self, client, organization):
        organization.stripe_account_id = "acct_123"
        organization.stripe_account_status = "pending"
        organization.save()
        event = {
            "type": "account.updated",
            "data": {"object": {"id": "acct_123", "details_submitted": True, "charges_enabled": True}},
        }

        assert _deliver(client, event).json() == {"received": True}

        organization.refresh_from_db()
        assert organization.stripe_account_status == "active"
        assert organization.stripe_connect_enabled
        assert organization.stripe_onboarding_complete

    def test_unhandled_event(self, client, db):
        event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
        assert _deliver(client, event).json() == {"received": True}

    def test_success_on_cancelled_invoice_is_acknowledged(self, client, make_invoice):
        invoice = make_invoice(status="cancelled")
        event = _intent_event("payment_intent.succeeded", invoice, amount_received=22000)

        resp = _deliver(client, event)

        assert resp.status_code == 200
        body = resp.json()
        assert body["received"] is True
        assert body["payment_id"] is None
        assert body["created"] is False
        assert not Payment.objects.filter(invoice=invoice).exists()

    def test_failed_retry_charge_schedules_nothing(self, client, invoice):
        original = _deliver(client, _intent_event("payment_intent.payment_failed", invoice)).json()["payment_id"]
        event = _intent_event(
            "payment_intent.payment_failed",
            invoice,
            id="pi_retry",
            metadata={"invoice_id": str(invoice.pk), "retry_of_payment_id": str(original)},
        )

        assert _deliver(client, event).json() == {"received": True, "payment_id": None}
        assert list(Payment.objects.filter(retry_status="scheduled").values_list("pk", flat=True)) == [original]


@pytest.mark.django_db
class TestCron:
    @pytest.fixture
    def due_template(self, organization, customer):
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

    def test_secret_required_when_configured(self, client, settings):
        settings.CRON_SECRET = "s3cret"

        assert client.get("/api/cron/reminders/").status_code == 401
        assert client.get("/api/cron/reminders/", HTTP_AUTHORIZATION="Bearer wrong").status_code == 401
        resp = client.get("/api/cron/reminders/", HTTP_AUTHORIZATION="Bearer s3cret")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_generate_dry_run(self, client, due_template):
        body = client.post("/api/cron/generate-recurring/?dryRun=true").json()

        assert body["dry_run"] is True
        assert body["processed"] == 1
        assert body["generated"] == 0
        assert body["details"][0]["status"] == "dry_run"
        assert not Invoice.objects.exists()

    def test_generate(self, client, due_template):
        body = client.post("/api/cron/generate-recurring/").json()

        assert body["generated"] == 1
        assert body["details"][0]["invoice_no"] == 1
        due_template.refresh_from_db()
        assert due_template.next_generation_date > timezone.localdate()

    def test_payment_retries(self, client, db):
        body = client.get("/api/cron/payment-retries/").json()
        assert body == {
            "success": True,
            "dry_run": False,
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "details": [],
        }
