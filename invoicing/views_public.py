# invoicing/views_public.py
"""
Endpoints reached without an organization session: shared invoice links,
the Stripe webhook and the scheduler hooks.
"""
import logging
from decimal import Decimal

from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import payloads
from .decorators import cron_secret_required, json_body
from .models import Invoice, Organization, PaymentPlan
from .permissions import member_allowed
from .services import stripe_gateway
from .services.billing import BillingError, _d, money
from .services.payments import record_stripe_failure, record_stripe_success
from .services.recurring import run_recurring_generation
from .services.reminders import run_reminders
from .services.retries import run_payment_retries
from .tenant_utils import org_get_object_or_404

logger = logging.getLogger(__name__)


OVERPAY_TOLERANCE = Decimal("0.01")


def _flag(request, name) -> bool:
    return (request.GET.get(name) or "").lower() in ("1", "true", "yes")


def _public_invoice(token):
    invoice = get_object_or_404(
        Invoice.objects.select_related("customer", "organization").prefetch_related("items", "taxes"),
        share_token=token,
    )
    return invoice


# =========================
# SHARED INVOICE
# =========================

@require_GET
def public_invoice(request, token):
    invoice = _public_invoice(token)
    if invoice.status == "cancelled":
        return JsonResponse({"error": "This invoice is no longer available"}, status=403)

    data = payloads.invoice_payload(invoice, public=True)
    plan = PaymentPlan.objects.filter(invoice=invoice).first()
    data["payment_plan"] = payloads.plan_payload(plan) if plan else None
    return JsonResponse({"invoice": data})


# =========================
# PAYMENT INTENTS
# =========================

def _create_intent(invoice, data):
    org = invoice.organization
    if not org.stripe_ready:
        return JsonResponse({"error": "Online payments are not enabled for this organization"}, status=400)
    if invoice.status in ("paid", "cancelled"):
        return JsonResponse({"error": f"Invoice is {invoice.status}"}, status=400)

    balance = invoice.balance_due()
    raw_amount = data.get("amount")
    try:
        amount = money(_d(raw_amount)) if raw_amount not in (None, "") else balance
    except (ArithmeticError, ValueError):
        return JsonResponse({"error": "Amount must be a number"}, status=400)

    if amount <= 0:
        return JsonResponse({"error": "Amount must be greater than zero"}, status=400)
    if amount > balance + OVERPAY_TOLERANCE:
        return JsonResponse({"error": f"Amount exceeds remaining balance of {balance}"}, status=400)

    try:
        stripe_customer_id = stripe_gateway.get_or_create_customer(invoice.customer)
        intent = stripe_gateway.create_payment_intent(
            invoice=invoice,
            amount=amount,
            stripe_customer_id=stripe_customer_id,
            organization=org,
        )
    except stripe_gateway.StripeNotConfigured as exc:
        return JsonResponse({"error": str(exc)}, status=500)
    except stripe_gateway.StripeError as exc:
        logger.exception("Payment intent creation failed for invoice %s", invoice.pk)
        return JsonResponse({"error": f"Stripe error: {exc}"}, status=502)

    logger.info("Payment intent %s created for invoice %s (%s)", intent["id"], invoice.pk, amount)
    return JsonResponse(
        {
            "client_secret": intent["client_secret"],
            "payment_intent_id": intent["id"],
            "amount": str(amount),
            "currency": invoice.currency,
        }
    )


@require_POST
@member_allowed
@json_body
def invoice_payment_intent(request, pk):
    invoice = org_get_object_or_404(
        request, Invoice.objects.select_related("customer", "organization"), pk=pk
    )
    return _create_intent(invoice, request.json)


@csrf_exempt
@require_POST
@json_body
def public_payment_intent(request, token):
    invoice = _public_invoice(token)
    return _create_intent(invoice, request.json)


# =========================
# STRIPE WEBHOOK
# =========================

def _charge_id(intent) -> str:
    charge = stripe_gateway.field(intent, "latest_charge", "")
    if isinstance(charge, str):
        return charge
    return stripe_gateway.field(charge, "id", "")


def _update_connect_account(account):
    org = Organization.objects.filter(stripe_account_id=stripe_gateway.field(account, "id")).first()
    if org is None:
        logger.warning("account.updated for unknown Stripe account %s", stripe_gateway.field(account, "id"))
        return

    status = stripe_gateway.account_status(account)
    org.stripe_account_status = status
    org.stripe_connect_enabled = status == "active"
    org.stripe_onboarding_complete = bool(stripe_gateway.field(account, "details_submitted", False))
    org.save(
        update_fields=[
            "stripe_account_status",
            "stripe_connect_enabled",
            "stripe_onboarding_complete",
            "updated_at",
        ]
    )
    logger.info("Organization %s Stripe status -> %s", org.pk, status)


@csrf_exempt
@require_POST
def stripe_webhook(request):
    signature = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    if not signature:
        return JsonResponse({"error": "Missing stripe-signature header"}, status=400)

    try:
        event = stripe_gateway.construct_event(request.body, signature)
    except stripe_gateway.StripeNotConfigured:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        return JsonResponse({"error": "Webhook secret not configured"}, status=500)
    except (ValueError, stripe_gateway.SignatureVerificationError):
        logger.warning("Rejected Stripe webhook with invalid signature")
        return JsonResponse({"error": "Invalid signature"}, status=400)

    event_type = stripe_gateway.field(event, "type")
    obj = event["data"]["object"]

    if event_type == "payment_intent.succeeded":
        try:
            payment, created = record_stripe_success(obj, charge_id=_charge_id(obj))
        except BillingError as exc:
            # Cancelled invoice: acknowledged, nothing booked.
            logger.warning("Stripe payment %s not recorded: %s", stripe_gateway.field(obj, "id"), exc)
            return JsonResponse({"received": True, "payment_id": None, "created": False, "error": str(exc)})
        return JsonResponse(
            {"received": True, "payment_id": getattr(payment, "pk", None), "created": created}
        )

    if event_type == "payment_intent.payment_failed":
        payment = record_stripe_failure(obj)
        return JsonResponse({"received": True, "payment_id": getattr(payment, "pk", None)})

    if event_type == "account.updated":
        _update_connect_account(obj)
        return JsonResponse({"received": True})

    logger.info("Unhandled Stripe event type %s", event_type)
    return JsonResponse({"received": True})


# =========================
# CRON
# =========================

@csrf_exempt
@require_http_methods(["GET", "POST"])
@cron_secret_required
def cron_generate_recurring(request):
    dry_run = _flag(request, "dryRun")
    summary = run_recurring_generation(dry_run=dry_run, force_all=_flag(request, "forceAll"))
    return JsonResponse({"success": True, "dry_run": dry_run, **summary.as_json()})


@csrf_exempt
@require_http_methods(["GET", "POST"])
@cron_secret_required
def cron_payment_retries(request):
    dry_run = _flag(request, "dryRun")
    summary = run_payment_retries(dry_run=dry_run)
    return JsonResponse({"success": True, "dry_run": dry_run, **summary.as_json()})


@csrf_exempt
@require_http_methods(["GET", "POST"])
@cron_secret_required
def cron_reminders(request):
    dry_run = _flag(request, "dryRun")
    summary = run_reminders(dry_run=dry_run)
    return JsonResponse({"success": True, "dry_run": dry_run, **summary.as_json()})
