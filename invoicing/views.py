import logging
from datetime import date, datetime, time

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.http import HttpResponse, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import payloads
from .decorators import json_body
from .exports import EXPORT_FORMATS, EXPORT_KINDS, build_export_pack_zip, generate_export, generate_report_export
from .forms import (
    CustomerForm,
    InvoiceTemplateForm,
    OrganizationSettingsForm,
    ProductForm,
    RecurringTemplateForm,
    TaxProfileForm,
    UsageRecordForm,
    bind,
    form_errors,
)
from .models import (
    Customer,
    EmailLog,
    Invoice,
    InvoiceTemplate,
    Organization,
    Payment,
    PaymentPlan,
    Product,
    RecurringInvoiceTemplate,
    TaxProfile,
    UsageRecord,
)
from .permissions import admin_only, member_allowed
from .services import forecasting, notifications, reports, stripe_gateway
from .services.billing import BillingError, _d, money
from .services.invoices import create_invoice, normalize_items, recompute_taxes, replace_items
from .services.payment_plans import create_payment_plan, refresh_installment_statuses
from .services.payments import record_payment, refresh_invoice_status
from .services.recurring import generate_from_template
from .services.reminders import reminder_for, send_reminder
from .services.tax import (
    TAX_PRESETS,
    apply_preset,
    available_countries,
    calculate_tax,
    create_profile,
    get_tax_profile,
    presets_for_country,
)
from .tenant_utils import get_role, org_get_object_or_404, org_qs

logger = logging.getLogger(__name__)


XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# =========================
# HELPERS
# =========================

def _error(message, status=400, **extra):
    return JsonResponse({"error": message, **extra}, status=status)


def _is_admin(request) -> bool:
    return get_role(request.user) == "ADMIN"


def _parse_date(value, name, *, required=False):
    if value in (None, ""):
        if required:
            raise BillingError(f"{name} is required")
        return None
    if isinstance(value, date):
        return value
    try:
        parsed = parse_date(str(value)[:10])
    except ValueError:
        parsed = None
    if parsed is None:
        raise BillingError(f"Invalid {name}. Use YYYY-MM-DD.")
    return parsed


def _parse_datetime(value, name):
    """Accepts an ISO datetime or a plain date (start of that day)."""
    if value in (None, ""):
        return None
    try:
        parsed = parse_datetime(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        return timezone.make_aware(datetime.combine(_parse_date(value, name), time.min))
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _flag(request, name) -> bool:
    return (request.GET.get(name) or "").lower() in ("1", "true", "yes")


def _template_items(items):
    """Normalized invoice items in the JSON shape stored on recurring templates."""
    return [
        {
            "product_id": item["product"].pk if item["product"] else None,
            "description": item["description"],
            "quantity": item["quantity"],
            "price": str(item["price"]),
            "tax_rate": str(item["tax_rate"]),
        }
        for item in items
    ]


def _invoice_qs(request):
    return (
        org_qs(request, Invoice)
        .select_related("customer", "organization")
        .prefetch_related("items", "taxes", "payments")
    )


# =========================
# ORGANIZATION
# =========================

@require_http_methods(["GET", "PUT", "PATCH"])
@member_allowed
@json_body
def organization_settings(request):
    org = request.organization

    if request.method == "GET":
        return JsonResponse({"organization": payloads.organization_payload(org), "role": get_role(request.user)})

    if not _is_admin(request):
        return _error("Forbidden - Admin access required", 403)

    form = bind(OrganizationSettingsForm, request.json, instance=org)
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    org = form.save()

    if "default_tax_profile_id" in request.json:
        profile_id = request.json.get("default_tax_profile_id")
        profile = org_get_object_or_404(request, TaxProfile, pk=profile_id) if profile_id else None
        with transaction.atomic():
            TaxProfile.objects.filter(organization=org, is_default=True).exclude(
                pk=getattr(profile, "pk", None)
            ).update(is_default=False)
            if profile is not None and not profile.is_default:
                profile.is_default = True
                profile.save(update_fields=["is_default", "updated_at"])
            org.default_tax_profile = profile
            org.save(update_fields=["default_tax_profile", "updated_at"])

    return JsonResponse({"organization": payloads.organization_payload(org)})


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def invoice_templates(request):
    if request.method == "GET":
        qs = org_qs(request, InvoiceTemplate).order_by("name", "id")
        return JsonResponse({"templates": [payloads.invoice_template_payload(t) for t in qs]})

    if not _is_admin(request):
        return _error("Forbidden - Admin access required", 403)

    form = bind(InvoiceTemplateForm, request.json, instance=InvoiceTemplate(organization=request.organization))
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)

    with transaction.atomic():
        template = form.save()
        if template.is_default:
            org_qs(request, InvoiceTemplate).exclude(pk=template.pk).update(is_default=False)

    return JsonResponse({"template": payloads.invoice_template_payload(template)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def invoice_template_detail(request, pk):
    template = org_get_object_or_404(request, InvoiceTemplate, pk=pk)

    if request.method == "GET":
        return JsonResponse({"template": payloads.invoice_template_payload(template)})

    if not _is_admin(request):
        return _error("Forbidden - Admin access required", 403)

    if request.method == "DELETE":
        template.delete()
        return JsonResponse({"ok": True})

    form = bind(InvoiceTemplateForm, request.json, instance=template)
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)

    with transaction.atomic():
        template = form.save()
        if template.is_default:
            org_qs(request, InvoiceTemplate).exclude(pk=template.pk).update(is_default=False)

    return JsonResponse({"template": payloads.invoice_template_payload(template)})


# =========================
# CUSTOMERS
# =========================

@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def customers(request):
    if request.method == "GET":
        qs = org_qs(request, Customer).order_by("name", "id")
        q = (request.GET.get("q") or request.GET.get("search") or "").strip()
        if q:
            qs = qs.filter(Q(name__icontains=q) | Q(email__icontains=q))
        return JsonResponse({"customers": [payloads.customer_payload(c) for c in qs]})

    form = bind(CustomerForm, request.json, instance=Customer(organization=request.organization))
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    customer = form.save()
    logger.info("Customer %s created in organization %s", customer.pk, request.organization.pk)
    return JsonResponse({"customer": payloads.customer_payload(customer)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def customer_detail(request, pk):
    customer = org_get_object_or_404(request, Customer, pk=pk)

    if request.method == "GET":
        return JsonResponse({"customer": payloads.customer_payload(customer)})

    if request.method == "DELETE":
        customer.delete()
        return JsonResponse({"ok": True})

    form = bind(CustomerForm, request.json, instance=customer)
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    customer = form.save()
    return JsonResponse({"customer": payloads.customer_payload(customer)})


@require_http_methods(["GET", "PUT"])
@member_allowed
@json_body
def customer_payment_methods(request, pk):
    customer = org_get_object_or_404(request, Customer, pk=pk)

    if request.method == "GET":
        body = {"payment_methods": [], "preferred_payment_method_id": customer.preferred_payment_method_id or None}
        if not customer.stripe_customer_id:
            return JsonResponse(body)
        try:
            cards = stripe_gateway.list_card_payment_methods(customer.stripe_customer_id)
        except (stripe_gateway.StripeError, stripe_gateway.StripeNotConfigured) as exc:
            logger.warning("Could not list payment methods for customer %s: %s", customer.pk, exc)
            return JsonResponse({**body, "error": "Failed to fetch payment methods"})
        body["payment_methods"] = [stripe_gateway.card_summary(pm) for pm in cards]
        return JsonResponse(body)

    preferred = str(request.json.get("preferred_payment_method_id") or "").strip()
    if preferred:
        if not customer.stripe_customer_id:
            return _error("Customer has no saved payment methods")
        try:
            method = stripe_gateway.retrieve_payment_method(preferred)
        except stripe_gateway.StripeNotConfigured as exc:
            return _error(str(exc), 500)
        except stripe_gateway.StripeError:
            return _error("Invalid payment method")
        if stripe_gateway.field(method, "customer") != customer.stripe_customer_id:
            return _error("Payment method does not belong to this customer", 403)

    customer.preferred_payment_method_id = preferred
    customer.save(update_fields=["preferred_payment_method_id", "updated_at"])
    return JsonResponse({"preferred_payment_method_id": preferred or None})


# =========================
# PRODUCTS
# =========================

@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def products(request):
    if request.method == "GET":
        qs = org_qs(request, Product).order_by("name", "id")
        if _flag(request, "active"):
            qs = qs.filter(is_active=True)
        return JsonResponse({"products": [payloads.product_payload(p) for p in qs]})

    form = bind(ProductForm, request.json, instance=Product(organization=request.organization))
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    product = form.save()
    return JsonResponse({"product": payloads.product_payload(product)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def product_detail(request, pk):
    product = org_get_object_or_404(request, Product, pk=pk)

    if request.method == "GET":
        return JsonResponse({"product": payloads.product_payload(product)})

    if request.method == "DELETE":
        product.delete()
        return JsonResponse({"ok": True})

    form = bind(ProductForm, request.json, instance=product)
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    product = form.save()
    return JsonResponse({"product": payloads.product_payload(product)})


# =========================
# INVOICES
# =========================

def _optional_related(request, model, value):
    if value in (None, ""):
        return None
    return org_get_object_or_404(request, model, pk=value)


def _valid_status(value):
    if value not in dict(Invoice.STATUS_CHOICES):
        raise BillingError(f"Invalid status: {value}")
    return value


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def invoices(request):
    if request.method == "GET":
        qs = _invoice_qs(request).order_by("-issue_date", "-invoice_no")
        status = request.GET.get("status")
        if status:
            qs = qs.filter(status=status)
        customer_id = request.GET.get("customer_id")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        return JsonResponse({"invoices": [payloads.invoice_summary_payload(inv) for inv in qs]})

    data = request.json
    org = request.organization

    customer = org_qs(request, Customer).filter(pk=data.get("customer_id") or None).first()
    if customer is None:
        return _error("Customer not found", 404)

    items = normalize_items(data.get("items"), organization=org)
    invoice = create_invoice(
        organization=org,
        customer=customer,
        items=items,
        issue_date=_parse_date(data.get("issue_date"), "issue_date"),
        due_date=_parse_date(data.get("due_date"), "due_date", required=True),
        status=_valid_status(data.get("status") or "draft"),
        notes=data.get("notes") or "",
        currency=data.get("currency") or "",
        template=_optional_related(request, InvoiceTemplate, data.get("template_id")),
        tax_profile=_optional_related(request, TaxProfile, data.get("tax_profile_id")),
        tax_overrides=data.get("taxes") or None,
    )

    invoice = _invoice_qs(request).get(pk=invoice.pk)
    return JsonResponse({"invoice": payloads.invoice_payload(invoice)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def invoice_detail(request, pk):
    if request.method == "GET":
        invoice = org_get_object_or_404(request, _invoice_qs(request), pk=pk)
        return JsonResponse({"invoice": payloads.invoice_payload(invoice)})

    # No prefetch: items and taxes are rewritten below.
    invoice = org_get_object_or_404(
        request, Invoice.objects.select_related("customer", "organization"), pk=pk
    )

    if request.method == "DELETE":
        invoice.delete()
        logger.info("Invoice %s deleted by user %s", pk, request.user.pk)
        return JsonResponse({"ok": True})

    data = request.json
    with transaction.atomic():
        if "customer_id" in data:
            customer = org_qs(request, Customer).filter(pk=data.get("customer_id") or None).first()
            if customer is None:
                return _error("Customer not found", 404)
            invoice.customer = customer
        if "issue_date" in data:
            invoice.issue_date = _parse_date(data["issue_date"], "issue_date", required=True)
        if "due_date" in data:
            invoice.due_date = _parse_date(data["due_date"], "due_date", required=True)
        if "status" in data:
            invoice.status = _valid_status(data["status"])
        if "notes" in data:
            invoice.notes = data.get("notes") or ""
        if "currency" in data:
            invoice.currency = (data.get("currency") or request.organization.default_currency).upper()
        if "template_id" in data:
            invoice.template = _optional_related(request, InvoiceTemplate, data.get("template_id"))
        if "tax_profile_id" in data:
            invoice.tax_profile = _optional_related(request, TaxProfile, data.get("tax_profile_id"))

        invoice.full_clean()
        invoice.save()

        if "items" in data:
            replace_items(invoice, normalize_items(data.get("items"), organization=request.organization))

        if {"items", "tax_profile_id", "taxes", "customer_id"} & set(data):
            recompute_taxes(invoice, overrides=data.get("taxes") or None)

    invoice = _invoice_qs(request).get(pk=invoice.pk)
    return JsonResponse({"invoice": payloads.invoice_payload(invoice)})


@require_POST
@member_allowed
def invoice_share(request, pk):
    invoice = org_get_object_or_404(request, Invoice, pk=pk)
    token = invoice.ensure_share_token()
    return JsonResponse({"share_token": token, "share_url": notifications.public_invoice_url(invoice)})


@require_POST
@member_allowed
def invoice_send(request, pk):
    invoice = org_get_object_or_404(
        request, Invoice.objects.select_related("customer", "organization"), pk=pk
    )
    if not invoice.customer.email:
        return _error("Customer has no email address")

    invoice.ensure_share_token()
    if not notifications.send_invoice_email(invoice):
        return _error("Failed to send invoice email", 500)

    if invoice.status == "draft":
        invoice.status = "sent"
        invoice.save(update_fields=["status", "updated_at"])

    invoice.refresh_from_db()
    return JsonResponse({"ok": True, "status": invoice.status, "email_sent_count": invoice.email_sent_count})


@require_POST
@member_allowed
@json_body
def invoice_send_reminder(request, pk):
    invoice = org_get_object_or_404(
        request, Invoice.objects.select_related("customer", "organization"), pk=pk
    )
    if invoice.status not in Invoice.OPEN_STATUSES:
        return _error(f"Cannot send a reminder for a {invoice.status} invoice")
    if not invoice.customer.email:
        return _error("Customer has no email address")
    if invoice.balance_due() <= 0:
        return _error("Invoice has no balance due")

    today = timezone.localdate()
    kind = request.json.get("reminder_type") or reminder_for(invoice, today=today)
    if kind is None:
        kind = "overdue" if invoice.due_date < today else "upcoming"
    if kind not in notifications.REMINDER_SUBJECTS:
        return _error(f"Invalid reminder type: {kind}")

    invoice.ensure_share_token()
    if not send_reminder(invoice, kind, today=today):
        return _error("Failed to send reminder", 500)

    invoice.refresh_from_db()
    return JsonResponse({"ok": True, "reminder_type": kind, "status": invoice.status})


@require_GET
@member_allowed
def invoice_email_logs(request, pk):
    invoice = org_get_object_or_404(request, Invoice, pk=pk)
    logs = EmailLog.objects.filter(invoice=invoice)
    return JsonResponse({"email_logs": [payloads.email_log_payload(e) for e in logs]})


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def invoice_payment_plan(request, pk):
    invoice = org_get_object_or_404(request, Invoice, pk=pk)

    if request.method == "GET":
        plan = PaymentPlan.objects.filter(invoice=invoice).first()
        if plan is None:
            return _error("No payment plan for this invoice", 404)
        refresh_installment_statuses(plan)
        return JsonResponse({"payment_plan": payloads.plan_payload(plan)})

    data = request.json
    plan = create_payment_plan(
        invoice=invoice,
        installment_count=data.get("installment_count"),
        frequency=data.get("frequency") or "monthly",
        start_date=_parse_date(data.get("start_date"), "start_date") or timezone.localdate(),
    )
    return JsonResponse({"payment_plan": payloads.plan_payload(plan)}, status=201)


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def invoice_payments(request, pk):
    invoice = org_get_object_or_404(
        request, Invoice.objects.select_related("customer", "organization"), pk=pk
    )

    if request.method == "GET":
        qs = Payment.objects.filter(invoice=invoice).order_by("-date", "-id")
        return JsonResponse({"payments": [payloads.payment_payload(p) for p in qs]})

    data = request.json
    method = data.get("method") or "other"
    if method not in dict(Payment.METHOD_CHOICES):
        return _error(f"Invalid payment method: {method}")

    try:
        amount = _d(data.get("amount"))
    except (ArithmeticError, ValueError):
        return _error("Amount must be a number")

    payment = record_payment(
        invoice=invoice,
        amount=amount,
        method=method,
        paid_on=_parse_datetime(data.get("date"), "date"),
        notes=data.get("notes") or "",
    )
    invoice.refresh_from_db()
    return JsonResponse(
        {
            "payment": payloads.payment_payload(payment),
            "invoice_status": invoice.status,
            "balance_due": str(invoice.balance_due()),
        },
        status=201,
    )


# =========================
# PAYMENTS
# =========================

@require_GET
@member_allowed
def payments(request):
    qs = (
        org_qs(request, Payment)
        .select_related("invoice")
        .order_by("-date", "-id")
    )
    invoice_id = request.GET.get("invoice_id")
    if invoice_id:
        qs = qs.filter(invoice_id=invoice_id)
    status = request.GET.get("status")
    if status:
        qs = qs.filter(stripe_status=status)
    retry_status = request.GET.get("retry_status")
    if retry_status:
        qs = qs.filter(retry_status=retry_status)
    return JsonResponse({"payments": [payloads.payment_payload(p) for p in qs]})


@require_POST
@member_allowed
def payment_refresh_status(request, pk):
    payment = org_get_object_or_404(request, Payment.objects.select_related("invoice"), pk=pk)
    status = refresh_invoice_status(payment.invoice)
    return JsonResponse({"invoice_id": payment.invoice_id, "invoice_status": status})


# =========================
# RECURRING TEMPLATES
# =========================

def _save_recurring(request, template, data, *, creating):
    """
    Validates the form and the item list together; returns (template, error response).
    """
    if creating or "items" in data or "template_items" in data:
        raw_items = data.get("items", data.get("template_items"))
        items = normalize_items(raw_items, organization=request.organization)
        template.template_items = _template_items(items)

    if "customer_id" in data:
        data = {**data, "customer": data["customer_id"]}

    form = bind(RecurringTemplateForm, data, instance=template, organization=request.organization)
    if not form.is_valid():
        return None, JsonResponse(form_errors(form), status=400)

    template = form.save(commit=False)
    if creating:
        template.next_generation_date = template.start_date
    elif "next_generation_date" in data:
        template.next_generation_date = _parse_date(data["next_generation_date"], "next_generation_date", required=True)
    template.save()
    return template, None


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def recurring_templates(request):
    if request.method == "GET":
        qs = org_qs(request, RecurringInvoiceTemplate).select_related("customer").order_by("next_generation_date", "id")
        status = request.GET.get("status")
        if status:
            qs = qs.filter(status=status)
        return JsonResponse({"templates": [payloads.recurring_template_payload(t) for t in qs]})

    template, error = _save_recurring(
        request,
        RecurringInvoiceTemplate(organization=request.organization),
        request.json,
        creating=True,
    )
    if error:
        return error
    logger.info("Recurring template %s created in organization %s", template.pk, request.organization.pk)
    return JsonResponse({"template": payloads.recurring_template_payload(template)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def recurring_template_detail(request, pk):
    template = org_get_object_or_404(
        request, RecurringInvoiceTemplate.objects.select_related("customer"), pk=pk
    )

    if request.method == "GET":
        data = payloads.recurring_template_payload(template)
        data["invoices"] = [
            payloads.invoice_summary_payload(inv)
            for inv in template.invoices.select_related("customer")
            .prefetch_related("items", "taxes")
            .order_by("-issue_date", "-id")[:20]
        ]
        return JsonResponse({"template": data})

    if request.method == "DELETE":
        template.delete()
        return JsonResponse({"ok": True})

    template, error = _save_recurring(request, template, request.json, creating=False)
    if error:
        return error
    return JsonResponse({"template": payloads.recurring_template_payload(template)})


@require_POST
@member_allowed
def recurring_template_generate(request, pk):
    template = org_get_object_or_404(
        request,
        RecurringInvoiceTemplate.objects.select_related("customer", "organization"),
        pk=pk,
    )
    if template.status != "active":
        return _error(f"Template is {template.status}")

    outcome = generate_from_template(template)
    if outcome.status != "success":
        return _error(outcome.reason or "Nothing to generate", outcome=outcome.as_json())

    return JsonResponse({"result": outcome.as_json()}, status=201)


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def recurring_template_usage(request, pk):
    template = org_get_object_or_404(request, RecurringInvoiceTemplate, pk=pk)

    if request.method == "GET":
        qs = UsageRecord.objects.filter(recurring_template=template)
        if _flag(request, "unbilled"):
            qs = qs.filter(is_billed=False)
        return JsonResponse({"usage_records": [payloads.usage_record_payload(u) for u in qs]})

    if not template.is_usage_based:
        return _error("Template is not usage-based")

    form = bind(UsageRecordForm, request.json, instance=UsageRecord(recurring_template=template))
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)
    record = form.save()
    return JsonResponse({"usage_record": payloads.usage_record_payload(record)}, status=201)


# =========================
# TAX
# =========================

def _rules_from(data):
    rules = data.get("rules")
    if not isinstance(rules, list) or not rules:
        raise BillingError("At least one tax rule is required")
    for rule in rules:
        if not isinstance(rule, dict) or not rule.get("name") or rule.get("rate") in (None, ""):
            raise BillingError("Each tax rule needs a name and a rate")
        try:
            rate = _d(rule["rate"])
        except (ArithmeticError, ValueError):
            raise BillingError("Tax rule rate must be a number")
        if not (0 <= rate <= 100):
            raise BillingError("Tax rule rate must be between 0 and 100")
    return rules


@require_http_methods(["GET", "POST"])
@member_allowed
@json_body
def tax_profiles(request):
    if request.method == "GET":
        qs = org_qs(request, TaxProfile).prefetch_related("rules").order_by("-is_default", "name")
        return JsonResponse({"tax_profiles": [payloads.tax_profile_payload(p) for p in qs]})

    if not _is_admin(request):
        return _error("Forbidden - Admin access required", 403)

    data = request.json
    form = bind(TaxProfileForm, data, instance=TaxProfile(organization=request.organization))
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)

    profile = create_profile(
        organization=request.organization,
        name=form.cleaned_data["name"],
        country_code=form.cleaned_data["country_code"],
        region_code=form.cleaned_data.get("region_code") or "",
        is_default=form.cleaned_data.get("is_default", False),
        rules=_rules_from(data),
    )
    return JsonResponse({"tax_profile": payloads.tax_profile_payload(profile)}, status=201)


@require_http_methods(["GET", "PUT", "PATCH", "DELETE"])
@member_allowed
@json_body
def tax_profile_detail(request, pk):
    from .models import TaxRule

    profile = org_get_object_or_404(request, TaxProfile, pk=pk)

    if request.method == "GET":
        return JsonResponse({"tax_profile": payloads.tax_profile_payload(profile)})

    if not _is_admin(request):
        return _error("Forbidden - Admin access required", 403)

    org = request.organization

    if request.method == "DELETE":
        with transaction.atomic():
            if org.default_tax_profile_id == profile.pk:
                Organization.objects.filter(pk=org.pk).update(default_tax_profile=None)
            profile.delete()
        return JsonResponse({"ok": True})

    data = request.json
    form = bind(TaxProfileForm, data, instance=profile)
    if not form.is_valid():
        return JsonResponse(form_errors(form), status=400)

    with transaction.atomic():
        profile = form.save()

        if "rules" in data:
            rules = _rules_from(data)
            TaxRule.objects.filter(tax_profile=profile).delete()
            for rule in rules:
                tax_rule = TaxRule(
                    tax_profile=profile,
                    name=rule["name"],
                    rate=_d(rule["rate"]),
                    authority=rule.get("authority") or "",
                    is_active=rule.get("is_active", True) is not False,
                )
                tax_rule.full_clean()
                tax_rule.save()

        if profile.is_default:
            TaxProfile.objects.filter(organization=org, is_default=True).exclude(pk=profile.pk).update(is_default=False)
            Organization.objects.filter(pk=org.pk).update(default_tax_profile=profile)
        elif org.default_tax_profile_id == profile.pk:
            Organization.objects.filter(pk=org.pk).update(default_tax_profile=None)

    return JsonResponse({"tax_profile": payloads.tax_profile_payload(profile)})


@require_POST
@member_allowed
@json_body
def tax_calculate(request):
    """
    Preview of the custom tax lines an invoice with this subtotal would get.
    """
    data = request.json
    org = request.organization

    try:
        subtotal = _d(data.get("subtotal"))
    except (ArithmeticError, ValueError):
        return _error("Subtotal must be a number")
    if subtotal < 0:
        return _error("Subtotal cannot be negative")

    customer = _optional_related(request, Customer, data.get("customer_id"))
    profile = _optional_related(request, TaxProfile, data.get("tax_profile_id"))
    if profile is None and (data.get("country_code") or (customer and customer.country)):
        profile = get_tax_profile(
            organization=org,
            country_code=data.get("country_code") or customer.country,
            region_code=data.get("region_code") or (customer.state if customer else ""),
        )

    lines = calculate_tax(
        organization=org,
        customer=customer,
        subtotal=subtotal,
        tax_profile=profile,
        overrides=data.get("taxes") or None,
    )
    total_tax = sum((line.amount for line in lines), _d(0))
    return JsonResponse(
        {
            "subtotal": str(money(subtotal)),
            "taxes": [line.as_json() for line in lines],
            "total_tax": str(money(total_tax)),
            "total": str(money(subtotal + total_tax)),
            "tax_profile_id": getattr(profile, "pk", None),
        }
    )


@require_GET
@member_allowed
def tax_presets(request):
    country = request.GET.get("country")
    presets = presets_for_country(country) if country else TAX_PRESETS
    return JsonResponse({"presets": presets, "countries": available_countries()})


@require_POST
@admin_only
@json_body
def tax_presets_apply(request):
    preset_id = request.json.get("preset_id")
    if not preset_id:
        return _error("preset_id is required")
    try:
        profile = apply_preset(
            organization=request.organization,
            preset_id=preset_id,
            is_default=bool(request.json.get("is_default")),
        )
    except LookupError as exc:
        return _error(str(exc), 404)
    return JsonResponse({"tax_profile": payloads.tax_profile_payload(profile)}, status=201)


# =========================
# ANALYTICS
# =========================

@require_GET
@member_allowed
def analytics_forecast(request):
    try:
        months = int(request.GET.get("period") or 12)
    except ValueError:
        return _error("period must be a whole number of months")
    if not (1 <= months <= 36):
        return _error("period must be between 1 and 36")
    return JsonResponse(forecasting.revenue_forecast(request.organization, months=months))


@require_GET
@member_allowed
def analytics_clv(request):
    return JsonResponse(forecasting.customer_lifetime_values(request.organization))


@require_GET
@member_allowed
def analytics_dashboard(request):
    return JsonResponse(forecasting.dashboard_stats(request.organization))


# =========================
# REPORTS
# =========================

def _report_from(request):
    customer_id = request.GET.get("customerId") or None
    if customer_id is not None:
        try:
            customer_id = int(customer_id)
        except ValueError:
            raise BillingError("customerId must be a number")

    return reports.build_report(
        request.organization,
        report_type=request.GET.get("reportType") or "invoices",
        start_date=_parse_date(request.GET.get("startDate"), "startDate"),
        end_date=_parse_date(request.GET.get("endDate"), "endDate"),
        status=request.GET.get("status") or "",
        customer_id=customer_id,
        group_by=request.GET.get("groupBy") or "none",
    )


@require_GET
@member_allowed
def report(request):
    return JsonResponse(_report_from(request))


@require_GET
@member_allowed
def report_export(request):
    fmt = (request.GET.get("format") or "csv").lower()
    if fmt not in EXPORT_FORMATS:
        return _error(f"Unknown format: {fmt}")

    built = _report_from(request)
    content = generate_report_export(built, fmt)
    content_type = "text/csv; charset=utf-8" if fmt == "csv" else XLSX_CONTENT_TYPE

    resp = HttpResponse(content, content_type=content_type)
    resp["Content-Disposition"] = (
        f"attachment; filename=report-{built['report_type']}-{timezone.localdate():%Y-%m-%d}.{fmt}"
    )
    return resp


# =========================
# EXPORTS
# =========================

@require_GET
@member_allowed
def export_download(request, kind):
    if kind not in EXPORT_KINDS:
        return _error(f"Unknown export: {kind}", 404)
    fmt = (request.GET.get("format") or "csv").lower()
    if fmt not in EXPORT_FORMATS:
        return _error(f"Unknown format: {fmt}")

    content = generate_export(request.organization, kind, fmt)
    content_type = "text/csv; charset=utf-8" if fmt == "csv" else XLSX_CONTENT_TYPE

    resp = HttpResponse(content, content_type=content_type)
    resp["Content-Disposition"] = f"attachment; filename={kind}_{timezone.localdate():%Y-%m-%d}.{fmt}"
    return resp


@require_GET
@member_allowed
def export_pack(request):
    resp = HttpResponse(build_export_pack_zip(request.organization), content_type="application/zip")
    resp["Content-Disposition"] = f"attachment; filename=export_{timezone.localdate():%Y-%m-%d}.zip"
    return resp


# =========================
# STRIPE CONNECT
# =========================

def _settings_url(path):
    base = (getattr(settings, "APP_BASE_URL", "") or "").rstrip("/")
    return f"{base}{path}"


@require_POST
@admin_only
def stripe_connect_onboard(request):
    org = request.organization

    try:
        if not org.stripe_account_id:
            account = stripe_gateway.create_express_account(org)
            org.stripe_account_id = account["id"]
            org.stripe_account_status = "pending"
            org.save(update_fields=["stripe_account_id", "stripe_account_status", "updated_at"])
            logger.info("Created Stripe account %s for organization %s", org.stripe_account_id, org.pk)

        link = stripe_gateway.create_account_link(
            account_id=org.stripe_account_id,
            refresh_url=_settings_url("/settings/payments/?stripe=refresh"),
            return_url=_settings_url("/settings/payments/?stripe=return"),
        )
    except stripe_gateway.StripeNotConfigured as exc:
        return _error(str(exc), 500)
    except stripe_gateway.StripeError as exc:
        logger.exception("Stripe onboarding failed for organization %s", org.pk)
        return _error(f"Stripe error: {exc}", 502)

    return JsonResponse({"url": link["url"], "account_id": org.stripe_account_id})


@require_http_methods(["GET", "POST"])
@admin_only
def stripe_connect_status(request):
    org = request.organization
    if not org.stripe_account_id:
        return JsonResponse({"connected": False, "status": None})

    try:
        account = stripe_gateway.retrieve_account(org.stripe_account_id)
    except stripe_gateway.StripeNotConfigured as exc:
        return _error(str(exc), 500)
    except stripe_gateway.StripeError as exc:
        logger.exception("Stripe status refresh failed for organization %s", org.pk)
        return _error(f"Stripe error: {exc}", 502)

    status = stripe_gateway.account_status(account)
    org.stripe_account_status = status
    org.stripe_connect_enabled = status == "active"
    org.stripe_onboarding_complete = bool(stripe_gateway.field(account, "details_submitted", False))
    org.stripe_account_email = stripe_gateway.field(account, "email", "") or org.stripe_account_email
    org.save(
        update_fields=[
            "stripe_account_status",
            "stripe_connect_enabled",
            "stripe_onboarding_complete",
            "stripe_account_email",
            "updated_at",
        ]
    )

    return JsonResponse(
        {
            "connected": True,
            "status": status,
            "charges_enabled": bool(stripe_gateway.field(account, "charges_enabled", False)),
            "payouts_enabled": bool(stripe_gateway.field(account, "payouts_enabled", False)),
            "details_submitted": org.stripe_onboarding_complete,
        }
    )


@require_POST
@admin_only
def stripe_connect_disconnect(request):
    org = request.organization
    if not org.stripe_account_id:
        return JsonResponse({"success": True, "message": "No Stripe account connected"})

    account_id = org.stripe_account_id
    try:
        stripe_gateway.delete_account(account_id)
    except stripe_gateway.StripeNotConfigured as exc:
        return _error(str(exc), 500)
    except stripe_gateway.StripeError as exc:
        logger.exception("Stripe disconnect failed for organization %s", org.pk)
        return _error(f"Stripe error: {exc}", 502)

    org.stripe_account_id = ""
    org.stripe_account_status = ""
    org.stripe_connect_enabled = False
    org.stripe_onboarding_complete = False
    org.stripe_account_email = ""
    org.save(
        update_fields=[
            "stripe_account_id",
            "stripe_account_status",
            "stripe_connect_enabled",
            "stripe_onboarding_complete",
            "stripe_account_email",
            "updated_at",
        ]
    )
    logger.info("Organization %s disconnected Stripe account %s", org.pk, account_id)
    return JsonResponse({"success": True, "message": "Stripe account disconnected"})
