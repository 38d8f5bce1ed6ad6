"""
Dict shapes returned by the JSON endpoints. Money goes out as strings so
Decimal precision survives the round-trip.
"""
from decimal import Decimal

from .services.billing import money
from .services.notifications import public_invoice_url


def _iso(val):
    return val.isoformat() if val else None


def _m(val):
    return str(money(val if val is not None else Decimal("0")))


def organization_payload(org):
    return {
        "id": org.pk,
        "name": org.name,
        "slug": org.slug,
        "default_currency": org.default_currency,
        "logo_url": org.logo_url,
        "primary_color": org.primary_color,
        "company_address": org.company_address,
        "company_phone": org.company_phone,
        "company_email": org.company_email,
        "company_website": org.company_website,
        "footer_text": org.footer_text,
        "default_tax_profile_id": org.default_tax_profile_id,
        "stripe": {
            "account_id": org.stripe_account_id or None,
            "account_status": org.stripe_account_status or None,
            "connect_enabled": org.stripe_connect_enabled,
            "onboarding_complete": org.stripe_onboarding_complete,
        },
    }


def customer_payload(c):
    return {
        "id": c.pk,
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "address_line1": c.address_line1,
        "address_line2": c.address_line2,
        "city": c.city,
        "state": c.state,
        "postal_code": c.postal_code,
        "country": c.country,
        "tax_exempt": c.tax_exempt,
        "tax_exemption_reason": c.tax_exemption_reason,
        "tax_id": c.tax_id,
        "preferred_payment_method_id": c.preferred_payment_method_id or None,
        "created_at": _iso(c.created_at),
    }


def product_payload(p):
    return {
        "id": p.pk,
        "name": p.name,
        "description": p.description,
        "price": _m(p.price),
        "tax_rate": str(p.tax_rate),
        "product_type": p.product_type,
        "is_active": p.is_active,
        "created_at": _iso(p.created_at),
    }


def item_payload(i):
    return {
        "id": i.pk,
        "product_id": i.product_id,
        "description": i.description,
        "quantity": i.quantity,
        "price": _m(i.price),
        "tax_rate": str(i.tax_rate),
        "line_total": _m(i.line_total),
    }


def invoice_tax_payload(t):
    return {
        "name": t.name,
        "rate": str(t.rate),
        "amount": _m(t.amount),
        "authority": t.authority,
        "tax_rule_id": t.tax_rule_id,
    }


def payment_payload(p):
    return {
        "id": p.pk,
        "invoice_id": p.invoice_id,
        "installment_id": p.installment_id,
        "amount": _m(p.amount),
        "date": _iso(p.date),
        "method": p.method,
        "notes": p.notes,
        "stripe_payment_intent_id": p.stripe_payment_intent_id,
        "stripe_status": p.stripe_status,
        "retry_count": p.retry_count,
        "max_retries": p.max_retries,
        "retry_status": p.retry_status or None,
        "next_retry_at": _iso(p.next_retry_at),
        "last_retry_at": _iso(p.last_retry_at),
    }


def invoice_summary_payload(inv):
    totals = inv.get_totals()
    return {
        "id": inv.pk,
        "invoice_no": inv.invoice_no,
        "customer_id": inv.customer_id,
        "customer_name": inv.customer.name,
        "issue_date": _iso(inv.issue_date),
        "due_date": _iso(inv.due_date),
        "status": inv.status,
        "currency": inv.currency,
        "total": _m(totals.total),
    }


def invoice_payload(inv, *, public=False):
    totals = inv.get_totals()
    paid = inv.amount_paid()
    data = {
        **invoice_summary_payload(inv),
        "notes": inv.notes,
        "items": [item_payload(i) for i in inv.items.all()],
        "taxes": [invoice_tax_payload(t) for t in inv.taxes.all()],
        "subtotal": _m(totals.subtotal),
        "tax": _m(totals.tax),
        "custom_tax": _m(totals.custom_tax),
        "amount_paid": _m(paid),
        "balance_due": _m(totals.total - paid),
        "share_url": public_invoice_url(inv) if inv.share_token else None,
    }

    if public:
        org = inv.organization
        data["organization"] = {
            "name": org.name,
            "logo_url": org.logo_url,
            "primary_color": org.primary_color,
            "company_address": org.company_address,
            "company_email": org.company_email,
            "company_phone": org.company_phone,
            "company_website": org.company_website,
            "footer_text": org.footer_text,
            "stripe_enabled": org.stripe_ready,
        }
        data["customer"] = {"name": inv.customer.name, "email": inv.customer.email}
        return data

    data.update(
        {
            "recurring_template_id": inv.recurring_template_id,
            "template_id": inv.template_id,
            "tax_profile_id": inv.tax_profile_id,
            "share_token": inv.share_token,
            "email_sent_count": inv.email_sent_count,
            "last_email_sent_at": _iso(inv.last_email_sent_at),
            "last_reminder_sent_at": _iso(inv.last_reminder_sent_at),
            "payments": [payment_payload(p) for p in inv.payments.all()],
        }
    )
    return data


def installment_payload(i):
    return {
        "id": i.pk,
        "installment_number": i.installment_number,
        "amount": _m(i.amount),
        "amount_paid": _m(i.amount_paid),
        "due_date": _iso(i.due_date),
        "status": i.status,
        "paid_at": _iso(i.paid_at),
    }


def plan_payload(plan):
    installments = list(plan.installments.all())
    paid = sum((i.amount_paid for i in installments), Decimal("0"))
    return {
        "id": plan.pk,
        "invoice_id": plan.invoice_id,
        "total_amount": _m(plan.total_amount),
        "installment_count": plan.installment_count,
        "frequency": plan.frequency,
        "start_date": _iso(plan.start_date),
        "status": plan.status,
        "amount_paid": _m(paid),
        "remaining": _m(plan.total_amount - paid),
        "installments": [installment_payload(i) for i in installments],
    }


def recurring_template_payload(t):
    return {
        "id": t.pk,
        "name": t.name,
        "customer_id": t.customer_id,
        "customer_name": t.customer.name,
        "frequency": t.frequency,
        "interval": t.interval,
        "start_date": _iso(t.start_date),
        "end_date": _iso(t.end_date),
        "next_generation_date": _iso(t.next_generation_date),
        "template_items": t.template_items,
        "notes": t.notes,
        "days_until_due": t.days_until_due,
        "currency": t.currency or None,
        "status": t.status,
        "auto_send_email": t.auto_send_email,
        "total_generated": t.total_generated,
        "last_generated_at": _iso(t.last_generated_at),
        "is_usage_based": t.is_usage_based,
        "usage_unit": t.usage_unit or None,
    }


def usage_record_payload(u):
    return {
        "id": u.pk,
        "quantity": str(u.quantity),
        "period_start": _iso(u.period_start),
        "period_end": _iso(u.period_end),
        "description": u.description,
        "is_billed": u.is_billed,
        "invoice_id": u.invoice_id,
    }


def tax_profile_payload(p):
    return {
        "id": p.pk,
        "name": p.name,
        "country_code": p.country_code,
        "region_code": p.region_code or None,
        "is_default": p.is_default,
        "rules": [
            {
                "id": r.pk,
                "name": r.name,
                "rate": str(r.rate),
                "authority": r.authority,
                "is_active": r.is_active,
            }
            for r in p.rules.all()
        ],
    }


def invoice_template_payload(t):
    return {
        "id": t.pk,
        "name": t.name,
        "layout": t.layout,
        "accent_color": t.accent_color,
        "header_text": t.header_text,
        "footer_text": t.footer_text,
        "show_logo": t.show_logo,
        "is_default": t.is_default,
    }


def email_log_payload(e):
    return {
        "id": e.pk,
        "email_type": e.email_type,
        "recipient": e.recipient,
        "subject": e.subject,
        "status": e.status,
        "error": e.error or None,
        "created_at": _iso(e.created_at),
    }
