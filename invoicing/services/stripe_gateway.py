"""
Thin wrapper around the Stripe SDK.

Every Stripe call in the app goes through here so settings are applied in one
place and tests can patch a single module.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

import stripe
from django.conf import settings


logger = logging.getLogger(__name__)


StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError


class StripeNotConfigured(RuntimeError):
    pass


def _client():
    key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not key:
        raise StripeNotConfigured("STRIPE_SECRET_KEY is not set")
    stripe.api_key = key
    return stripe


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents) -> Decimal:
    return (Decimal(int(cents or 0)) / Decimal("100")).quantize(Decimal("0.01"))


def platform_fee_cents(amount_cents: int, percentage=None) -> int:
    if percentage is None:
        percentage = getattr(settings, "STRIPE_PLATFORM_FEE_PERCENTAGE", 0)
    percentage = Decimal(str(percentage or 0))
    if percentage <= 0:
        return 0
    fee = Decimal(amount_cents) * percentage / Decimal("100")
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# -------------------------
# CUSTOMERS
# -------------------------

def get_or_create_customer(customer) -> str:
    """Returns the platform Stripe customer id, creating and storing it on first use."""
    if customer.stripe_customer_id:
        return customer.stripe_customer_id

    created = _client().Customer.create(
        email=customer.email or None,
        name=customer.name,
        metadata={
            "customer_id": str(customer.pk),
            "organization_id": str(customer.organization_id),
        },
    )
    customer.stripe_customer_id = created["id"]
    customer.save(update_fields=["stripe_customer_id", "updated_at"])
    logger.info("Created Stripe customer %s for customer %s", created["id"], customer.pk)
    return created["id"]


def list_card_payment_methods(stripe_customer_id: str):
    result = _client().PaymentMethod.list(customer=stripe_customer_id, type="card")
    return list(result["data"])


def retrieve_payment_method(payment_method_id: str):
    return _client().PaymentMethod.retrieve(payment_method_id)


def card_summary(payment_method) -> dict:
    card = field(payment_method, "card")
    return {
        "id": field(payment_method, "id"),
        "type": field(payment_method, "type", "card"),
        "card": {
            "brand": field(card, "brand"),
            "last4": field(card, "last4"),
            "exp_month": field(card, "exp_month"),
            "exp_year": field(card, "exp_year"),
        }
        if card
        else None,
        "billing_details": field(payment_method, "billing_details"),
    }


# -------------------------
# PAYMENT INTENTS
# -------------------------

def create_payment_intent(*, invoice, amount, stripe_customer_id, organization):
    """Customer-initiated payment routed to the organization's connected account."""
    amount_cents = to_cents(amount)
    params = {
        "amount": amount_cents,
        "currency": (invoice.currency or "usd").lower(),
        "customer": stripe_customer_id,
        "metadata": {
            "invoice_id": str(invoice.pk),
            "invoice_no": str(invoice.invoice_no),
            "organization_id": str(organization.pk),
        },
        "automatic_payment_methods": {"enabled": True},
        "transfer_data": {"destination": organization.stripe_account_id},
        "on_behalf_of": organization.stripe_account_id,
    }
    preferred = invoice.customer.preferred_payment_method_id
    if preferred and stripe_customer_id:
        params["payment_method"] = preferred
    fee = platform_fee_cents(amount_cents)
    if fee > 0:
        params["application_fee_amount"] = fee

    return _client().PaymentIntent.create(**params)


def charge_saved_card(*, invoice, amount, stripe_customer_id, payment_method_id, organization, metadata=None):
    """Off-session charge used by the retry run."""
    amount_cents = to_cents(amount)
    params = {
        "amount": amount_cents,
        "currency": (invoice.currency or "usd").lower(),
        "customer": stripe_customer_id,
        "payment_method": payment_method_id,
        "off_session": True,
        "confirm": True,
        "metadata": {
            "invoice_id": str(invoice.pk),
            "organization_id": str(organization.pk),
            **(metadata or {}),
        },
        "on_behalf_of": organization.stripe_account_id,
        "transfer_data": {"destination": organization.stripe_account_id},
    }
    fee = platform_fee_cents(amount_cents)
    if fee > 0:
        params["application_fee_amount"] = fee

    return _client().PaymentIntent.create(**params)


# -------------------------
# CONNECT
# -------------------------

def retrieve_account(account_id: str):
    return _client().Account.retrieve(account_id)


def field(obj, key, default=None):
    """Key lookup that works for StripeObject and plain dict payloads."""
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def account_status(account) -> str:
    submitted = bool(field(account, "details_submitted", False))
    if submitted and field(account, "charges_enabled", False):
        return "active"
    if submitted:
        return "pending"
    return "incomplete"


def create_express_account(organization):
    return _client().Account.create(
        type="express",
        email=organization.company_email or None,
        metadata={"organization_id": str(organization.pk)},
        capabilities={
            "card_payments": {"requested": True},
            "transfers": {"requested": True},
        },
    )


def create_account_link(*, account_id: str, refresh_url: str, return_url: str):
    return _client().AccountLink.create(
        account=account_id,
        refresh_url=refresh_url,
        return_url=return_url,
        type="account_onboarding",
    )


def delete_account(account_id: str) -> bool:
    """Deletes a connected account. An account Stripe no longer knows counts as deleted."""
    try:
        _client().Account.delete(account_id)
    except stripe.InvalidRequestError as exc:
        if getattr(exc, "code", None) != "resource_missing":
            raise
        logger.info("Stripe account %s was already gone", account_id)
        return False
    return True


# -------------------------
# WEBHOOKS
# -------------------------

def construct_event(payload: bytes, sig_header: str):
    secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise StripeNotConfigured("STRIPE_WEBHOOK_SECRET is not set")
    return stripe.Webhook.construct_event(payload, sig_header, secret)
