"""Shared fixtures for the invoicing tests."""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.contrib.auth.models import User
from django.test import Client
from django.utils import timezone

from invoicing.models import Customer, Organization, Product, UserProfile
from invoicing.services.invoices import create_invoice


@pytest.fixture(autouse=True)
def _test_settings(settings):
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.SAAS_BASE_DOMAIN = ""
    settings.APP_BASE_URL = "https://app.example.com"
    settings.CRON_SECRET = ""
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test_123"
    settings.STRIPE_PLATFORM_FEE_PERCENTAGE = "0"
    settings.PAYMENT_RETRY_BACKOFF_HOURS = [1, 6, 24]
    settings.PAYMENT_MAX_RETRIES = 3


@pytest.fixture
def organization(db):
    return Organization.objects.create(name="Acme Corp", company_email="billing@acme.test")


@pytest.fixture
def other_organization(db):
    return Organization.objects.create(name="Initech")


@pytest.fixture
def stripe_organization(organization):
    organization.stripe_account_id = "acct_123"
    organization.stripe_account_status = "active"
    organization.stripe_connect_enabled = True
    organization.stripe_onboarding_complete = True
    organization.save()
    return organization


@pytest.fixture
def make_user(db):
    """Factory: a user whose profile belongs to ``organization`` with ``role``."""
    def _make_user(username, *, organization=None, role="MEMBER", **extra):
        user = User.objects.create_user(username, email=f"{username}@example.test", password="pw", **extra)
        UserProfile.objects.filter(user=user).update(organization=organization, role=role)
        return User.objects.get(pk=user.pk)
    return _make_user


@pytest.fixture
def admin_user(make_user, organization):
    return make_user("alice", organization=organization, role="ADMIN")


@pytest.fixture
def member_user(make_user, organization):
    return make_user("bob", organization=organization, role="MEMBER")


@pytest.fixture
def admin_client(admin_user):
    client = Client()
    client.force_login(admin_user)
    return client


@pytest.fixture
def member_client(member_user):
    client = Client()
    client.force_login(member_user)
    return client


@pytest.fixture
def customer(organization):
    return Customer.objects.create(
        organization=organization,
        name="Globex",
        email="ap@globex.test",
        country="US",
        state="CA",
    )


@pytest.fixture
def product(organization):
    return Product.objects.create(
        organization=organization,
        name="Consulting hour",
        price=Decimal("100.00"),
        tax_rate=Decimal("10"),
        product_type="service",
    )


@pytest.fixture
def make_invoice(organization, customer):
    """
    Factory: invoice with one line, 2 x 100.00 at 10% item tax (total 220.00
    when no tax profile applies).
    """
    def _make_invoice(*, items=None, issue_date=None, due_date=None, **kwargs):
        issue_date = issue_date or timezone.localdate()
        kwargs.setdefault("organization", organization)
        kwargs.setdefault("customer", customer)
        return create_invoice(
            items=items
            or [
                {
                    "product": None,
                    "description": "Consulting",
                    "quantity": 2,
                    "price": Decimal("100.00"),
                    "tax_rate": Decimal("10"),
                }
            ],
            issue_date=issue_date,
            due_date=due_date or issue_date + timedelta(days=30),
            **kwargs,
        )
    return _make_invoice


@pytest.fixture
def invoice(make_invoice):
    return make_invoice(status="sent")
