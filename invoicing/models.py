import re
import secrets
from decimal import Decimal

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.db.models import Sum
from django.utils import timezone

from .services.billing import FREQUENCY_CHOICES, compute_totals, money


# --------------------------
# Helpers
# --------------------------

def generate_share_token() -> str:
    # 32 random bytes, URL-safe base64
    return secrets.token_urlsafe(32)


def normalize_slug(raw: str) -> str:
    """
    DNS-safe slug:
    lowercase, "_" and spaces to "-", only a-z 0-9 "-", no repeated or edge "-".
    """
    s = (raw or "").lower().strip()
    s = s.replace("_", "-")
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"[^a-z0-9-]", "", s)
    s = re.sub(r"-{2,}", "-", s).strip("-")
    return s[:50]


class TimeStampedModel(models.Model):
    """
    Abstract base: adds created_at / updated_at timestamps.
    """
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class OrganizationScopedMixin(models.Model):
    """
    Ensures organization is present for all organization-scoped models.
    """

    def clean(self):
        super().clean()
        if getattr(self, "organization_id", None) is None:
            raise ValidationError("Organization must be set.")

    class Meta:
        abstract = True


def _check_same_organization(obj, *related_names):
    for name in related_names:
        related = getattr(obj, name, None)
        if related is not None and related.organization_id != obj.organization_id:
            raise ValidationError(f"{name.replace('_', ' ').capitalize()} does not belong to this organization.")


# --------------------------
# Tenancy
# --------------------------

class Organization(TimeStampedModel):
    STRIPE_STATUS_CHOICES = [
        ("", "Not connected"),
        ("pending", "Pending"),
        ("active", "Active"),
        ("incomplete", "Incomplete"),
    ]

    name = models.CharField(max_length=200)
    slug = models.SlugField(max_length=50, unique=True, blank=True)
    default_currency = models.CharField(max_length=3, default="USD")

    # Branding
    logo_url = models.URLField(blank=True)
    primary_color = models.CharField(max_length=7, blank=True, default="#2563eb")
    company_address = models.TextField(blank=True)
    company_phone = models.CharField(max_length=50, blank=True)
    company_email = models.EmailField(blank=True)
    company_website = models.URLField(blank=True)
    footer_text = models.TextField(blank=True)

    default_tax_profile = models.ForeignKey(
        "TaxProfile",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    # Stripe Connect
    stripe_account_id = models.CharField(max_length=255, blank=True)
    stripe_account_status = models.CharField(max_length=20, choices=STRIPE_STATUS_CHOICES, blank=True)
    stripe_connect_enabled = models.BooleanField(default=False)
    stripe_onboarding_complete = models.BooleanField(default=False)
    stripe_account_email = models.EmailField(blank=True)

    def save(self, *args, **kwargs):
        self.slug = normalize_slug(self.slug or self.name)
        if self.default_currency:
            self.default_currency = self.default_currency.upper()
        super().save(*args, **kwargs)

    @property
    def stripe_ready(self) -> bool:
        return bool(
            self.stripe_connect_enabled
            and self.stripe_account_id
            and self.stripe_account_status == "active"
        )

    def __str__(self):
        return self.name


class UserProfile(TimeStampedModel):
    ROLE_CHOICES = [
        ("ADMIN", "Admin"),
        ("MEMBER", "Member"),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="profile")
    organization = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="members",
    )
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default="MEMBER")

    def __str__(self):
        return f"{self.user.username} ({self.role})"

    class Meta:
        indexes = [
            models.Index(fields=["organization", "role"], name="userprofile_org_role_idx"),
        ]


# --------------------------
# Catalog
# --------------------------

class Customer(OrganizationScopedMixin, TimeStampedModel):
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="customers")

    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)

    address_line1 = models.CharField(max_length=255, blank=True)
    address_line2 = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=100, blank=True)
    postal_code = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=2, blank=True, help_text="ISO 3166-1 alpha-2")

    tax_exempt = models.BooleanField(default=False)
    tax_exemption_reason = models.CharField(max_length=255, blank=True)
    tax_id = models.CharField(max_length=100, blank=True)

    stripe_customer_id = models.CharField(max_length=255, blank=True)
    preferred_payment_method_id = models.CharField(max_length=255, blank=True)

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({"name": "Name is required."})
        if self.country:
            self.country = self.country.strip().upper()

    def __str__(self):
        return self.name

    class Meta:
        indexes = [
            models.Index(fields=["organization", "name"], name="customer_org_name_idx"),
            models.Index(fields=["organization", "email"], name="customer_org_email_idx"),
        ]


class Product(OrganizationScopedMixin, TimeStampedModel):
    PRODUCT_TYPE_CHOICES = [
        ("generic", "Generic"),
        ("service", "Service"),
        ("physical", "Physical"),
        ("digital", "Digital"),
    ]

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="products")

    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))
    tax_rate = models.DecimalField(max_digits=7, decimal_places=3, default=Decimal("0"))
    product_type = models.CharField(max_length=20, choices=PRODUCT_TYPE_CHOICES, default="generic")
    is_active = models.BooleanField(default=True)

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({"name": "Name is required."})
        if self.price is not None and self.price < 0:
            raise ValidationError({"price": "Price cannot be negative."})
        if self.tax_rate is not None and not (0 <= self.tax_rate <= 100):
            raise ValidationError({"tax_rate": "Tax rate must be between 0 and 100."})

    def __str__(self):
        return self.name

    class Meta:
        indexes = [
            models.Index(fields=["organization", "is_active"], name="product_org_active_idx"),
        ]


# --------------------------
# Tax
# --------------------------

class TaxProfile(OrganizationScopedMixin, TimeStampedModel):
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="tax_profiles")

    name = models.CharField(max_length=200)
    country_code = models.CharField(max_length=2)
    region_code = models.CharField(max_length=10, blank=True)
    is_default = models.BooleanField(default=False)

    def clean(self):
        super().clean()
        self.country_code = (self.country_code or "").strip().upper()
        self.region_code = (self.region_code or "").strip().upper()
        if not self.country_code:
            raise ValidationError({"country_code": "Country code is required."})

    def __str__(self):
        region = f"-{self.region_code}" if self.region_code else ""
        return f"{self.name} ({self.country_code}{region})"

    class Meta:
        indexes = [
            models.Index(fields=["organization", "country_code", "region_code"], name="taxprofile_org_region_idx"),
            models.Index(fields=["organization", "is_default"], name="taxprofile_org_default_idx"),
        ]


class TaxRule(TimeStampedModel):
    tax_profile = models.ForeignKey(TaxProfile, on_delete=models.CASCADE, related_name="rules")

    name = models.CharField(max_length=100)
    rate = models.DecimalField(max_digits=7, decimal_places=3)
    authority = models.CharField(max_length=50, blank=True)
    is_active = models.BooleanField(default=True)

    def clean(self):
        super().clean()
        if self.rate is not None and not (0 <= self.rate <= 100):
            raise ValidationError({"rate": "Tax rate must be between 0 and 100."})

    def __str__(self):
        return f"{self.name} {self.rate}%"

    class Meta:
        ordering = ["created_at", "id"]


# --------------------------
# Invoices
# --------------------------

class InvoiceCounter(models.Model):
    organization = models.OneToOneField(Organization, on_delete=models.CASCADE, related_name="invoice_counter")
    last_number = models.PositiveIntegerField(default=0)

    @classmethod
    def next_number(cls, organization) -> int:
        """
        Gap-free, per-organization numbering.
        Must run inside the transaction that creates the invoice.
        """
        with transaction.atomic():
            counter, _ = cls.objects.get_or_create(organization=organization)
            counter = cls.objects.select_for_update().get(pk=counter.pk)
            counter.last_number += 1
            counter.save(update_fields=["last_number"])
            return counter.last_number

    def __str__(self):
        return f"{self.organization} #{self.last_number}"


class InvoiceTemplate(OrganizationScopedMixin, TimeStampedModel):
    LAYOUT_CHOICES = [
        ("classic", "Classic"),
        ("modern", "Modern"),
        ("minimal", "Minimal"),
    ]

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="invoice_templates")

    name = models.CharField(max_length=200)
    layout = models.CharField(max_length=20, choices=LAYOUT_CHOICES, default="classic")
    accent_color = models.CharField(max_length=7, blank=True)
    header_text = models.TextField(blank=True)
    footer_text = models.TextField(blank=True)
    show_logo = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False)

    def __str__(self):
        return self.name

    class Meta:
        indexes = [
            models.Index(fields=["organization", "is_default"], name="invtemplate_org_default_idx"),
        ]


class Invoice(OrganizationScopedMixin, TimeStampedModel):
    STATUS_CHOICES = [
        ("draft", "Draft"),
        ("sent", "Sent"),
        ("paid", "Paid"),
        ("overdue", "Overdue"),
        ("cancelled", "Cancelled"),
    ]
    OPEN_STATUSES = ("draft", "sent", "overdue")

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="invoices")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="invoices")

    invoice_no = models.PositiveIntegerField()
    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="draft")
    notes = models.TextField(blank=True)
    currency = models.CharField(max_length=3, default="USD")

    share_token = models.CharField(max_length=64, unique=True, null=True, blank=True)

    recurring_template = models.ForeignKey(
        "RecurringInvoiceTemplate",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="invoices",
    )
    template = models.ForeignKey(
        InvoiceTemplate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="invoices",
    )
    tax_profile = models.ForeignKey(
        TaxProfile,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="invoices",
    )

    email_sent_count = models.PositiveIntegerField(default=0)
    last_email_sent_at = models.DateTimeField(null=True, blank=True)
    last_reminder_sent_at = models.DateTimeField(null=True, blank=True)

    def clean(self):
        super().clean()
        _check_same_organization(self, "customer", "template", "tax_profile")
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValidationError({"due_date": "Due date cannot be before issue date."})
        if self.currency:
            self.currency = self.currency.upper()

    # ---- money ----

    def get_totals(self):
        return compute_totals(self.items.all(), [t.amount for t in self.taxes.all()])

    def calculate_total(self) -> Decimal:
        return self.get_totals().total

    def amount_paid(self) -> Decimal:
        total = self.payments.filter(stripe_status="succeeded").aggregate(s=Sum("amount"))["s"]
        return total or Decimal("0")

    def balance_due(self) -> Decimal:
        return money(self.calculate_total() - self.amount_paid())

    def ensure_share_token(self) -> str:
        if not self.share_token:
            self.share_token = generate_share_token()
            self.save(update_fields=["share_token", "updated_at"])
        return self.share_token

    def __str__(self):
        return f"Invoice #{self.invoice_no}"

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["organization", "invoice_no"],
                name="unique_invoice_no_per_organization",
            )
        ]
        indexes = [
            models.Index(fields=["organization", "status"], name="invoice_org_status_idx"),
            models.Index(fields=["organization", "issue_date", "id"], name="invoice_org_issue_idx"),
            models.Index(fields=["organization", "due_date"], name="invoice_org_due_idx"),
        ]


class InvoiceItem(TimeStampedModel):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="invoice_items",
    )

    description = models.CharField(max_length=500, blank=True)
    quantity = models.PositiveIntegerField(default=1)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    tax_rate = models.DecimalField(max_digits=7, decimal_places=3, default=Decimal("0"))

    @property
    def line_total(self) -> Decimal:
        return (self.price or Decimal("0")) * (self.quantity or 0)

    def clean(self):
        super().clean()
        if self.product_id and self.invoice_id and self.product.organization_id != self.invoice.organization_id:
            raise ValidationError("Product does not belong to this organization.")
        if self.price is not None and self.price < 0:
            raise ValidationError({"price": "Price cannot be negative."})

    def __str__(self):
        return self.description or f"Item {self.pk}"

    class Meta:
        ordering = ["id"]


class InvoiceTax(TimeStampedModel):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="taxes")
    tax_rule = models.ForeignKey(TaxRule, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")

    name = models.CharField(max_length=100)
    rate = models.DecimalField(max_digits=7, decimal_places=3)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    authority = models.CharField(max_length=50, blank=True)

    def __str__(self):
        return f"{self.name} {self.amount}"

    class Meta:
        ordering = ["id"]


# --------------------------
# Payment plans
# --------------------------

class PaymentPlan(TimeStampedModel):
    STATUS_CHOICES = [
        ("active", "Active"),
        ("completed", "Completed"),
        ("cancelled", "Cancelled"),
    ]
    FREQUENCY_CHOICES = [
        ("weekly", "Weekly"),
        ("biweekly", "Bi-weekly"),
        ("monthly", "Monthly"),
        ("quarterly", "Quarterly"),
    ]

    invoice = models.OneToOneField(Invoice, on_delete=models.CASCADE, related_name="payment_plan")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    installment_count = models.PositiveIntegerField()
    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES, default="monthly")
    start_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")

    def __str__(self):
        return f"Plan for {self.invoice}"


class Installment(TimeStampedModel):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("paid", "Paid"),
        ("overdue", "Overdue"),
    ]

    payment_plan = models.ForeignKey(PaymentPlan, on_delete=models.CASCADE, related_name="installments")
    installment_number = models.PositiveIntegerField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    due_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    paid_at = models.DateTimeField(null=True, blank=True)

    # A single payment can be spread over several installments.
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0"), (self.amount or Decimal("0")) - (self.amount_paid or Decimal("0")))

    def __str__(self):
        return f"Installment {self.installment_number}"

    class Meta:
        ordering = ["due_date", "installment_number"]
        constraints = [
            models.UniqueConstraint(
                fields=["payment_plan", "installment_number"],
                name="unique_installment_number_per_plan",
            )
        ]


# --------------------------
# Payments
# --------------------------

class Payment(TimeStampedModel):
    METHOD_CHOICES = [
        ("cash", "Cash"),
        ("check", "Check"),
        ("bank_transfer", "Bank transfer"),
        ("card", "Card"),
        ("stripe", "Stripe"),
        ("other", "Other"),
    ]
    STRIPE_STATUS_CHOICES = [
        ("succeeded", "Succeeded"),
        ("failed", "Failed"),
        ("processing", "Processing"),
    ]
    RETRY_STATUS_CHOICES = [
        ("", "None"),
        ("scheduled", "Scheduled"),
        ("exhausted", "Exhausted"),
    ]

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="payments")
    installment = models.ForeignKey(
        Installment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    date = models.DateTimeField(default=timezone.now)
    method = models.CharField(max_length=20, choices=METHOD_CHOICES, default="other")
    notes = models.TextField(blank=True)

    stripe_payment_intent_id = models.CharField(max_length=255, null=True, blank=True, unique=True)
    stripe_charge_id = models.CharField(max_length=255, blank=True)
    stripe_customer_id = models.CharField(max_length=255, blank=True)
    stripe_status = models.CharField(max_length=20, choices=STRIPE_STATUS_CHOICES, default="succeeded")

    retry_count = models.PositiveIntegerField(default=0)
    max_retries = models.PositiveIntegerField(default=3)
    last_retry_at = models.DateTimeField(null=True, blank=True)
    next_retry_at = models.DateTimeField(null=True, blank=True)
    retry_status = models.CharField(max_length=20, choices=RETRY_STATUS_CHOICES, blank=True)

    def clean(self):
        super().clean()
        if self.amount is not None and self.amount <= 0:
            raise ValidationError({"amount": "Amount must be greater than zero."})
        if self.installment_id and self.invoice_id and self.installment.payment_plan.invoice_id != self.invoice_id:
            raise ValidationError("Installment does not belong to this invoice.")

    def append_note(self, line: str) -> None:
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def __str__(self):
        return f"Payment {self.amount} on {self.invoice}"

    class Meta:
        indexes = [
            models.Index(fields=["stripe_status", "retry_status", "next_retry_at"], name="payment_retry_due_idx"),
            models.Index(fields=["invoice", "date"], name="payment_invoice_date_idx"),
        ]


# --------------------------
# Recurring billing
# --------------------------

class RecurringInvoiceTemplate(OrganizationScopedMixin, TimeStampedModel):
    STATUS_CHOICES = [
        ("active", "Active"),
        ("paused", "Paused"),
        ("completed", "Completed"),
        ("cancelled", "Cancelled"),
    ]

    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name="recurring_templates")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="recurring_templates")

    name = models.CharField(max_length=200)
    frequency = models.CharField(max_length=20, choices=FREQUENCY_CHOICES, default="monthly")
    interval = models.PositiveIntegerField(default=1)
    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)
    next_generation_date = models.DateField()

    # [{"product_id", "description", "quantity", "price", "tax_rate"}, ...]
    template_items = models.JSONField(default=list)
    notes = models.TextField(blank=True)
    days_until_due = models.PositiveIntegerField(default=30)
    currency = models.CharField(max_length=3, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    auto_send_email = models.BooleanField(default=False)

    total_generated = models.PositiveIntegerField(default=0)
    last_generated_at = models.DateTimeField(null=True, blank=True)

    is_usage_based = models.BooleanField(default=False)
    usage_unit = models.CharField(max_length=50, blank=True)

    def clean(self):
        super().clean()
        _check_same_organization(self, "customer")
        if not self.interval or self.interval < 1:
            raise ValidationError({"interval": "Interval must be at least 1."})
        if self.end_date and self.start_date and self.end_date < self.start_date:
            raise ValidationError({"end_date": "End date cannot be before start date."})
        if not self.template_items:
            raise ValidationError({"template_items": "At least one item is required."})
        if self.currency:
            self.currency = self.currency.upper()

    def __str__(self):
        return self.name

    class Meta:
        indexes = [
            models.Index(fields=["status", "next_generation_date"], name="recurring_status_next_idx"),
            models.Index(fields=["organization", "status"], name="recurring_org_status_idx"),
        ]


class UsageRecord(TimeStampedModel):
    recurring_template = models.ForeignKey(
        RecurringInvoiceTemplate,
        on_delete=models.CASCADE,
        related_name="usage_records",
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="usage_records",
    )

    quantity = models.DecimalField(max_digits=14, decimal_places=4)
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    description = models.CharField(max_length=500, blank=True)
    is_billed = models.BooleanField(default=False)

    def clean(self):
        super().clean()
        if self.quantity is not None and self.quantity < 0:
            raise ValidationError({"quantity": "Quantity cannot be negative."})
        if self.period_start and self.period_end and self.period_end < self.period_start:
            raise ValidationError({"period_end": "Period end cannot be before period start."})

    def __str__(self):
        return f"{self.quantity} for {self.recurring_template}"

    class Meta:
        ordering = ["-period_start"]
        indexes = [
            models.Index(fields=["recurring_template", "is_billed", "period_start"], name="usage_template_billed_idx"),
        ]


# --------------------------
# Email log
# --------------------------

class EmailLog(TimeStampedModel):
    TYPE_CHOICES = [
        ("invoice", "Invoice"),
        ("payment_confirmation", "Payment confirmation"),
        ("reminder", "Reminder"),
    ]
    STATUS_CHOICES = [
        ("sent", "Sent"),
        ("failed", "Failed"),
    ]

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="email_logs")
    email_type = models.CharField(max_length=30, choices=TYPE_CHOICES)
    recipient = models.EmailField()
    subject = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    error = models.TextField(blank=True)

    def __str__(self):
        return f"{self.email_type} to {self.recipient} ({self.status})"

    class Meta:
        ordering = ["-created_at"]
