import decimal

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


def _timestamps():
    return [
        ("created_at", models.DateTimeField(auto_now_add=True)),
        ("updated_at", models.DateTimeField(auto_now=True)),
    ]


def _id():
    return ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID"))


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        # =========================
        # Tenancy
        # =========================
        migrations.CreateModel(
            name="Organization",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("slug", models.SlugField(blank=True, unique=True)),
                ("default_currency", models.CharField(default="USD", max_length=3)),
                ("logo_url", models.URLField(blank=True)),
                ("primary_color", models.CharField(blank=True, default="#2563eb", max_length=7)),
                ("company_address", models.TextField(blank=True)),
                ("company_phone", models.CharField(blank=True, max_length=50)),
                ("company_email", models.EmailField(blank=True, max_length=254)),
                ("company_website", models.URLField(blank=True)),
                ("footer_text", models.TextField(blank=True)),
                ("stripe_account_id", models.CharField(blank=True, max_length=255)),
                (
                    "stripe_account_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("", "Not connected"),
                            ("pending", "Pending"),
                            ("active", "Active"),
                            ("incomplete", "Incomplete"),
                        ],
                        max_length=20,
                    ),
                ),
                ("stripe_connect_enabled", models.BooleanField(default=False)),
                ("stripe_onboarding_complete", models.BooleanField(default=False)),
                ("stripe_account_email", models.EmailField(blank=True, max_length=254)),
            ],
        ),
        migrations.CreateModel(
            name="UserProfile",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "role",
                    models.CharField(choices=[("ADMIN", "Admin"), ("MEMBER", "Member")], default="MEMBER", max_length=20),
                ),
                (
                    "organization",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="members",
                        to="invoicing.organization",
                    ),
                ),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["organization", "role"], name="userprofile_org_role_idx")],
            },
        ),
        # =========================
        # Catalog
        # =========================
        migrations.CreateModel(
            name="Customer",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("phone", models.CharField(blank=True, max_length=50)),
                ("address_line1", models.CharField(blank=True, max_length=255)),
                ("address_line2", models.CharField(blank=True, max_length=255)),
                ("city", models.CharField(blank=True, max_length=100)),
                ("state", models.CharField(blank=True, max_length=100)),
                ("postal_code", models.CharField(blank=True, max_length=20)),
                ("country", models.CharField(blank=True, help_text="ISO 3166-1 alpha-2", max_length=2)),
                ("tax_exempt", models.BooleanField(default=False)),
                ("tax_exemption_reason", models.CharField(blank=True, max_length=255)),
                ("tax_id", models.CharField(blank=True, max_length=100)),
                ("stripe_customer_id", models.CharField(blank=True, max_length=255)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="customers",
                        to="invoicing.organization",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["organization", "name"], name="customer_org_name_idx"),
                    models.Index(fields=["organization", "email"], name="customer_org_email_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True)),
                ("price", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), max_digits=12)),
                ("tax_rate", models.DecimalField(decimal_places=3, default=decimal.Decimal("0"), max_digits=7)),
                (
                    "product_type",
                    models.CharField(
                        choices=[
                            ("generic", "Generic"),
                            ("service", "Service"),
                            ("physical", "Physical"),
                            ("digital", "Digital"),
                        ],
                        default="generic",
                        max_length=20,
                    ),
                ),
                ("is_active", models.BooleanField(default=True)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="products",
                        to="invoicing.organization",
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["organization", "is_active"], name="product_org_active_idx")],
            },
        ),
        # =========================
        # Tax
        # =========================
        migrations.CreateModel(
            name="TaxProfile",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                ("country_code", models.CharField(max_length=2)),
                ("region_code", models.CharField(blank=True, max_length=10)),
                ("is_default", models.BooleanField(default=False)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tax_profiles",
                        to="invoicing.organization",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["organization", "country_code", "region_code"], name="taxprofile_org_region_idx"),
                    models.Index(fields=["organization", "is_default"], name="taxprofile_org_default_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TaxRule",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=100)),
                ("rate", models.DecimalField(decimal_places=3, max_digits=7)),
                ("authority", models.CharField(blank=True, max_length=50)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "tax_profile",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="rules",
                        to="invoicing.taxprofile",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "id"],
            },
        ),
        migrations.AddField(
            model_name="organization",
            name="default_tax_profile",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to="invoicing.taxprofile",
            ),
        ),
        # =========================
        # Invoices
        # =========================
        migrations.CreateModel(
            name="InvoiceCounter",
            fields=[
                _id(),
                ("last_number", models.PositiveIntegerField(default=0)),
                (
                    "organization",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoice_counter",
                        to="invoicing.organization",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="InvoiceTemplate",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                (
                    "layout",
                    models.CharField(
                        choices=[("classic", "Classic"), ("modern", "Modern"), ("minimal", "Minimal")],
                        default="classic",
                        max_length=20,
                    ),
                ),
                ("accent_color", models.CharField(blank=True, max_length=7)),
                ("header_text", models.TextField(blank=True)),
                ("footer_text", models.TextField(blank=True)),
                ("show_logo", models.BooleanField(default=True)),
                ("is_default", models.BooleanField(default=False)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoice_templates",
                        to="invoicing.organization",
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["organization", "is_default"], name="invtemplate_org_default_idx")],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                _id(),
                *_timestamps(),
                ("invoice_no", models.PositiveIntegerField()),
                ("issue_date", models.DateField(default=django.utils.timezone.localdate)),
                ("due_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("sent", "Sent"),
                            ("paid", "Paid"),
                            ("overdue", "Overdue"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("notes", models.TextField(blank=True)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("share_token", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("email_sent_count", models.PositiveIntegerField(default=0)),
                ("last_email_sent_at", models.DateTimeField(blank=True, null=True)),
                ("last_reminder_sent_at", models.DateTimeField(blank=True, null=True)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="invoicing.customer",
                    ),
                ),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="invoices",
                        to="invoicing.organization",
                    ),
                ),
                (
                    "tax_profile",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="invoices",
                        to="invoicing.taxprofile",
                    ),
                ),
                (
                    "template",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="invoices",
                        to="invoicing.invoicetemplate",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["organization", "status"], name="invoice_org_status_idx"),
                    models.Index(fields=["organization", "issue_date", "id"], name="invoice_org_issue_idx"),
                    models.Index(fields=["organization", "due_date"], name="invoice_org_due_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("organization", "invoice_no"), name="unique_invoice_no_per_organization"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceItem",
            fields=[
                _id(),
                *_timestamps(),
                ("description", models.CharField(blank=True, max_length=500)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("tax_rate", models.DecimalField(decimal_places=3, default=decimal.Decimal("0"), max_digits=7)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="invoicing.invoice",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_items",
                        to="invoicing.product",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="InvoiceTax",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=100)),
                ("rate", models.DecimalField(decimal_places=3, max_digits=7)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("authority", models.CharField(blank=True, max_length=50)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="taxes",
                        to="invoicing.invoice",
                    ),
                ),
                (
                    "tax_rule",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="invoicing.taxrule",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        # =========================
        # Payment plans + payments
        # =========================
        migrations.CreateModel(
            name="PaymentPlan",
            fields=[
                _id(),
                *_timestamps(),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("installment_count", models.PositiveIntegerField()),
                (
                    "frequency",
                    models.CharField(
                        choices=[
                            ("weekly", "Weekly"),
                            ("biweekly", "Bi-weekly"),
                            ("monthly", "Monthly"),
                            ("quarterly", "Quarterly"),
                        ],
                        default="monthly",
                        max_length=20,
                    ),
                ),
                ("start_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("completed", "Completed"), ("cancelled", "Cancelled")],
                        default="active",
                        max_length=20,
                    ),
                ),
                (
                    "invoice",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_plan",
                        to="invoicing.invoice",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Installment",
            fields=[
                _id(),
                *_timestamps(),
                ("installment_number", models.PositiveIntegerField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("due_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("paid", "Paid"), ("overdue", "Overdue")],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=decimal.Decimal("0"), max_digits=12)),
                (
                    "payment_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="installments",
                        to="invoicing.paymentplan",
                    ),
                ),
            ],
            options={
                "ordering": ["due_date", "installment_number"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("payment_plan", "installment_number"),
                        name="unique_installment_number_per_plan",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                _id(),
                *_timestamps(),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("date", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("cash", "Cash"),
                            ("check", "Check"),
                            ("bank_transfer", "Bank transfer"),
                            ("card", "Card"),
                            ("stripe", "Stripe"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=20,
                    ),
                ),
                ("notes", models.TextField(blank=True)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("stripe_charge_id", models.CharField(blank=True, max_length=255)),
                ("stripe_customer_id", models.CharField(blank=True, max_length=255)),
                (
                    "stripe_status",
                    models.CharField(
                        choices=[("succeeded", "Succeeded"), ("failed", "Failed"), ("processing", "Processing")],
                        default="succeeded",
                        max_length=20,
                    ),
                ),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("max_retries", models.PositiveIntegerField(default=3)),
                ("last_retry_at", models.DateTimeField(blank=True, null=True)),
                ("next_retry_at", models.DateTimeField(blank=True, null=True)),
                (
                    "retry_status",
                    models.CharField(
                        blank=True,
                        choices=[("", "None"), ("scheduled", "Scheduled"), ("exhausted", "Exhausted")],
                        max_length=20,
                    ),
                ),
                (
                    "installment",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to="invoicing.installment",
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payments",
                        to="invoicing.invoice",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["stripe_status", "retry_status", "next_retry_at"], name="payment_retry_due_idx"),
                    models.Index(fields=["invoice", "date"], name="payment_invoice_date_idx"),
                ],
            },
        ),
        # =========================
        # Recurring billing
        # =========================
        migrations.CreateModel(
            name="RecurringInvoiceTemplate",
            fields=[
                _id(),
                *_timestamps(),
                ("name", models.CharField(max_length=200)),
                (
                    "frequency",
                    models.CharField(
                        choices=[
                            ("daily", "Daily"),
                            ("weekly", "Weekly"),
                            ("biweekly", "Bi-weekly"),
                            ("monthly", "Monthly"),
                            ("quarterly", "Quarterly"),
                            ("yearly", "Yearly"),
                            ("custom", "Custom (days)"),
                        ],
                        default="monthly",
                        max_length=20,
                    ),
                ),
                ("interval", models.PositiveIntegerField(default=1)),
                ("start_date", models.DateField()),
                ("end_date", models.DateField(blank=True, null=True)),
                ("next_generation_date", models.DateField()),
                ("template_items", models.JSONField(default=list)),
                ("notes", models.TextField(blank=True)),
                ("days_until_due", models.PositiveIntegerField(default=30)),
                ("currency", models.CharField(blank=True, max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("paused", "Paused"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("auto_send_email", models.BooleanField(default=False)),
                ("total_generated", models.PositiveIntegerField(default=0)),
                ("last_generated_at", models.DateTimeField(blank=True, null=True)),
                ("is_usage_based", models.BooleanField(default=False)),
                ("usage_unit", models.CharField(blank=True, max_length=50)),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="recurring_templates",
                        to="invoicing.customer",
                    ),
                ),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="recurring_templates",
                        to="invoicing.organization",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["status", "next_generation_date"], name="recurring_status_next_idx"),
                    models.Index(fields=["organization", "status"], name="recurring_org_status_idx"),
                ],
            },
        ),
        migrations.AddField(
            model_name="invoice",
            name="recurring_template",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="invoices",
                to="invoicing.recurringinvoicetemplate",
            ),
        ),
        migrations.CreateModel(
            name="UsageRecord",
            fields=[
                _id(),
                *_timestamps(),
                ("quantity", models.DecimalField(decimal_places=4, max_digits=14)),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("description", models.CharField(blank=True, max_length=500)),
                ("is_billed", models.BooleanField(default=False)),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="usage_records",
                        to="invoicing.invoice",
                    ),
                ),
                (
                    "recurring_template",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="usage_records",
                        to="invoicing.recurringinvoicetemplate",
                    ),
                ),
            ],
            options={
                "ordering": ["-period_start"],
                "indexes": [
                    models.Index(
                        fields=["recurring_template", "is_billed", "period_start"],
                        name="usage_template_billed_idx",
                    ),
                ],
            },
        ),
        # =========================
        # Email log
        # =========================
        migrations.CreateModel(
            name="EmailLog",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "email_type",
                    models.CharField(
                        choices=[
                            ("invoice", "Invoice"),
                            ("payment_confirmation", "Payment confirmation"),
                            ("reminder", "Reminder"),
                        ],
                        max_length=30,
                    ),
                ),
                ("recipient", models.EmailField(max_length=254)),
                ("subject", models.CharField(blank=True, max_length=255)),
                ("status", models.CharField(choices=[("sent", "Sent"), ("failed", "Failed")], max_length=20)),
                ("error", models.TextField(blank=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="email_logs",
                        to="invoicing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
