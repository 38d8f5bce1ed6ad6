from django.contrib import admin

from .models import (
    Customer,
    EmailLog,
    Installment,
    Invoice,
    InvoiceCounter,
    InvoiceItem,
    InvoiceTax,
    InvoiceTemplate,
    Organization,
    Payment,
    PaymentPlan,
    Product,
    RecurringInvoiceTemplate,
    TaxProfile,
    TaxRule,
    UsageRecord,
    UserProfile,
)


# -------------------------
# Tenancy
# -------------------------
@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ("name", "slug", "default_currency", "stripe_account_status", "stripe_connect_enabled")
    search_fields = ("name", "slug")
    list_filter = ("stripe_account_status", "stripe_connect_enabled")


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "organization", "role")
    list_filter = ("role",)
    search_fields = ("user__username", "user__email", "organization__name")


# -------------------------
# Catalog
# -------------------------
@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "organization", "country", "tax_exempt")
    search_fields = ("name", "email")
    list_filter = ("tax_exempt", "organization")


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "organization", "price", "tax_rate", "product_type", "is_active")
    search_fields = ("name",)
    list_filter = ("product_type", "is_active")


# -------------------------
# Tax
# -------------------------
class TaxRuleInline(admin.TabularInline):
    model = TaxRule
    extra = 0


@admin.register(TaxProfile)
class TaxProfileAdmin(admin.ModelAdmin):
    list_display = ("name", "organization", "country_code", "region_code", "is_default")
    list_filter = ("country_code", "is_default")
    inlines = [TaxRuleInline]


# -------------------------
# Invoices
# -------------------------
class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0


class InvoiceTaxInline(admin.TabularInline):
    model = InvoiceTax
    extra = 0


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    fields = ("amount", "date", "method", "stripe_status", "retry_status", "retry_count")


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("invoice_no", "organization", "customer", "issue_date", "due_date", "status")
    list_filter = ("status", "organization")
    search_fields = ("customer__name", "customer__email")
    inlines = [InvoiceItemInline, InvoiceTaxInline, PaymentInline]


@admin.register(InvoiceTemplate)
class InvoiceTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "organization", "layout", "is_default")


admin.site.register(InvoiceCounter)


# -------------------------
# Payments
# -------------------------
@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("invoice", "amount", "date", "method", "stripe_status", "retry_status", "retry_count", "next_retry_at")
    list_filter = ("method", "stripe_status", "retry_status")
    search_fields = ("stripe_payment_intent_id", "stripe_charge_id")


class InstallmentInline(admin.TabularInline):
    model = Installment
    extra = 0


@admin.register(PaymentPlan)
class PaymentPlanAdmin(admin.ModelAdmin):
    list_display = ("invoice", "total_amount", "installment_count", "frequency", "status")
    list_filter = ("status", "frequency")
    inlines = [InstallmentInline]


# -------------------------
# Recurring billing
# -------------------------
@admin.register(RecurringInvoiceTemplate)
class RecurringInvoiceTemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "organization", "customer", "frequency", "interval", "next_generation_date", "status")
    list_filter = ("status", "frequency", "is_usage_based")
    search_fields = ("name", "customer__name")


@admin.register(UsageRecord)
class UsageRecordAdmin(admin.ModelAdmin):
    list_display = ("recurring_template", "quantity", "period_start", "period_end", "is_billed")
    list_filter = ("is_billed",)


@admin.register(EmailLog)
class EmailLogAdmin(admin.ModelAdmin):
    list_display = ("invoice", "email_type", "recipient", "status", "created_at")
    list_filter = ("email_type", "status")
