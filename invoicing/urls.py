# invoicing/urls.py
from django.urls import path

from . import views, views_public


urlpatterns = [
    # =========================
    # Organization
    # =========================
    path("api/organization/", views.organization_settings, name="organization_settings"),
    path("api/invoice-templates/", views.invoice_templates, name="invoice_templates"),
    path("api/invoice-templates/<int:pk>/", views.invoice_template_detail, name="invoice_template_detail"),

    # =========================
    # Catalog
    # =========================
    path("api/customers/", views.customers, name="customers"),
    path("api/customers/<int:pk>/", views.customer_detail, name="customer_detail"),
    path(
        "api/customers/<int:pk>/payment-methods/",
        views.customer_payment_methods,
        name="customer_payment_methods",
    ),
    path("api/products/", views.products, name="products"),
    path("api/products/<int:pk>/", views.product_detail, name="product_detail"),

    # =========================
    # Invoices
    # =========================
    path("api/invoices/", views.invoices, name="invoices"),
    path("api/invoices/<int:pk>/", views.invoice_detail, name="invoice_detail"),
    path("api/invoices/<int:pk>/share/", views.invoice_share, name="invoice_share"),
    path("api/invoices/<int:pk>/send/", views.invoice_send, name="invoice_send"),
    path("api/invoices/<int:pk>/send-reminder/", views.invoice_send_reminder, name="invoice_send_reminder"),
    path("api/invoices/<int:pk>/email-logs/", views.invoice_email_logs, name="invoice_email_logs"),
    path("api/invoices/<int:pk>/payment-plan/", views.invoice_payment_plan, name="invoice_payment_plan"),
    path("api/invoices/<int:pk>/payments/", views.invoice_payments, name="invoice_payments"),
    path("api/invoices/<int:pk>/payment-intent/", views_public.invoice_payment_intent, name="invoice_payment_intent"),

    # =========================
    # Payments
    # =========================
    path("api/payments/", views.payments, name="payments"),
    path("api/payments/<int:pk>/refresh-status/", views.payment_refresh_status, name="payment_refresh_status"),

    # =========================
    # Recurring billing
    # =========================
    path("api/recurring-templates/", views.recurring_templates, name="recurring_templates"),
    path("api/recurring-templates/<int:pk>/", views.recurring_template_detail, name="recurring_template_detail"),
    path(
        "api/recurring-templates/<int:pk>/generate/",
        views.recurring_template_generate,
        name="recurring_template_generate",
    ),
    path("api/recurring-templates/<int:pk>/usage/", views.recurring_template_usage, name="recurring_template_usage"),

    # =========================
    # Tax
    # =========================
    path("api/tax/profiles/", views.tax_profiles, name="tax_profiles"),
    path("api/tax/profiles/<int:pk>/", views.tax_profile_detail, name="tax_profile_detail"),
    path("api/tax/calculate/", views.tax_calculate, name="tax_calculate"),
    path("api/tax/presets/", views.tax_presets, name="tax_presets"),
    path("api/tax/presets/apply/", views.tax_presets_apply, name="tax_presets_apply"),

    # =========================
    # Analytics, reports + exports
    # =========================
    path("api/analytics/forecast/", views.analytics_forecast, name="analytics_forecast"),
    path("api/analytics/clv/", views.analytics_clv, name="analytics_clv"),
    path("api/analytics/dashboard/", views.analytics_dashboard, name="analytics_dashboard"),
    path("api/reports/", views.report, name="report"),
    path("api/reports/export/", views.report_export, name="report_export"),
    path("api/exports/pack/", views.export_pack, name="export_pack"),
    path("api/exports/<str:kind>/", views.export_download, name="export_download"),

    # =========================
    # Stripe Connect
    # =========================
    path("api/stripe/connect/onboard/", views.stripe_connect_onboard, name="stripe_connect_onboard"),
    path("api/stripe/connect/status/", views.stripe_connect_status, name="stripe_connect_status"),
    path("api/stripe/connect/disconnect/", views.stripe_connect_disconnect, name="stripe_connect_disconnect"),

    # =========================
    # Public + machine endpoints
    # =========================
    path("api/public/invoices/<str:token>/", views_public.public_invoice, name="public_invoice"),
    path(
        "api/public/invoices/<str:token>/payment-intent/",
        views_public.public_payment_intent,
        name="public_payment_intent",
    ),
    path("api/webhooks/stripe/", views_public.stripe_webhook, name="stripe_webhook"),
    path("api/cron/generate-recurring/", views_public.cron_generate_recurring, name="cron_generate_recurring"),
    path("api/cron/payment-retries/", views_public.cron_payment_retries, name="cron_payment_retries"),
    path("api/cron/reminders/", views_public.cron_reminders, name="cron_reminders"),
]
