from django import forms
from django.core.exceptions import ValidationError
from django.forms.models import model_to_dict

from .models import (
    Customer,
    InvoiceTemplate,
    Organization,
    Product,
    RecurringInvoiceTemplate,
    TaxProfile,
    UsageRecord,
)
from .services.billing import FREQUENCIES


def bind(form_class, data, *, instance, **kwargs):
    """
    Binds a JSON body to a ModelForm. Fields missing from the body keep the
    instance values (model defaults on create), so PUT/PATCH can send
    partial objects and omitted booleans are not read as unchecked.
    """
    merged = model_to_dict(instance, fields=form_class._meta.fields)
    merged.update(data or {})
    return form_class(merged, instance=instance, **kwargs)


def form_errors(form) -> dict:
    fields = {name: [str(m) for m in msgs] for name, msgs in form.errors.items()}
    first = next(iter(fields.values()), ["Invalid data"])[0]
    return {"error": first, "fields": fields}


class CustomerForm(forms.ModelForm):
    class Meta:
        model = Customer
        fields = [
            "name",
            "email",
            "phone",
            "address_line1",
            "address_line2",
            "city",
            "state",
            "postal_code",
            "country",
            "tax_exempt",
            "tax_exemption_reason",
            "tax_id",
        ]

    def clean_country(self):
        return (self.cleaned_data.get("country") or "").strip().upper()


class ProductForm(forms.ModelForm):
    class Meta:
        model = Product
        fields = ["name", "description", "price", "tax_rate", "product_type", "is_active"]


class OrganizationSettingsForm(forms.ModelForm):
    class Meta:
        model = Organization
        fields = [
            "name",
            "default_currency",
            "logo_url",
            "primary_color",
            "company_address",
            "company_phone",
            "company_email",
            "company_website",
            "footer_text",
        ]

    def clean_default_currency(self):
        cur = (self.cleaned_data.get("default_currency") or "").strip().upper()
        if len(cur) != 3 or not cur.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code.")
        return cur

    def clean_primary_color(self):
        color = (self.cleaned_data.get("primary_color") or "").strip()
        if color and (len(color) != 7 or not color.startswith("#")):
            raise ValidationError("Color must look like #2563eb.")
        return color


class InvoiceTemplateForm(forms.ModelForm):
    class Meta:
        model = InvoiceTemplate
        fields = ["name", "layout", "accent_color", "header_text", "footer_text", "show_logo", "is_default"]


class TaxProfileForm(forms.ModelForm):
    class Meta:
        model = TaxProfile
        fields = ["name", "country_code", "region_code", "is_default"]


class RecurringTemplateForm(forms.ModelForm):
    """
    Items are validated separately by the invoice service; this form covers
    the schedule and the customer.
    """

    class Meta:
        model = RecurringInvoiceTemplate
        fields = [
            "customer",
            "name",
            "frequency",
            "interval",
            "start_date",
            "end_date",
            "notes",
            "days_until_due",
            "currency",
            "status",
            "auto_send_email",
            "is_usage_based",
            "usage_unit",
        ]

    def __init__(self, *args, organization=None, **kwargs):
        super().__init__(*args, **kwargs)
        if organization is not None:
            self.fields["customer"].queryset = Customer.objects.filter(organization=organization)
        self.fields["status"].required = False

    def clean_frequency(self):
        frequency = self.cleaned_data.get("frequency")
        if frequency not in FREQUENCIES:
            raise ValidationError(f"Frequency must be one of: {', '.join(FREQUENCIES)}")
        return frequency

    def clean_status(self):
        return self.cleaned_data.get("status") or self.instance.status or "active"


class UsageRecordForm(forms.ModelForm):
    class Meta:
        model = UsageRecord
        fields = ["quantity", "period_start", "period_end", "description"]
