from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import List, Optional

from django.db import transaction

from .billing import _d, money


logger = logging.getLogger(__name__)


@dataclass
class TaxLine:
    name: str
    rate: Decimal
    amount: Decimal
    authority: str = ""
    tax_rule_id: int | None = None

    def as_json(self):
        data = asdict(self)
        data["rate"] = str(self.rate)
        data["amount"] = str(money(self.amount))
        return data


# -------------------------
# PRESETS
# -------------------------
# Rates change; every preset is a starting point to be verified locally.

TAX_PRESETS = [
    {
        "id": "ca-gst",
        "name": "Canada - GST",
        "country_code": "CA",
        "region_code": "",
        "description": "Federal Goods and Services Tax (5%)",
        "rules": [{"name": "GST", "rate": "5.0", "authority": "federal"}],
    },
    {
        "id": "ca-qc",
        "name": "Canada - Quebec",
        "country_code": "CA",
        "region_code": "QC",
        "description": "GST (5%) + QST/TVQ (9.975%)",
        "rules": [
            {"name": "GST", "rate": "5.0", "authority": "federal"},
            {"name": "QST", "rate": "9.975", "authority": "provincial"},
        ],
    },
    {
        "id": "ca-on",
        "name": "Canada - Ontario",
        "country_code": "CA",
        "region_code": "ON",
        "description": "HST (13%)",
        "rules": [{"name": "HST", "rate": "13.0", "authority": "federal"}],
    },
    {
        "id": "ca-bc",
        "name": "Canada - British Columbia",
        "country_code": "CA",
        "region_code": "BC",
        "description": "GST (5%) + PST (7%)",
        "rules": [
            {"name": "GST", "rate": "5.0", "authority": "federal"},
            {"name": "PST", "rate": "7.0", "authority": "provincial"},
        ],
    },
    {
        "id": "us-generic",
        "name": "United States - State Tax",
        "country_code": "US",
        "region_code": "",
        "description": "State sales tax (rate varies by state)",
        "rules": [{"name": "State Tax", "rate": "0.0", "authority": "state"}],
    },
    {
        "id": "us-ca",
        "name": "United States - California",
        "country_code": "US",
        "region_code": "CA",
        "description": "California sales tax (base rate ~7.25%, varies by locality)",
        "rules": [{"name": "State & Local Tax", "rate": "7.25", "authority": "state"}],
    },
    {
        "id": "us-ny",
        "name": "United States - New York",
        "country_code": "US",
        "region_code": "NY",
        "description": "New York sales tax (base rate ~8%, varies by locality)",
        "rules": [{"name": "State & Local Tax", "rate": "8.0", "authority": "state"}],
    },
    {
        "id": "us-tx",
        "name": "United States - Texas",
        "country_code": "US",
        "region_code": "TX",
        "description": "Texas sales tax (base rate 6.25%, varies by locality)",
        "rules": [{"name": "State & Local Tax", "rate": "6.25", "authority": "state"}],
    },
    {
        "id": "eu-vat",
        "name": "European Union - VAT",
        "country_code": "EU",
        "region_code": "",
        "description": "Value Added Tax (rate varies by member state)",
        "rules": [{"name": "VAT", "rate": "0.0", "authority": "national"}],
    },
    {
        "id": "gb-vat",
        "name": "United Kingdom - VAT",
        "country_code": "GB",
        "region_code": "",
        "description": "Standard VAT rate (20%)",
        "rules": [{"name": "VAT", "rate": "20.0", "authority": "national"}],
    },
    {
        "id": "fr-vat",
        "name": "France - VAT",
        "country_code": "FR",
        "region_code": "",
        "description": "Standard TVA rate (20%)",
        "rules": [{"name": "TVA", "rate": "20.0", "authority": "national"}],
    },
    {
        "id": "de-vat",
        "name": "Germany - VAT",
        "country_code": "DE",
        "region_code": "",
        "description": "Standard MwSt rate (19%)",
        "rules": [{"name": "MwSt", "rate": "19.0", "authority": "national"}],
    },
    {
        "id": "au-gst",
        "name": "Australia - GST",
        "country_code": "AU",
        "region_code": "",
        "description": "Goods and Services Tax (10%)",
        "rules": [{"name": "GST", "rate": "10.0", "authority": "federal"}],
    },
    {
        "id": "in-gst",
        "name": "India - GST",
        "country_code": "IN",
        "region_code": "",
        "description": "Goods and Services Tax (18% standard slab)",
        "rules": [{"name": "GST", "rate": "18.0", "authority": "federal"}],
    },
]


def get_tax_preset(preset_id: str) -> Optional[dict]:
    for preset in TAX_PRESETS:
        if preset["id"] == preset_id:
            return preset
    return None


def presets_for_country(country_code: str) -> List[dict]:
    code = (country_code or "").upper()
    return [p for p in TAX_PRESETS if p["country_code"] == code]


def available_countries() -> List[str]:
    seen = []
    for preset in TAX_PRESETS:
        if preset["country_code"] not in seen:
            seen.append(preset["country_code"])
    return seen


def create_profile(*, organization, name, country_code, region_code="", is_default=False, rules=()):
    """
    Creates a profile with its rules. A default profile replaces the
    organization's previous default.
    """
    from invoicing.models import Organization, TaxProfile, TaxRule

    rules = list(rules)
    if not rules:
        raise ValueError("At least one tax rule is required")

    with transaction.atomic():
        if is_default:
            TaxProfile.objects.filter(organization=organization, is_default=True).update(is_default=False)

        profile = TaxProfile(
            organization=organization,
            name=name,
            country_code=country_code,
            region_code=region_code or "",
            is_default=bool(is_default),
        )
        profile.full_clean()
        profile.save()

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

        if is_default:
            Organization.objects.filter(pk=organization.pk).update(default_tax_profile=profile)
            organization.default_tax_profile = profile

    return profile


def apply_preset(*, organization, preset_id: str, is_default=False):
    preset = get_tax_preset(preset_id)
    if preset is None:
        raise LookupError(f"Unknown tax preset: {preset_id}")

    return create_profile(
        organization=organization,
        name=preset["name"],
        country_code=preset["country_code"],
        region_code=preset["region_code"],
        is_default=is_default,
        rules=preset["rules"],
    )


# -------------------------
# CALCULATION
# -------------------------

def get_tax_profile(*, organization, country_code: str = "", region_code: str = ""):
    """
    Exact country + region match, then the default profile, then the newest one.
    """
    from invoicing.models import TaxProfile

    qs = TaxProfile.objects.filter(organization=organization)
    country_code = (country_code or "").upper()
    region_code = (region_code or "").upper()

    if country_code:
        match = qs.filter(country_code=country_code, region_code=region_code).first()
        if match:
            return match

    default = qs.filter(is_default=True).first()
    if default:
        return default

    return qs.order_by("-created_at", "-id").first()


def calculate_tax(*, organization, customer, subtotal, tax_profile=None, overrides=None) -> List[TaxLine]:
    subtotal = _d(subtotal)

    if customer is not None and customer.tax_exempt:
        return []

    if overrides:
        return [
            TaxLine(
                name=o.get("name") or "Tax",
                rate=_d(o.get("rate")),
                amount=subtotal * _d(o.get("rate")) / Decimal("100"),
                authority=o.get("authority") or "",
            )
            for o in overrides
        ]

    profile = tax_profile or getattr(organization, "default_tax_profile", None)
    if profile is None:
        return []

    if profile.organization_id != organization.id:
        logger.warning("Tax profile %s does not belong to organization %s", profile.pk, organization.pk)
        return []

    lines = []
    for rule in profile.rules.filter(is_active=True):
        lines.append(
            TaxLine(
                name=rule.name,
                rate=rule.rate,
                amount=subtotal * rule.rate / Decimal("100"),
                authority=rule.authority,
                tax_rule_id=rule.id,
            )
        )
    return lines


def save_invoice_taxes(invoice, lines: List[TaxLine]) -> None:
    from invoicing.models import InvoiceTax

    with transaction.atomic():
        InvoiceTax.objects.filter(invoice=invoice).delete()
        InvoiceTax.objects.bulk_create(
            [
                InvoiceTax(
                    invoice=invoice,
                    tax_rule_id=line.tax_rule_id,
                    name=line.name,
                    rate=line.rate,
                    amount=money(line.amount),
                    authority=line.authority,
                )
                for line in lines
            ]
        )
