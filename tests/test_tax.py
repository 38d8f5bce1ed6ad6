"""Tests for tax profiles, presets and tax line calculation."""

from decimal import Decimal

import pytest

from invoicing.models import Customer, TaxProfile
from invoicing.services.tax import (
    apply_preset,
    available_countries,
    calculate_tax,
    create_profile,
    get_tax_preset,
    get_tax_profile,
    presets_for_country,
)


QUEBEC_RULES = [
    {"name": "GST", "rate": "5", "authority": "federal"},
    {"name": "QST", "rate": "9.975", "authority": "provincial"},
]


@pytest.fixture
def quebec(organization):
    return create_profile(
        organization=organization,
        name="Quebec",
        country_code="ca",
        region_code="qc",
        is_default=True,
        rules=QUEBEC_RULES,
    )


class TestPresets:
    def test_lookup(self):
        assert get_tax_preset("ca-qc")["region_code"] == "QC"
        assert get_tax_preset("nope") is None

    def test_by_country(self):
        ids = [p["id"] for p in presets_for_country("ca")]
        assert ids == ["ca-gst", "ca-qc", "ca-on", "ca-bc"]

    def test_countries_keep_first_seen_order(self):
        countries = available_countries()
        assert countries[:2] == ["CA", "US"]
        assert len(countries) == len(set(countries))


@pytest.mark.django_db
class TestCreateProfile:
    def test_creates_rules_and_sets_default(self, organization, quebec):
        organization.refresh_from_db()

        assert quebec.country_code == "CA"
        assert quebec.region_code == "QC"
        assert organization.default_tax_profile_id == quebec.pk
        assert [r.name for r in quebec.rules.all()] == ["GST", "QST"]

    def test_new_default_replaces_old(self, organization, quebec):
        ontario = apply_preset(organization=organization, preset_id="ca-on", is_default=True)

        quebec.refresh_from_db()
        organization.refresh_from_db()
        assert not quebec.is_default
        assert ontario.is_default
        assert organization.default_tax_profile_id == ontario.pk

    def test_requires_rules(self, organization):
        with pytest.raises(ValueError):
            create_profile(organization=organization, name="Empty", country_code="US", rules=[])

    def test_unknown_preset(self, organization):
        with pytest.raises(LookupError):
            apply_preset(organization=organization, preset_id="xx-none")


@pytest.mark.django_db
class TestGetTaxProfile:
    def test_exact_region_match(self, organization, quebec):
        ontario = apply_preset(organization=organization, preset_id="ca-on")
        assert get_tax_profile(organization=organization, country_code="CA", region_code="on") == ontario

    def test_falls_back_to_default(self, organization, quebec):
        apply_preset(organization=organization, preset_id="ca-on")
        assert get_tax_profile(organization=organization, country_code="CA", region_code="BC") == quebec
        assert get_tax_profile(organization=organization) == quebec

    def test_newest_when_no_default(self, organization):
        apply_preset(organization=organization, preset_id="gb-vat")
        newest = apply_preset(organization=organization, preset_id="fr-vat")
        assert get_tax_profile(organization=organization, country_code="DE") == newest

    def test_none_configured(self, organization):
        assert get_tax_profile(organization=organization, country_code="CA") is None


@pytest.mark.django_db
class TestCalculateTax:
    def test_default_profile_rules(self, organization, customer, quebec):
        organization.refresh_from_db()
        lines = calculate_tax(organization=organization, customer=customer, subtotal=Decimal("200.00"))

        assert [(line.name, line.amount) for line in lines] == [
            ("GST", Decimal("10")),
            ("QST", Decimal("19.95")),
        ]
        assert lines[0].tax_rule_id is not None
        assert lines[1].as_json()["amount"] == "19.95"

    def test_inactive_rules_are_ignored(self, organization, customer, quebec):
        quebec.rules.filter(name="QST").update(is_active=False)
        lines = calculate_tax(organization=organization, customer=customer, subtotal=100, tax_profile=quebec)
        assert [line.name for line in lines] == ["GST"]

    def test_exempt_customer(self, organization, quebec):
        exempt = Customer.objects.create(organization=organization, name="Charity", tax_exempt=True)
        assert calculate_tax(organization=organization, customer=exempt, subtotal=100, tax_profile=quebec) == []

    def test_overrides(self, organization, customer, quebec):
        lines = calculate_tax(
            organization=organization,
            customer=customer,
            subtotal=Decimal("200"),
            overrides=[{"name": "City", "rate": "2"}],
        )
        assert len(lines) == 1
        assert lines[0].name == "City"
        assert lines[0].amount == Decimal("4")
        assert lines[0].tax_rule_id is None

    def test_no_profile(self, organization, customer):
        assert calculate_tax(organization=organization, customer=customer, subtotal=100) == []

    def test_foreign_profile_is_ignored(self, organization, other_organization, customer):
        foreign = apply_preset(organization=other_organization, preset_id="gb-vat")
        assert calculate_tax(organization=organization, customer=customer, subtotal=100, tax_profile=foreign) == []
        assert TaxProfile.objects.filter(organization=organization).count() == 0
