from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction

from .billing import BillingError, _d
from .tax import calculate_tax, save_invoice_taxes


logger = logging.getLogger(__name__)


def normalize_items(raw_items, *, organization) -> List[dict]:
    """
    Validates posted line items and resolves their products inside the
    organization.
    """
    from invoicing.models import Product

    if not isinstance(raw_items, list) or not raw_items:
        raise BillingError("At least one item is required")

    items = []
    for idx, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise BillingError(f"Item {idx} is invalid")

        product_id = raw.get("product_id")
        product = None
        if product_id:
            product = Product.objects.filter(organization=organization, pk=product_id).first()
            if product is None:
                raise BillingError(f"Item {idx}: product not found")

        try:
            quantity = int(_d(raw.get("quantity", 1)))
            price = _d(raw.get("price", product.price if product else 0))
            tax_rate = _d(raw.get("tax_rate", product.tax_rate if product else 0))
        except (ArithmeticError, ValueError):
            raise BillingError(f"Item {idx}: quantity, price and tax rate must be numbers")

        if quantity < 1:
            raise BillingError(f"Item {idx}: quantity must be at least 1")
        if price < 0:
            raise BillingError(f"Item {idx}: price cannot be negative")
        if not (0 <= tax_rate <= 100):
            raise BillingError(f"Item {idx}: tax rate must be between 0 and 100")

        description = (raw.get("description") or (product.name if product else "")).strip()
        items.append(
            {
                "product": product,
                "description": description,
                "quantity": quantity,
                "price": price,
                "tax_rate": tax_rate,
            }
        )
    return items


def replace_items(invoice, items: List[dict]) -> None:
    from invoicing.models import InvoiceItem

    InvoiceItem.objects.filter(invoice=invoice).delete()
    InvoiceItem.objects.bulk_create([InvoiceItem(invoice=invoice, **item) for item in items])


def recompute_taxes(invoice, overrides=None) -> None:
    subtotal = sum((_d(i.price) * i.quantity for i in invoice.items.all()), _d(0))
    lines = calculate_tax(
        organization=invoice.organization,
        customer=invoice.customer,
        subtotal=subtotal,
        tax_profile=invoice.tax_profile,
        overrides=overrides,
    )
    save_invoice_taxes(invoice, lines)


def create_invoice(
    *,
    organization,
    customer,
    items: List[dict],
    due_date: date,
    issue_date: Optional[date] = None,
    status: str = "draft",
    notes: str = "",
    currency: str = "",
    recurring_template=None,
    template=None,
    tax_profile=None,
    tax_overrides=None,
    with_share_token: bool = False,
):
    """
    Numbers and stores an invoice with its items and tax lines in one transaction.
    """
    from invoicing.models import Invoice, InvoiceCounter, InvoiceTemplate, generate_share_token

    if customer.organization_id != organization.id:
        raise BillingError("Customer does not belong to this organization")
    if not items:
        raise BillingError("At least one item is required")

    if template is None:
        template = InvoiceTemplate.objects.filter(organization=organization, is_default=True).first()

    with transaction.atomic():
        invoice = Invoice(
            organization=organization,
            customer=customer,
            invoice_no=InvoiceCounter.next_number(organization),
            due_date=due_date,
            status=status,
            notes=notes or "",
            currency=(currency or organization.default_currency or "USD").upper(),
            recurring_template=recurring_template,
            template=template,
            tax_profile=tax_profile,
            share_token=generate_share_token() if with_share_token else None,
        )
        if issue_date is not None:
            invoice.issue_date = issue_date

        try:
            invoice.full_clean(exclude=["invoice_no"])
        except ValidationError as exc:
            raise BillingError("; ".join(exc.messages))
        invoice.save()

        replace_items(invoice, items)
        recompute_taxes(invoice, overrides=tax_overrides)

    logger.info("Created invoice #%s (%s) for organization %s", invoice.invoice_no, invoice.pk, organization.pk)
    return invoice
