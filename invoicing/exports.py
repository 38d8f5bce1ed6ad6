import csv
from datetime import date, datetime
from io import BytesIO, StringIO
from zipfile import ZIP_DEFLATED, ZipFile

from django.utils import timezone
from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from .models import Customer, Invoice, Payment, Product
from .services.billing import money
from .services.reports import report_table


EXPORT_KINDS = ("invoices", "customers", "products", "payments")
EXPORT_FORMATS = ("csv", "xlsx")


def _fmt_date(val):
    if not val:
        return ""
    if isinstance(val, datetime):
        if timezone.is_aware(val):
            val = timezone.localtime(val)
        return val.strftime("%Y-%m-%d")
    if isinstance(val, date):
        return val.strftime("%Y-%m-%d")
    return str(val)


def _auto_width(ws, max_cols=40):
    for col in range(1, min(ws.max_column, max_cols) + 1):
        letter = get_column_letter(col)
        ws.column_dimensions[letter].width = 18


def _wb_to_bytes(wb: Workbook) -> bytes:
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


# =========================
# ROWS
# =========================

def invoice_rows(organization):
    headers = [
        "Invoice No",
        "Issue Date",
        "Due Date",
        "Customer",
        "Customer Email",
        "Status",
        "Currency",
        "Subtotal",
        "Tax",
        "Custom Tax",
        "Total",
        "Paid",
        "Balance",
        "Notes",
    ]

    qs = (
        Invoice.objects.filter(organization=organization)
        .select_related("customer")
        .prefetch_related("items", "taxes", "payments")
        .order_by("invoice_no")
    )

    rows = []
    for inv in qs:
        totals = inv.get_totals()
        paid = sum((p.amount for p in inv.payments.all() if p.stripe_status == "succeeded"), money(0))
        rows.append([
            inv.invoice_no,
            _fmt_date(inv.issue_date),
            _fmt_date(inv.due_date),
            inv.customer.name,
            inv.customer.email or "",
            inv.status,
            inv.currency,
            money(totals.subtotal),
            money(totals.tax),
            money(totals.custom_tax),
            money(totals.total),
            money(paid),
            money(totals.total - paid),
            inv.notes or "",
        ])
    return headers, rows


def customer_rows(organization):
    headers = [
        "Name",
        "Email",
        "Phone",
        "Address",
        "City",
        "State",
        "Postal Code",
        "Country",
        "Tax Exempt",
        "Tax ID",
        "Created",
    ]

    rows = []
    for c in Customer.objects.filter(organization=organization).order_by("name", "id"):
        address = ", ".join(p for p in (c.address_line1, c.address_line2) if p)
        rows.append([
            c.name,
            c.email or "",
            c.phone or "",
            address,
            c.city or "",
            c.state or "",
            c.postal_code or "",
            c.country or "",
            "YES" if c.tax_exempt else "NO",
            c.tax_id or "",
            _fmt_date(c.created_at),
        ])
    return headers, rows


def product_rows(organization):
    headers = ["Name", "Description", "Type", "Price", "Tax Rate %", "Active"]

    rows = []
    for p in Product.objects.filter(organization=organization).order_by("name", "id"):
        rows.append([
            p.name,
            p.description or "",
            p.product_type,
            p.price,
            p.tax_rate,
            "YES" if p.is_active else "NO",
        ])
    return headers, rows


def payment_rows(organization):
    headers = [
        "Date",
        "Invoice No",
        "Customer",
        "Amount",
        "Method",
        "Status",
        "Stripe Payment Intent",
        "Retry Count",
        "Retry Status",
        "Notes",
    ]

    qs = (
        Payment.objects.filter(invoice__organization=organization)
        .select_related("invoice", "invoice__customer")
        .order_by("date", "id")
    )

    rows = []
    for p in qs:
        rows.append([
            _fmt_date(p.date),
            p.invoice.invoice_no,
            p.invoice.customer.name,
            p.amount,
            p.method,
            p.stripe_status,
            p.stripe_payment_intent_id or "",
            p.retry_count,
            p.retry_status or "",
            p.notes or "",
        ])
    return headers, rows


ROW_BUILDERS = {
    "invoices": (invoice_rows, "Invoices"),
    "customers": (customer_rows, "Customers"),
    "products": (product_rows, "Products"),
    "payments": (payment_rows, "Payments"),
}


# =========================
# FORMATS
# =========================

def _csv_bytes(headers, rows) -> bytes:
    out = StringIO()
    writer = csv.writer(out)
    writer.writerow(headers)
    writer.writerows(rows)
    return out.getvalue().encode("utf-8")


def _xlsx_bytes(title, headers, rows) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title
    ws.append(headers)
    for row in rows:
        ws.append(row)

    _auto_width(ws)
    return _wb_to_bytes(wb)


def generate_csv(organization, kind: str) -> bytes:
    builder, _title = ROW_BUILDERS[kind]
    return _csv_bytes(*builder(organization))


def generate_xlsx(organization, kind: str) -> bytes:
    builder, title = ROW_BUILDERS[kind]
    return _xlsx_bytes(title, *builder(organization))


def generate_export(organization, kind: str, fmt: str) -> bytes:
    if kind not in ROW_BUILDERS:
        raise ValueError(f"Unknown export: {kind}")
    if fmt == "csv":
        return generate_csv(organization, kind)
    if fmt == "xlsx":
        return generate_xlsx(organization, kind)
    raise ValueError(f"Unknown format: {fmt}")


def generate_report_export(report: dict, fmt: str) -> bytes:
    headers, rows = report_table(report)
    if fmt == "csv":
        return _csv_bytes(headers, rows)
    if fmt == "xlsx":
        return _xlsx_bytes(report["report_type"].title(), headers, rows)
    raise ValueError(f"Unknown format: {fmt}")


# =========================
# FULL ZIP
# =========================

def build_export_pack_zip(organization) -> bytes:
    files = {
        f"{title}.xlsx": generate_xlsx(organization, kind)
        for kind, (_builder, title) in ROW_BUILDERS.items()
    }

    bio = BytesIO()
    with ZipFile(bio, "w", compression=ZIP_DEFLATED) as zf:
        for filename, content in files.items():
            zf.writestr(filename, content)
    return bio.getvalue()
