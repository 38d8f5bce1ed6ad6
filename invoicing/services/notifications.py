from __future__ import annotations

import logging
from email.utils import formataddr

from django.conf import settings
from django.core.mail import EmailMessage
from django.db.models import F
from django.utils import timezone

from .billing import money


logger = logging.getLogger(__name__)


REMINDER_SUBJECTS = {
    "upcoming": "Reminder: Invoice #{no} is due in {days} days",
    "due": "Invoice #{no} is due today",
    "overdue": "Overdue: Invoice #{no} is {days} days past due",
    "final": "Final notice: Invoice #{no} is {days} days past due",
}


def public_invoice_url(invoice) -> str:
    base = (getattr(settings, "APP_BASE_URL", "") or "").rstrip("/")
    return f"{base}/invoice/{invoice.share_token}/"


def _from_email(organization) -> str:
    default = getattr(settings, "DEFAULT_FROM_EMAIL", "")
    if organization.company_email:
        return formataddr((organization.name, organization.company_email))
    return default


def _deliver(*, invoice, email_type, subject, body) -> bool:
    """
    Sends one email and records the attempt. Never raises on delivery
    failure; the caller decides what a failed send means.
    """
    from invoicing.models import EmailLog

    recipient = invoice.customer.email
    if not recipient:
        logger.info("Skipping %s email for invoice %s: customer has no email", email_type, invoice.pk)
        return False

    message = EmailMessage(
        subject=subject,
        body=body,
        from_email=_from_email(invoice.organization),
        to=[recipient],
    )
    try:
        message.send(fail_silently=False)
    except Exception as exc:
        logger.exception("Failed to send %s email for invoice %s", email_type, invoice.pk)
        EmailLog.objects.create(
            invoice=invoice,
            email_type=email_type,
            recipient=recipient,
            subject=subject,
            status="failed",
            error=str(exc),
        )
        return False

    EmailLog.objects.create(
        invoice=invoice,
        email_type=email_type,
        recipient=recipient,
        subject=subject,
        status="sent",
    )
    return True


def send_invoice_email(invoice) -> bool:
    from invoicing.models import Invoice

    invoice.ensure_share_token()
    organization = invoice.organization
    totals = invoice.get_totals()

    subject = f"Invoice #{invoice.invoice_no} from {organization.name}"
    body = "\n".join(
        [
            f"Hello {invoice.customer.name},",
            "",
            f"{organization.name} has sent you invoice #{invoice.invoice_no}.",
            f"Amount due: {money(totals.total)} {invoice.currency}",
            f"Due date: {invoice.due_date.isoformat()}",
            "",
            f"View and pay online: {public_invoice_url(invoice)}",
            "",
            organization.footer_text or "",
        ]
    ).rstrip() + "\n"

    sent = _deliver(invoice=invoice, email_type="invoice", subject=subject, body=body)
    if sent:
        Invoice.objects.filter(pk=invoice.pk).update(
            email_sent_count=F("email_sent_count") + 1,
            last_email_sent_at=timezone.now(),
        )
        invoice.refresh_from_db(fields=["email_sent_count", "last_email_sent_at"])
    return sent


def send_payment_confirmation(payment) -> bool:
    invoice = payment.invoice
    organization = invoice.organization

    subject = f"Payment received for invoice #{invoice.invoice_no}"
    body = "\n".join(
        [
            f"Hello {invoice.customer.name},",
            "",
            f"We received your payment of {money(payment.amount)} {invoice.currency} "
            f"for invoice #{invoice.invoice_no}.",
            f"Remaining balance: {invoice.balance_due()} {invoice.currency}",
            "",
            f"Thank you,\n{organization.name}",
        ]
    ) + "\n"

    return _deliver(invoice=invoice, email_type="payment_confirmation", subject=subject, body=body)


def send_payment_reminder(invoice, reminder_type: str, *, today=None) -> bool:
    from invoicing.models import Invoice

    today = today or timezone.localdate()
    invoice.ensure_share_token()

    days = abs((invoice.due_date - today).days)
    template = REMINDER_SUBJECTS.get(reminder_type, REMINDER_SUBJECTS["due"])
    subject = template.format(no=invoice.invoice_no, days=days)
    body = "\n".join(
        [
            f"Hello {invoice.customer.name},",
            "",
            f"This is a reminder about invoice #{invoice.invoice_no} from {invoice.organization.name}.",
            f"Balance due: {invoice.balance_due()} {invoice.currency}",
            f"Due date: {invoice.due_date.isoformat()}",
            "",
            f"View and pay online: {public_invoice_url(invoice)}",
        ]
    ) + "\n"

    sent = _deliver(invoice=invoice, email_type="reminder", subject=subject, body=body)
    if sent:
        now = timezone.now()
        Invoice.objects.filter(pk=invoice.pk).update(last_reminder_sent_at=now)
        invoice.last_reminder_sent_at = now
    return sent
