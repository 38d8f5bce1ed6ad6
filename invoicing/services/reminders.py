from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from django.conf import settings
from django.utils import timezone

from . import notifications
from .billing import reminder_type


logger = logging.getLogger(__name__)


@dataclass
class ReminderSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    details: List[dict] = field(default_factory=list)

    def as_json(self):
        return asdict(self)


def _schedule():
    return {
        "days_before": int(getattr(settings, "REMINDER_DAYS_BEFORE_DUE", 3)),
        "overdue_days": tuple(getattr(settings, "REMINDER_OVERDUE_DAYS", (7, 14))),
        "final_days": int(getattr(settings, "REMINDER_FINAL_NOTICE_DAYS", 30)),
    }


def reminder_for(invoice, *, today: date) -> Optional[str]:
    return reminder_type(due_date=invoice.due_date, today=today, **_schedule())


def recently_reminded(invoice, kind: str, *, today: date) -> bool:
    """
    Upcoming reminders wait two days after the last one, final notices a
    week; every other kind goes out at most once per day.
    """
    last = invoice.last_reminder_sent_at
    if last is None:
        return False
    last_day = timezone.localtime(last).date() if timezone.is_aware(last) else last.date()

    if kind == "upcoming":
        return last_day > today - timedelta(days=2)
    if kind == "final":
        return last_day > today - timedelta(days=7)
    return last_day >= today


def send_reminder(invoice, kind: str, *, today: Optional[date] = None) -> bool:
    today = today or timezone.localdate()
    sent = notifications.send_payment_reminder(invoice, kind, today=today)
    if sent and kind in ("overdue", "final") and invoice.status == "sent":
        invoice.status = "overdue"
        invoice.save(update_fields=["status", "updated_at"])
    return sent


def candidate_invoices():
    from invoicing.models import Invoice

    return (
        Invoice.objects.select_related("customer", "organization")
        .filter(status__in=Invoice.OPEN_STATUSES)
        .exclude(customer__email="")
        .order_by("due_date", "id")
    )


def run_reminders(*, today: Optional[date] = None, dry_run: bool = False) -> ReminderSummary:
    today = today or timezone.localdate()
    summary = ReminderSummary()

    for invoice in candidate_invoices():
        kind = reminder_for(invoice, today=today)
        if kind is None:
            continue
        if kind == "upcoming" and invoice.status == "overdue":
            continue

        summary.processed += 1
        row = {"invoice_id": invoice.pk, "invoice_no": invoice.invoice_no, "reminder_type": kind}

        if recently_reminded(invoice, kind, today=today):
            summary.skipped += 1
            summary.details.append({**row, "status": "skipped", "reason": "Reminder already sent"})
            continue

        if invoice.balance_due() <= 0:
            summary.skipped += 1
            summary.details.append({**row, "status": "skipped", "reason": "Nothing left to pay"})
            continue

        if dry_run:
            summary.skipped += 1
            summary.details.append({**row, "status": "dry_run"})
            continue

        try:
            sent = send_reminder(invoice, kind, today=today)
        except Exception as exc:
            logger.exception("Reminder crashed for invoice %s", invoice.pk)
            summary.failed += 1
            summary.details.append({**row, "status": "failed", "error": str(exc)})
            continue

        if sent:
            summary.sent += 1
            summary.details.append({**row, "status": "sent"})
        else:
            summary.failed += 1
            summary.details.append({**row, "status": "failed"})

    logger.info(
        "Reminder run: processed=%s sent=%s failed=%s skipped=%s",
        summary.processed,
        summary.sent,
        summary.failed,
        summary.skipped,
    )
    return summary
