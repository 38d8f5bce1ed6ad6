from django.core.management.base import BaseCommand

from invoicing.services.reminders import run_reminders


class Command(BaseCommand):
    help = "Email payment reminders for upcoming, due and overdue invoices."

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true")

    def handle(self, *args, **opts):
        dry = opts["dry_run"]
        summary = run_reminders(dry_run=dry)

        for row in summary.details:
            line = f"invoice #{row['invoice_no']} {row['reminder_type']} -> {row['status']}"
            if row.get("reason"):
                line += f": {row['reason']}"
            self.stdout.write(line)

        msg = (
            f"Processed {summary.processed}: sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        if dry:
            msg = f"[dry-run] {msg}"
        self.stdout.write(self.style.SUCCESS(msg))
