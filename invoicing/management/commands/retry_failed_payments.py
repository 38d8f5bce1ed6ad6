from django.core.management.base import BaseCommand

from invoicing.services.retries import run_payment_retries


class Command(BaseCommand):
    help = "Retry failed Stripe payments whose next retry time has come."

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true")

    def handle(self, *args, **opts):
        dry = opts["dry_run"]
        summary = run_payment_retries(dry_run=dry)

        for row in summary.details:
            line = f"payment={row['payment_id']} invoice={row['invoice_id']} -> {row['status']}"
            if row.get("reason") or row.get("error"):
                line += f": {row.get('reason') or row.get('error')}"
            self.stdout.write(line)

        msg = (
            f"Processed {summary.processed}: succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        if dry:
            msg = f"[dry-run] {msg}"
        self.stdout.write(self.style.SUCCESS(msg))
