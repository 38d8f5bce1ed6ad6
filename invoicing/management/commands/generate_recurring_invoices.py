from django.core.management.base import BaseCommand

from invoicing.services.recurring import run_recurring_generation


class Command(BaseCommand):
    help = "Generate invoices from recurring templates that are due today."

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true")
        parser.add_argument("--force-all", action="store_true", help="Ignore template end dates.")

    def handle(self, *args, **opts):
        dry = opts["dry_run"]
        summary = run_recurring_generation(dry_run=dry, force_all=opts["force_all"])

        for row in summary.details:
            line = f"template={row['template_id']} ({row['template_name']}) -> {row['status']}"
            if row.get("invoice_no"):
                line += f" invoice #{row['invoice_no']}"
            if row.get("reason") or row.get("error"):
                line += f": {row.get('reason') or row.get('error')}"
            self.stdout.write(line)

        msg = (
            f"Processed {summary.processed}: generated={summary.generated} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        if dry:
            msg = f"[dry-run] {msg}"
        self.stdout.write(self.style.SUCCESS(msg) if not summary.failed else self.style.WARNING(msg))
