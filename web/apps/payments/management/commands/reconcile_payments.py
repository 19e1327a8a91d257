"""Repair captures and payouts left half-written by a failed request."""

from django.core.management.base import BaseCommand, CommandParser

from apps.payments import providers


class Command(BaseCommand):
    help = "Replay incomplete captures, backfill missing payouts and optionally settle a payout batch."

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--batch",
            action="append",
            default=[],
            help="PayPal payout batch id to settle from its remote status (repeatable).",
        )

    def handle(self, *args, **opts) -> None:
        report = providers.get_reconciler().run()
        self.stdout.write(
            self.style.NOTICE(
                f"[reconcile] captures_repaired={report.captures_repaired} payouts_created={report.payouts_created}"
            )
        )
        for err in report.errors:
            self.stderr.write(self.style.ERROR(f"[reconcile] {err}"))

        dispatcher = providers.get_payout_dispatcher() if opts["batch"] else None
        for batch_id in opts["batch"]:
            moved = dispatcher.reconcile_batch(batch_id)
            self.stdout.write(self.style.NOTICE(f"[reconcile] batch={batch_id} updated={moved}"))

        if report.errors:
            self.stdout.write(self.style.WARNING("[reconcile] finished with errors"))
        else:
            self.stdout.write(self.style.SUCCESS("[reconcile] done"))
