"""Repair pass for captures whose ledger writes did not all land.

A capture writes a write-ahead ``CaptureRecord`` first and then derives
the order, payout and product counters from it, one record at a time.
If the process dies or the store fails in between, the record stays
``completed=False``. ``CaptureReconciler`` replays those records and
creates missing payouts for completed orders. It never calls the gateway,
so it can never capture twice.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from .domain import LedgerPort, OrderLifecycleService, Payout
from .errors import PaymentError

logger = logging.getLogger("payments.reconciliation")


@dataclass
class ReconcileReport:
    captures_repaired: int = 0
    payouts_created: int = 0
    errors: List[str] = field(default_factory=list)


class CaptureReconciler:
    def __init__(self, service: OrderLifecycleService, ledger: LedgerPort):
        self.service = service
        self.ledger = ledger

    def run(self) -> ReconcileReport:
        """Replay incomplete captures, then backfill missing payouts.

        A failure on one record is logged and reported; the pass moves on
        to the next record.
        """
        report = ReconcileReport()

        for record in self.ledger.incomplete_captures():
            try:
                self.service.apply_capture(record)
                report.captures_repaired += 1
            except PaymentError as e:
                logger.error(
                    "capture replay failed", extra={"remote_order_id": record.remote_order_id, "error": e.message}
                )
                report.errors.append(f"{record.remote_order_id}: {e.message}")

        for order in self.ledger.completed_orders_without_payout():
            try:
                self.ledger.ensure_payout(Payout.for_order(order))
                report.payouts_created += 1
            except PaymentError as e:
                logger.error("payout backfill failed", extra={"order_id": order.id, "error": e.message})
                report.errors.append(f"{order.id}: {e.message}")

        logger.info(
            "reconciliation finished",
            extra={
                "captures_repaired": report.captures_repaired,
                "payouts_created": report.payouts_created,
                "errors": len(report.errors),
            },
        )
        return report
