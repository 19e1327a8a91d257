"""Read-only earnings and revenue reporting over the ledger.

Reports are best-effort: a ledger failure is logged and reported through
the ``error`` field with zero-valued figures, never raised to the caller.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Optional

from .domain import LedgerPort, OrderStatus, PayoutStatus
from .errors import StoreError

logger = logging.getLogger("payments.earnings")

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class SellerEarnings:
    total_earnings: Decimal = ZERO
    completed_orders: int = 0
    pending_payouts: int = 0
    completed_payouts: int = 0
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OrderStatistics:
    total_orders: int = 0
    completed_orders: int = 0
    total_revenue: Decimal = ZERO
    platform_fees: Decimal = ZERO
    seller_payouts: Decimal = ZERO
    average_order_value: Decimal = ZERO
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


class EarningsAggregator:
    """Derives seller and platform figures from orders and payouts.

    Only ``completed`` orders count as earnings; pending, refunded and
    failed orders are ignored.
    """

    def __init__(self, ledger: LedgerPort):
        self.ledger = ledger

    def compute_seller_earnings(self, seller_id: str) -> SellerEarnings:
        """Summarize what ``seller_id`` has earned and been paid.

        Returns:
            SellerEarnings; on ledger failure all figures are zero and
            ``error`` holds the failure code.
        """
        try:
            completed = [
                o
                for o in self.ledger.find_orders(creator_id=seller_id)
                if o.status == OrderStatus.COMPLETED
            ]
            payouts = self.ledger.find_payouts(seller_id=seller_id)
        except StoreError as e:
            logger.error("seller earnings unavailable", extra={"seller_id": seller_id, "error": e.message})
            return SellerEarnings(error=e.code)

        return SellerEarnings(
            total_earnings=sum((o.seller_amount for o in completed), ZERO),
            completed_orders=len(completed),
            pending_payouts=sum(1 for p in payouts if p.status == PayoutStatus.PENDING),
            completed_payouts=sum(1 for p in payouts if p.status == PayoutStatus.COMPLETED),
        )

    def order_statistics(self) -> OrderStatistics:
        """Platform-wide totals for the admin dashboard."""
        try:
            orders = self.ledger.find_orders()
            paid_out = self.ledger.find_payouts(status=PayoutStatus.COMPLETED)
        except StoreError as e:
            logger.error("order statistics unavailable", extra={"error": e.message})
            return OrderStatistics(error=e.code)

        completed = [o for o in orders if o.status == OrderStatus.COMPLETED]
        revenue = sum((o.total_amount for o in completed), ZERO)
        average = (revenue / len(completed)).quantize(Decimal("0.01")) if completed else ZERO
        return OrderStatistics(
            total_orders=len(orders),
            completed_orders=len(completed),
            total_revenue=revenue,
            platform_fees=sum((o.platform_fee for o in completed), ZERO),
            seller_payouts=sum((p.amount for p in paid_out), ZERO),
            average_order_value=average,
        )
