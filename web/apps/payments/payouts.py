"""Seller payout dispatching and batch reconciliation.

Payouts are created in ``pending`` when an order is captured. An operator
(or a scheduled job) dispatches a seller's pending earnings as a single-item
PayPal batch; the payouts included in that batch are listed explicitly in a
manifest and move to ``processing``. ``reconcile_batch`` later settles them
to ``completed`` or ``failed`` from the remote batch status.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from .domain import GatewayPort, LedgerPort, Payout, PayoutRequest, PayoutStatus, to_decimal, to_money
from .errors import PayoutFailedError, ValidationError

logger = logging.getLogger("payments.payouts")

MIN_PAYOUT = Decimal("0.10")
BATCH_SUCCESS = "SUCCESS"
BATCH_FAILED = frozenset({"DENIED", "CANCELED", "FAILED"})
DEFAULT_EMAIL_SUBJECT = "Your seller earnings"
DEFAULT_EMAIL_MESSAGE = "You have received earnings from your product sales."


@dataclass(frozen=True)
class PayoutDispatch:
    """Result of a successful dispatch."""

    batch_id: str
    amount: Decimal
    currency: str
    payout_ids: Tuple[str, ...]


def _oldest_first(payouts: Iterable[Payout]) -> List[Payout]:
    floor = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(payouts, key=lambda p: (p.created_at or floor, p.id or ""))


class PayoutDispatcher:
    """Dispatches pending seller earnings through the gateway's Payouts API.

    Failed payouts are never retried automatically; they stay ``failed``
    until an operator dispatches again for the same seller.
    """

    def __init__(
        self,
        gateway: GatewayPort,
        ledger: LedgerPort,
        email_subject: str = DEFAULT_EMAIL_SUBJECT,
        email_message: str = DEFAULT_EMAIL_MESSAGE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.email_subject = email_subject
        self.email_message = email_message
        self.now = clock or (lambda: datetime.now(timezone.utc))

    def dispatch_payout(
        self,
        seller_id: str,
        amount,
        email: str,
        currency: str = "USD",
        payout_ids: Optional[Iterable[str]] = None,
    ) -> PayoutDispatch:
        """Send ``amount`` to the seller and mark the covered payouts.

        The payouts covered by the batch are resolved into an explicit
        manifest before the gateway is called. When ``payout_ids`` is given
        those payouts are the manifest and must add up to ``amount``
        (``amount`` may be None to use their sum). Otherwise the seller's
        pending payouts are taken oldest first while they fit in ``amount``.

        Args:
            seller_id: Seller whose earnings are paid out.
            amount: Amount to send; at least 0.10.
            email: PayPal receiver email of the seller.
            currency: ISO currency code of the payout.
            payout_ids: Optional explicit manifest of pending payout ids.

        Returns:
            PayoutDispatch with the remote batch id and the manifest.

        Raises:
            ValidationError: On missing fields, an amount under the minimum,
                or a manifest that does not match the seller or amount.
            ConfigurationError: If gateway credentials are missing.
            PayoutFailedError: If the gateway rejected the batch. The oldest
                payout of the manifest (or of the seller, if the manifest is
                empty) is marked ``failed``.
        """
        if not seller_id or not str(seller_id).strip():
            raise ValidationError("missing required field: seller_id")
        if not email or not str(email).strip():
            raise ValidationError("missing required field: email")
        currency = (currency or "USD").upper()
        if amount is not None:
            amount = self._checked_amount(amount)

        manifest = self._manifest(seller_id, amount, currency, payout_ids)
        if amount is None:
            amount = self._checked_amount(sum((p.amount for p in manifest), Decimal("0.00")))

        request = PayoutRequest(
            sender_batch_id=self._sender_batch_id(seller_id, manifest),
            receiver=str(email).strip(),
            amount=amount,
            currency=currency,
            email_subject=self.email_subject,
            email_message=self.email_message,
            note="Seller earnings",
        )
        token = self.gateway.authenticate()
        result = self.gateway.create_remote_payout(request, token)

        if not result.ok:
            message = result.error_message or "PayPal payout failed"
            failed = self._fail_oldest(seller_id, manifest, message)
            logger.warning(
                "payout rejected",
                extra={"seller_id": seller_id, "payout_id": failed, "error": message, "gateway": result.payload},
            )
            raise PayoutFailedError(message, result.payload)

        ids = [p.id for p in manifest]
        moved = self.ledger.transition_payouts(
            ids,
            {PayoutStatus.PENDING},
            PayoutStatus.PROCESSING,
            paypal_payout_id=result.batch_id,
            updated_at=self.now(),
        )
        if moved != len(ids):
            logger.warning(
                "manifest changed during dispatch",
                extra={"batch_id": result.batch_id, "expected": len(ids), "moved": moved},
            )
        logger.info(
            "payout dispatched",
            extra={"seller_id": seller_id, "batch_id": result.batch_id, "amount": str(amount), "payouts": len(ids)},
        )
        return PayoutDispatch(batch_id=result.batch_id, amount=amount, currency=currency, payout_ids=tuple(ids))

    def reconcile_batch(self, batch_id: str) -> int:
        """Settle the ``processing`` payouts of ``batch_id`` from the remote status.

        Returns:
            Number of payouts that changed state.
        """
        if not batch_id:
            raise ValidationError("missing required field: batch_id")
        token = self.gateway.authenticate()
        remote = self.gateway.get_remote_payout(batch_id, token)
        ids = [
            p.id
            for p in self.ledger.find_payouts(paypal_payout_id=batch_id, status=PayoutStatus.PROCESSING)
        ]
        now = self.now()
        if remote.status == BATCH_SUCCESS:
            moved = self.ledger.transition_payouts(
                ids, {PayoutStatus.PROCESSING}, PayoutStatus.COMPLETED, completed_at=now, updated_at=now
            )
        elif remote.status in BATCH_FAILED:
            moved = self.ledger.transition_payouts(
                ids,
                {PayoutStatus.PROCESSING},
                PayoutStatus.FAILED,
                error_message=f"payout batch {remote.status.lower()}",
                updated_at=now,
            )
        else:
            moved = 0
        logger.info("payout batch reconciled", extra={"batch_id": batch_id, "batch_status": remote.status, "moved": moved})
        return moved

    def seller_payouts(self, seller_id: str) -> List[Payout]:
        return list(reversed(_oldest_first(self.ledger.find_payouts(seller_id=seller_id))))

    # -- internals --

    @staticmethod
    def _checked_amount(amount) -> Decimal:
        if to_decimal(amount) < MIN_PAYOUT:
            raise ValidationError(f"minimum payout amount is {MIN_PAYOUT}")
        return to_money(amount)

    def _manifest(self, seller_id, amount, currency, payout_ids) -> List[Payout]:
        pending = _oldest_first(self.ledger.find_payouts(seller_id=seller_id, status=PayoutStatus.PENDING))

        if payout_ids is not None:
            wanted = list(dict.fromkeys(str(pid) for pid in payout_ids))
            if not wanted:
                raise ValidationError("payout manifest is empty")
            by_id = {p.id: p for p in pending}
            missing = [pid for pid in wanted if pid not in by_id]
            if missing:
                raise ValidationError(f"payouts not pending for seller: {', '.join(missing)}")
            manifest = _oldest_first(by_id[pid] for pid in wanted)
            if any(p.currency != currency for p in manifest):
                raise ValidationError("payout currency does not match manifest")
            total = sum((p.amount for p in manifest), Decimal("0.00"))
            if amount is not None and to_money(amount) != total:
                raise ValidationError(f"amount {amount} does not match manifest total {total}")
            return manifest

        if amount is None:
            raise ValidationError("missing required field: amount")
        remaining = to_money(amount)
        manifest = []
        for payout in pending:
            if payout.currency == currency and payout.amount <= remaining:
                manifest.append(payout)
                remaining -= payout.amount
        return manifest

    def _fail_oldest(self, seller_id: str, manifest: List[Payout], message: str) -> Optional[str]:
        candidates = manifest or _oldest_first(
            self.ledger.find_payouts(seller_id=seller_id, status=PayoutStatus.PENDING)
        )
        if not candidates:
            return None
        oldest = candidates[0]
        self.ledger.transition_payouts(
            [oldest.id], {PayoutStatus.PENDING}, PayoutStatus.FAILED, error_message=message, updated_at=self.now()
        )
        return oldest.id

    @staticmethod
    def _sender_batch_id(seller_id: str, manifest: List[Payout]) -> str:
        if not manifest:
            return f"batch-{seller_id}-{uuid.uuid4().hex[:16]}"
        digest = hashlib.sha256(",".join(sorted(p.id for p in manifest)).encode("utf-8")).hexdigest()
        return f"batch-{seller_id}-{digest[:16]}"
