"""Domain models, ports and the order lifecycle service for payments.

This module contains the dataclasses used as DTOs for payment orders,
payouts and capture records, protocol definitions (ports) for the external
collaborators (the payment gateway and the ledger store), the revenue split
policy, and the domain service that drives an order through its lifecycle.

No Django or HTTP code lives here: concrete adapters are in
``repository.py`` (Django ORM ledger), ``http_adapters.py`` (PayPal over
httpx) and ``adapters.py`` (in-process stubs for tests and local runs).
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol

from .errors import (
    DuplicateCaptureError,
    InvalidStateError,
    NotFoundError,
    PaymentDeclinedError,
    StoreError,
    ValidationError,
)

logger = logging.getLogger("payments.lifecycle")

CENT = Decimal("0.01")
DEFAULT_FEE_RATE = Decimal("0.30")
CAPTURE_COMPLETED = "COMPLETED"
REMOTE_APPROVED = "APPROVED"


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle states of a payment order."""

    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    """Lifecycle states of a seller payout."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


PRE_COMPLETION = frozenset({OrderStatus.PENDING, OrderStatus.APPROVED})


# ---- Money ----
def to_decimal(value, what: str = "amount") -> Decimal:
    """Parse ``value`` as a finite Decimal without rounding it.

    Floats are converted through ``str`` so ``19.99`` stays ``19.99``.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        number = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"invalid {what}: {value!r}")
    if not number.is_finite():
        raise ValidationError(f"invalid {what}: {value!r}")
    return number


def to_money(value) -> Decimal:
    """Coerce ``value`` to a two-place Decimal using half-up rounding.

    Raises:
        ValidationError: If the value is not a finite number or does not fit
            the decimal context once quantized to cents.
    """
    amount = to_decimal(value)
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"amount out of range: {value!r}")


def to_rate(value) -> Decimal:
    """Parse a platform fee rate, which must lie in ``[0, 1)``."""
    rate = to_decimal(value, "fee rate")
    if rate < 0 or rate >= 1:
        raise ValidationError(f"fee rate out of range: {value}")
    return rate


@dataclass(frozen=True)
class RevenueSplit:
    """Platform/seller split of one captured payment.

    Invariant: ``platform_fee + seller_amount == total_amount``.
    """

    total_amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    fee_rate: Decimal


def split_revenue(total_amount, fee_rate=DEFAULT_FEE_RATE) -> RevenueSplit:
    """Split ``total_amount`` into platform fee and seller share.

    The platform fee is ``round(total * fee_rate, 2)`` and the seller gets
    the remainder, so the two parts always add up to the total exactly.

    Args:
        total_amount: Amount captured from the buyer.
        fee_rate: Platform share in ``[0, 1)``.

    Returns:
        RevenueSplit with all amounts quantized to cents.

    Raises:
        ValidationError: If the amount is not positive or the rate is out
            of range.
    """
    total = to_money(total_amount)
    rate = to_rate(fee_rate)
    if total <= 0:
        raise ValidationError("total amount must be positive")
    platform_fee = (total * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return RevenueSplit(
        total_amount=total,
        platform_fee=platform_fee,
        seller_amount=total - platform_fee,
        fee_rate=rate,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CheckoutSpec:
    """What the buyer wants to purchase, as sent by the checkout page."""

    product_id: str
    product_name: str
    product_price: Decimal
    currency: str
    buyer_email: str


@dataclass(frozen=True)
class CaptureContext:
    """Buyer, seller and product snapshot taken when the checkout started.

    The snapshot is persisted as-is on the order; products are never
    re-read live at capture time.
    """

    product_id: str
    product_name: str
    product_price: Decimal
    currency: str
    buyer_id: str
    buyer_email: str
    creator_id: str
    creator_name: str = ""
    creator_email: str = ""


@dataclass(frozen=True)
class RemoteOrder:
    """Order as known by the payment gateway."""

    id: str
    status: str


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of a gateway capture call.

    Attributes:
        status: Raw gateway status; only ``COMPLETED`` means money moved.
        payload: Full gateway response body, kept for diagnostics.
    """

    status: str
    payload: dict = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == CAPTURE_COMPLETED


@dataclass(frozen=True)
class PayoutRequest:
    """A single-item payout batch to submit to the gateway."""

    sender_batch_id: str
    receiver: str
    amount: Decimal
    currency: str
    email_subject: str = ""
    email_message: str = ""
    note: str = ""


@dataclass(frozen=True)
class PayoutResult:
    """Outcome of a gateway payout call."""

    ok: bool
    batch_id: Optional[str] = None
    error_message: str = ""
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutBatchStatus:
    """Remote status of a payout batch (e.g. PENDING, SUCCESS, DENIED)."""

    batch_id: str
    status: str
    payload: dict = field(default_factory=dict)


@dataclass
class PaymentOrder:
    """One buyer-to-seller purchase.

    ``id`` is assigned by the ledger store on insert. Money fields satisfy
    the ``RevenueSplit`` invariant.
    """

    id: Optional[str]
    remote_order_id: str
    buyer_id: str
    buyer_email: str
    creator_id: str
    creator_name: str
    creator_email: str
    product_id: str
    product_name: str
    product_price: Decimal
    currency: str
    total_amount: Decimal
    platform_fee: Decimal
    seller_amount: Decimal
    fee_rate: Decimal = DEFAULT_FEE_RATE
    status: OrderStatus = OrderStatus.PENDING
    paypal_status: str = ""
    refund_reason: str = ""
    created_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


@dataclass
class Payout:
    """One disbursement of seller earnings, referencing its order by id."""

    id: Optional[str]
    order_id: str
    seller_id: str
    seller_email: str
    amount: Decimal
    currency: str
    status: PayoutStatus = PayoutStatus.PENDING
    paypal_payout_id: str = ""
    error_message: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def for_order(cls, order: PaymentOrder) -> "Payout":
        """Build the pending payout owed to the seller of ``order``."""
        return cls(
            id=None,
            order_id=order.id,
            seller_id=order.creator_id,
            seller_email=order.creator_email,
            amount=order.seller_amount,
            currency=order.currency,
            created_at=order.captured_at,
            updated_at=order.captured_at,
        )


@dataclass
class CaptureRecord:
    """Write-ahead record of a capture the gateway reported as completed.

    It is written before the order, payout and product counters are derived
    from it. Each derivation is idempotent, so a record with
    ``completed=False`` can be replayed safely by the reconciler.
    """

    remote_order_id: str
    context: CaptureContext
    split: RevenueSplit
    paypal_status: str
    captured_at: datetime
    order_id: Optional[str] = None
    payout_id: Optional[str] = None
    counters_applied: bool = False
    completed: bool = False


# ---- Ports (DIP) ----
class GatewayPort(Protocol):
    """Port describing the payment gateway operations used by the domain."""

    def authenticate(self) -> str:
        """Exchange client credentials for a bearer token.

        Raises:
            ConfigurationError: If credentials are missing; raised before
                any network call.
        """
        raise NotImplementedError()

    def create_remote_order(self, spec: CheckoutSpec, token: str) -> RemoteOrder:
        raise NotImplementedError()

    def capture_remote_order(self, remote_order_id: str, token: str) -> CaptureResult:
        raise NotImplementedError()

    def get_remote_order(self, remote_order_id: str, token: str) -> RemoteOrder:
        raise NotImplementedError()

    def create_remote_payout(self, request: PayoutRequest, token: str) -> PayoutResult:
        raise NotImplementedError()

    def get_remote_payout(self, batch_id: str, token: str) -> PayoutBatchStatus:
        raise NotImplementedError()


class LedgerPort(Protocol):
    """Port describing the ledger store.

    Every mutation touches a single record. Status transitions are
    conditional: they only apply when the current status is one of the
    allowed ones, and report whether they did.
    """

    def insert_capture(self, record: CaptureRecord) -> bool:
        """Insert ``record`` unless one exists for its remote order id.

        Returns:
            True when inserted, False when a record already existed.
        """
        raise NotImplementedError()

    def get_capture(self, remote_order_id: str) -> Optional[CaptureRecord]:
        raise NotImplementedError()

    def save_capture_progress(self, record: CaptureRecord) -> None:
        raise NotImplementedError()

    def incomplete_captures(self) -> List[CaptureRecord]:
        raise NotImplementedError()

    def ensure_order(self, order: PaymentOrder) -> PaymentOrder:
        """Insert ``order`` or return the one already stored for its remote id."""
        raise NotImplementedError()

    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        raise NotImplementedError()

    def find_orders(self, **filters) -> List[PaymentOrder]:
        raise NotImplementedError()

    def transition_order(
        self, order_id: str, allowed: Iterable[OrderStatus], to: OrderStatus, **fields
    ) -> bool:
        raise NotImplementedError()

    def ensure_payout(self, payout: Payout) -> Payout:
        """Insert ``payout`` or return the one already stored for its order."""
        raise NotImplementedError()

    def get_payout_for_order(self, order_id: str) -> Optional[Payout]:
        raise NotImplementedError()

    def find_payouts(self, **filters) -> List[Payout]:
        raise NotImplementedError()

    def transition_payouts(
        self, payout_ids: Iterable[str], allowed: Iterable[PayoutStatus], to: PayoutStatus, **fields
    ) -> int:
        raise NotImplementedError()

    def apply_sale_counters(self, record: CaptureRecord) -> bool:
        """Bump product sales/revenue once per capture record.

        Returns:
            True when the counters were bumped by this call.
        """
        raise NotImplementedError()

    def completed_orders_without_payout(self) -> List[PaymentOrder]:
        raise NotImplementedError()


# ---- Validation helpers ----
def _require(value, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"missing required field: {name}")
    return str(value).strip()


def _positive_price(value) -> Decimal:
    if value is None or value == "":
        raise ValidationError("missing required field: product_price")
    price = to_money(value)
    if price <= 0:
        raise ValidationError("product_price must be positive")
    return price


# ---- Domain service ----
class OrderLifecycleService:
    """Domain service that creates, captures and transitions payment orders.

    The service never writes arbitrary fields: every mutation goes through
    one of the lifecycle transitions below. It does not hold mutable state
    between calls, so one instance may serve concurrent requests.
    """

    def __init__(
        self,
        gateway: GatewayPort,
        ledger: LedgerPort,
        fee_rate=DEFAULT_FEE_RATE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the service with its collaborators.

        Args:
            gateway: GatewayPort used to create and capture remote orders.
            ledger: LedgerPort where orders, payouts and captures live.
            fee_rate: Default platform fee rate applied at capture.
            clock: Callable returning the current aware datetime.
        """
        self.gateway = gateway
        self.ledger = ledger
        self.fee_rate = to_rate(fee_rate)
        self.now = clock or _utcnow

    # -- checkout --

    def create_order(self, spec: CheckoutSpec) -> RemoteOrder:
        """Validate a purchase request and create the remote order.

        Nothing is written to the ledger: a local order only exists once the
        payment is captured, so abandoned checkouts leave no rows behind.

        Args:
            spec: Product, price, currency and buyer email.

        Returns:
            RemoteOrder with the gateway-assigned id and status.

        Raises:
            ValidationError: If a field is missing or the price is not positive.
            ConfigurationError: If gateway credentials are missing.
        """
        checked = CheckoutSpec(
            product_id=_require(spec.product_id, "product_id"),
            product_name=_require(spec.product_name, "product_name"),
            product_price=_positive_price(spec.product_price),
            currency=_require(spec.currency, "currency").upper(),
            buyer_email=_require(spec.buyer_email, "buyer_email"),
        )
        token = self.gateway.authenticate()
        remote = self.gateway.create_remote_order(checked, token)
        logger.info(
            "remote order created",
            extra={"remote_order_id": remote.id, "product_id": checked.product_id},
        )
        return remote

    def capture_order(self, remote_order_id: str, context: CaptureContext, fee_rate=None) -> PaymentOrder:
        """Capture a buyer-approved remote order and record it locally.

        If a capture record already exists for ``remote_order_id`` the
        gateway is not called again; any missing derivations are re-applied
        and the stored order is returned.

        Args:
            remote_order_id: Gateway order id returned by ``create_order``.
            context: Buyer/seller/product snapshot from checkout time.
            fee_rate: Platform fee rate; defaults to the service rate.

        Returns:
            The completed PaymentOrder.

        Raises:
            ValidationError: If the context is incomplete.
            PaymentDeclinedError: If the gateway did not complete the capture.
                Nothing is written in that case.
            DuplicateCaptureError: If a concurrent writer recorded the same
                capture first.
            CaptureOutcomeUnknownError: If the capture call failed mid-flight.
            StoreError: If the ledger failed after the capture was recorded;
                the reconciler will finish the derivations.
        """
        context = self._checked_context(remote_order_id, context)
        rate = self._rate(fee_rate)

        existing = self.ledger.get_capture(remote_order_id)
        if existing is not None:
            logger.info("capture replay", extra={"remote_order_id": remote_order_id})
            return self.apply_capture(existing)

        token = self.gateway.authenticate()
        result = self.gateway.capture_remote_order(remote_order_id, token)
        if not result.completed:
            logger.warning(
                "capture declined",
                extra={"remote_order_id": remote_order_id, "paypal_status": result.status, "gateway": result.payload},
            )
            raise PaymentDeclinedError(result.status, result.payload)

        return self._record_capture(remote_order_id, context, rate, result.status)

    def resolve_capture(self, remote_order_id: str, context: CaptureContext, fee_rate=None) -> PaymentOrder:
        """Settle a capture whose outcome is unknown (e.g. after a timeout).

        The remote order is re-queried instead of blindly capturing again:
        ``COMPLETED`` is recorded locally, ``APPROVED`` is captured, any other
        status is a decline.
        """
        context = self._checked_context(remote_order_id, context)
        rate = self._rate(fee_rate)

        existing = self.ledger.get_capture(remote_order_id)
        if existing is not None:
            return self.apply_capture(existing)

        token = self.gateway.authenticate()
        remote = self.gateway.get_remote_order(remote_order_id, token)
        if remote.status == CAPTURE_COMPLETED:
            return self._record_capture(remote_order_id, context, rate, remote.status)
        if remote.status == REMOTE_APPROVED:
            return self.capture_order(remote_order_id, context, rate)
        raise PaymentDeclinedError(remote.status, {"id": remote.id, "status": remote.status})

    def apply_capture(self, record: CaptureRecord) -> PaymentOrder:
        """Derive order, payout and product counters from ``record``.

        Every step is idempotent, so this is safe to re-run on a partially
        applied record.
        """
        order = self.ledger.ensure_order(self._order_from(record))
        payout = self.ledger.ensure_payout(Payout.for_order(order))
        if not record.counters_applied:
            self.ledger.apply_sale_counters(record)
        record.order_id = order.id
        record.payout_id = payout.id
        record.counters_applied = True
        record.completed = True
        self.ledger.save_capture_progress(record)
        logger.info(
            "capture recorded",
            extra={
                "remote_order_id": record.remote_order_id,
                "order_id": order.id,
                "payout_id": payout.id,
                "seller_amount": str(order.seller_amount),
            },
        )
        return order

    # -- transitions --

    def cancel_order(self, order_id: str) -> PaymentOrder:
        """Cancel a pending or approved order.

        Cancelling an already cancelled order succeeds without changes.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidStateError: If the order is not pending or approved.
        """
        order = self.get_order(order_id)
        if order.status == OrderStatus.CANCELLED:
            return order
        if order.status not in PRE_COMPLETION:
            raise InvalidStateError(f"cannot cancel a {order.status.value} order")
        if not self.ledger.transition_order(order_id, PRE_COMPLETION, OrderStatus.CANCELLED, updated_at=self.now()):
            return self._lost_race(order_id, OrderStatus.CANCELLED, "cancel")
        return self.get_order(order_id)

    def refund_order(self, order_id: str, reason: str = "") -> PaymentOrder:
        """Mark a completed order as refunded.

        Only local state changes; the gateway's refund call is not made here.

        Raises:
            NotFoundError: If the order does not exist.
            InvalidStateError: If the order is not completed.
        """
        order = self.get_order(order_id)
        if order.status != OrderStatus.COMPLETED:
            raise InvalidStateError(f"cannot refund a {order.status.value} order")
        now = self.now()
        moved = self.ledger.transition_order(
            order_id,
            {OrderStatus.COMPLETED},
            OrderStatus.REFUNDED,
            refund_reason=(reason or "").strip(),
            refunded_at=now,
            updated_at=now,
        )
        if not moved:
            return self._lost_race(order_id, None, "refund")
        logger.info("order refunded", extra={"order_id": order_id})
        return self.get_order(order_id)

    def fail_order(self, order_id: str, paypal_status: str) -> PaymentOrder:
        """Move a pre-completion order to ``failed`` after a gateway denial."""
        order = self.get_order(order_id)
        if order.status not in PRE_COMPLETION:
            raise InvalidStateError(f"cannot fail a {order.status.value} order")
        moved = self.ledger.transition_order(
            order_id, PRE_COMPLETION, OrderStatus.FAILED, paypal_status=paypal_status, updated_at=self.now()
        )
        if not moved:
            return self._lost_race(order_id, None, "fail")
        return self.get_order(order_id)

    # -- reads --

    def get_order(self, order_id: str) -> PaymentOrder:
        order = self.ledger.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def buyer_orders(self, buyer_id: str) -> List[PaymentOrder]:
        return _newest_first(self.ledger.find_orders(buyer_id=buyer_id))

    def seller_orders(self, seller_id: str) -> List[PaymentOrder]:
        return _newest_first(self.ledger.find_orders(creator_id=seller_id))

    def has_purchased(self, buyer_id: str, product_id: str) -> bool:
        """Whether ``buyer_id`` owns a completed purchase of ``product_id``."""
        return bool(
            self.ledger.find_orders(buyer_id=buyer_id, product_id=product_id, status=OrderStatus.COMPLETED)
        )

    # -- internals --

    def _record_capture(self, remote_order_id, context, rate, paypal_status) -> PaymentOrder:
        record = CaptureRecord(
            remote_order_id=remote_order_id,
            context=context,
            split=split_revenue(context.product_price, rate),
            paypal_status=paypal_status,
            captured_at=self.now(),
        )
        if not self.ledger.insert_capture(record):
            raise DuplicateCaptureError(f"capture for {remote_order_id} already recorded")
        try:
            return self.apply_capture(record)
        except StoreError:
            # money has moved; the write-ahead record lets the reconciler finish
            logger.error(
                "capture recorded but ledger derivation failed; needs reconciliation",
                extra={"remote_order_id": remote_order_id},
            )
            raise

    def _order_from(self, record: CaptureRecord) -> PaymentOrder:
        ctx = record.context
        return PaymentOrder(
            id=record.order_id,
            remote_order_id=record.remote_order_id,
            buyer_id=ctx.buyer_id,
            buyer_email=ctx.buyer_email,
            creator_id=ctx.creator_id,
            creator_name=ctx.creator_name,
            creator_email=ctx.creator_email,
            product_id=ctx.product_id,
            product_name=ctx.product_name,
            product_price=ctx.product_price,
            currency=ctx.currency,
            total_amount=record.split.total_amount,
            platform_fee=record.split.platform_fee,
            seller_amount=record.split.seller_amount,
            fee_rate=record.split.fee_rate,
            status=OrderStatus.COMPLETED,
            paypal_status=record.paypal_status,
            created_at=record.captured_at,
            captured_at=record.captured_at,
            updated_at=record.captured_at,
        )

    def _checked_context(self, remote_order_id: str, context: CaptureContext) -> CaptureContext:
        _require(remote_order_id, "remote_order_id")
        return replace(
            context,
            product_id=_require(context.product_id, "product_id"),
            product_price=_positive_price(context.product_price),
            currency=_require(context.currency, "currency").upper(),
            buyer_id=_require(context.buyer_id, "buyer_id"),
            creator_id=_require(context.creator_id, "creator_id"),
        )

    def _rate(self, fee_rate) -> Decimal:
        return self.fee_rate if fee_rate is None else to_rate(fee_rate)

    def _lost_race(self, order_id: str, accepted: Optional[OrderStatus], action: str) -> PaymentOrder:
        current = self.get_order(order_id)
        if accepted is not None and current.status == accepted:
            return current
        raise InvalidStateError(f"cannot {action} a {current.status.value} order")


def _newest_first(orders: List[PaymentOrder]) -> List[PaymentOrder]:
    return sorted(orders, key=lambda o: o.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
