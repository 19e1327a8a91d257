"""Repository layer for persisting the payments ledger.

``DjangoLedger`` implements ``LedgerPort`` on top of the Django ORM. It
keeps the domain decoupled from ORM types by mapping rows to the domain
dataclasses and back, and it exposes only single-record operations:

- inserts keyed by a natural unique key (remote order id for orders and
  capture records, order id for payouts) so re-running them is harmless;
- conditional status updates (``UPDATE ... WHERE status IN (...)``) so two
  racing transitions cannot both win.

Database failures surface as ``StoreError``.
"""

import functools
import uuid
from dataclasses import asdict
from decimal import Decimal
from typing import Iterable, List, Optional

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .domain import (
    CaptureContext,
    CaptureRecord,
    LedgerPort,
    OrderStatus,
    PaymentOrder,
    Payout,
    PayoutStatus,
    RevenueSplit,
)
from .errors import StoreError
from .models import CaptureRecordModel, PaymentOrderModel, PayoutModel, ProductStatsModel

ORDER_FILTERS = {"buyer_id", "creator_id", "product_id", "status", "remote_order_id"}
PAYOUT_FILTERS = {"seller_id", "status", "paypal_payout_id", "order_id"}


def _store_errors(fn):
    """Translate Django database errors into ``StoreError``."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except DatabaseError as e:
            raise StoreError(f"{fn.__name__} failed: {e}") from e

    return wrapper


def _uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def _plain(value):
    return value.value if hasattr(value, "value") else value


def _clean_filters(filters: dict, allowed: set) -> dict:
    unknown = set(filters) - allowed
    if unknown:
        raise ValueError(f"unsupported filters: {sorted(unknown)}")
    return {k: _plain(v) for k, v in filters.items()}


# ---- Row <-> domain mapping ----

def _to_order(obj: PaymentOrderModel) -> PaymentOrder:
    return PaymentOrder(
        id=str(obj.id),
        remote_order_id=obj.remote_order_id,
        buyer_id=obj.buyer_id,
        buyer_email=obj.buyer_email,
        creator_id=obj.creator_id,
        creator_name=obj.creator_name,
        creator_email=obj.creator_email,
        product_id=obj.product_id,
        product_name=obj.product_name,
        product_price=obj.product_price,
        currency=obj.currency,
        total_amount=obj.total_amount,
        platform_fee=obj.platform_fee,
        seller_amount=obj.seller_amount,
        fee_rate=obj.fee_rate,
        status=OrderStatus(obj.status),
        paypal_status=obj.paypal_status,
        refund_reason=obj.refund_reason,
        created_at=obj.created_at,
        captured_at=obj.captured_at,
        updated_at=obj.updated_at,
        refunded_at=obj.refunded_at,
    )


def _to_payout(obj: PayoutModel) -> Payout:
    return Payout(
        id=str(obj.id),
        order_id=str(obj.order_id),
        seller_id=obj.seller_id,
        seller_email=obj.seller_email,
        amount=obj.amount,
        currency=obj.currency,
        status=PayoutStatus(obj.status),
        paypal_payout_id=obj.paypal_payout_id,
        error_message=obj.error_message,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        completed_at=obj.completed_at,
    )


def _to_capture(obj: CaptureRecordModel) -> CaptureRecord:
    ctx = dict(obj.context)
    ctx["product_price"] = Decimal(ctx["product_price"])
    return CaptureRecord(
        remote_order_id=obj.remote_order_id,
        context=CaptureContext(**ctx),
        split=RevenueSplit(
            total_amount=obj.total_amount,
            platform_fee=obj.platform_fee,
            seller_amount=obj.seller_amount,
            fee_rate=obj.fee_rate,
        ),
        paypal_status=obj.paypal_status,
        captured_at=obj.captured_at,
        order_id=_str_or_none(obj.order_id),
        payout_id=_str_or_none(obj.payout_id),
        counters_applied=obj.counters_applied,
        completed=obj.completed,
    )


class DjangoLedger(LedgerPort):
    """Ledger store backed by the Django ORM."""

    # -- captures --

    @_store_errors
    def insert_capture(self, record: CaptureRecord) -> bool:
        """Conditionally insert the write-ahead record for a capture.

        Returns:
            True when inserted; False when a record with the same remote
            order id already exists (unique-key violation).
        """
        context = asdict(record.context)
        context["product_price"] = str(record.context.product_price)
        try:
            # savepoint: an IntegrityError only rolls back this insert
            with transaction.atomic():
                CaptureRecordModel.objects.create(
                    remote_order_id=record.remote_order_id,
                    context=context,
                    total_amount=record.split.total_amount,
                    platform_fee=record.split.platform_fee,
                    seller_amount=record.split.seller_amount,
                    fee_rate=record.split.fee_rate,
                    paypal_status=record.paypal_status,
                    captured_at=record.captured_at,
                )
        except IntegrityError:
            return False
        return True

    @_store_errors
    def get_capture(self, remote_order_id: str) -> Optional[CaptureRecord]:
        obj = CaptureRecordModel.objects.filter(remote_order_id=remote_order_id).first()
        return _to_capture(obj) if obj else None

    @_store_errors
    def save_capture_progress(self, record: CaptureRecord) -> None:
        CaptureRecordModel.objects.filter(remote_order_id=record.remote_order_id).update(
            order_id=_uuid(record.order_id),
            payout_id=_uuid(record.payout_id),
            completed=record.completed,
            updated_at=timezone.now(),
        )

    @_store_errors
    def incomplete_captures(self) -> List[CaptureRecord]:
        return [_to_capture(o) for o in CaptureRecordModel.objects.filter(completed=False).order_by("captured_at")]

    # -- orders --

    @_store_errors
    def ensure_order(self, order: PaymentOrder) -> PaymentOrder:
        existing = PaymentOrderModel.objects.filter(remote_order_id=order.remote_order_id).first()
        if existing is not None:
            return _to_order(existing)
        fields = {
            "remote_order_id": order.remote_order_id,
            "buyer_id": order.buyer_id,
            "buyer_email": order.buyer_email,
            "creator_id": order.creator_id,
            "creator_name": order.creator_name,
            "creator_email": order.creator_email,
            "product_id": order.product_id,
            "product_name": order.product_name,
            "product_price": order.product_price,
            "currency": order.currency,
            "total_amount": order.total_amount,
            "platform_fee": order.platform_fee,
            "seller_amount": order.seller_amount,
            "fee_rate": order.fee_rate,
            "status": _plain(order.status),
            "paypal_status": order.paypal_status,
            "created_at": order.created_at or timezone.now(),
            "captured_at": order.captured_at,
            "updated_at": order.updated_at or timezone.now(),
        }
        if _uuid(order.id):
            fields["id"] = _uuid(order.id)
        try:
            with transaction.atomic():
                obj = PaymentOrderModel.objects.create(**fields)
        except IntegrityError:
            obj = PaymentOrderModel.objects.get(remote_order_id=order.remote_order_id)
        return _to_order(obj)

    @_store_errors
    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        oid = _uuid(order_id)
        if oid is None:
            return None
        obj = PaymentOrderModel.objects.filter(id=oid).first()
        return _to_order(obj) if obj else None

    @_store_errors
    def find_orders(self, **filters) -> List[PaymentOrder]:
        qs = PaymentOrderModel.objects.filter(**_clean_filters(filters, ORDER_FILTERS))
        return [_to_order(o) for o in qs]

    @_store_errors
    def transition_order(self, order_id: str, allowed: Iterable[OrderStatus], to: OrderStatus, **fields) -> bool:
        oid = _uuid(order_id)
        if oid is None:
            return False
        updated = PaymentOrderModel.objects.filter(
            id=oid, status__in=[_plain(s) for s in allowed]
        ).update(status=_plain(to), **fields)
        return updated == 1

    # -- payouts --

    @_store_errors
    def ensure_payout(self, payout: Payout) -> Payout:
        order_id = _uuid(payout.order_id)
        existing = PayoutModel.objects.filter(order_id=order_id).first()
        if existing is not None:
            return _to_payout(existing)
        now = timezone.now()
        try:
            with transaction.atomic():
                obj = PayoutModel.objects.create(
                    order_id=order_id,
                    seller_id=payout.seller_id,
                    seller_email=payout.seller_email,
                    amount=payout.amount,
                    currency=payout.currency,
                    status=_plain(payout.status),
                    paypal_payout_id=payout.paypal_payout_id,
                    created_at=payout.created_at or now,
                    updated_at=payout.updated_at or now,
                )
        except IntegrityError:
            obj = PayoutModel.objects.get(order_id=order_id)
        return _to_payout(obj)

    @_store_errors
    def get_payout_for_order(self, order_id: str) -> Optional[Payout]:
        oid = _uuid(order_id)
        if oid is None:
            return None
        obj = PayoutModel.objects.filter(order_id=oid).first()
        return _to_payout(obj) if obj else None

    @_store_errors
    def find_payouts(self, **filters) -> List[Payout]:
        qs = PayoutModel.objects.filter(**_clean_filters(filters, PAYOUT_FILTERS))
        return [_to_payout(p) for p in qs]

    @_store_errors
    def transition_payouts(
        self, payout_ids: Iterable[str], allowed: Iterable[PayoutStatus], to: PayoutStatus, **fields
    ) -> int:
        ids = [u for u in (_uuid(pid) for pid in payout_ids) if u is not None]
        if not ids:
            return 0
        return PayoutModel.objects.filter(
            id__in=ids, status__in=[_plain(s) for s in allowed]
        ).update(status=_plain(to), **fields)

    # -- product counters --

    @_store_errors
    def apply_sale_counters(self, record: CaptureRecord) -> bool:
        """Bump the product's sales and revenue once for ``record``.

        The ``counters_applied`` flag on the capture record is flipped in the
        same transaction as the increments, so a replay never double counts.
        """
        now = timezone.now()
        product_id = record.context.product_id
        with transaction.atomic():
            flipped = CaptureRecordModel.objects.filter(
                remote_order_id=record.remote_order_id, counters_applied=False
            ).update(counters_applied=True, updated_at=now)
            if not flipped:
                return False
            ProductStatsModel.objects.get_or_create(product_id=product_id)
            ProductStatsModel.objects.filter(product_id=product_id).update(
                sales=F("sales") + 1,
                total_revenue=F("total_revenue") + record.split.seller_amount,
                updated_at=now,
            )
        return True

    @_store_errors
    def completed_orders_without_payout(self) -> List[PaymentOrder]:
        """Completed orders that have no payout row (partial capture writes)."""
        paid = PayoutModel.objects.values_list("order_id", flat=True)
        qs = PaymentOrderModel.objects.filter(status=PaymentOrderModel.Status.COMPLETED).exclude(id__in=paid)
        return [_to_order(o) for o in qs]
