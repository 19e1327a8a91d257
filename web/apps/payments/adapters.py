"""In-process stub adapters for the payments domain ports.

These stubs implement ``GatewayPort`` and ``LedgerPort`` without any
network or database access. They are intended for unit tests and local
development where deterministic behavior is useful and neither PayPal nor
a database is available.
"""

import copy
import uuid
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from .domain import (
    CaptureRecord,
    CaptureResult,
    CheckoutSpec,
    GatewayPort,
    LedgerPort,
    OrderStatus,
    PaymentOrder,
    Payout,
    PayoutBatchStatus,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
    RemoteOrder,
)
from .errors import ConfigurationError, StoreError


class GatewayStub(GatewayPort):
    """Stub implementation of ``GatewayPort``.

    Remote orders are created ``APPROVED`` (as if the buyer had already
    approved them) and captures complete unless the order id is listed in
    ``declined``. Payouts succeed unless ``reject_payouts`` is set.

    Attributes:
        calls: Names of the operations invoked, in order.
    """

    def __init__(
        self,
        credentials: bool = True,
        capture_status: str = "COMPLETED",
        reject_payouts: Optional[str] = None,
        batch_status: str = "SUCCESS",
    ):
        self.credentials = credentials
        self.capture_status = capture_status
        self.reject_payouts = reject_payouts
        self.batch_status = batch_status
        self.declined: set = set()
        self.orders: Dict[str, str] = {}
        self.payout_requests: List[PayoutRequest] = []
        self.calls: List[str] = []

    def authenticate(self) -> str:
        if not self.credentials:
            raise ConfigurationError("PayPal credentials are not configured")
        self.calls.append("authenticate")
        return "stub-token"

    def create_remote_order(self, spec: CheckoutSpec, token: str) -> RemoteOrder:
        self.calls.append("create_remote_order")
        oid = uuid.uuid4().hex[:17].upper()
        self.orders[oid] = "APPROVED"
        return RemoteOrder(id=oid, status="CREATED")

    def capture_remote_order(self, remote_order_id: str, token: str) -> CaptureResult:
        self.calls.append("capture_remote_order")
        status = "DECLINED" if remote_order_id in self.declined else self.capture_status
        if status == "COMPLETED":
            self.orders[remote_order_id] = "COMPLETED"
        return CaptureResult(status=status, payload={"id": remote_order_id, "status": status})

    def get_remote_order(self, remote_order_id: str, token: str) -> RemoteOrder:
        self.calls.append("get_remote_order")
        return RemoteOrder(id=remote_order_id, status=self.orders.get(remote_order_id, "CREATED"))

    def create_remote_payout(self, request: PayoutRequest, token: str) -> PayoutResult:
        self.calls.append("create_remote_payout")
        self.payout_requests.append(request)
        if self.reject_payouts:
            return PayoutResult(
                ok=False,
                error_message=self.reject_payouts,
                payload={"name": "VALIDATION_ERROR", "message": self.reject_payouts},
            )
        return PayoutResult(ok=True, batch_id=f"STUB{uuid.uuid4().hex[:12].upper()}")

    def get_remote_payout(self, batch_id: str, token: str) -> PayoutBatchStatus:
        self.calls.append("get_remote_payout")
        return PayoutBatchStatus(batch_id=batch_id, status=self.batch_status)


def _matches(obj, filters: dict) -> bool:
    for name, value in filters.items():
        current = getattr(obj, name)
        if hasattr(value, "value"):
            value = value.value
        if hasattr(current, "value"):
            current = current.value
        if current != value:
            return False
    return True


class InMemoryLedger(LedgerPort):
    """Dict-backed ledger with the same conditional-update semantics.

    Records are copied on the way in and out so callers never share state
    with the store. ``writes`` counts every successful mutation; set
    ``fail_on`` to an operation name to simulate an outage of that step.
    """

    def __init__(self):
        self.orders: Dict[str, PaymentOrder] = {}
        self.payouts: Dict[str, Payout] = {}
        self.captures: Dict[str, CaptureRecord] = {}
        self.product_stats: Dict[str, dict] = {}
        self.writes = 0
        self.fail_on: Optional[str] = None

    def _check(self, op: str):
        if self.fail_on == op:
            raise StoreError(f"ledger unavailable during {op}")

    # -- captures --

    def insert_capture(self, record: CaptureRecord) -> bool:
        self._check("insert_capture")
        if record.remote_order_id in self.captures:
            return False
        self.captures[record.remote_order_id] = copy.deepcopy(record)
        self.writes += 1
        return True

    def get_capture(self, remote_order_id: str) -> Optional[CaptureRecord]:
        self._check("get_capture")
        rec = self.captures.get(remote_order_id)
        return copy.deepcopy(rec) if rec else None

    def save_capture_progress(self, record: CaptureRecord) -> None:
        self._check("save_capture_progress")
        stored = self.captures[record.remote_order_id]
        stored.order_id = record.order_id
        stored.payout_id = record.payout_id
        stored.counters_applied = stored.counters_applied or record.counters_applied
        stored.completed = record.completed
        self.writes += 1

    def incomplete_captures(self) -> List[CaptureRecord]:
        self._check("incomplete_captures")
        return [copy.deepcopy(r) for r in self.captures.values() if not r.completed]

    # -- orders --

    def ensure_order(self, order: PaymentOrder) -> PaymentOrder:
        self._check("ensure_order")
        for existing in self.orders.values():
            if existing.remote_order_id == order.remote_order_id:
                return copy.deepcopy(existing)
        stored = replace(order, id=order.id or str(uuid.uuid4()))
        self.orders[stored.id] = stored
        self.writes += 1
        return copy.deepcopy(stored)

    def get_order(self, order_id: str) -> Optional[PaymentOrder]:
        self._check("get_order")
        order = self.orders.get(str(order_id))
        return copy.deepcopy(order) if order else None

    def find_orders(self, **filters) -> List[PaymentOrder]:
        self._check("find_orders")
        return [copy.deepcopy(o) for o in self.orders.values() if _matches(o, filters)]

    def transition_order(self, order_id: str, allowed: Iterable[OrderStatus], to: OrderStatus, **fields) -> bool:
        self._check("transition_order")
        order = self.orders.get(str(order_id))
        if order is None or order.status not in set(allowed):
            return False
        self.orders[order.id] = replace(order, status=to, **fields)
        self.writes += 1
        return True

    # -- payouts --

    def ensure_payout(self, payout: Payout) -> Payout:
        self._check("ensure_payout")
        for existing in self.payouts.values():
            if existing.order_id == payout.order_id:
                return copy.deepcopy(existing)
        stored = replace(payout, id=payout.id or str(uuid.uuid4()))
        self.payouts[stored.id] = stored
        self.writes += 1
        return copy.deepcopy(stored)

    def get_payout_for_order(self, order_id: str) -> Optional[Payout]:
        self._check("get_payout_for_order")
        for payout in self.payouts.values():
            if payout.order_id == order_id:
                return copy.deepcopy(payout)
        return None

    def find_payouts(self, **filters) -> List[Payout]:
        self._check("find_payouts")
        return [copy.deepcopy(p) for p in self.payouts.values() if _matches(p, filters)]

    def transition_payouts(
        self, payout_ids: Iterable[str], allowed: Iterable[PayoutStatus], to: PayoutStatus, **fields
    ) -> int:
        self._check("transition_payouts")
        allowed = set(allowed)
        moved = 0
        for pid in payout_ids:
            payout = self.payouts.get(str(pid))
            if payout is None or payout.status not in allowed:
                continue
            self.payouts[payout.id] = replace(payout, status=to, **fields)
            moved += 1
        self.writes += moved
        return moved

    # -- product counters --

    def apply_sale_counters(self, record: CaptureRecord) -> bool:
        self._check("apply_sale_counters")
        stored = self.captures[record.remote_order_id]
        if stored.counters_applied:
            return False
        stats = self.product_stats.setdefault(
            record.context.product_id, {"sales": 0, "total_revenue": Decimal("0.00")}
        )
        stats["sales"] += 1
        stats["total_revenue"] += record.split.seller_amount
        stored.counters_applied = True
        self.writes += 1
        return True

    def completed_orders_without_payout(self) -> List[PaymentOrder]:
        self._check("completed_orders_without_payout")
        paid = {p.order_id for p in self.payouts.values()}
        return [
            copy.deepcopy(o)
            for o in self.orders.values()
            if o.status == OrderStatus.COMPLETED and o.id not in paid
        ]
