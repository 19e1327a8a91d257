"""Unit tests for OrderLifecycleService.

These tests drive the service with the in-memory ledger and the gateway
stub, covering checkout, capture (including replays, races and partial
ledger failures), the revenue split and the order transitions.
"""

from decimal import Decimal

import pytest

from apps.payments.domain import (
    CheckoutSpec,
    OrderStatus,
    PaymentOrder,
    PayoutStatus,
    split_revenue,
)
from apps.payments.errors import (
    ConfigurationError,
    DuplicateCaptureError,
    InvalidStateError,
    NotFoundError,
    PaymentDeclinedError,
    StoreError,
    ValidationError,
)
from apps.payments.reconciliation import CaptureReconciler


def spec(price="19.99", **kw):
    return CheckoutSpec(
        product_id=kw.get("product_id", "prod-1"),
        product_name=kw.get("product_name", "Icon pack"),
        product_price=price,
        currency=kw.get("currency", "usd"),
        buyer_email=kw.get("buyer_email", "buyer@example.com"),
    )


def seed_order(ledger, status, **kw):
    """Store an order directly, bypassing capture."""
    split = split_revenue(kw.pop("total", "50.00"))
    return ledger.ensure_order(
        PaymentOrder(
            id=None,
            remote_order_id=kw.pop("remote_order_id", "R-SEED"),
            buyer_id="buyer-1",
            buyer_email="buyer@example.com",
            creator_id="seller-1",
            creator_name="Ada",
            creator_email="seller@example.com",
            product_id="prod-1",
            product_name="Icon pack",
            product_price=split.total_amount,
            currency="USD",
            total_amount=split.total_amount,
            platform_fee=split.platform_fee,
            seller_amount=split.seller_amount,
            status=status,
        )
    )


# ---- split ----

def test_split_hundred_dollars_is_thirty_seventy():
    s = split_revenue("100.00")
    assert s.platform_fee == Decimal("30.00")
    assert s.seller_amount == Decimal("70.00")


@pytest.mark.parametrize("total", ["0.01", "0.05", "19.99", "33.33", "99999.99"])
def test_split_parts_always_add_up(total):
    s = split_revenue(total)
    assert s.platform_fee + s.seller_amount == s.total_amount
    assert s.platform_fee == (Decimal(total) * Decimal("0.30")).quantize(Decimal("0.01"), rounding="ROUND_HALF_UP")


def test_split_rejects_bad_rate_and_amount():
    with pytest.raises(ValidationError):
        split_revenue("10.00", fee_rate="1.0")
    with pytest.raises(ValidationError):
        split_revenue("0")
    with pytest.raises(ValidationError):
        split_revenue("10.00", fee_rate="abc")
    with pytest.raises(ValidationError):
        split_revenue(Decimal("1e30"))


# ---- create ----

def test_create_order_never_writes_to_ledger(service, gateway, ledger):
    remote = service.create_order(spec())
    assert remote.id
    assert gateway.calls == ["authenticate", "create_remote_order"]
    assert ledger.writes == 0


@pytest.mark.parametrize("price", ["0", "-5", None, "abc", Decimal("1e30")])
def test_create_order_rejects_non_positive_price(service, gateway, price):
    with pytest.raises(ValidationError):
        service.create_order(spec(price=price))
    assert gateway.calls == []


def test_create_order_without_credentials_raises_configuration_error(ledger, clock):
    from apps.payments.adapters import GatewayStub
    from apps.payments.domain import OrderLifecycleService

    svc = OrderLifecycleService(GatewayStub(credentials=False), ledger, clock=clock)
    with pytest.raises(ConfigurationError):
        svc.create_order(spec())


# ---- capture ----

def test_capture_records_order_payout_and_counters(service, ledger, make_context):
    order = service.capture_order("R-1", make_context("100.00"))

    assert order.status == OrderStatus.COMPLETED
    assert order.platform_fee == Decimal("30.00")
    assert order.seller_amount == Decimal("70.00")
    assert order.paypal_status == "COMPLETED"

    payout = ledger.get_payout_for_order(order.id)
    assert payout.status == PayoutStatus.PENDING
    assert payout.amount == Decimal("70.00")
    assert payout.seller_email == "seller@example.com"

    assert ledger.product_stats["prod-1"] == {"sales": 1, "total_revenue": Decimal("70.00")}
    assert ledger.captures["R-1"].completed is True


def test_capture_uses_per_call_fee_rate(service, make_context):
    order = service.capture_order("R-2", make_context("100.00"), fee_rate="0.10")
    assert order.platform_fee == Decimal("10.00")
    assert order.seller_amount == Decimal("90.00")


@pytest.mark.parametrize("fee_rate", ["abc", "1.5", float("nan")])
def test_capture_with_unusable_fee_rate_is_rejected_before_gateway(service, gateway, ledger, make_context, fee_rate):
    with pytest.raises(ValidationError):
        service.capture_order("R-3", make_context("100.00"), fee_rate=fee_rate)
    assert gateway.calls == []
    assert ledger.writes == 0


def test_declined_capture_writes_nothing(service, gateway, ledger, make_context):
    gateway.declined.add("R-3")
    with pytest.raises(PaymentDeclinedError) as exc:
        service.capture_order("R-3", make_context())
    assert exc.value.status == "DECLINED"
    assert ledger.writes == 0
    assert ledger.orders == {} and ledger.payouts == {} and ledger.captures == {}


def test_capture_replay_does_not_call_gateway_again(service, gateway, ledger, make_context):
    first = service.capture_order("R-4", make_context())
    calls = list(gateway.calls)
    writes = ledger.writes

    again = service.capture_order("R-4", make_context())
    assert again.id == first.id
    assert gateway.calls == calls
    assert len(ledger.orders) == 1 and len(ledger.payouts) == 1
    assert ledger.product_stats["prod-1"]["sales"] == 1
    # only the progress marker is rewritten
    assert ledger.writes == writes + 1


def test_capture_race_loser_gets_duplicate_capture(service, ledger, make_context, monkeypatch):
    service.capture_order("R-5", make_context())
    # simulate a writer that checked before the record existed
    monkeypatch.setattr(ledger, "get_capture", lambda remote_order_id: None)
    with pytest.raises(DuplicateCaptureError):
        service.capture_order("R-5", make_context())
    assert len(ledger.orders) == 1


def test_capture_requires_buyer_and_creator(service, gateway, make_context):
    with pytest.raises(ValidationError):
        service.capture_order("R-6", make_context(buyer_id=""))
    with pytest.raises(ValidationError):
        service.capture_order("", make_context())
    assert gateway.calls == []


def test_store_failure_after_capture_is_repaired_by_reconciler(service, ledger, make_context):
    ledger.fail_on = "ensure_payout"
    with pytest.raises(StoreError):
        service.capture_order("R-7", make_context("100.00"))

    assert ledger.captures["R-7"].completed is False
    assert len(ledger.orders) == 1
    assert ledger.payouts == {}

    ledger.fail_on = None
    report = CaptureReconciler(service, ledger).run()
    assert report.captures_repaired == 1
    assert report.errors == []
    assert ledger.captures["R-7"].completed is True
    (payout,) = ledger.payouts.values()
    assert payout.amount == Decimal("70.00")
    assert ledger.product_stats["prod-1"]["sales"] == 1


def test_reconciler_backfills_missing_payouts(service, ledger):
    order = seed_order(ledger, OrderStatus.COMPLETED)
    report = CaptureReconciler(service, ledger).run()
    assert report.payouts_created == 1
    assert ledger.get_payout_for_order(order.id).amount == Decimal("35.00")


# ---- resolve ----

def test_resolve_capture_records_completed_remote_order(service, gateway, ledger, make_context):
    gateway.orders["R-8"] = "COMPLETED"
    order = service.resolve_capture("R-8", make_context())
    assert order.status == OrderStatus.COMPLETED
    assert "capture_remote_order" not in gateway.calls


def test_resolve_capture_captures_approved_remote_order(service, gateway, make_context):
    gateway.orders["R-9"] = "APPROVED"
    order = service.resolve_capture("R-9", make_context())
    assert order.status == OrderStatus.COMPLETED
    assert gateway.calls.count("capture_remote_order") == 1


def test_resolve_capture_of_unapproved_order_is_declined(service, gateway, ledger, make_context):
    with pytest.raises(PaymentDeclinedError):
        service.resolve_capture("R-10", make_context())
    assert ledger.writes == 0


# ---- transitions ----

@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.APPROVED])
def test_cancel_pre_completion_order(service, ledger, status):
    order = seed_order(ledger, status)
    assert service.cancel_order(order.id).status == OrderStatus.CANCELLED


def test_cancel_is_a_no_op_when_already_cancelled(service, ledger):
    order = seed_order(ledger, OrderStatus.CANCELLED)
    writes = ledger.writes
    assert service.cancel_order(order.id).status == OrderStatus.CANCELLED
    assert ledger.writes == writes


@pytest.mark.parametrize("status", [OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.FAILED])
def test_cancel_rejects_other_states(service, ledger, status):
    order = seed_order(ledger, status)
    with pytest.raises(InvalidStateError):
        service.cancel_order(order.id)


def test_refund_completed_order(service, ledger, make_context):
    order = service.capture_order("R-11", make_context())
    refunded = service.refund_order(order.id, "  not as described ")
    assert refunded.status == OrderStatus.REFUNDED
    assert refunded.refund_reason == "not as described"
    assert refunded.refunded_at is not None


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CANCELLED, OrderStatus.REFUNDED])
def test_refund_requires_completed_order(service, ledger, status):
    order = seed_order(ledger, status)
    with pytest.raises(InvalidStateError):
        service.refund_order(order.id)


def test_fail_order_only_before_completion(service, ledger):
    pending = seed_order(ledger, OrderStatus.PENDING, remote_order_id="R-P")
    assert service.fail_order(pending.id, "DENIED").status == OrderStatus.FAILED

    done = seed_order(ledger, OrderStatus.COMPLETED, remote_order_id="R-C")
    with pytest.raises(InvalidStateError):
        service.fail_order(done.id, "DENIED")


def test_unknown_order_raises_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_order("missing")
    with pytest.raises(NotFoundError):
        service.cancel_order("missing")


# ---- reads ----

def test_has_purchased_only_counts_completed_orders(service, ledger, make_context):
    order = service.capture_order("R-12", make_context(product_id="prod-9"))
    assert service.has_purchased("buyer-1", "prod-9") is True
    assert service.has_purchased("buyer-2", "prod-9") is False

    service.refund_order(order.id)
    assert service.has_purchased("buyer-1", "prod-9") is False


def test_buyer_and_seller_orders_newest_first(service, make_context):
    first = service.capture_order("R-13", make_context(product_id="a"))
    second = service.capture_order("R-14", make_context(product_id="b"))
    assert [o.id for o in service.buyer_orders("buyer-1")] == [second.id, first.id]
    assert [o.id for o in service.seller_orders("seller-1")] == [second.id, first.id]
    assert service.seller_orders("nobody") == []
