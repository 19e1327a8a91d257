"""Unit tests for PayoutDispatcher: minimum amount, manifests, failures
and batch reconciliation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from apps.payments.domain import Payout, PayoutStatus
from apps.payments.errors import ConfigurationError, PayoutFailedError, ValidationError
from apps.payments.payouts import PayoutDispatcher

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def seed_payouts(ledger, *amounts, seller_id="seller-1", currency="USD"):
    """Store pending payouts, oldest first, and return their ids."""
    ids = []
    for i, amount in enumerate(amounts):
        payout = ledger.ensure_payout(
            Payout(
                id=None,
                order_id=f"order-{seller_id}-{i}",
                seller_id=seller_id,
                seller_email="seller@example.com",
                amount=Decimal(amount),
                currency=currency,
                created_at=T0 + timedelta(minutes=i),
            )
        )
        ids.append(payout.id)
    return ids


def statuses(ledger, ids):
    return [ledger.payouts[pid].status for pid in ids]


def test_amount_below_minimum_is_rejected_before_gateway(dispatcher, gateway, ledger):
    seed_payouts(ledger, "5.00")
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", "0.05", "seller@example.com")
    assert gateway.calls == []


def test_minimum_amount_is_accepted(dispatcher, gateway, ledger):
    (pid,) = seed_payouts(ledger, "0.10")
    result = dispatcher.dispatch_payout("seller-1", "0.10", "seller@example.com")
    assert result.amount == Decimal("0.10")
    assert result.payout_ids == (pid,)
    assert gateway.payout_requests[0].amount == Decimal("0.10")


@pytest.mark.parametrize("amount", [Decimal("0.095"), Decimal("0.099"), "0.0999"])
def test_amount_just_below_minimum_is_not_rounded_up(dispatcher, gateway, ledger, amount):
    seed_payouts(ledger, "0.10")
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", amount, "seller@example.com")
    assert gateway.calls == []


def test_amount_out_of_decimal_range_is_a_validation_error(dispatcher, gateway):
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", Decimal("1e30"), "seller@example.com")
    assert gateway.calls == []


def test_missing_email_or_seller_is_rejected(dispatcher):
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", "10.00", "")
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout(" ", "10.00", "seller@example.com")


def test_dispatch_moves_manifest_to_processing(dispatcher, gateway, ledger):
    ids = seed_payouts(ledger, "7.00", "3.50", "20.00")
    result = dispatcher.dispatch_payout("seller-1", "10.50", "seller@example.com")

    assert result.payout_ids == (ids[0], ids[1])
    assert statuses(ledger, ids) == [PayoutStatus.PROCESSING, PayoutStatus.PROCESSING, PayoutStatus.PENDING]
    assert all(ledger.payouts[pid].paypal_payout_id == result.batch_id for pid in ids[:2])

    request = gateway.payout_requests[0]
    assert request.receiver == "seller@example.com"
    assert request.amount == Decimal("10.50")
    assert request.currency == "USD"


def test_explicit_manifest_must_match_amount(dispatcher, ledger):
    ids = seed_payouts(ledger, "7.00", "3.50")
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", "9.00", "seller@example.com", payout_ids=ids)

    result = dispatcher.dispatch_payout("seller-1", None, "seller@example.com", payout_ids=[ids[1]])
    assert result.amount == Decimal("3.50")
    assert statuses(ledger, ids) == [PayoutStatus.PENDING, PayoutStatus.PROCESSING]


def test_explicit_manifest_rejects_foreign_payouts(dispatcher, ledger):
    (other,) = seed_payouts(ledger, "5.00", seller_id="seller-2")
    with pytest.raises(ValidationError):
        dispatcher.dispatch_payout("seller-1", "5.00", "seller@example.com", payout_ids=[other])


def test_rejection_marks_only_the_oldest_manifest_payout_failed(ledger, clock):
    from apps.payments.adapters import GatewayStub

    gateway = GatewayStub(reject_payouts="Receiver is unregistered.")
    dispatcher = PayoutDispatcher(gateway, ledger, clock=clock)
    ids = seed_payouts(ledger, "4.00", "6.00", "8.00")

    with pytest.raises(PayoutFailedError) as exc:
        dispatcher.dispatch_payout("seller-1", "10.00", "seller@example.com")

    assert exc.value.details["message"] == "Receiver is unregistered."
    assert statuses(ledger, ids) == [PayoutStatus.FAILED, PayoutStatus.PENDING, PayoutStatus.PENDING]
    assert ledger.payouts[ids[0]].error_message == "Receiver is unregistered."


def test_rejection_with_empty_manifest_fails_sellers_oldest_pending(ledger, clock):
    from apps.payments.adapters import GatewayStub

    dispatcher = PayoutDispatcher(GatewayStub(reject_payouts="DENIED"), ledger, clock=clock)
    ids = seed_payouts(ledger, "50.00", "60.00")

    with pytest.raises(PayoutFailedError):
        dispatcher.dispatch_payout("seller-1", "1.00", "seller@example.com")
    assert statuses(ledger, ids) == [PayoutStatus.FAILED, PayoutStatus.PENDING]


def test_missing_credentials_raise_configuration_error(ledger, clock):
    from apps.payments.adapters import GatewayStub

    seed_payouts(ledger, "5.00")
    dispatcher = PayoutDispatcher(GatewayStub(credentials=False), ledger, clock=clock)
    with pytest.raises(ConfigurationError):
        dispatcher.dispatch_payout("seller-1", "5.00", "seller@example.com")


def test_sender_batch_id_is_stable_for_the_same_manifest(dispatcher, gateway, ledger):
    ids = seed_payouts(ledger, "5.00")
    a = dispatcher._sender_batch_id("seller-1", [ledger.payouts[ids[0]]])
    b = dispatcher._sender_batch_id("seller-1", [ledger.payouts[ids[0]]])
    assert a == b


@pytest.mark.parametrize(
    "batch_status, expected",
    [
        ("SUCCESS", PayoutStatus.COMPLETED),
        ("DENIED", PayoutStatus.FAILED),
        ("CANCELED", PayoutStatus.FAILED),
        ("PENDING", PayoutStatus.PROCESSING),
    ],
)
def test_reconcile_batch_settles_processing_payouts(ledger, clock, batch_status, expected):
    from apps.payments.adapters import GatewayStub

    dispatcher = PayoutDispatcher(GatewayStub(batch_status=batch_status), ledger, clock=clock)
    ids = seed_payouts(ledger, "5.00", "5.00")
    result = dispatcher.dispatch_payout("seller-1", "10.00", "seller@example.com")

    moved = dispatcher.reconcile_batch(result.batch_id)

    assert moved == (0 if expected == PayoutStatus.PROCESSING else 2)
    assert statuses(ledger, ids) == [expected, expected]
    if expected == PayoutStatus.COMPLETED:
        assert ledger.payouts[ids[0]].completed_at is not None


def test_seller_payouts_newest_first(dispatcher, ledger):
    ids = seed_payouts(ledger, "1.00", "2.00")
    seed_payouts(ledger, "3.00", seller_id="seller-2")
    assert [p.id for p in dispatcher.seller_payouts("seller-1")] == list(reversed(ids))
