import pytest

from apps.payments import providers
from apps.payments.adapters import GatewayStub
from apps.payments.errors import GatewayUnavailableError, StoreError
from apps.payments.models import PayoutModel
from apps.payments.repository import DjangoLedger

CAPTURE_URL = "/api/payments/orders/capture/"
PAYOUTS_URL = "/api/payments/payouts/"


def capture_payload(remote_order_id, price="100.00"):
    return {
        "remote_order_id": remote_order_id,
        "product_id": "prod-1",
        "product_price": price,
        "currency": "USD",
        "buyer_id": "buyer-1",
        "creator_id": "seller-1",
        "creator_email": "seller@example.com",
    }


@pytest.fixture
def shared_gateway(monkeypatch):
    gw = GatewayStub()
    monkeypatch.setattr(providers, "get_gateway", lambda: gw)
    return gw


@pytest.mark.django_db
def test_idempotent_capture_replays_response(client, shared_gateway):
    key = "idem-capture-1"
    r1 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-1"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 201

    r2 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-1"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert shared_gateway.calls.count("capture_remote_order") == 1


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload(client, shared_gateway):
    key = "idem-capture-2"
    client.post(CAPTURE_URL, data=capture_payload("R-IDEM-2"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    r = client.post(
        CAPTURE_URL, data=capture_payload("R-IDEM-2", "50.00"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_decline(client, shared_gateway):
    shared_gateway.declined.add("R-IDEM-3")
    key = "idem-capture-3"
    r1 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-3"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    r2 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-3"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == r2.status_code == 402
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert shared_gateway.calls.count("capture_remote_order") == 1


@pytest.mark.django_db
def test_same_key_on_other_endpoint_conflicts(client, shared_gateway):
    key = "idem-shared"
    client.post(CAPTURE_URL, data=capture_payload("R-IDEM-4"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    r = client.post(
        PAYOUTS_URL,
        data={"seller_id": "seller-1", "email": "seller@example.com", "amount": "70.00"},
        content_type="application/json",
        HTTP_IDEMPOTENCY_KEY=key,
    )
    assert r.status_code == 409


@pytest.mark.django_db
def test_idempotent_payout_is_sent_once(client, shared_gateway):
    client.post(CAPTURE_URL, data=capture_payload("R-IDEM-5"), content_type="application/json")
    payload = {"seller_id": "seller-1", "email": "seller@example.com", "amount": "70.00"}

    r1 = client.post(PAYOUTS_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY="idem-payout-1")
    r2 = client.post(PAYOUTS_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY="idem-payout-1")

    assert r1.status_code == r2.status_code == 201
    assert r2.json() == r1.json()
    assert len(shared_gateway.payout_requests) == 1


@pytest.mark.django_db
def test_capture_key_is_released_when_gateway_is_unavailable(client, shared_gateway, monkeypatch):
    real_authenticate = shared_gateway.authenticate
    outages = iter([GatewayUnavailableError("CIRCUIT_OPEN")])

    def flaky_authenticate():
        err = next(outages, None)
        if err is not None:
            raise err
        return real_authenticate()

    monkeypatch.setattr(shared_gateway, "authenticate", flaky_authenticate)
    key = "idem-capture-outage"

    r1 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-6"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 503

    r2 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-6"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.json()["status"] == "completed"
    assert r2.headers.get("Idempotent-Replay") is None

    r3 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-6"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r3.status_code == 201
    assert r3.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_capture_retry_after_store_failure_finishes_the_sale(client, shared_gateway, monkeypatch):
    real_ensure_payout = DjangoLedger.ensure_payout
    failures = iter([StoreError("connection reset")])

    def flaky_ensure_payout(self, payout):
        err = next(failures, None)
        if err is not None:
            raise err
        return real_ensure_payout(self, payout)

    monkeypatch.setattr(DjangoLedger, "ensure_payout", flaky_ensure_payout)
    key = "idem-capture-store"

    r1 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-7"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 503

    r2 = client.post(CAPTURE_URL, data=capture_payload("R-IDEM-7"), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert shared_gateway.calls.count("capture_remote_order") == 1
    assert PayoutModel.objects.filter(order_id=r2.json()["id"]).count() == 1
