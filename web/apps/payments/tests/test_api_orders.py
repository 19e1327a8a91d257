import pytest

from apps.payments import providers
from apps.payments.adapters import GatewayStub
from apps.payments.errors import CaptureOutcomeUnknownError

ORDERS_URL = "/api/payments/orders/"
CAPTURE_URL = "/api/payments/orders/capture/"


def capture_payload(remote_order_id="R-API-1", **kw):
    payload = {
        "remote_order_id": remote_order_id,
        "product_id": "prod-1",
        "product_name": "Icon pack",
        "product_price": "100.00",
        "currency": "USD",
        "buyer_id": "buyer-1",
        "buyer_email": "buyer@example.com",
        "creator_id": "seller-1",
        "creator_name": "Ada",
        "creator_email": "seller@example.com",
    }
    payload.update(kw)
    return payload


@pytest.fixture
def shared_gateway(monkeypatch):
    gw = GatewayStub()
    monkeypatch.setattr(providers, "get_gateway", lambda: gw)
    return gw


@pytest.mark.django_db
def test_create_order_returns_remote_id(client):
    payload = {
        "product_id": "prod-1",
        "product_name": "Icon pack",
        "product_price": "19.99",
        "currency": "usd",
        "buyer_email": "buyer@example.com",
    }
    r = client.post(ORDERS_URL, data=payload, content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["remote_order_id"]
    assert body["status"] == "CREATED"

    from apps.payments.models import PaymentOrderModel

    assert PaymentOrderModel.objects.count() == 0


@pytest.mark.django_db
@pytest.mark.parametrize(
    "override",
    [{"product_price": "0"}, {"product_price": "1.999"}, {"currency": "XX"}, {"buyer_email": "nope"}],
)
def test_create_order_validation_errors(client, override):
    payload = {
        "product_id": "prod-1",
        "product_name": "Icon pack",
        "product_price": "19.99",
        "currency": "USD",
        "buyer_email": "buyer@example.com",
    }
    payload.update(override)
    r = client.post(ORDERS_URL, data=payload, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"


@pytest.mark.django_db
def test_create_order_without_credentials_is_500_with_generic_message(client, monkeypatch):
    monkeypatch.setattr(providers, "get_gateway", lambda: GatewayStub(credentials=False))
    r = client.post(
        ORDERS_URL,
        data={"product_id": "p", "product_name": "n", "product_price": "1.00", "currency": "USD", "buyer_email": "b@x.io"},
        content_type="application/json",
    )
    assert r.status_code == 500
    assert r.json() == {"detail": "CONFIGURATION_ERROR", "message": "Payment failed, please try again."}


@pytest.mark.django_db
def test_capture_creates_completed_order(client):
    r = client.post(CAPTURE_URL, data=capture_payload(), content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "completed"
    assert body["total_amount"] == "100.00"
    assert body["platform_fee"] == "30.00"
    assert body["seller_amount"] == "70.00"

    r = client.get(f"{ORDERS_URL}{body['id']}/")
    assert r.status_code == 200
    assert r.json()["remote_order_id"] == "R-API-1"


@pytest.mark.django_db
def test_declined_capture_is_402_and_writes_nothing(client, shared_gateway):
    shared_gateway.declined.add("R-API-2")
    r = client.post(CAPTURE_URL, data=capture_payload("R-API-2"), content_type="application/json")
    assert r.status_code == 402
    assert r.json() == {"detail": "PAYMENT_DECLINED", "message": "Payment failed, please try again."}

    from apps.payments.models import CaptureRecordModel, PaymentOrderModel

    assert PaymentOrderModel.objects.count() == 0
    assert CaptureRecordModel.objects.count() == 0


@pytest.mark.django_db
def test_capture_outcome_unknown_is_504_and_releases_key(client, monkeypatch):
    class TimeoutGateway(GatewayStub):
        def capture_remote_order(self, remote_order_id, token):
            raise CaptureOutcomeUnknownError("POST capture: ReadTimeout")

    monkeypatch.setattr(providers, "get_gateway", lambda: TimeoutGateway())
    r = client.post(
        CAPTURE_URL, data=capture_payload("R-API-3"), content_type="application/json", HTTP_IDEMPOTENCY_KEY="k-unknown"
    )
    assert r.status_code == 504
    assert r.json()["detail"] == "CAPTURE_OUTCOME_UNKNOWN"

    from apps.payments.models import IdempotencyKey

    assert not IdempotencyKey.objects.filter(key="k-unknown").exists()


@pytest.mark.django_db
def test_resolve_capture_after_timeout(client, shared_gateway):
    shared_gateway.orders["R-API-4"] = "COMPLETED"
    r = client.post("/api/payments/orders/resolve/", data=capture_payload("R-API-4"), content_type="application/json")
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert "capture_remote_order" not in shared_gateway.calls


@pytest.mark.django_db
def test_capture_replay_without_key_returns_same_order(client, shared_gateway):
    r1 = client.post(CAPTURE_URL, data=capture_payload("R-API-5"), content_type="application/json")
    r2 = client.post(CAPTURE_URL, data=capture_payload("R-API-5"), content_type="application/json")
    assert r1.status_code == r2.status_code == 201
    assert r1.json()["id"] == r2.json()["id"]
    assert shared_gateway.calls.count("capture_remote_order") == 1


@pytest.mark.django_db
def test_cancel_and_refund_rules(client):
    order_id = client.post(CAPTURE_URL, data=capture_payload("R-API-6"), content_type="application/json").json()["id"]

    r = client.post(f"{ORDERS_URL}{order_id}/cancel/")
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_STATE"

    r = client.post(f"{ORDERS_URL}{order_id}/refund/", data={"reason": "duplicate"}, content_type="application/json")
    assert r.status_code == 200
    assert r.json()["status"] == "refunded"
    assert r.json()["refund_reason"] == "duplicate"

    r = client.post(f"{ORDERS_URL}{order_id}/refund/", data={}, content_type="application/json")
    assert r.status_code == 409


@pytest.mark.django_db
def test_unknown_order_is_404(client):
    r = client.get(f"{ORDERS_URL}6f1c1c1e-0000-4000-8000-000000000000/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_list_orders_by_buyer_and_seller(client):
    for i in range(3):
        client.post(CAPTURE_URL, data=capture_payload(f"R-LIST-{i}"), content_type="application/json")
    client.post(CAPTURE_URL, data=capture_payload("R-LIST-X", buyer_id="buyer-2"), content_type="application/json")

    r = client.get(ORDERS_URL, {"buyer_id": "buyer-1", "page_size": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert len(body["results"]) == 2

    r = client.get(ORDERS_URL, {"creator_id": "seller-1"})
    assert r.json()["count"] == 4

    assert client.get(ORDERS_URL).status_code == 400


@pytest.mark.django_db
@pytest.mark.parametrize("page_size,expected", [("0", 1), ("-3", 1), ("500", 100)])
def test_list_orders_clamps_page_size(client, page_size, expected):
    client.post(CAPTURE_URL, data=capture_payload("R-PAGE-1"), content_type="application/json")
    r = client.get(ORDERS_URL, {"buyer_id": "buyer-1", "page_size": page_size})
    assert r.status_code == 200
    assert r.json()["page_size"] == expected


@pytest.mark.django_db
def test_list_orders_rejects_non_integer_page_size(client):
    r = client.get(ORDERS_URL, {"buyer_id": "buyer-1", "page_size": "lots"})
    assert r.status_code == 400
    assert r.json()["detail"] == "VALIDATION_ERROR"


@pytest.mark.django_db
def test_has_purchased(client):
    client.post(CAPTURE_URL, data=capture_payload("R-API-7", product_id="prod-7"), content_type="application/json")
    r = client.get("/api/payments/purchases/", {"buyer_id": "buyer-1", "product_id": "prod-7"})
    assert r.json() == {"purchased": True}
    r = client.get("/api/payments/purchases/", {"buyer_id": "buyer-9", "product_id": "prod-7"})
    assert r.json() == {"purchased": False}
    assert client.get("/api/payments/purchases/", {"buyer_id": "buyer-1"}).status_code == 400
