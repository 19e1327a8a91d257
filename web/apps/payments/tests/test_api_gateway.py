import pytest


@pytest.mark.django_db
def test_health_with_stubbed_gateway(client):
    r = client.get("/api/health/")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["components"]["db"]["ok"] is True


@pytest.mark.django_db
def test_health_reports_missing_paypal_credentials(client, settings):
    settings.USE_HTTP_ADAPTERS = True
    settings.PAYPAL_CLIENT_ID = ""
    r = client.get("/api/health/")
    assert r.status_code == 503
    assert r.json()["components"]["paypal"]["ok"] is False


@pytest.mark.django_db
def test_request_id_is_echoed(client):
    r = client.get("/api/health/", HTTP_X_REQUEST_ID="abc-123")
    assert r.headers["X-Request-ID"] == "abc-123"

    r = client.get("/api/health/")
    assert r.headers["X-Request-ID"]


def test_oversized_body_is_rejected(client):
    r = client.post(
        "/api/payments/orders/",
        data="x" * (64 * 1024 + 1),
        content_type="application/json",
    )
    assert r.status_code == 413
    assert r.json()["detail"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.django_db
def test_http_client_is_wired_when_enabled(settings):
    from apps.payments import providers
    from apps.payments.http_adapters import HttpPayPalClient

    settings.USE_HTTP_ADAPTERS = True
    assert isinstance(providers.get_gateway(), HttpPayPalClient)
    settings.USE_HTTP_ADAPTERS = False
    assert not isinstance(providers.get_gateway(), HttpPayPalClient)
