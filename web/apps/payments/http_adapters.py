"""PayPal HTTP adapter with retries, a circuit breaker, and context headers.

This module implements ``GatewayPort`` against PayPal's REST API using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
  the gateway middleware.
- A circuit breaker for the PayPal dependency to avoid hammering it while
  it is unhealthy, with HALF_OPEN probing after a timeout.
- A simple retry policy with exponential backoff for transport errors and
  5xx on calls that are safe to repeat (token, order creation, payouts and
  reads). Capture is never retried: a failure mid-flight raises
  ``CaptureOutcomeUnknownError`` and the caller must re-query the order.
- Idempotency: every call carries a ``PayPal-Request-Id`` header, reused
  across retries of the same call. A view can set ``_idem_key`` on the
  client to propagate the caller's ``Idempotency-Key`` to the capture and
  payout calls; token, order creation and reads always get fresh ids.
"""

import threading
import time
import uuid
from typing import Optional, Type

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    CaptureResult,
    CheckoutSpec,
    GatewayPort,
    PayoutBatchStatus,
    PayoutRequest,
    PayoutResult,
    RemoteOrder,
)
from .errors import (
    CaptureOutcomeUnknownError,
    ConfigurationError,
    GatewayError,
    GatewayUnavailableError,
    NotFoundError,
    PaymentDeclinedError,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

LIVE_BASE_URL = "https://api-m.paypal.com"
SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"


def gateway_base_url() -> str:
    """Resolve the PayPal host from ``PAYPAL_BASE_URL`` or ``PAYPAL_MODE``."""
    override = getattr(settings, "PAYPAL_BASE_URL", "")
    if override:
        return override.rstrip("/")
    if getattr(settings, "PAYPAL_MODE", "sandbox") == "production":
        return LIVE_BASE_URL
    return SANDBOX_BASE_URL


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            GatewayUnavailableError: If the circuit is OPEN or a HALF_OPEN
                probe is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise GatewayUnavailableError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                # allow only one concurrent probe
                if self._half_open_probe_in_flight:
                    raise GatewayUnavailableError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_threshold and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_paypal_cb = CircuitBreaker(
    "paypal",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _body(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _issue(body: dict, fallback: str) -> str:
    """First PayPal error ``issue`` code, else the error ``name``."""
    details = body.get("details") or []
    if details and isinstance(details[0], dict) and details[0].get("issue"):
        return details[0]["issue"]
    return body.get("name") or fallback


# ---------------- PayPal Adapter ---------------- #

class HttpPayPalClient(GatewayPort):
    """HTTP client for PayPal Checkout and Payouts.

    Notes:
        Credentials are checked lazily in ``authenticate`` so the client can
        be constructed even when they are missing; the first operation then
        fails with ``ConfigurationError`` before any request is sent.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or gateway_base_url()).rstrip("/")
        self.client_id = client_id if client_id is not None else getattr(settings, "PAYPAL_CLIENT_ID", "")
        self.client_secret = (
            client_secret if client_secret is not None else getattr(settings, "PAYPAL_CLIENT_SECRET", "")
        )
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 10.0)
        self._idem_key: Optional[str] = None

    # -- GatewayPort --

    def authenticate(self) -> str:
        """Exchange client credentials for an access token.

        Raises:
            ConfigurationError: If client id or secret is not configured.
            GatewayUnavailableError: If PayPal rejects the credentials or
                cannot be reached.
        """
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET must be set")
        resp = self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        body = _body(resp)
        if resp.status_code != 200 or not body.get("access_token"):
            raise GatewayUnavailableError("PAYPAL_AUTH_FAILED", details=body)
        return body["access_token"]

    def create_remote_order(self, spec: CheckoutSpec, token: str) -> RemoteOrder:
        """Create a CAPTURE-intent order for a single product.

        Raises:
            PaymentDeclinedError: If PayPal rejects the order (4xx).
        """
        value = f"{spec.product_price:.2f}"
        site_url = getattr(settings, "SITE_URL", "").rstrip("/")
        payload = {
            "intent": "CAPTURE",
            "payer": {"email_address": spec.buyer_email},
            "purchase_units": [
                {
                    "reference_id": spec.product_id,
                    "description": spec.product_name,
                    "amount": {
                        "currency_code": spec.currency,
                        "value": value,
                        "breakdown": {"item_total": {"currency_code": spec.currency, "value": value}},
                    },
                    "items": [
                        {
                            "name": spec.product_name,
                            "unit_amount": {"currency_code": spec.currency, "value": value},
                            "quantity": "1",
                        }
                    ],
                }
            ],
            "application_context": {
                "return_url": f"{site_url}/checkout/success",
                "cancel_url": f"{site_url}/checkout/cancel",
                "brand_name": getattr(settings, "PAYPAL_BRAND_NAME", ""),
                "user_action": "PAY_NOW",
            },
        }
        resp = self._send("POST", "/v2/checkout/orders", token=token, json=payload)
        body = _body(resp)
        if resp.status_code in (200, 201):
            return RemoteOrder(id=body.get("id", ""), status=body.get("status", ""))
        self._raise_for_auth(resp, body)
        raise PaymentDeclinedError(_issue(body, "ORDER_NOT_CREATED"), body)

    def capture_remote_order(self, remote_order_id: str, token: str) -> CaptureResult:
        """Capture an approved order. Never retried.

        Business rejections (4xx, e.g. ``INSTRUMENT_DECLINED`` or
        ``ORDER_ALREADY_CAPTURED``) are returned as a non-completed
        ``CaptureResult`` rather than raised.

        Raises:
            CaptureOutcomeUnknownError: On transport errors or 5xx.
        """
        resp = self._send(
            "POST",
            f"/v2/checkout/orders/{remote_order_id}/capture",
            token=token,
            json={},
            retry=False,
            error_cls=CaptureOutcomeUnknownError,
            keyed=True,
        )
        body = _body(resp)
        if resp.status_code in (200, 201):
            return CaptureResult(status=body.get("status", ""), payload=body)
        self._raise_for_auth(resp, body)
        return CaptureResult(status=_issue(body, f"HTTP_{resp.status_code}"), payload=body)

    def get_remote_order(self, remote_order_id: str, token: str) -> RemoteOrder:
        resp = self._send("GET", f"/v2/checkout/orders/{remote_order_id}", token=token)
        body = _body(resp)
        if resp.status_code == 200:
            return RemoteOrder(id=body.get("id", remote_order_id), status=body.get("status", ""))
        if resp.status_code == 404:
            raise NotFoundError(f"remote order {remote_order_id} not found", body)
        self._raise_for_auth(resp, body)
        raise GatewayUnavailableError(_issue(body, f"HTTP_{resp.status_code}"), body)

    def create_remote_payout(self, request: PayoutRequest, token: str) -> PayoutResult:
        """Submit a single-item payout batch.

        Retries are safe: PayPal de-duplicates on ``sender_batch_id``.
        """
        payload = {
            "sender_batch_header": {
                "sender_batch_id": request.sender_batch_id,
                "email_subject": request.email_subject,
                "email_message": request.email_message,
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": f"{request.amount:.2f}", "currency": request.currency},
                    "receiver": request.receiver,
                    "note": request.note,
                    "sender_item_id": f"{request.sender_batch_id}-1",
                }
            ],
        }
        resp = self._send("POST", "/v1/payments/payouts", token=token, json=payload, keyed=True)
        body = _body(resp)
        if resp.status_code in (200, 201):
            batch_id = (body.get("batch_header") or {}).get("payout_batch_id")
            return PayoutResult(ok=True, batch_id=batch_id, payload=body)
        self._raise_for_auth(resp, body)
        return PayoutResult(
            ok=False,
            error_message=body.get("message") or _issue(body, "PayPal payout failed"),
            payload=body,
        )

    def get_remote_payout(self, batch_id: str, token: str) -> PayoutBatchStatus:
        resp = self._send("GET", f"/v1/payments/payouts/{batch_id}", token=token)
        body = _body(resp)
        if resp.status_code == 200:
            header = body.get("batch_header") or {}
            return PayoutBatchStatus(
                batch_id=header.get("payout_batch_id", batch_id),
                status=header.get("batch_status", ""),
                payload=body,
            )
        if resp.status_code == 404:
            raise NotFoundError(f"payout batch {batch_id} not found", body)
        self._raise_for_auth(resp, body)
        raise GatewayUnavailableError(_issue(body, f"HTTP_{resp.status_code}"), body)

    # -- transport --

    @staticmethod
    def _raise_for_auth(resp, body: dict):
        if resp.status_code in (401, 403):
            raise GatewayUnavailableError("PAYPAL_UNAUTHORIZED", details=body)

    def _send(
        self,
        method: str,
        path: str,
        token: str | None = None,
        json: dict | None = None,
        data: dict | None = None,
        auth: tuple | None = None,
        retry: bool = True,
        error_cls: Type[GatewayError] = GatewayUnavailableError,
        keyed: bool = False,
    ):
        """Send one logical request, retrying transport errors and 5xx.

        Responses below 500 are returned to the caller for business
        mapping and count as circuit successes. When ``keyed`` is set the
        caller's idempotency key is sent as ``PayPal-Request-Id``; other
        calls get a fresh id.

        Raises:
            GatewayUnavailableError: (or ``error_cls``) when the circuit is
                open or retries are exhausted.
        """
        max_attempts, backoff = _retry_policy()
        if not retry:
            max_attempts = 1
        tries = 0

        request_id = self._idem_key if keyed and self._idem_key else str(uuid.uuid4())
        extras = {"PayPal-Request-Id": request_id}
        if token:
            extras["Authorization"] = f"Bearer {token}"
        headers = _request_headers(extras)
        url = f"{self.base_url}{path}"

        # CIRCUIT: precheck
        _paypal_cb.before_call()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        if method == "GET":
                            resp = client.get(url, headers=headers)
                        else:
                            resp = client.post(url, json=json, data=data, auth=auth, headers=headers)
                        if resp.status_code < 500:
                            _paypal_cb.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    if tries >= max_attempts or not _should_retry(resp, exc):
                        _paypal_cb.on_failure()
                        if exc is not None:
                            raise error_cls(f"{method} {path}: {exc.__class__.__name__}") from exc
                        raise error_cls(f"{method} {path}: HTTP {resp.status_code}", details=_body(resp))

                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    time.sleep(min(sleep_s, cap))
        finally:
            _paypal_cb.on_finish()
