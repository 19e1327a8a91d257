"""PayPal sandbox emulator built with FastAPI.

Implements the subset of PayPal's REST API the marketplace gateway uses:
OAuth client-credentials tokens, Orders v2 (create, read, capture) and
Payouts v1 (create, read). It lets the gateway run end to end in
development and CI without network access to PayPal.

Deterministic test behaviors:

- ``POST /v2/checkout/orders/{id}/approve`` stands in for the buyer
  approving the order on PayPal's site.
- Payers in the ``@declined.example`` domain get a ``DECLINED`` capture.
- Receivers in the ``@invalid.example`` domain are rejected with
  ``RECEIVER_UNREGISTERED``.
- A ``PENDING`` payout batch settles to ``SUCCESS`` the first time it is read.
"""

import base64
import logging
import os
import uuid
from decimal import Decimal, InvalidOperation
from typing import Annotated, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger

from repo import SandboxRepo, remote_id

app = FastAPI(title="PayPal Sandbox Emulator")

SANDBOX_CLIENT_ID = os.getenv("SANDBOX_CLIENT_ID", "sandbox-client")
SANDBOX_CLIENT_SECRET = os.getenv("SANDBOX_CLIENT_SECRET", "sandbox-secret")
MIN_PAYOUT = Decimal("0.10")
DECLINED_DOMAIN = "@declined.example"
INVALID_RECEIVER_DOMAIN = "@invalid.example"

logger = logging.getLogger("paypal_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)

Currency = constr(pattern=r"^[A-Z]{3}$")


class PayPalError(Exception):
    """Error rendered in PayPal's error body format."""

    def __init__(self, status_code: int, name: str, issue: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.name = name
        self.issue = issue
        self.message = message


@app.exception_handler(PayPalError)
async def paypal_error_handler(_request: Request, exc: PayPalError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "name": exc.name,
            "message": exc.message,
            "debug_id": uuid.uuid4().hex[:13],
            "details": [{"issue": exc.issue, "description": exc.message}],
        },
    )


# ---------------- Schemas ---------------- #

class Money(BaseModel):
    currency_code: Currency
    value: str


class PurchaseUnit(BaseModel):
    reference_id: Optional[str] = None
    description: Optional[str] = None
    amount: Money
    items: List[dict] = Field(default_factory=list)


class Payer(BaseModel):
    email_address: Optional[str] = None


class CreateOrderRequest(BaseModel):
    intent: constr(pattern=r"^(CAPTURE|AUTHORIZE)$")
    purchase_units: List[PurchaseUnit] = Field(min_length=1)
    payer: Optional[Payer] = None
    application_context: Optional[dict] = None


class PayoutAmount(BaseModel):
    value: str
    currency: Currency


class PayoutItem(BaseModel):
    recipient_type: str = "EMAIL"
    amount: PayoutAmount
    receiver: str
    note: Optional[str] = None
    sender_item_id: Optional[str] = None


class SenderBatchHeader(BaseModel):
    sender_batch_id: str = Field(min_length=1, max_length=256)
    email_subject: Optional[str] = None
    email_message: Optional[str] = None


class CreatePayoutRequest(BaseModel):
    sender_batch_header: SenderBatchHeader
    items: List[PayoutItem] = Field(min_length=1)


# ---------------- Helpers ---------------- #

def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise PayPalError(422, "UNPROCESSABLE_ENTITY", "INVALID_PARAMETER_VALUE", f"invalid amount {value!r}")


def _basic_credentials(authorization: Optional[str]):
    if not authorization or not authorization.startswith("Basic "):
        return None, None
    try:
        raw = base64.b64decode(authorization[6:]).decode("utf-8")
    except ValueError:
        return None, None
    client_id, _, secret = raw.partition(":")
    return client_id, secret


def require_token(authorization: Annotated[Optional[str], Header()] = None) -> str:
    """Dependency validating the ``Bearer`` access token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise PayPalError(401, "AUTHENTICATION_FAILURE", "INVALID_TOKEN", "Authentication failed due to missing token.")
    token = authorization[7:]
    if not SandboxRepo().token_valid(token):
        raise PayPalError(401, "AUTHENTICATION_FAILURE", "INVALID_TOKEN", "Authentication failed due to invalid token.")
    return token


def order_body(order) -> dict:
    body = {
        "id": order.id,
        "intent": order.body.get("intent", "CAPTURE"),
        "status": order.status,
        "purchase_units": order.body.get("purchase_units", []),
        "links": [
            {"href": f"/v2/checkout/orders/{order.id}", "rel": "self", "method": "GET"},
            {"href": f"/checkoutnow?token={order.id}", "rel": "approve", "method": "GET"},
        ],
    }
    if order.payer_email:
        body["payer"] = {"email_address": order.payer_email}
    return body


def capture_body(order) -> dict:
    body = order_body(order)
    capture = {
        "id": order.capture_id,
        "status": "COMPLETED" if order.status == "COMPLETED" else "DECLINED",
        "amount": {"currency_code": order.currency, "value": order.amount},
    }
    units = body["purchase_units"] or [{}]
    units[0] = {**units[0], "payments": {"captures": [capture]}}
    body["purchase_units"] = units
    return body


def batch_body(batch) -> dict:
    return {
        "batch_header": {
            "payout_batch_id": batch.payout_batch_id,
            "batch_status": batch.status,
            "sender_batch_header": batch.body.get("sender_batch_header", {}),
            "amount": {"currency": batch.currency, "value": batch.amount},
        },
        "items": batch.body.get("items", []),
        "links": [{"href": f"/v1/payments/payouts/{batch.payout_batch_id}", "rel": "self", "method": "GET"}],
    }


# ---------------- Endpoints ---------------- #

@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v1/oauth2/token")
def token(authorization: Annotated[Optional[str], Header()] = None):
    """Issue a bearer token for valid client credentials (HTTP Basic)."""
    client_id, secret = _basic_credentials(authorization)
    if client_id != SANDBOX_CLIENT_ID or secret != SANDBOX_CLIENT_SECRET:
        return JSONResponse(
            status_code=401,
            content={"error": "invalid_client", "error_description": "Client Authentication failed"},
        )
    access_token = SandboxRepo().issue_token(client_id)
    return {"scope": "openid", "access_token": access_token, "token_type": "Bearer", "app_id": "APP-SANDBOX", "expires_in": 32400}


@app.post("/v2/checkout/orders", status_code=201)
def create_order(req: CreateOrderRequest, _token: str = Depends(require_token)):
    unit = req.purchase_units[0]
    if _decimal(unit.amount.value) <= 0:
        raise PayPalError(422, "UNPROCESSABLE_ENTITY", "AMOUNT_MISMATCH", "Amount must be positive.")
    payer_email = req.payer.email_address if req.payer and req.payer.email_address else ""
    order = SandboxRepo().create_order(
        payer_email=payer_email,
        currency=unit.amount.currency_code,
        amount=unit.amount.value,
        body=req.model_dump(exclude_none=True),
    )
    logger.info("order created", extra={"order_id": order.id, "amount": order.amount, "currency": order.currency})
    return order_body(order)


@app.get("/v2/checkout/orders/{order_id}")
def get_order(order_id: str, _token: str = Depends(require_token)):
    order = SandboxRepo().get_order(order_id)
    if order is None:
        raise PayPalError(404, "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID", "Specified resource ID does not exist.")
    return order_body(order)


@app.post("/v2/checkout/orders/{order_id}/approve")
def approve_order(order_id: str, _token: str = Depends(require_token)):
    """Test hook: mark the order as approved by the buyer."""
    repo = SandboxRepo()
    order = repo.transition_order(order_id, {"CREATED"}, "APPROVED")
    if order is None:
        existing = repo.get_order(order_id)
        if existing is None:
            raise PayPalError(404, "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID", "Specified resource ID does not exist.")
        order = existing
    return order_body(order)


@app.post("/v2/checkout/orders/{order_id}/capture", status_code=201)
def capture_order(order_id: str, _token: str = Depends(require_token)):
    """Capture an approved order.

    Raises:
        PayPalError: 404 for unknown orders; 422 ``ORDER_ALREADY_CAPTURED``
            or ``ORDER_NOT_APPROVED`` when the order cannot be captured.
    """
    repo = SandboxRepo()
    existing = repo.get_order(order_id)
    if existing is None:
        raise PayPalError(404, "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID", "Specified resource ID does not exist.")

    to = "DECLINED" if existing.payer_email.lower().endswith(DECLINED_DOMAIN) else "COMPLETED"
    order = repo.transition_order(order_id, {"APPROVED"}, to, capture_id=remote_id("C"))
    if order is None:
        current = repo.get_order(order_id)
        if current.status == "COMPLETED":
            raise PayPalError(422, "UNPROCESSABLE_ENTITY", "ORDER_ALREADY_CAPTURED", "Order already captured.")
        raise PayPalError(
            422, "UNPROCESSABLE_ENTITY", "ORDER_NOT_APPROVED", "Payer has not yet approved the Order for payment."
        )
    logger.info("order captured", extra={"order_id": order.id, "status": order.status})
    return capture_body(order)


@app.post("/v1/payments/payouts", status_code=201)
def create_payout(req: CreatePayoutRequest, _token: str = Depends(require_token)):
    """Create a payout batch.

    A repeated ``sender_batch_id`` returns the original batch instead of
    paying twice.
    """
    repo = SandboxRepo()
    sender_batch_id = req.sender_batch_header.sender_batch_id
    original = repo.find_batch_by_sender_id(sender_batch_id)
    if original is not None:
        return batch_body(original)

    currencies = {item.amount.currency for item in req.items}
    if len(currencies) != 1:
        raise PayPalError(422, "VALIDATION_ERROR", "CURRENCY_MISMATCH", "All items must use the same currency.")
    total = Decimal("0.00")
    for item in req.items:
        amount = _decimal(item.amount.value)
        if amount < MIN_PAYOUT:
            raise PayPalError(
                422, "VALIDATION_ERROR", "AMOUNT_TOO_LOW", f"Payout amount must be at least {MIN_PAYOUT}."
            )
        if item.receiver.lower().endswith(INVALID_RECEIVER_DOMAIN):
            raise PayPalError(
                422, "VALIDATION_ERROR", "RECEIVER_UNREGISTERED", "Receiver is unregistered."
            )
        total += amount

    batch, created = repo.create_batch(
        sender_batch_id=sender_batch_id,
        currency=currencies.pop(),
        amount=f"{total:.2f}",
        body=req.model_dump(exclude_none=True),
    )
    if created:
        logger.info("payout batch created", extra={"batch_id": batch.payout_batch_id, "amount": batch.amount})
    return batch_body(batch)


@app.get("/v1/payments/payouts/{batch_id}")
def get_payout(batch_id: str, _token: str = Depends(require_token)):
    batch = SandboxRepo().read_batch(batch_id)
    if batch is None:
        raise PayPalError(404, "RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID", "Specified resource ID does not exist.")
    return batch_body(batch)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    response.headers["Paypal-Debug-Id"] = uuid.uuid4().hex[:13]
    return response
