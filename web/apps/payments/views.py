"""HTTP views for the payments app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain DTOs, delegate to the domain services obtained from
``providers``, and translate domain errors into HTTP responses.

Buyer-facing endpoints (checkout and capture) answer gateway and store
failures with a generic message; the full gateway payload is only logged.
Operator endpoints (payouts) return the payload too, for diagnosis.

Idempotency: capture and payout requests may carry an ``Idempotency-Key``
header. The first request is processed and its response stored; retries
with the same payload replay it with an ``Idempotent-Replay: true`` header.
Reusing a key with a different payload returns HTTP 409. When the PayPal
HTTP client is in use the key is also sent as ``PayPal-Request-Id``.
"""

import logging

from django.core.paginator import Paginator
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import (
    CaptureOutcomeUnknownError,
    ConfigurationError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentError,
    PayoutFailedError,
    StoreError,
    ValidationError,
)
from .http_adapters import HttpPayPalClient
from .idempotency import claim, finalize, release
from .schemas import (
    CaptureOrderDTO,
    CreateOrderDTO,
    DispatchPayoutDTO,
    OrderReadDTO,
    PayoutReadDTO,
    RefundOrderDTO,
)

logger = logging.getLogger("payments.api")

BUYER_MESSAGE = "Payment failed, please try again."
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# checked in MRO order, so subclasses must come before their bases
ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PaymentDeclinedError, status.HTTP_402_PAYMENT_REQUIRED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (PayoutFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (CaptureOutcomeUnknownError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]
OPAQUE_ERRORS = (PaymentDeclinedError, GatewayError, ConfigurationError, StoreError)
# outcomes that may change on retry; idempotency claims are released, not stored
TRANSIENT_ERRORS = (GatewayError, StoreError, ConfigurationError)


def error_status(exc: PaymentError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: PaymentError, operator: bool = False) -> dict:
    """Build the response body for a domain error.

    Args:
        exc: The domain error.
        operator: Include the raw message and gateway payload.
    """
    body = {"detail": exc.code}
    if operator:
        body["message"] = exc.message
        if exc.details is not None:
            body["gateway"] = exc.details
    elif isinstance(exc, OPAQUE_ERRORS):
        body["message"] = BUYER_MESSAGE
    else:
        body["message"] = exc.message
    return body


def _log_error(exc: PaymentError, **context):
    level = logging.ERROR if isinstance(exc, (ConfigurationError, StoreError, GatewayError)) else logging.WARNING
    logger.log(level, "payments request failed", extra={"code": exc.code, "error": exc.message, "gateway": exc.details, **context})


def _invalid(e: PydanticValidationError) -> Response:
    return Response({"detail": "VALIDATION_ERROR", "message": str(e)}, status=status.HTTP_400_BAD_REQUEST)


def order_body(order) -> dict:
    return OrderReadDTO.model_validate(order).model_dump(mode="json", exclude_none=True)


def payout_body(payout) -> dict:
    return PayoutReadDTO.model_validate(payout).model_dump(mode="json", exclude_none=True)


def _replay(rec) -> Response:
    if not rec.response_status:
        return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
    resp = Response(rec.response_body, status=rec.response_status)
    resp["Idempotent-Replay"] = "true"
    return resp


def _propagate_key(gateway, idem_key):
    if idem_key and isinstance(gateway, HttpPayPalClient):
        gateway._idem_key = idem_key


class ScopedView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_read"


class OrdersCollectionView(ScopedView):
    """List a buyer's or seller's orders, or start a checkout.

    ``POST`` validates the purchase and creates the PayPal order; nothing
    is stored locally until the payment is captured.
    """

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "payments_read" if self.request.method == "GET" else "payments_checkout"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        buyer_id = request.GET.get("buyer_id")
        creator_id = request.GET.get("creator_id")
        if not buyer_id and not creator_id:
            return Response(
                {"detail": "VALIDATION_ERROR", "message": "buyer_id or creator_id is required"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        service = providers.get_lifecycle_service()
        try:
            orders = service.buyer_orders(buyer_id) if buyer_id else service.seller_orders(creator_id)
        except PaymentError as e:
            _log_error(e)
            return Response(error_body(e), status=error_status(e))

        try:
            page_size = int(request.GET.get("page_size", DEFAULT_PAGE_SIZE))
        except (TypeError, ValueError):
            return Response(
                {"detail": "VALIDATION_ERROR", "message": "page_size must be an integer"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        p = Paginator(orders, page_size)
        page_obj = p.get_page(request.GET.get("page", 1))
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [order_body(o) for o in page_obj.object_list],
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request):
        """Create a PayPal order for a checkout.

        Returns:
            Response: 201 with ``{remote_order_id, status}``; 400 on
            validation errors; 402 when PayPal rejects the order; 500 when
            credentials are missing; 503 when PayPal is unavailable.
        """
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        service = providers.get_lifecycle_service()
        try:
            remote = service.create_order(dto.to_spec())
        except PaymentError as e:
            _log_error(e, product_id=dto.product_id)
            return Response(error_body(e), status=error_status(e))

        return Response({"remote_order_id": remote.id, "status": remote.status}, status=status.HTTP_201_CREATED)


class CaptureOrderView(ScopedView):
    """Capture an approved PayPal order and record the sale."""

    throttle_scope = "payments_checkout"

    def post(self, request):
        """Capture the order named in the payload.

        Returns:
            Response: One of the following responses.
            - 201 with the completed order.
            - 200 with the stored body when an idempotent request is replayed.
            - 400 for validation errors.
            - 402 ``PAYMENT_DECLINED`` when PayPal did not complete the capture.
            - 409 ``DUPLICATE_CAPTURE`` / ``IDEMPOTENCY_CONFLICT``.
            - 504 ``CAPTURE_OUTCOME_UNKNOWN`` when the capture call failed
              mid-flight; resolve it through ``orders/resolve/``.
            - 500/503 when credentials, PayPal or the store are unavailable.
              These and the 504 are not stored under the idempotency key,
              so a retry with the same key runs again.
        """
        idem_key = request.headers.get("Idempotency-Key")
        try:
            dto = CaptureOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        rec = None
        if idem_key:
            try:
                existing, rec = claim(idem_key, "capture", request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                return _replay(rec)

        service = providers.get_lifecycle_service()
        _propagate_key(service.gateway, idem_key)

        try:
            order = service.capture_order(dto.remote_order_id, dto.to_context())
        except TRANSIENT_ERRORS as e:
            _log_error(e, remote_order_id=dto.remote_order_id)
            if rec:
                release(rec)
            return Response(error_body(e), status=error_status(e))
        except PaymentError as e:
            _log_error(e, remote_order_id=dto.remote_order_id)
            body, code = error_body(e), error_status(e)
            if rec:
                finalize(rec, code, body)
            return Response(body, status=code)

        body = order_body(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class ResolveCaptureView(ScopedView):
    """Settle a capture whose outcome is unknown by re-querying PayPal."""

    throttle_scope = "payments_checkout"

    def post(self, request):
        try:
            dto = CaptureOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        service = providers.get_lifecycle_service()
        try:
            order = service.resolve_capture(dto.remote_order_id, dto.to_context())
        except PaymentError as e:
            _log_error(e, remote_order_id=dto.remote_order_id)
            return Response(error_body(e), status=error_status(e))
        return Response(order_body(order), status=status.HTTP_200_OK)


class RetrieveOrderView(ScopedView):
    def get(self, request, oid):
        try:
            order = providers.get_lifecycle_service().get_order(str(oid))
        except PaymentError as e:
            return Response(error_body(e), status=error_status(e))
        return Response(order_body(order), status=status.HTTP_200_OK)


class CancelOrderView(ScopedView):
    throttle_scope = "payments_checkout"

    def post(self, request, oid):
        try:
            order = providers.get_lifecycle_service().cancel_order(str(oid))
        except PaymentError as e:
            _log_error(e, order_id=str(oid))
            return Response(error_body(e), status=error_status(e))
        return Response(order_body(order), status=status.HTTP_200_OK)


class RefundOrderView(ScopedView):
    throttle_scope = "payments_checkout"

    def post(self, request, oid):
        try:
            dto = RefundOrderDTO.model_validate(request.data or {})
        except PydanticValidationError as e:
            return _invalid(e)
        try:
            order = providers.get_lifecycle_service().refund_order(str(oid), dto.reason)
        except PaymentError as e:
            _log_error(e, order_id=str(oid))
            return Response(error_body(e), status=error_status(e))
        return Response(order_body(order), status=status.HTTP_200_OK)


class PurchaseCheckView(ScopedView):
    """Whether a buyer already owns a product."""

    def get(self, request):
        buyer_id = request.GET.get("buyer_id")
        product_id = request.GET.get("product_id")
        if not buyer_id or not product_id:
            return Response(
                {"detail": "VALIDATION_ERROR", "message": "buyer_id and product_id are required"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        try:
            purchased = providers.get_lifecycle_service().has_purchased(buyer_id, product_id)
        except PaymentError as e:
            return Response(error_body(e), status=error_status(e))
        return Response({"purchased": purchased}, status=status.HTTP_200_OK)


class PayoutsCollectionView(ScopedView):
    """Operator endpoint: dispatch a seller's pending earnings."""

    throttle_scope = "payments_payouts"

    def post(self, request):
        """Dispatch a payout batch.

        Returns:
            Response: 201 with ``{batch_id, status, amount, currency,
            payout_ids}``; 400 on validation errors (including amounts
            below 0.10); 422 ``PAYOUT_FAILED`` with the gateway payload when
            PayPal rejects the batch.
        """
        idem_key = request.headers.get("Idempotency-Key")
        try:
            dto = DispatchPayoutDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        rec = None
        if idem_key:
            try:
                existing, rec = claim(idem_key, "payout", request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                return _replay(rec)

        dispatcher = providers.get_payout_dispatcher()
        _propagate_key(dispatcher.gateway, idem_key)

        try:
            result = dispatcher.dispatch_payout(
                dto.seller_id, dto.amount, dto.email, dto.currency, payout_ids=dto.payout_ids
            )
        except TRANSIENT_ERRORS as e:
            _log_error(e, seller_id=dto.seller_id)
            if rec:
                release(rec)
            return Response(error_body(e, operator=True), status=error_status(e))
        except PaymentError as e:
            _log_error(e, seller_id=dto.seller_id)
            body, code = error_body(e, operator=True), error_status(e)
            if rec:
                finalize(rec, code, body)
            return Response(body, status=code)

        body = {
            "batch_id": result.batch_id,
            "status": "processing",
            "amount": f"{result.amount:.2f}",
            "currency": result.currency,
            "payout_ids": list(result.payout_ids),
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body)
        return Response(body, status=status.HTTP_201_CREATED)


class ReconcileBatchView(ScopedView):
    throttle_scope = "payments_payouts"

    def post(self, request, batch_id: str):
        try:
            moved = providers.get_payout_dispatcher().reconcile_batch(batch_id)
        except PaymentError as e:
            _log_error(e, batch_id=batch_id)
            return Response(error_body(e, operator=True), status=error_status(e))
        return Response({"batch_id": batch_id, "updated": moved}, status=status.HTTP_200_OK)


class SellerEarningsView(ScopedView):
    def get(self, request, seller_id: str):
        earnings = providers.get_earnings_aggregator().compute_seller_earnings(seller_id)
        body = earnings.as_dict()
        body["total_earnings"] = f"{earnings.total_earnings:.2f}"
        if body["error"] is None:
            del body["error"]
        return Response(body, status=status.HTTP_200_OK)


class SellerPayoutsView(ScopedView):
    def get(self, request, seller_id: str):
        try:
            payouts = providers.get_payout_dispatcher().seller_payouts(seller_id)
        except PaymentError as e:
            return Response(error_body(e), status=error_status(e))
        return Response({"results": [payout_body(p) for p in payouts]}, status=status.HTTP_200_OK)


class OrderStatisticsView(ScopedView):
    def get(self, request):
        stats = providers.get_earnings_aggregator().order_statistics()
        body = stats.as_dict()
        for name in ("total_revenue", "platform_fees", "seller_payouts", "average_order_value"):
            body[name] = f"{body[name]:.2f}"
        if body["error"] is None:
            del body["error"]
        return Response(body, status=status.HTTP_200_OK)
