"""Request-scoped middleware for the payments gateway.

``RequestIdMiddleware`` gives every request a correlation id, taken from
the ``X-Request-Id`` header when the caller (usually the storefront) sends
one, and generated otherwise. The id is kept in ``REQUEST_ID_CTX`` so log
records and outgoing PayPal calls can carry it without threading it through
every function, and it is echoed back in the ``X-Request-ID`` response
header.

``ApiSizeLimitMiddleware`` rejects oversized bodies on ``/api/`` routes
before they reach the JSON parser.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(64 * 1024)))
MAX_REQUEST_ID_LEN = 128


class RequestIdMiddleware(MiddlewareMixin):
    """Sets ``request.request_id`` and the ``REQUEST_ID_CTX`` context var.

    Client-supplied ids longer than ``MAX_REQUEST_ID_LEN`` are replaced by a
    fresh UUIDv4 so they cannot bloat log lines or upstream headers.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = (request.META.get(self.HEADER) or "").strip()
        if not rid or len(rid) > MAX_REQUEST_ID_LEN:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        """Echo the id on the response and restore the previous context value."""
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
