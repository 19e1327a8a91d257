"""Liveness endpoint reporting the database and the PayPal configuration."""

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    # credentials only matter when the real PayPal client is wired in
    use_http = getattr(settings, "USE_HTTP_ADAPTERS", True)
    creds_ok = bool(getattr(settings, "PAYPAL_CLIENT_ID", "") and getattr(settings, "PAYPAL_CLIENT_SECRET", ""))
    gateway_ok = creds_ok or not use_http

    ok = db_ok and gateway_ok
    code = 200 if ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "components": {
                "db": {"ok": db_ok},
                "paypal": {"ok": gateway_ok, "mode": getattr(settings, "PAYPAL_MODE", "sandbox"), "http": use_http},
            },
        },
        status=code,
    )
