"""Idempotency keys for the money-moving endpoints.

Capture and payout requests may carry an ``Idempotency-Key`` header. The
first request with a key claims it and, once processed, stores its
response; retries with the same key and payload replay that response
without touching the gateway again. Reusing a key with a different payload
(or on a different endpoint) is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def request_hash(scope: str, payload: dict) -> str:
    """Stable SHA-256 of ``scope`` plus the JSON-normalized payload."""
    body = json.dumps({"scope": scope, "payload": payload}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def claim(key: str, scope: str, payload: dict):
    """Claim ``key`` for this request or find the earlier claim.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        False when this call created the record and must finalize it.

    Raises:
        ValueError: ``IDEMPOTENCY_CONFLICT`` when the key was used with a
            different payload or scope.
    """
    h = request_hash(scope, payload)
    try:
        # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the final response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey):
    """Drop a claim whose outcome is unknown so the caller may retry."""
    rec.delete()
