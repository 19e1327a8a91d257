import uuid
from decimal import Decimal

from django.db import models


MONEY = {"max_digits": 12, "decimal_places": 2}


class PaymentOrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    remote_order_id = models.CharField(max_length=64, unique=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        APPROVED = "approved"
        COMPLETED = "completed"
        FAILED = "failed"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    buyer_id = models.CharField(max_length=128, db_index=True)
    buyer_email = models.EmailField(blank=True, default="")
    creator_id = models.CharField(max_length=128, db_index=True)
    creator_name = models.CharField(max_length=200, blank=True, default="")
    creator_email = models.EmailField(blank=True, default="")

    # product snapshot taken at checkout
    product_id = models.CharField(max_length=128, db_index=True)
    product_name = models.CharField(max_length=300, blank=True, default="")
    product_price = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=3, default="USD")

    total_amount = models.DecimalField(**MONEY)
    platform_fee = models.DecimalField(**MONEY)
    seller_amount = models.DecimalField(**MONEY)
    fee_rate = models.DecimalField(max_digits=5, decimal_places=4, default=Decimal("0.3000"))

    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    paypal_status = models.CharField(max_length=64, blank=True, default="")
    refund_reason = models.TextField(blank=True, default="")

    created_at = models.DateTimeField()
    captured_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField()
    refunded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payment_orders"
        ordering = ["-created_at"]


class PayoutModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # one-way reference; an order never owns its payout
    order_id = models.UUIDField(unique=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"

    seller_id = models.CharField(max_length=128, db_index=True)
    seller_email = models.EmailField(blank=True, default="")
    amount = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=3, default="USD")
    paypal_payout_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    error_message = models.TextField(blank=True, default="")

    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "payouts"
        ordering = ["created_at"]


class CaptureRecordModel(models.Model):
    """Write-ahead record of a completed gateway capture."""

    remote_order_id = models.CharField(max_length=64, primary_key=True)
    context = models.JSONField()
    total_amount = models.DecimalField(**MONEY)
    platform_fee = models.DecimalField(**MONEY)
    seller_amount = models.DecimalField(**MONEY)
    fee_rate = models.DecimalField(max_digits=5, decimal_places=4)
    paypal_status = models.CharField(max_length=64)
    captured_at = models.DateTimeField()

    order_id = models.UUIDField(null=True, blank=True)
    payout_id = models.UUIDField(null=True, blank=True)
    counters_applied = models.BooleanField(default=False)
    completed = models.BooleanField(default=False, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "capture_records"


class ProductStatsModel(models.Model):
    product_id = models.CharField(max_length=128, primary_key=True)
    sales = models.PositiveIntegerField(default=0)
    total_revenue = models.DecimalField(default=Decimal("0.00"), **MONEY)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "product_stats"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
