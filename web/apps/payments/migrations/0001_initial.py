import uuid
from decimal import Decimal

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="PaymentOrderModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("remote_order_id", models.CharField(max_length=64, unique=True)),
                ("buyer_id", models.CharField(db_index=True, max_length=128)),
                ("buyer_email", models.EmailField(blank=True, default="", max_length=254)),
                ("creator_id", models.CharField(db_index=True, max_length=128)),
                ("creator_name", models.CharField(blank=True, default="", max_length=200)),
                ("creator_email", models.EmailField(blank=True, default="", max_length=254)),
                ("product_id", models.CharField(db_index=True, max_length=128)),
                ("product_name", models.CharField(blank=True, default="", max_length=300)),
                ("product_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("platform_fee", models.DecimalField(decimal_places=2, max_digits=12)),
                ("seller_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("fee_rate", models.DecimalField(decimal_places=4, default=Decimal("0.3000"), max_digits=5)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("approved", "Approved"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("paypal_status", models.CharField(blank=True, default="", max_length=64)),
                ("refund_reason", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField()),
                ("captured_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField()),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "payment_orders",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PayoutModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("order_id", models.UUIDField(unique=True)),
                ("seller_id", models.CharField(db_index=True, max_length=128)),
                ("seller_email", models.EmailField(blank=True, default="", max_length=254)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("paypal_payout_id", models.CharField(blank=True, db_index=True, default="", max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("error_message", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField()),
                ("updated_at", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "db_table": "payouts",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="CaptureRecordModel",
            fields=[
                ("remote_order_id", models.CharField(max_length=64, primary_key=True, serialize=False)),
                ("context", models.JSONField()),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("platform_fee", models.DecimalField(decimal_places=2, max_digits=12)),
                ("seller_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("fee_rate", models.DecimalField(decimal_places=4, max_digits=5)),
                ("paypal_status", models.CharField(max_length=64)),
                ("captured_at", models.DateTimeField()),
                ("order_id", models.UUIDField(blank=True, null=True)),
                ("payout_id", models.UUIDField(blank=True, null=True)),
                ("counters_applied", models.BooleanField(default=False)),
                ("completed", models.BooleanField(db_index=True, default=False)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "capture_records",
            },
        ),
        migrations.CreateModel(
            name="ProductStatsModel",
            fields=[
                ("product_id", models.CharField(max_length=128, primary_key=True, serialize=False)),
                ("sales", models.PositiveIntegerField(default=0)),
                ("total_revenue", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "product_stats",
            },
        ),
        migrations.CreateModel(
            name="IdempotencyKey",
            fields=[
                ("key", models.CharField(max_length=200, primary_key=True, serialize=False)),
                ("request_hash", models.CharField(max_length=64)),
                ("response_status", models.PositiveSmallIntegerField(default=0)),
                ("response_body", models.JSONField(default=dict)),
                ("order_id", models.UUIDField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "idempotency_keys",
            },
        ),
    ]
