from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from apps.payments.adapters import GatewayStub, InMemoryLedger
from apps.payments.domain import CaptureContext, OrderLifecycleService
from apps.payments.payouts import PayoutDispatcher


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0


@pytest.fixture(autouse=True)
def reset_throttle_cache():
    from django.core.cache import cache

    cache.clear()
    yield


class Clock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def service(gateway, ledger, clock):
    return OrderLifecycleService(gateway, ledger, clock=clock)


@pytest.fixture
def dispatcher(gateway, ledger, clock):
    return PayoutDispatcher(gateway, ledger, clock=clock)


@pytest.fixture
def make_context():
    def _make(price="100.00", product_id="prod-1", buyer_id="buyer-1", creator_id="seller-1", **kw):
        return CaptureContext(
            product_id=product_id,
            product_name=kw.pop("product_name", "Icon pack"),
            product_price=Decimal(price),
            currency=kw.pop("currency", "USD"),
            buyer_id=buyer_id,
            buyer_email=kw.pop("buyer_email", "buyer@example.com"),
            creator_id=creator_id,
            creator_name=kw.pop("creator_name", "Ada"),
            creator_email=kw.pop("creator_email", "seller@example.com"),
        )

    return _make
