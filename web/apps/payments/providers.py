"""Service provider helpers wiring the payments domain with its ports.

Views never build services themselves; they call the factories below so
tests can monkeypatch a single symbol. The gateway is the PayPal HTTP
client when ``settings.USE_HTTP_ADAPTERS`` is truthy, otherwise the
in-process ``GatewayStub``. The ledger is always the Django ORM ledger.
"""

from decimal import Decimal

from django.conf import settings

from .adapters import GatewayStub
from .domain import DEFAULT_FEE_RATE, GatewayPort, OrderLifecycleService
from .earnings import EarningsAggregator
from .http_adapters import HttpPayPalClient
from .payouts import PayoutDispatcher
from .reconciliation import CaptureReconciler
from .repository import DjangoLedger


def get_gateway() -> GatewayPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpPayPalClient()
    return GatewayStub()


def platform_fee_rate() -> Decimal:
    return Decimal(str(getattr(settings, "PLATFORM_FEE_RATE", DEFAULT_FEE_RATE)))


def get_lifecycle_service() -> OrderLifecycleService:
    return OrderLifecycleService(gateway=get_gateway(), ledger=DjangoLedger(), fee_rate=platform_fee_rate())


def get_payout_dispatcher() -> PayoutDispatcher:
    return PayoutDispatcher(
        gateway=get_gateway(),
        ledger=DjangoLedger(),
        email_subject=getattr(settings, "PAYOUT_EMAIL_SUBJECT", "Your seller earnings"),
        email_message=getattr(settings, "PAYOUT_EMAIL_MESSAGE", "You have received earnings from your product sales."),
    )


def get_earnings_aggregator() -> EarningsAggregator:
    return EarningsAggregator(DjangoLedger())


def get_reconciler() -> CaptureReconciler:
    ledger = DjangoLedger()
    service = OrderLifecycleService(gateway=get_gateway(), ledger=ledger, fee_rate=platform_fee_rate())
    return CaptureReconciler(service, ledger)
