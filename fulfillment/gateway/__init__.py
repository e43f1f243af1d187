"""Payment gateway adapters.

- FakeGateway for development and testing
- StripeGateway for production
"""

from .. import settings
from .fake_adapter import FakeGateway
from .port import ChargeResult, HostedLineItem, HostedSession, PaymentGateway, bounded
from .stripe_adapter import StripeGateway


def build_gateway(kind: str = settings.GATEWAY) -> PaymentGateway:
    if kind == "fake":
        return FakeGateway(webhook_secret=settings.STRIPE_WEBHOOK_SECRET or "whsec_test")
    if kind == "stripe":
        return StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
    raise ValueError(f"Unknown gateway: {kind}")


__all__ = [
    "ChargeResult",
    "FakeGateway",
    "HostedLineItem",
    "HostedSession",
    "PaymentGateway",
    "StripeGateway",
    "bounded",
    "build_gateway",
]
