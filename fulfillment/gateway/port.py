"""Payment gateway port (abstract interface).

Defines the contract every gateway adapter implements, so the fulfillment
code can run against FakeGateway (dev/test) or StripeGateway (production).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Optional, TypeVar

from ..errors import GatewayTimeout, SignatureError
from ..models import CHECKOUT_COMPLETED, PaymentConfirmationEvent

T = TypeVar("T")

# Gateway event types that mean "the hosted checkout was paid".
COMPLETED_EVENT_TYPES = {"checkout.session.completed"}


@dataclass(frozen=True)
class ChargeResult:
    """Result of a charge attempt."""

    success: bool
    charge_id: Optional[str] = None
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class HostedLineItem:
    name: str
    unit_amount: int
    quantity: int


@dataclass(frozen=True)
class HostedSession:
    id: str
    url: str
    metadata: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    @abstractmethod
    async def charge(
        self,
        instrument_ref: str,
        amount_minor: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """Charge a payment instrument.

        Declines come back as ``ChargeResult(success=False)``; transport and
        API failures raise GatewayError.
        """

    @abstractmethod
    async def create_hosted_session(
        self,
        line_items: list[HostedLineItem],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str,
        client_reference_id: str,
    ) -> HostedSession:
        """Create a gateway-hosted checkout session."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentConfirmationEvent:
        """Verify ``signature`` over the raw payload and normalize the event.

        Raises SignatureError when verification fails.
        """


async def bounded(aw: Awaitable[T], timeout: float) -> T:
    """Await a gateway call; a timeout means the outcome is unknown."""
    try:
        return await asyncio.wait_for(aw, timeout)
    except asyncio.TimeoutError as e:
        raise GatewayTimeout(f"Payment gateway did not answer within {timeout}s") from e


def normalize_event(payload: bytes) -> PaymentConfirmationEvent:
    """Map a Stripe-shaped event body onto PaymentConfirmationEvent."""
    try:
        event = json.loads(payload)
        obj = event["data"]["object"]
        event_id = event["id"]
        event_type = event["type"]
    except (ValueError, KeyError, TypeError) as e:
        raise SignatureError("Malformed event payload") from e

    metadata = {str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}
    email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
    return PaymentConfirmationEvent(
        event_id=event_id,
        type=CHECKOUT_COMPLETED if event_type in COMPLETED_EVENT_TYPES else event_type,
        session_ref=obj.get("id"),
        email=email,
        correlation_id=metadata.get("correlation_id") or obj.get("client_reference_id"),
        metadata=metadata,
    )
