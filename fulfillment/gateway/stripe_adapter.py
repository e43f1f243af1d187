"""Stripe payment gateway adapter.

The stripe SDK is blocking, so every call runs in a worker thread; callers
bound it with ``bounded()``. Each gateway owns its own ``StripeClient``, so the
key and retry policy never touch the SDK's module-level settings.
"""

import asyncio
from typing import Optional

import stripe
import structlog

from ..errors import GatewayError, SignatureError
from ..models import PaymentConfirmationEvent
from .port import ChargeResult, HostedLineItem, HostedSession, PaymentGateway, normalize_event

logger = structlog.get_logger().bind(component="stripe_gateway")


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str, webhook_secret: str, max_network_retries: int = 1) -> None:
        self.client = stripe.StripeClient(api_key, max_network_retries=max_network_retries)
        self.webhook_secret = webhook_secret

    async def charge(
        self,
        instrument_ref: str,
        amount_minor: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        try:
            intent = await asyncio.to_thread(
                self.client.v1.payment_intents.create,
                params={
                    "amount": amount_minor,
                    "currency": currency,
                    "payment_method": instrument_ref,
                    "confirm": True,
                    "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
                },
                options={"idempotency_key": idempotency_key} if idempotency_key else {},
            )
        except stripe.CardError as e:
            logger.info("charge_declined", code=e.code, amount=amount_minor)
            return ChargeResult(
                success=False,
                gateway_status="declined",
                failure_reason=e.user_message or str(e),
            )
        except stripe.StripeError as e:
            logger.error("charge_failed", error=str(e), amount=amount_minor)
            raise GatewayError(f"Charge failed: {e.user_message or e}") from e

        if intent.status != "succeeded":
            return ChargeResult(
                success=False,
                charge_id=intent.id,
                gateway_status=intent.status,
                failure_reason=f"Payment intent ended in status {intent.status}",
            )
        return ChargeResult(success=True, charge_id=intent.id, gateway_status=intent.status)

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
        try:
            session = await asyncio.to_thread(
                self.client.v1.checkout.sessions.create,
                params={
                    "payment_method_types": ["card"],
                    "mode": "payment",
                    "line_items": [
                        {
                            "price_data": {
                                "currency": currency,
                                "product_data": {"name": li.name},
                                "unit_amount": li.unit_amount,
                            },
                            "quantity": li.quantity,
                        }
                        for li in line_items
                    ],
                    "customer_email": customer_email,
                    "client_reference_id": client_reference_id,
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata,
                },
            )
        except stripe.StripeError as e:
            logger.error("session_create_failed", error=str(e))
            raise GatewayError(f"Checkout session creation failed: {e.user_message or e}") from e
        return HostedSession(id=session.id, url=session.url, metadata=metadata)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentConfirmationEvent:
        if not signature:
            raise SignatureError("Missing signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureError(f"Webhook signature verification failed: {e}") from e
        return normalize_event(payload)
