"""Gateway webhook processing.

Replay-safe: the gateway event id is the fulfillment key, so redelivered
events return the order created by the first delivery without touching stock.
Once the signature is valid the gateway is always acknowledged, except for
storage outages, which propagate so the gateway redelivers.
"""

import json
from typing import Optional

import structlog
from pydantic import ValidationError

from . import alerts
from .errors import InventoryError, ReconciliationGap
from .finalizer import OrderFinalizer
from .gateway import PaymentGateway
from .models import CHECKOUT_COMPLETED, LineItem, LineItems, PaymentConfirmationEvent, WebhookAck
from .store import Store

logger = structlog.get_logger().bind(component="webhook")


def parse_manifest(raw: Optional[str]) -> list[LineItem]:
    """Items embedded in session metadata; empty when absent or unparsable."""
    if not raw:
        return []
    try:
        return LineItems.validate_python(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.warning("manifest_unparsable", error=str(e))
        return []


class WebhookProcessor:
    def __init__(self, gateway: PaymentGateway, store: Store, finalizer: OrderFinalizer) -> None:
        self.gateway = gateway
        self.store = store
        self.finalizer = finalizer

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        # Raises SignatureError before any storage access.
        event = self.gateway.construct_event(payload, signature)
        log = logger.bind(event_id=event.event_id, event_type=event.type)

        if event.type != CHECKOUT_COMPLETED:
            log.info("event_ignored")
            return WebhookAck(outcome="ignored")

        try:
            items, degraded = await self.resolve_manifest(event)
        except ReconciliationGap as e:
            await alerts.raise_alert(
                self.store,
                alerts.RECONCILIATION_GAP,
                event.event_id,
                event.email,
                session_ref=event.session_ref,
                reason=e.message,
            )
            return WebhookAck(outcome="reconciliation_gap")

        try:
            result = await self.finalizer.finalize(
                event.email,
                items,
                idempotency_key=event.event_id,
                status="reconciliation_pending" if degraded else "paid",
                payment_ref=event.session_ref,
            )
        except InventoryError as e:
            # Paid but unfulfillable; not retried, routed to an operator.
            await alerts.raise_alert(
                self.store,
                alerts.INVENTORY_AFTER_PAYMENT,
                event.event_id,
                event.email,
                session_ref=event.session_ref,
                error=e.code,
                **e.context,
            )
            return WebhookAck(outcome="inventory_error")

        if degraded and not result.replayed:
            await alerts.raise_alert(
                self.store,
                alerts.RECOVERED_MANIFEST,
                event.event_id,
                event.email,
                order_id=result.order.id,
                session_ref=event.session_ref,
            )
        log.info("event_applied", order_id=result.order.id, replayed=result.replayed)
        return WebhookAck(
            outcome="duplicate" if result.replayed else "fulfilled",
            order_id=result.order.id,
        )

    async def resolve_manifest(self, event: PaymentConfirmationEvent) -> tuple[list[LineItem], bool]:
        """Find the items a completed checkout paid for.

        Tries the embedded manifest, then the checkout intent saved under the
        correlation id, then the buyer's latest order. Returns the items and
        whether they came from the email lookup, which cannot tell two
        concurrent orders for the same buyer apart.
        """
        if not event.email:
            raise ReconciliationGap("Event carries no buyer email")

        items = parse_manifest(event.metadata.get("items"))
        if items:
            return items, False

        async with self.store.transaction() as tx:
            if event.correlation_id:
                intent = await tx.intents.get(event.correlation_id)
                if intent is not None:
                    logger.info("manifest_from_intent", correlation_id=event.correlation_id)
                    return intent.items, False

            previous = await tx.orders.find_latest_by_email(event.email)

        if previous is None:
            raise ReconciliationGap("No manifest in event and no previous order for buyer")
        logger.warning("manifest_from_latest_order", email=event.email, order_id=previous.id)
        return previous.items, True
