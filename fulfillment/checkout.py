import json
from uuid import uuid4

import structlog

from . import settings
from .errors import InvalidRequest
from .gateway import HostedLineItem, PaymentGateway, bounded
from .models import CheckoutIntent, CheckoutSessionResponse, LineItem, dump_items, to_minor_units
from .store import Store

logger = structlog.get_logger().bind(component="checkout_session")

# Stripe rejects metadata values longer than this.
METADATA_VALUE_LIMIT = 500


def validate_items(email: str, items: list[LineItem]) -> None:
    if not email or "@" not in email:
        raise InvalidRequest("A valid email is required", field="email")
    if not items:
        raise InvalidRequest("At least one item is required", field="items")


class CheckoutSessionManager:
    def __init__(
        self,
        gateway: PaymentGateway,
        store: Store,
        currency: str = settings.CURRENCY,
        frontend_url: str = settings.FRONTEND_URL,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.currency = currency
        self.frontend_url = frontend_url
        self.timeout = timeout

    async def create_session(self, email: str, items: list[LineItem]) -> CheckoutSessionResponse:
        """Open a hosted checkout for ``items`` priced from the catalog.

        Nothing is reserved; stock is only taken when the completion event is
        finalized.
        """
        validate_items(email, items)
        correlation_id = uuid4().hex

        async with self.store.transaction() as tx:
            quote = await tx.ledger.quote(items)
            await tx.intents.save(CheckoutIntent(correlation_id=correlation_id, email=email, items=items))

        metadata = {"correlation_id": correlation_id}
        manifest = json.dumps(dump_items(items), separators=(",", ":"))
        if len(manifest) <= METADATA_VALUE_LIMIT:
            metadata["items"] = manifest
        else:
            logger.info("manifest_not_embedded", correlation_id=correlation_id, size=len(manifest))

        session = await bounded(
            self.gateway.create_hosted_session(
                line_items=[
                    HostedLineItem(
                        name=line.name or f"Product {line.product_id}",
                        unit_amount=to_minor_units(line.unit_price),
                        quantity=line.quantity,
                    )
                    for line in quote.lines
                ],
                currency=self.currency,
                success_url=f"{self.frontend_url}/success",
                cancel_url=f"{self.frontend_url}/cancel",
                metadata=metadata,
                customer_email=email,
                client_reference_id=correlation_id,
            ),
            self.timeout,
        )
        logger.info(
            "checkout_session_created",
            session_id=session.id,
            correlation_id=correlation_id,
            email=email,
            total=str(quote.total),
        )
        return CheckoutSessionResponse(url=session.url, session_id=session.id, correlation_id=correlation_id)
