"""Synchronous order path: price, charge, then finalize."""

import hashlib
import json
from typing import Optional

import structlog

from . import alerts, settings
from .checkout import validate_items
from .errors import GatewayTimeout, InvalidRequest, InventoryError, PaymentDeclined
from .finalizer import Finalized, OrderFinalizer
from .gateway import PaymentGateway, bounded
from .models import OrderRequest, to_minor_units
from .store import Store

logger = structlog.get_logger().bind(component="direct_order")


def sha256_json(obj: dict) -> str:
    raw = json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class DirectOrderHandler:
    def __init__(
        self,
        gateway: PaymentGateway,
        store: Store,
        finalizer: OrderFinalizer,
        currency: str = settings.CURRENCY,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.finalizer = finalizer
        self.currency = currency
        self.timeout = timeout

    async def submit(self, req: OrderRequest, idempotency_key: Optional[str] = None) -> Finalized:
        validate_items(req.email, req.items)
        if not req.payment_method_id:
            raise InvalidRequest("A payment method is required", field="paymentMethodId")

        key = f"direct:{idempotency_key}" if idempotency_key else None
        request_hash = sha256_json(req.model_dump(mode="json")) if key else None
        if key:
            existing = await self.finalizer.replay(key, request_hash)
            if existing is not None:
                logger.info("direct_order_replayed", order_id=existing.id)
                return Finalized(order=existing, replayed=True)

        async with self.store.transaction() as tx:
            quote = await tx.ledger.quote(req.items)
        amount = to_minor_units(quote.total)
        log = logger.bind(email=req.email, amount=amount)

        try:
            charge = await bounded(
                self.gateway.charge(req.payment_method_id, amount, self.currency, idempotency_key=key),
                self.timeout,
            )
        except GatewayTimeout:
            # The charge may or may not have gone through; record it for an operator.
            order = await self.finalizer.record_unfulfilled(
                req.email, req.items, quote.total, "pending", idempotency_key=key, request_hash=request_hash
            )
            await alerts.raise_alert(
                self.store,
                alerts.CHARGE_OUTCOME_UNKNOWN,
                f"order:{order.id}",
                req.email,
                order_id=order.id,
                amount=amount,
            )
            raise

        if not charge.success:
            log.info("charge_declined", reason=charge.failure_reason)
            raise PaymentDeclined(charge.failure_reason or "Payment declined")

        try:
            result = await self.finalizer.finalize(
                req.email,
                req.items,
                idempotency_key=key,
                payment_ref=charge.charge_id,
                request_hash=request_hash,
            )
        except InventoryError as e:
            # Charged but another order took the stock; not reversed here.
            order = await self.finalizer.record_unfulfilled(
                req.email,
                req.items,
                quote.total,
                "failed",
                payment_ref=charge.charge_id,
                idempotency_key=key,
                request_hash=request_hash,
            )
            await alerts.raise_alert(
                self.store,
                alerts.CHARGED_WITHOUT_STOCK,
                charge.charge_id or f"order:{order.id}",
                req.email,
                order_id=order.id,
                amount=amount,
                error=e.code,
                **e.context,
            )
            raise

        if to_minor_units(result.order.total) != amount:
            log.warning("charge_total_mismatch", order_id=result.order.id, order_total=str(result.order.total))
        log.info("direct_order_completed", order_id=result.order.id, charge_id=charge.charge_id)
        return result
