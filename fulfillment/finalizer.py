"""Order finalization.

The finalizer is the only writer of stock decrements and order rows. A
fulfillment key (gateway event id, or a namespaced client idempotency key)
makes finalization safe to repeat: the dedup claim, the stock reservation, the
order insert and the key binding all commit in one unit of work, so a key that
is present always points at a persisted order and a failed attempt leaves no
trace.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog

from .errors import IdempotencyConflict, InventoryError
from .models import LineItem, NewOrder, Order, OrderStatus
from .notifier import ConfirmationNotifier
from .store import Store

logger = structlog.get_logger().bind(component="finalizer")


@dataclass(frozen=True)
class Finalized:
    order: Order
    replayed: bool = False


class OrderFinalizer:
    def __init__(self, store: Store, notifier: ConfirmationNotifier) -> None:
        self.store = store
        self.notifier = notifier

    async def finalize(
        self,
        email: str,
        items: list[LineItem],
        idempotency_key: Optional[str] = None,
        status: OrderStatus = "paid",
        payment_ref: Optional[str] = None,
        request_hash: Optional[str] = None,
    ) -> Finalized:
        """Reserve stock, persist the order and trigger the confirmation.

        Returns the existing order when ``idempotency_key`` was already
        applied, or raises IdempotencyConflict when the key was first used
        with a different ``request_hash``. Raises InventoryError without side
        effects when any item is unknown or short.
        """
        log = logger.bind(email=email, idempotency_key=idempotency_key)
        async with self.store.transaction() as tx:
            if idempotency_key and not await tx.dedup.claim(idempotency_key, request_hash):
                order = await self._applied(tx, idempotency_key, request_hash)
                log.info("finalize_replayed", order_id=order.id)
                return Finalized(order=order, replayed=True)

            try:
                quote = await tx.ledger.check_and_reserve(items)
            except InventoryError as e:
                log.info("finalize_rejected", error=e.code, **e.context)
                raise

            order = await tx.orders.create(
                NewOrder(
                    email=email,
                    items=items,
                    total=quote.total,
                    status=status,
                    payment_ref=payment_ref,
                )
            )
            if idempotency_key:
                await tx.dedup.bind(idempotency_key, order.id)

        log.info("order_finalized", order_id=order.id, total=str(order.total), status=order.status)
        self.notifier.dispatch(order)
        return Finalized(order=order)

    async def replay(self, idempotency_key: str, request_hash: Optional[str] = None) -> Optional[Order]:
        """Order already applied under ``idempotency_key``, if any."""
        async with self.store.transaction() as tx:
            return await self._applied(tx, idempotency_key, request_hash)

    async def _applied(self, tx, idempotency_key: str, request_hash: Optional[str]) -> Optional[Order]:
        entry = await tx.dedup.lookup(idempotency_key)
        if entry is None:
            return None
        if request_hash and entry.request_hash and entry.request_hash != request_hash:
            logger.warning("idempotency_key_conflict", idempotency_key=idempotency_key, order_id=entry.order_id)
            raise IdempotencyConflict(
                "Idempotency-Key reuse with different request body",
                idempotency_key=idempotency_key,
            )
        return await tx.orders.get(entry.order_id)

    async def record_unfulfilled(
        self,
        email: str,
        items: list[LineItem],
        total: Decimal,
        status: OrderStatus,
        payment_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None,
    ) -> Order:
        """Persist an order whose payment outcome needs an operator; stock is not touched."""
        async with self.store.transaction() as tx:
            if idempotency_key and not await tx.dedup.claim(idempotency_key, request_hash):
                return await self._applied(tx, idempotency_key, request_hash)
            order = await tx.orders.create(
                NewOrder(
                    email=email,
                    items=items,
                    total=total,
                    status=status,
                    payment_ref=payment_ref,
                )
            )
            if idempotency_key:
                await tx.dedup.bind(idempotency_key, order.id)
        logger.warning("order_unfulfilled", order_id=order.id, status=status, email=email)
        return order

    async def resolve(self, order_id: int, status: OrderStatus) -> Order:
        """Operator transition of a pending or reconciliation_pending order.

        A ``pending`` order never reserved stock, so confirming it reserves
        now. A ``reconciliation_pending`` order reserved stock for a guessed
        manifest, so failing it returns that stock.
        """
        async with self.store.transaction() as tx:
            current = await tx.orders.get(order_id)
            order = await tx.orders.set_status(order_id, status)
            if current.status == "pending" and status == "paid":
                await tx.ledger.check_and_reserve(order.items)
            elif current.status == "reconciliation_pending" and status == "failed":
                await tx.ledger.release(order.items)
        logger.info("order_resolved", order_id=order_id, status=status)
        if status == "paid":
            self.notifier.dispatch(order)
        return order
