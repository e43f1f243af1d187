"""Process-local store for development and tests.

A unit of work holds the store lock for its whole scope and restores a
snapshot of every table if it exits with an exception, so it offers the same
all-or-nothing and serialization guarantees as the PostgreSQL store.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from ..errors import InvalidTransition, OrderNotFound
from ..models import (
    TRANSITIONS,
    Alert,
    CheckoutIntent,
    DedupEntry,
    LineItem,
    NewOrder,
    Order,
    OrderStatus,
    Product,
    Quote,
    merge_items,
)
from .base import (
    AlertLog,
    DedupLog,
    IntentStore,
    InventoryLedger,
    OrderStore,
    Store,
    UnitOfWork,
    price_items,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Tables:
    def __init__(self) -> None:
        self.products: dict[str, Product] = {}
        self.orders: dict[int, Order] = {}
        self.events: dict[str, DedupEntry] = {}
        self.intents: dict[str, CheckoutIntent] = {}
        self.alerts: dict[tuple[str, str], Alert] = {}
        self.next_order_id = 1
        self.next_alert_id = 1


class MemoryLedger(InventoryLedger):
    def __init__(self, tables: _Tables) -> None:
        self.t = tables

    async def get_product(self, product_id: str) -> Optional[Product]:
        return self.t.products.get(product_id)

    async def list_products(self) -> list[Product]:
        return [self.t.products[k] for k in sorted(self.t.products)]

    async def quote(self, items: list[LineItem]) -> Quote:
        return price_items(items, self.t.products)

    async def check_and_reserve(self, items: list[LineItem]) -> Quote:
        quote = price_items(items, self.t.products)
        for line in quote.lines:
            product = self.t.products[line.product_id]
            self.t.products[line.product_id] = product.model_copy(
                update={"stock": product.stock - line.quantity}
            )
        return quote

    async def release(self, items: list[LineItem]) -> None:
        for product_id, quantity in merge_items(items).items():
            product = self.t.products.get(product_id)
            if product is not None:
                self.t.products[product_id] = product.model_copy(
                    update={"stock": product.stock + quantity}
                )


class MemoryOrders(OrderStore):
    def __init__(self, tables: _Tables) -> None:
        self.t = tables

    async def create(self, order: NewOrder) -> Order:
        created = Order(id=self.t.next_order_id, created_at=_now(), **order.model_dump())
        self.t.orders[created.id] = created
        self.t.next_order_id += 1
        return created

    async def get(self, order_id: int) -> Optional[Order]:
        return self.t.orders.get(order_id)

    async def find_latest_by_email(self, email: str) -> Optional[Order]:
        matches = [o for o in self.t.orders.values() if o.email == email]
        return max(matches, key=lambda o: o.id) if matches else None

    async def set_status(self, order_id: int, status: OrderStatus) -> Order:
        order = self.t.orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if status not in TRANSITIONS[order.status]:
            raise InvalidTransition(
                f"Cannot move order {order_id} from {order.status} to {status}",
                order_id=order_id,
            )
        updated = order.model_copy(update={"status": status, "updated_at": _now()})
        self.t.orders[order_id] = updated
        return updated


class MemoryDedup(DedupLog):
    def __init__(self, tables: _Tables) -> None:
        self.t = tables

    async def claim(self, key: str, request_hash: Optional[str] = None) -> bool:
        if key in self.t.events:
            return False
        self.t.events[key] = DedupEntry(request_hash=request_hash)
        return True

    async def bind(self, key: str, order_id: int) -> None:
        self.t.events[key] = self.t.events[key].model_copy(update={"order_id": order_id})

    async def lookup(self, key: str) -> Optional[DedupEntry]:
        return self.t.events.get(key)


class MemoryAlerts(AlertLog):
    def __init__(self, tables: _Tables) -> None:
        self.t = tables

    async def record(self, kind: str, reference: str, email: Optional[str], detail: dict) -> bool:
        if (kind, reference) in self.t.alerts:
            return False
        self.t.alerts[(kind, reference)] = Alert(
            id=self.t.next_alert_id,
            kind=kind,
            reference=reference,
            email=email,
            detail=detail,
            created_at=_now(),
        )
        self.t.next_alert_id += 1
        return True

    async def recent(self, limit: int = 100) -> list[Alert]:
        return sorted(self.t.alerts.values(), key=lambda a: a.id, reverse=True)[:limit]


class MemoryIntents(IntentStore):
    def __init__(self, tables: _Tables) -> None:
        self.t = tables

    async def save(self, intent: CheckoutIntent) -> None:
        self.t.intents[intent.correlation_id] = intent

    async def get(self, correlation_id: str) -> Optional[CheckoutIntent]:
        return self.t.intents.get(correlation_id)


class MemoryStore(Store):
    def __init__(self, products: Optional[list[Product]] = None) -> None:
        self.tables = _Tables()
        self._lock = asyncio.Lock()
        for p in products or []:
            self.tables.products[p.id] = p

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(self.tables)
            try:
                yield UnitOfWork(
                    ledger=MemoryLedger(self.tables),
                    orders=MemoryOrders(self.tables),
                    dedup=MemoryDedup(self.tables),
                    alerts=MemoryAlerts(self.tables),
                    intents=MemoryIntents(self.tables),
                )
            except BaseException:
                self.tables.__dict__.update(snapshot.__dict__)
                raise

    def stock(self, product_id: str) -> int:
        return self.tables.products[product_id].stock
