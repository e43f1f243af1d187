"""Storage ports.

Each port is bound to a single unit of work; ``Store.transaction()`` yields a
``UnitOfWork`` whose ports all commit or roll back together.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Optional

from ..errors import InsufficientStock, UnknownProduct
from ..models import (
    Alert,
    CheckoutIntent,
    DedupEntry,
    LineItem,
    NewOrder,
    Order,
    OrderStatus,
    PricedLine,
    Product,
    Quote,
    merge_items,
)


def price_items(items: list[LineItem], products: dict[str, Product]) -> Quote:
    """Check merged quantities against ``products`` and price them.

    ``products`` must hold the rows read in the current unit of work.
    """
    lines = []
    for product_id, quantity in merge_items(items).items():
        product = products.get(product_id)
        if product is None:
            raise UnknownProduct(product_id)
        if quantity > product.stock:
            raise InsufficientStock(product_id, quantity, product.stock)
        lines.append(
            PricedLine(
                product_id=product_id,
                name=product.name,
                quantity=quantity,
                unit_price=product.price,
            )
        )
    return Quote(lines=lines)


class InventoryLedger(ABC):
    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    async def list_products(self) -> list[Product]: ...

    @abstractmethod
    async def quote(self, items: list[LineItem]) -> Quote:
        """Price items and check stock without reserving anything.

        Raises UnknownProduct / InsufficientStock.
        """

    @abstractmethod
    async def check_and_reserve(self, items: list[LineItem]) -> Quote:
        """Re-read price and stock under lock and decrement every item.

        Either all items are decremented or none are. Raises UnknownProduct /
        InsufficientStock.
        """

    @abstractmethod
    async def release(self, items: list[LineItem]) -> None:
        """Return stock taken by a reservation that an operator voided."""


class OrderStore(ABC):
    @abstractmethod
    async def create(self, order: NewOrder) -> Order: ...

    @abstractmethod
    async def get(self, order_id: int) -> Optional[Order]: ...

    @abstractmethod
    async def find_latest_by_email(self, email: str) -> Optional[Order]: ...

    @abstractmethod
    async def set_status(self, order_id: int, status: OrderStatus) -> Order: ...


class DedupLog(ABC):
    @abstractmethod
    async def claim(self, key: str, request_hash: Optional[str] = None) -> bool:
        """Insert ``key``; False when another writer already holds it."""

    @abstractmethod
    async def bind(self, key: str, order_id: int) -> None: ...

    @abstractmethod
    async def lookup(self, key: str) -> Optional[DedupEntry]:
        """Order id and request fingerprint recorded under ``key``, if any."""


class AlertLog(ABC):
    @abstractmethod
    async def record(
        self, kind: str, reference: str, email: Optional[str], detail: dict
    ) -> bool:
        """Record an alert once per (kind, reference); False if already present."""

    @abstractmethod
    async def recent(self, limit: int = 100) -> list[Alert]: ...


class IntentStore(ABC):
    @abstractmethod
    async def save(self, intent: CheckoutIntent) -> None: ...

    @abstractmethod
    async def get(self, correlation_id: str) -> Optional[CheckoutIntent]: ...


class UnitOfWork:
    def __init__(
        self,
        ledger: InventoryLedger,
        orders: OrderStore,
        dedup: DedupLog,
        alerts: AlertLog,
        intents: IntentStore,
    ) -> None:
        self.ledger = ledger
        self.orders = orders
        self.dedup = dedup
        self.alerts = alerts
        self.intents = intents


class Store(ABC):
    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[UnitOfWork]: ...

    async def close(self) -> None:
        return None
