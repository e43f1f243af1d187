"""PostgreSQL store.

One connection per unit of work. Stock is serialized with row locks taken in
product id order, and the dedup table's primary key is the only gate for
repeated fulfillment keys.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from psycopg.types.json import Jsonb

from ..db import get_conn
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
    dump_items,
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

logger = structlog.get_logger().bind(component="postgres_store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL DEFAULT '',
    price       NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
    stock       INTEGER NOT NULL CHECK (stock >= 0)
);

CREATE TABLE IF NOT EXISTS orders (
    id          BIGSERIAL PRIMARY KEY,
    email       TEXT NOT NULL,
    items       JSONB NOT NULL,
    total       NUMERIC(12, 2) NOT NULL,
    status      TEXT NOT NULL
                CHECK (status IN ('pending', 'paid', 'failed', 'reconciliation_pending')),
    payment_ref TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS orders_email_idx ON orders (email, id DESC);

CREATE TABLE IF NOT EXISTS processed_events (
    event_id     TEXT PRIMARY KEY,
    order_id     BIGINT REFERENCES orders (id),
    request_hash TEXT,
    applied_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

ALTER TABLE processed_events ADD COLUMN IF NOT EXISTS request_hash TEXT;

CREATE TABLE IF NOT EXISTS checkout_intents (
    correlation_id TEXT PRIMARY KEY,
    email          TEXT NOT NULL,
    items          JSONB NOT NULL,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS reconciliation_alerts (
    id          BIGSERIAL PRIMARY KEY,
    kind        TEXT NOT NULL,
    reference   TEXT NOT NULL,
    email       TEXT,
    detail      JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (kind, reference)
);
"""

ORDER_COLUMNS = "id, email, items, total, status, payment_ref, created_at, updated_at"


def _product(row: dict) -> Product:
    return Product(id=row["id"], name=row["name"], price=row["price"], stock=row["stock"])


class PostgresLedger(InventoryLedger):
    def __init__(self, conn) -> None:
        self.conn = conn

    async def get_product(self, product_id: str) -> Optional[Product]:
        cur = await self.conn.execute(
            "SELECT id, name, price, stock FROM products WHERE id = %s",
            (product_id,),
        )
        row = await cur.fetchone()
        return _product(row) if row else None

    async def list_products(self) -> list[Product]:
        cur = await self.conn.execute("SELECT id, name, price, stock FROM products ORDER BY id")
        return [_product(r) for r in await cur.fetchall()]

    async def _load(self, items: list[LineItem], lock: bool) -> dict[str, Product]:
        ids = sorted(merge_items(items))
        sql = "SELECT id, name, price, stock FROM products WHERE id = ANY(%s) ORDER BY id"
        if lock:
            sql += " FOR UPDATE"
        cur = await self.conn.execute(sql, (ids,))
        return {r["id"]: _product(r) for r in await cur.fetchall()}

    async def quote(self, items: list[LineItem]) -> Quote:
        return price_items(items, await self._load(items, lock=False))

    async def check_and_reserve(self, items: list[LineItem]) -> Quote:
        quote = price_items(items, await self._load(items, lock=True))
        for line in quote.lines:
            await self.conn.execute(
                "UPDATE products SET stock = stock - %s WHERE id = %s",
                (line.quantity, line.product_id),
            )
            logger.info("stock_decremented", product_id=line.product_id, quantity=line.quantity)
        return quote

    async def release(self, items: list[LineItem]) -> None:
        for product_id, quantity in sorted(merge_items(items).items()):
            await self.conn.execute(
                "UPDATE products SET stock = stock + %s WHERE id = %s",
                (quantity, product_id),
            )
            logger.info("stock_released", product_id=product_id, quantity=quantity)


class PostgresOrders(OrderStore):
    def __init__(self, conn) -> None:
        self.conn = conn

    async def create(self, order: NewOrder) -> Order:
        cur = await self.conn.execute(
            "INSERT INTO orders(email, items, total, status, payment_ref) "
            f"VALUES (%s, %s, %s, %s, %s) RETURNING {ORDER_COLUMNS}",
            (
                order.email,
                Jsonb(dump_items(order.items)),
                order.total,
                order.status,
                order.payment_ref,
            ),
        )
        return Order.model_validate(await cur.fetchone())

    async def get(self, order_id: int) -> Optional[Order]:
        cur = await self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", (order_id,)
        )
        row = await cur.fetchone()
        return Order.model_validate(row) if row else None

    async def find_latest_by_email(self, email: str) -> Optional[Order]:
        cur = await self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE email = %s ORDER BY id DESC LIMIT 1",
            (email,),
        )
        row = await cur.fetchone()
        return Order.model_validate(row) if row else None

    async def set_status(self, order_id: int, status: OrderStatus) -> Order:
        cur = await self.conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s FOR UPDATE", (order_id,)
        )
        row = await cur.fetchone()
        if not row:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        if status not in TRANSITIONS[row["status"]]:
            raise InvalidTransition(
                f"Cannot move order {order_id} from {row['status']} to {status}",
                order_id=order_id,
            )
        cur = await self.conn.execute(
            f"UPDATE orders SET status = %s, updated_at = NOW() WHERE id = %s RETURNING {ORDER_COLUMNS}",
            (status, order_id),
        )
        return Order.model_validate(await cur.fetchone())


class PostgresDedup(DedupLog):
    def __init__(self, conn) -> None:
        self.conn = conn

    async def claim(self, key: str, request_hash: Optional[str] = None) -> bool:
        # A concurrent claimer blocks on the primary key until the holder commits
        # or rolls back.
        cur = await self.conn.execute(
            "INSERT INTO processed_events(event_id, request_hash) VALUES (%s, %s) "
            "ON CONFLICT (event_id) DO NOTHING RETURNING event_id",
            (key, request_hash),
        )
        return await cur.fetchone() is not None

    async def bind(self, key: str, order_id: int) -> None:
        await self.conn.execute(
            "UPDATE processed_events SET order_id = %s WHERE event_id = %s",
            (order_id, key),
        )

    async def lookup(self, key: str) -> Optional[DedupEntry]:
        cur = await self.conn.execute(
            "SELECT order_id, request_hash FROM processed_events WHERE event_id = %s", (key,)
        )
        row = await cur.fetchone()
        return DedupEntry.model_validate(row) if row else None


class PostgresAlerts(AlertLog):
    def __init__(self, conn) -> None:
        self.conn = conn

    async def record(self, kind: str, reference: str, email: Optional[str], detail: dict) -> bool:
        cur = await self.conn.execute(
            "INSERT INTO reconciliation_alerts(kind, reference, email, detail) "
            "VALUES (%s, %s, %s, %s) ON CONFLICT (kind, reference) DO NOTHING RETURNING id",
            (kind, reference, email, Jsonb(detail)),
        )
        return await cur.fetchone() is not None

    async def recent(self, limit: int = 100) -> list[Alert]:
        cur = await self.conn.execute(
            "SELECT id, kind, reference, email, detail, created_at "
            "FROM reconciliation_alerts ORDER BY id DESC LIMIT %s",
            (limit,),
        )
        return [Alert.model_validate(r) for r in await cur.fetchall()]


class PostgresIntents(IntentStore):
    def __init__(self, conn) -> None:
        self.conn = conn

    async def save(self, intent: CheckoutIntent) -> None:
        await self.conn.execute(
            "INSERT INTO checkout_intents(correlation_id, email, items) VALUES (%s, %s, %s)",
            (intent.correlation_id, intent.email, Jsonb(dump_items(intent.items))),
        )

    async def get(self, correlation_id: str) -> Optional[CheckoutIntent]:
        cur = await self.conn.execute(
            "SELECT correlation_id, email, items FROM checkout_intents WHERE correlation_id = %s",
            (correlation_id,),
        )
        row = await cur.fetchone()
        return CheckoutIntent.model_validate(row) if row else None


class PostgresStore(Store):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url

    @asynccontextmanager
    async def transaction(self):
        async with get_conn(self.database_url) as conn:
            yield UnitOfWork(
                ledger=PostgresLedger(conn),
                orders=PostgresOrders(conn),
                dedup=PostgresDedup(conn),
                alerts=PostgresAlerts(conn),
                intents=PostgresIntents(conn),
            )

    async def create_schema(self) -> None:
        async with get_conn(self.database_url) as conn:
            await conn.execute(SCHEMA)
