from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

OrderStatus = Literal["pending", "paid", "failed", "reconciliation_pending"]

# Statuses an operator may still move, and where they may go.
TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "failed"},
    "reconciliation_pending": {"paid", "failed"},
    "paid": set(),
    "failed": set(),
}

CHECKOUT_COMPLETED = "checkout_completed"


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    product_id: str = Field(alias="id", min_length=1)
    quantity: int = Field(gt=0)

    @field_validator("product_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v) if isinstance(v, int) else v


LineItems = TypeAdapter(list[LineItem])


def dump_items(items: list[LineItem]) -> list[dict]:
    return [i.model_dump(by_alias=True) for i in items]


def merge_items(items: list[LineItem]) -> dict[str, int]:
    """Sum quantities per product id, keeping first-seen order."""
    merged: dict[str, int] = {}
    for item in items:
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return merged


class Product(BaseModel):
    id: str
    name: str = ""
    price: Decimal
    stock: int = Field(ge=0)


class PricedLine(BaseModel):
    product_id: str
    name: str = ""
    quantity: int
    unit_price: Decimal


class Quote(BaseModel):
    """Prices read from the ledger for a candidate item list."""

    lines: list[PricedLine]

    @property
    def total(self) -> Decimal:
        return sum((l.unit_price * l.quantity for l in self.lines), Decimal("0"))


class OrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = ""
    items: list[LineItem] = Field(default_factory=list)
    payment_method_id: Optional[str] = Field(None, alias="paymentMethodId")


class CheckoutSessionRequest(BaseModel):
    email: str = ""
    items: list[LineItem] = Field(default_factory=list)


class CheckoutSessionResponse(BaseModel):
    url: str
    session_id: str
    correlation_id: str


class NewOrder(BaseModel):
    email: str
    items: list[LineItem]
    total: Decimal
    status: OrderStatus
    payment_ref: Optional[str] = None


class Order(BaseModel):
    id: int
    email: str
    items: list[LineItem]
    total: Decimal
    status: OrderStatus
    payment_ref: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    order: Order
    replayed: bool = False


class StatusChange(BaseModel):
    status: Literal["paid", "failed"]
    note: str = ""


class CheckoutIntent(BaseModel):
    correlation_id: str
    email: str
    items: list[LineItem]


class DedupEntry(BaseModel):
    order_id: Optional[int] = None
    # Fingerprint of the client request a key was first used with.
    request_hash: Optional[str] = None


class Alert(BaseModel):
    id: int
    kind: str
    reference: str
    email: Optional[str] = None
    detail: dict = Field(default_factory=dict)
    created_at: datetime


class PaymentConfirmationEvent(BaseModel):
    """Gateway event normalized to what fulfillment needs."""

    event_id: str
    type: str
    session_ref: Optional[str] = None
    email: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Literal[
        "ignored", "fulfilled", "duplicate", "reconciliation_gap", "inventory_error"
    ]
    order_id: Optional[int] = None
