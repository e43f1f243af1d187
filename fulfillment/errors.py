"""Error taxonomy for order fulfillment.

Every error carries the HTTP status it maps to, a stable ``code`` for the
response body, and whether the upstream caller may safely retry.
"""


class FulfillmentError(Exception):
    status_code = 500
    code = "fulfillment_error"
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.context}


class InvalidRequest(FulfillmentError):
    status_code = 400
    code = "invalid_request"


class InventoryError(FulfillmentError):
    status_code = 409
    code = "inventory_error"


class InsufficientStock(InventoryError):
    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id


class UnknownProduct(InventoryError):
    code = "unknown_product"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class GatewayError(FulfillmentError):
    status_code = 502
    code = "gateway_error"


class PaymentDeclined(GatewayError):
    status_code = 402
    code = "payment_declined"


class GatewayTimeout(GatewayError):
    """The gateway did not answer in time; the outcome is unknown, not failed."""

    status_code = 504
    code = "gateway_timeout"


class SignatureError(FulfillmentError):
    status_code = 400
    code = "invalid_signature"


class ReconciliationGap(FulfillmentError):
    """A payment confirmation that cannot be matched to an item manifest."""

    status_code = 200
    code = "reconciliation_gap"


class PersistenceError(FulfillmentError):
    status_code = 503
    code = "storage_unavailable"
    retryable = True


class OrderNotFound(FulfillmentError):
    status_code = 404
    code = "order_not_found"


class InvalidTransition(FulfillmentError):
    status_code = 409
    code = "invalid_transition"


class IdempotencyConflict(FulfillmentError):
    status_code = 409
    code = "idempotency_conflict"
