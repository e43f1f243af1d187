"""Order fulfillment and inventory reconciliation service."""
