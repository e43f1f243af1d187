"""Operator-facing reconciliation alerts."""

from typing import Optional

import structlog

from .store import Store, UnitOfWork

logger = structlog.get_logger().bind(component="alerts")

RECONCILIATION_GAP = "reconciliation_gap"
RECOVERED_MANIFEST = "recovered_manifest"
INVENTORY_AFTER_PAYMENT = "inventory_after_payment"
CHARGE_OUTCOME_UNKNOWN = "charge_outcome_unknown"
CHARGED_WITHOUT_STOCK = "charged_without_stock"


async def record_alert(
    tx: UnitOfWork, kind: str, reference: str, email: Optional[str] = None, **detail
) -> None:
    created = await tx.alerts.record(kind, reference, email, detail)
    log = logger.warning if created else logger.info
    log("reconciliation_alert", kind=kind, reference=reference, email=email, new=created, **detail)


async def raise_alert(
    store: Store, kind: str, reference: str, email: Optional[str] = None, **detail
) -> None:
    """Record an alert in its own unit of work."""
    async with store.transaction() as tx:
        await record_alert(tx, kind, reference, email, **detail)
