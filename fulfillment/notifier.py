"""Purchase confirmation delivery.

Delivery is fire-and-forget: ``dispatch`` schedules a background task and
returns immediately. Failures are logged and never reach the order flow.
"""

import asyncio
import html
import json
from abc import ABC, abstractmethod

import httpx
import structlog

from .models import Order, dump_items

logger = structlog.get_logger().bind(component="notifier")


def order_summary(order: Order) -> dict:
    return {
        "order_id": order.id,
        "items": dump_items(order.items),
        "total": str(order.total),
        "status": order.status,
    }


class ConfirmationNotifier(ABC):
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @abstractmethod
    async def send(self, email: str, summary: dict) -> None: ...

    def dispatch(self, order: Order) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(order))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, order: Order) -> None:
        try:
            await self.send(order.email, order_summary(order))
            logger.info("confirmation_sent", order_id=order.id, email=order.email)
        except Exception as e:
            logger.error("confirmation_failed", order_id=order.id, email=order.email, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class LogNotifier(ConfirmationNotifier):
    """Used when no mail relay is configured."""

    async def send(self, email: str, summary: dict) -> None:
        logger.info("confirmation_not_delivered", email=email, summary=summary)


class HttpMailNotifier(ConfirmationNotifier):
    def __init__(self, api_url: str, token: str, sender: str, timeout: float) -> None:
        super().__init__()
        self.api_url = api_url
        self.token = token
        self.sender = sender
        self.timeout = timeout

    async def send(self, email: str, summary: dict) -> None:
        body = html.escape(json.dumps(summary, indent=2))
        async with httpx.AsyncClient() as client:
            r = await client.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": email,
                    "subject": "Order Confirmation",
                    "html": f"<h1>Thank you for your purchase!</h1><pre>{body}</pre>",
                },
                headers={"Authorization": f"Bearer {self.token}"} if self.token else {},
                timeout=self.timeout,
            )
            r.raise_for_status()
