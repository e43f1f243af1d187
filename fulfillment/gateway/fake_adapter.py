"""Configurable fake payment gateway for development and testing.

Simulates charges, hosted sessions and signed webhook deliveries without any
external calls. Payloads are signed with HMAC-SHA256 over the raw body using
the shared webhook secret.
"""

import asyncio
import hashlib
import hmac
import json
from typing import Optional
from uuid import uuid4

from ..errors import SignatureError
from ..models import PaymentConfirmationEvent
from .port import ChargeResult, HostedLineItem, HostedSession, PaymentGateway, normalize_event


class FakeGateway(PaymentGateway):
    def __init__(self, webhook_secret: str = "whsec_test") -> None:
        self.webhook_secret = webhook_secret
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.latency: float = 0.0
        self.calls: list[dict] = []
        self.sessions: dict[str, dict] = {}

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Card declined",
        latency: float = 0.0,
    ) -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.latency = latency

    async def charge(
        self,
        instrument_ref: str,
        amount_minor: int,
        currency: str,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        self.calls.append(
            {
                "method": "charge",
                "instrument_ref": instrument_ref,
                "amount_minor": amount_minor,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        await asyncio.sleep(self.latency)
        if self.should_succeed:
            return ChargeResult(
                success=True,
                charge_id=f"fake_ch_{uuid4().hex[:12]}",
                gateway_status="succeeded",
            )
        return ChargeResult(success=False, gateway_status="declined", failure_reason=self.failure_reason)

    async def create_hosted_session(
        self,
        line_items: list[HostedLineItem],
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str,
        client_reference_id: str,
    ) -> HostedSession:
        self.calls.append({"method": "create_hosted_session", "line_items": line_items})
        await asyncio.sleep(self.latency)
        session_id = f"fake_cs_{uuid4().hex[:12]}"
        self.sessions[session_id] = {
            "id": session_id,
            "customer_email": customer_email,
            "client_reference_id": client_reference_id,
            "metadata": dict(metadata),
            "amount_total": sum(li.unit_amount * li.quantity for li in line_items),
            "currency": currency,
        }
        return HostedSession(
            id=session_id,
            url=f"https://checkout.fake/pay/{session_id}",
            metadata=dict(metadata),
        )

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def completed_event(self, session_id: str, event_id: Optional[str] = None, **overrides) -> bytes:
        """Raw body of a ``checkout.session.completed`` event for a created session."""
        obj = {**self.sessions[session_id], **overrides}
        return json.dumps(
            {
                "id": event_id or f"evt_{uuid4().hex[:12]}",
                "type": "checkout.session.completed",
                "data": {"object": obj},
            }
        ).encode()

    def construct_event(self, payload: bytes, signature: Optional[str]) -> PaymentConfirmationEvent:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise SignatureError("Webhook signature verification failed")
        return normalize_event(payload)
