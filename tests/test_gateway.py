"""Tests for gateway port/adapter behavior."""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from fulfillment.errors import GatewayTimeout, SignatureError
from fulfillment.gateway import FakeGateway, HostedLineItem, StripeGateway, bounded
from fulfillment.gateway.port import normalize_event
from fulfillment.models import CHECKOUT_COMPLETED


def stripe_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


EVENT = json.dumps(
    {
        "id": "evt_123",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_123",
                "customer_email": None,
                "customer_details": {"email": "buyer@example.com"},
                "client_reference_id": "corr_1",
                "metadata": {"items": '[{"id":"p1","quantity":2}]'},
            }
        },
    }
).encode()


class TestNormalizeEvent:
    def test_checkout_completed(self):
        event = normalize_event(EVENT)
        assert event.event_id == "evt_123"
        assert event.type == CHECKOUT_COMPLETED
        assert event.session_ref == "cs_123"
        assert event.email == "buyer@example.com"
        assert event.correlation_id == "corr_1"
        assert event.metadata["items"] == '[{"id":"p1","quantity":2}]'

    def test_other_types_keep_their_name(self):
        payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}}).encode()
        assert normalize_event(payload).type == "charge.refunded"

    def test_malformed_payload(self):
        with pytest.raises(SignatureError):
            normalize_event(b'{"id": "evt_1"}')


class TestFakeGateway:
    async def test_default_charge_succeeds(self):
        result = await FakeGateway().charge("pm_1", 1000, "usd", idempotency_key="k")
        assert result.success is True
        assert result.charge_id.startswith("fake_ch_")

    async def test_configured_charge_fails(self):
        gateway = FakeGateway()
        gateway.configure(should_succeed=False, failure_reason="Insufficient funds")
        result = await gateway.charge("pm_1", 1000, "usd")
        assert result.success is False
        assert result.failure_reason == "Insufficient funds"

    async def test_completed_event_is_signed_and_verifiable(self):
        gateway = FakeGateway(webhook_secret="s3cret")
        session = await gateway.create_hosted_session(
            [HostedLineItem(name="Cube", unit_amount=2000, quantity=1)],
            "usd",
            "https://shop/success",
            "https://shop/cancel",
            {"correlation_id": "corr_9"},
            "buyer@example.com",
            "corr_9",
        )
        payload = gateway.completed_event(session.id, event_id="evt_9")

        event = gateway.construct_event(payload, gateway.sign(payload))
        assert event.event_id == "evt_9"
        assert event.session_ref == session.id
        assert event.correlation_id == "corr_9"

        with pytest.raises(SignatureError):
            FakeGateway(webhook_secret="other").construct_event(payload, gateway.sign(payload))


class TestStripeSignature:
    def test_valid_signature(self):
        gateway = StripeGateway(api_key="sk_test_x", webhook_secret="whsec_abc")
        event = gateway.construct_event(EVENT, stripe_header(EVENT, "whsec_abc"))
        assert event.event_id == "evt_123"

    def test_wrong_secret(self):
        gateway = StripeGateway(api_key="sk_test_x", webhook_secret="whsec_abc")
        with pytest.raises(SignatureError):
            gateway.construct_event(EVENT, stripe_header(EVENT, "whsec_other"))

    def test_stale_timestamp(self):
        gateway = StripeGateway(api_key="sk_test_x", webhook_secret="whsec_abc")
        with pytest.raises(SignatureError):
            gateway.construct_event(EVENT, stripe_header(EVENT, "whsec_abc", int(time.time()) - 3600))

    def test_missing_header(self):
        gateway = StripeGateway(api_key="sk_test_x", webhook_secret="whsec_abc")
        with pytest.raises(SignatureError):
            gateway.construct_event(EVENT, None)


class RecordingService:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def create(self, params, options=None):
        self.calls.append((params, options))
        return self.result


def with_client(gateway: StripeGateway, intents=None, sessions=None) -> StripeGateway:
    gateway.client = SimpleNamespace(
        v1=SimpleNamespace(payment_intents=intents, checkout=SimpleNamespace(sessions=sessions))
    )
    return gateway


class TestStripeClient:
    def test_settings_stay_on_the_instance(self):
        before = stripe.max_network_retries
        gateway = StripeGateway(api_key="sk_test_x", webhook_secret="whsec_abc", max_network_retries=4)
        assert isinstance(gateway.client, stripe.StripeClient)
        assert stripe.max_network_retries == before

    async def test_charge_passes_idempotency_key_as_option(self):
        intents = RecordingService(SimpleNamespace(id="pi_1", status="succeeded"))
        gateway = with_client(StripeGateway("sk_test_x", "whsec_abc"), intents=intents)

        result = await gateway.charge("pm_1", 1250, "usd", idempotency_key="direct:k1")

        assert result.success is True
        assert result.charge_id == "pi_1"
        [(params, options)] = intents.calls
        assert params["amount"] == 1250
        assert params["payment_method"] == "pm_1"
        assert options == {"idempotency_key": "direct:k1"}

    async def test_unfinished_intent_is_not_a_success(self):
        intents = RecordingService(SimpleNamespace(id="pi_2", status="requires_action"))
        gateway = with_client(StripeGateway("sk_test_x", "whsec_abc"), intents=intents)

        result = await gateway.charge("pm_1", 1250, "usd")

        assert result.success is False
        assert result.gateway_status == "requires_action"
        assert intents.calls[0][1] == {}

    async def test_hosted_session(self):
        sessions = RecordingService(SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1"))
        gateway = with_client(StripeGateway("sk_test_x", "whsec_abc"), sessions=sessions)

        session = await gateway.create_hosted_session(
            [HostedLineItem(name="Megaminx", unit_amount=1250, quantity=2)],
            "usd",
            "https://shop/success",
            "https://shop/cancel",
            {"correlation_id": "corr_1"},
            "buyer@example.com",
            "corr_1",
        )

        assert session.id == "cs_1"
        [(params, _)] = sessions.calls
        assert params["line_items"][0]["price_data"]["unit_amount"] == 1250
        assert params["client_reference_id"] == "corr_1"
        assert params["metadata"] == {"correlation_id": "corr_1"}


class TestBounded:
    async def test_timeout_means_unknown_outcome(self):
        gateway = FakeGateway()
        gateway.configure(latency=1)
        with pytest.raises(GatewayTimeout):
            await bounded(gateway.charge("pm_1", 100, "usd"), 0.01)
