"""HTTP surface via FastAPI TestClient."""

import json

from fastapi.testclient import TestClient

from fulfillment.errors import PersistenceError
from fulfillment.main import Services, create_app
from fulfillment.store.base import Store


def signed(gateway, body: dict) -> tuple[bytes, dict]:
    payload = json.dumps(body).encode()
    return payload, {"Stripe-Signature": gateway.sign(payload), "Content-Type": "application/json"}


def completed_body(event_id: str, items_json: str | None = None, email="buyer@example.com") -> dict:
    metadata = {"items": items_json} if items_json else {}
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "customer_email": email, "metadata": metadata}},
    }


class TestCatalog:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}

    def test_list_and_get_products(self, client):
        products = client.get("/products").json()
        assert [p["id"] for p in products] == ["p1", "p2", "p3"]

        r = client.get("/products/p2")
        assert r.status_code == 200
        assert r.json()["stock"] == 10

    def test_missing_product(self, client):
        assert client.get("/products/nope").status_code == 404


class TestOrders:
    def test_create_and_fetch_order(self, client, store):
        r = client.post(
            "/orders",
            json={"email": "a@example.com", "items": [{"id": "p2", "quantity": 2}], "paymentMethodId": "pm_1"},
        )
        assert r.status_code == 200
        order = r.json()["order"]
        assert order["status"] == "paid"
        assert order["items"] == [{"id": "p2", "quantity": 2}]

        fetched = client.get(f"/orders/{order['id']}").json()
        assert fetched["id"] == order["id"]
        assert store.stock("p2") == 8

    def test_missing_fields_give_structured_error(self, client):
        r = client.post("/orders", json={"email": "a@example.com", "items": []})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_request"

    def test_insufficient_stock(self, client, store):
        r = client.post(
            "/orders",
            json={"email": "a@example.com", "items": [{"id": "p1", "quantity": 2}], "paymentMethodId": "pm_1"},
        )
        assert r.status_code == 409
        assert r.json() == {
            "error": "insufficient_stock",
            "detail": "Insufficient stock for product p1",
            "product_id": "p1",
            "requested": 2,
            "available": 1,
        }
        assert store.stock("p1") == 1

    def test_declined(self, client, gateway):
        gateway.configure(should_succeed=False)
        r = client.post(
            "/orders",
            json={"email": "a@example.com", "items": [{"id": "p2", "quantity": 1}], "paymentMethodId": "pm_1"},
        )
        assert r.status_code == 402
        assert r.json()["error"] == "payment_declined"

    def test_idempotency_key_header(self, client, gateway):
        body = {"email": "a@example.com", "items": [{"id": "p2", "quantity": 1}], "paymentMethodId": "pm_1"}
        first = client.post("/orders", json=body, headers={"Idempotency-Key": "abc"}).json()
        second = client.post("/orders", json=body, headers={"Idempotency-Key": "abc"}).json()
        assert second["replayed"] is True
        assert second["order"]["id"] == first["order"]["id"]
        assert len(gateway.calls) == 1

    def test_idempotency_key_reused_with_different_body(self, client, gateway):
        body = {"email": "a@example.com", "items": [{"id": "p2", "quantity": 1}], "paymentMethodId": "pm_1"}
        client.post("/orders", json=body, headers={"Idempotency-Key": "abc"})

        other = dict(body, email="b@example.com")
        r = client.post("/orders", json=other, headers={"Idempotency-Key": "abc"})
        assert r.status_code == 409
        assert r.json()["error"] == "idempotency_conflict"
        assert len(gateway.calls) == 1

    def test_malformed_body_uses_error_shape(self, client, gateway):
        r = client.post(
            "/orders",
            json={"email": "a@example.com", "items": [{"id": "p2", "quantity": 0}], "paymentMethodId": "pm_1"},
        )
        assert r.status_code == 400
        body = r.json()
        assert body["error"] == "invalid_request"
        assert body["errors"][0]["loc"] == ["body", "items", 0, "quantity"]
        assert gateway.calls == []

    def test_unknown_order(self, client):
        r = client.get("/orders/999")
        assert r.status_code == 404
        assert r.json()["error"] == "order_not_found"


class TestCheckoutSession:
    def test_returns_url(self, client, gateway):
        r = client.post("/checkout-session", json={"email": "a@example.com", "items": [{"id": "p2", "quantity": 2}]})
        assert r.status_code == 200
        assert r.json()["url"].startswith("https://checkout.fake/pay/")
        assert r.json()["session_id"] in gateway.sessions


class TestWebhook:
    def test_bad_signature_is_a_client_error(self, client, store):
        payload = json.dumps(completed_body("evt_1", '[{"id":"p2","quantity":1}]')).encode()
        r = client.post("/webhook", content=payload, headers={"Stripe-Signature": "bad"})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_signature"
        assert store.stock("p2") == 10

    def test_redelivery_is_acknowledged_once_fulfilled(self, client, gateway, store):
        payload, headers = signed(gateway, completed_body("evt_1", '[{"id":"p2","quantity":2}]'))
        outcomes = [client.post("/webhook", content=payload, headers=headers).json()["outcome"] for _ in range(3)]
        assert outcomes == ["fulfilled", "duplicate", "duplicate"]
        assert store.stock("p2") == 8

    def test_gap_is_acknowledged_and_listed(self, client, gateway):
        payload, headers = signed(gateway, completed_body("evt_gap", email="nobody@example.com"))
        r = client.post("/webhook", content=payload, headers=headers)
        assert r.status_code == 200
        assert r.json() == {"received": True, "outcome": "reconciliation_gap", "order_id": None}

        alerts = client.get("/admin/alerts").json()
        assert [(a["kind"], a["reference"]) for a in alerts] == [("reconciliation_gap", "evt_gap")]

    def test_storage_outage_asks_for_redelivery(self, gateway, notifier):
        class DownStore(Store):
            def transaction(self):
                raise PersistenceError("Database unavailable")

        services = Services.wire(DownStore(), gateway, notifier)
        with TestClient(create_app(services)) as client:
            payload, headers = signed(gateway, completed_body("evt_1", '[{"id":"p2","quantity":1}]'))
            r = client.post("/webhook", content=payload, headers=headers)
        assert r.status_code == 503
        assert r.json()["error"] == "storage_unavailable"


class TestAdmin:
    def test_resolve_reconciliation_order(self, client, gateway, services):
        client.post(
            "/orders",
            json={"email": "buyer@example.com", "items": [{"id": "p3", "quantity": 1}], "paymentMethodId": "pm_1"},
        )
        payload, headers = signed(gateway, completed_body("evt_2"))
        order_id = client.post("/webhook", content=payload, headers=headers).json()["order_id"]
        assert client.get(f"/orders/{order_id}").json()["status"] == "reconciliation_pending"

        r = client.post(f"/admin/orders/{order_id}/status", json={"status": "paid", "note": "confirmed"})
        assert r.status_code == 200
        assert r.json()["status"] == "paid"

        again = client.post(f"/admin/orders/{order_id}/status", json={"status": "failed"})
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    def test_alert_limit_is_bounded(self, client, gateway):
        for n in range(3):
            payload, headers = signed(gateway, completed_body(f"evt_gap_{n}", email="nobody@example.com"))
            client.post("/webhook", content=payload, headers=headers)

        assert len(client.get("/admin/alerts", params={"limit": 2}).json()) == 2
        for bad in (-1, 0, 1001):
            r = client.get("/admin/alerts", params={"limit": bad})
            assert r.status_code == 400
            assert r.json()["error"] == "invalid_request"
