from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from fulfillment.gateway import FakeGateway
from fulfillment.main import Services, create_app
from fulfillment.models import Product
from fulfillment.store import MemoryStore
from helpers import RecordingNotifier


@pytest.fixture
def store():
    return MemoryStore(
        [
            Product(id="p1", name="3x3 Speed Cube", price=Decimal("20.00"), stock=1),
            Product(id="p2", name="Megaminx", price=Decimal("12.50"), stock=10),
            Product(id="p3", name="Pyraminx", price=Decimal("7.99"), stock=5),
        ]
    )


@pytest.fixture
def gateway():
    return FakeGateway(webhook_secret="whsec_test")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(store, gateway, notifier):
    return Services.wire(store, gateway, notifier)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c
