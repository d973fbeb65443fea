import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import main
from database import get_db
from errors import PaymentGatewayError
from events import MemoryPublisher
from payments import get_gateway


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = []
        self.fail = False

    async def create_order(self, amount, currency, receipt, notes):
        if self.fail:
            raise PaymentGatewayError("Payment gateway unavailable")
        order = {"id": f"order_test_{len(self.orders) + 1}", "amount": amount, "currency": currency,
                 "receipt": receipt, "notes": notes}
        self.orders.append(order)
        return order


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def publisher():
    return MemoryPublisher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, publisher, gateway):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(client):
    counter = iter(range(1, 1000))

    def _make(**fields):
        n = next(counter)
        body = {"title": f"Product {n}", "slug": f"product-{n}", "price": 1000, "stock": 10, **fields}
        resp = client.post("/products", json=body)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make


@pytest.fixture
def address():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "zip_code": "560001",
    }
