import pytest
from fastapi.testclient import TestClient

from email_service.main import create_app as create_email_app
from order_service.main import create_app as create_order_app
from stock_service.main import create_app as create_stock_app


@pytest.fixture
def order_client(order_settings, broker):
    with TestClient(create_order_app(order_settings, broker=broker)) as client:
        yield client


@pytest.fixture
def stock_client(stock_settings, broker):
    with TestClient(create_stock_app(stock_settings, broker=broker)) as client:
        yield client


@pytest.fixture
def email_client(email_settings, broker, gateway):
    with TestClient(create_email_app(email_settings, broker=broker, gateway=gateway)) as client:
        yield client


ORDER = {"orderId": "ORD123", "product": "Laptop", "quantity": 2, "email": "a@b.com"}


class TestOrderApi:
    def test_create_order(self, order_client):
        resp = order_client.post("/orders", json=ORDER)
        assert resp.status_code == 201
        assert resp.json() == {"orderId": "ORD123"}

        order = order_client.get("/orders/ORD123").json()
        assert order["status"] == "PENDING"
        assert order["customer_contact"] == "a@b.com"
        assert order_client.get("/outbox/pending").json() == {"pending": 1}

    def test_identical_retry_is_accepted(self, order_client):
        assert order_client.post("/orders", json=ORDER).status_code == 201
        assert order_client.post("/orders", json=ORDER).status_code == 201
        assert order_client.get("/outbox/pending").json() == {"pending": 1}

    def test_conflicting_order(self, order_client):
        order_client.post("/orders", json=ORDER)
        resp = order_client.post("/orders", json={**ORDER, "quantity": 3})
        assert resp.status_code == 409

    @pytest.mark.parametrize("body", [
        {**ORDER, "quantity": 0},
        {**ORDER, "quantity": -1},
        {**ORDER, "email": "not-an-email"},
        {**ORDER, "product": ""},
        {k: v for k, v in ORDER.items() if k != "orderId"},
    ])
    def test_validation_errors_are_400(self, order_client, body):
        resp = order_client.post("/orders", json=body)
        assert resp.status_code == 400
        assert order_client.get("/outbox/pending").json() == {"pending": 0}

    def test_unknown_order(self, order_client):
        assert order_client.get("/orders/nope").status_code == 404

    def test_health(self, order_client):
        assert order_client.get("/health").json() == {"status": "ok", "service": "order-service"}


class TestStockApi:
    def test_set_and_read_stock(self, stock_client):
        resp = stock_client.put("/stock/Laptop", json={"quantity": 7})
        assert resp.status_code == 200
        assert stock_client.get("/stock/Laptop").json()["quantity"] == 7

    def test_negative_stock_rejected(self, stock_client):
        assert stock_client.put("/stock/Laptop", json={"quantity": -1}).status_code == 422

    def test_unknown_product(self, stock_client):
        assert stock_client.get("/stock/Tablet").status_code == 404

    def test_dead_letters_empty(self, stock_client):
        assert stock_client.get("/dead-letters").json() == []
        assert stock_client.get("/deliveries").json() == []

    def test_replay_missing_dead_letter(self, stock_client):
        assert stock_client.post("/dead-letters/42/replay").status_code == 404

    def test_health(self, stock_client):
        assert stock_client.get("/health").json() == {"status": "ok", "service": "stock-service"}


class TestEmailApi:
    def test_no_emails_yet(self, email_client):
        assert email_client.get("/emails").json() == []
        assert email_client.get("/emails", params={"order_id": "ORD123"}).json() == []

    def test_health(self, email_client):
        assert email_client.get("/health").json() == {"status": "ok", "service": "email-service"}
