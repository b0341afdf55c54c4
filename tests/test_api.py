"""HTTP tests for the order, payment and basket FastAPI apps (no lifespan, no Redis)."""

import json
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest

from services.basket.app import main as basket_main
from services.basket.app.repository import RedisBasketRepository
from services.order.app import event_store
from services.order.app import main as order_main
from services.order.app.errors import ConcurrencyConflict
from services.payment.app import main as payment_main
from services.payment.app.gateway import PayPalHttpGateway, SimulatedGateway
from services.shared.integration_events import OrderStarted

ORDER_PAYLOAD = {
    "buyer_id": "buyer-1",
    "buyer_name": "Alice",
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "country": "US",
    "zip_code": "62701",
    "payment_method": "paypal",
    "payment_provider_order_id": "PP-1",
    "items": [{"product_id": "p1", "product_name": "Mug", "unit_price": 10, "discount": 2, "units": 2}],
}


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
async def order_api(monkeypatch, session_factory, event_bus):
    monkeypatch.setattr(order_main, "async_session", session_factory)
    monkeypatch.setattr(order_main.idempotency_store, "session_factory", session_factory)
    monkeypatch.setattr(order_main, "event_bus", event_bus)
    async with _client(order_main.app) as client:
        yield client


async def _create(client, request_id=None, payload=None):
    return await client.post(
        "/commands/orders",
        json=payload or ORDER_PAYLOAD,
        headers={"x-requestid": str(request_id or uuid4())},
    )


async def _only_order_id(client):
    orders = (await client.get("/queries/orders", params={"buyer_id": "buyer-1"})).json()
    assert len(orders) == 1
    return orders[0]["order_number"]


# ------------------------------------------------------------------ #
#  Order service                                                       #
# ------------------------------------------------------------------ #


class TestOrderApi:
    async def test_create_order(self, order_api, event_bus):
        resp = await _create(order_api)

        assert resp.status_code == 200
        assert resp.json() == {"order_submitted": True, "approval_uri": order_main.ORDER_APPROVAL_URI}
        assert [type(e) for e in event_bus.published] == [OrderStarted]

    async def test_missing_request_id(self, order_api):
        resp = await order_api.post("/commands/orders", json=ORDER_PAYLOAD)
        assert resp.status_code == 400

    async def test_malformed_request_id(self, order_api):
        resp = await order_api.post("/commands/orders", json=ORDER_PAYLOAD, headers={"x-requestid": "abc"})
        assert resp.status_code == 400

    async def test_duplicate_request_returns_same_result(self, order_api):
        request_id = uuid4()
        first = await _create(order_api, request_id)
        second = await _create(order_api, request_id, {**ORDER_PAYLOAD, "buyer_name": "Bob"})

        assert second.status_code == 200
        assert second.json() == first.json()
        await _only_order_id(order_api)

    async def test_invalid_address_rejected(self, order_api):
        resp = await _create(order_api, payload={**ORDER_PAYLOAD, "street": " "})
        assert resp.status_code == 400
        assert (await order_api.get("/queries/orders")).json() == []

    async def test_get_order(self, order_api):
        await _create(order_api)
        order_id = await _only_order_id(order_api)

        resp = await order_api.get(f"/queries/orders/{order_id}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "Submitted"
        assert body["total"] == 16.0
        assert body["payment_provider_order_id"] is None

    async def test_get_missing_order(self, order_api):
        resp = await order_api.get(f"/queries/orders/{uuid4()}")
        assert resp.status_code == 404

    async def test_cancel_order(self, order_api, event_bus):
        await _create(order_api)
        order_id = await _only_order_id(order_api)

        resp = await order_api.post(
            f"/commands/orders/{order_id}/cancel",
            json={"reason": "changed my mind"},
            headers={"x-requestid": str(uuid4())},
        )

        assert resp.status_code == 200
        assert resp.json() == {"accepted": True}
        body = (await order_api.get(f"/queries/orders/{order_id}")).json()
        assert body["status"] == "Cancelled"
        assert body["description"] == "changed my mind"
        assert event_bus.published[-1].event_type == "OrderStatusChangedToCancelled"

    async def test_cancel_unknown_order(self, order_api):
        resp = await order_api.post(
            f"/commands/orders/{uuid4()}/cancel", headers={"x-requestid": str(uuid4())},
        )
        assert resp.status_code == 404

    async def test_ship_before_paid_conflicts(self, order_api):
        await _create(order_api)
        order_id = await _only_order_id(order_api)

        resp = await order_api.post(
            f"/commands/orders/{order_id}/ship", headers={"x-requestid": str(uuid4())},
        )

        assert resp.status_code == 409

    async def test_concurrent_modification_conflicts(self, order_api, monkeypatch):
        await _create(order_api)
        order_id = await _only_order_id(order_api)

        async def lost_race(session, agg):
            raise ConcurrencyConflict(agg.id, agg.version)

        monkeypatch.setattr(event_store, "append_changes", lost_race)
        resp = await order_api.post(
            f"/commands/orders/{order_id}/cancel", headers={"x-requestid": str(uuid4())},
        )

        assert resp.status_code == 409
        assert (await order_api.get(f"/queries/orders/{order_id}")).json()["status"] == "Submitted"

    async def test_request_id_reused_for_other_command(self, order_api):
        request_id = uuid4()
        await _create(order_api, request_id)
        order_id = await _only_order_id(order_api)

        resp = await order_api.post(
            f"/commands/orders/{order_id}/cancel", headers={"x-requestid": str(request_id)},
        )

        assert resp.status_code == 409
        assert (await order_api.get(f"/queries/orders/{order_id}")).json()["status"] == "Submitted"

    async def test_events_endpoint(self, order_api):
        await _create(order_api)
        order_id = await _only_order_id(order_api)

        events = (await order_api.get(f"/events/{order_id}")).json()

        assert [e["event_type"] for e in events] == ["OrderSubmitted"]
        assert events[0]["event_data"]["checkout_payment_reference"] == "PP-1"

    async def test_health(self, order_api):
        assert (await order_api.get("/health")).json()["service"] == "order-service"


# ------------------------------------------------------------------ #
#  Payment service                                                     #
# ------------------------------------------------------------------ #


class TestPaymentApi:
    async def test_create_paypal_order_requires_paypal(self, monkeypatch):
        monkeypatch.setattr(payment_main, "gateway", SimulatedGateway(True))
        async with _client(payment_main.app) as client:
            resp = await client.post("/api/paypal/orders", json={"total": "10.00"})
        assert resp.status_code == 400

    async def test_create_paypal_order(self, monkeypatch):
        def handler(request):
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            body = json.loads(request.content)
            assert body["purchase_units"][0]["amount"]["currency_code"] == "USD"
            return httpx.Response(201, json={
                "id": "PP-NEW", "links": [{"rel": "approve", "href": "https://paypal.test/approve"}],
            })

        gateway = PayPalHttpGateway(
            "id", "secret", "https://paypal.test",
            httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        monkeypatch.setattr(payment_main, "gateway", gateway)
        async with _client(payment_main.app) as client:
            resp = await client.post("/api/paypal/orders", json={"total": "10.00"})

        assert resp.status_code == 200
        assert resp.json() == {"paypal_order_id": "PP-NEW", "approval_link": "https://paypal.test/approve"}

    async def test_non_positive_total_rejected(self, monkeypatch):
        gateway = PayPalHttpGateway(
            "id", "secret", "https://paypal.test",
            httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )
        monkeypatch.setattr(payment_main, "gateway", gateway)
        async with _client(payment_main.app) as client:
            resp = await client.post("/api/paypal/orders", json={"total": "0"})
        assert resp.status_code == 400


# ------------------------------------------------------------------ #
#  Basket service                                                      #
# ------------------------------------------------------------------ #


BASKET = {
    "buyer_id": "buyer-1",
    "items": [{"product_id": "p1", "product_name": "Mug", "unit_price": "10.00", "quantity": 2}],
}


@pytest.fixture
def basket_redis(monkeypatch):
    redis = AsyncMock()
    monkeypatch.setattr(basket_main, "repository", RedisBasketRepository(redis))
    return redis


class TestBasketApi:
    async def test_get_empty_basket(self, basket_redis):
        basket_redis.get.return_value = None
        async with _client(basket_main.app) as client:
            resp = await client.get("/api/basket/buyer-1")
        assert resp.json() == {"buyer_id": "buyer-1", "items": []}
        basket_redis.get.assert_awaited_once_with("basket:buyer-1")

    async def test_update_and_get(self, basket_redis):
        async with _client(basket_main.app) as client:
            put = await client.put("/api/basket/buyer-1", json=BASKET)
            key, stored = basket_redis.set.await_args.args
            basket_redis.get.return_value = stored
            got = await client.get("/api/basket/buyer-1")

        assert put.status_code == 200
        assert key == "basket:buyer-1"
        assert got.json()["items"][0]["quantity"] == 2

    async def test_update_other_buyer_rejected(self, basket_redis):
        async with _client(basket_main.app) as client:
            resp = await client.put("/api/basket/buyer-2", json=BASKET)
        assert resp.status_code == 400
        basket_redis.set.assert_not_awaited()

    async def test_delete(self, basket_redis):
        basket_redis.delete.return_value = 1
        async with _client(basket_main.app) as client:
            resp = await client.delete("/api/basket/buyer-1")
        assert resp.json() == {"buyer_id": "buyer-1", "deleted": True}
        basket_redis.delete.assert_awaited_once_with("basket:buyer-1")
