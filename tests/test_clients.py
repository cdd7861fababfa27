"""Tests for the HTTP collaborator clients."""
import json
from datetime import datetime
from uuid import uuid4

import httpx
import pytest

from services.order_service.clients import (
    HttpCartClient,
    HttpDeliveryClient,
    HttpNotificationClient,
    HttpPaymentClient,
    HttpStockClient,
    HttpUserClient,
    build_http_collaborators,
)
from services.order_service.exceptions import CollaboratorError, CollaboratorTimeout, InsufficientStock
from services.order_service.schemas import ReservationItem


def envelope(data, success=True, message=None):
    return {"success": success, "data": data, "message": message}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_cart_unwraps_envelope():
    seen = {}

    def handler(request: httpx.Request):
        seen["user"] = request.headers["X-User-Id"]
        seen["path"] = request.url.path
        return httpx.Response(200, json=envelope({
            "items": [{"productId": 7, "productName": "Desk Lamp", "quantity": 2, "price": 50.0}],
            "totalPrice": 100.0,
        }))

    async with mock_client(handler) as http:
        cart = await HttpCartClient(http, "http://cart").get_cart(1)

    assert seen == {"user": "1", "path": "/api/cart"}
    assert cart.total_price == 100.0
    assert cart.items[0].product_id == 7


@pytest.mark.asyncio
async def test_missing_cart_is_none():
    async with mock_client(lambda request: httpx.Response(404)) as http:
        assert await HttpCartClient(http, "http://cart").get_cart(1) is None


@pytest.mark.asyncio
async def test_unsuccessful_envelope_raises():
    def handler(request):
        return httpx.Response(200, json=envelope(None, success=False, message="cart locked"))

    async with mock_client(handler) as http:
        with pytest.raises(CollaboratorError, match="cart locked"):
            await HttpCartClient(http, "http://cart").clear_cart(1)


@pytest.mark.asyncio
async def test_get_requests_are_retried_on_transport_errors():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=envelope([{"id": 3, "city": "Pune", "zipCode": "411001"}]))

    async with mock_client(handler) as http:
        addresses = await HttpUserClient(http, "http://users").get_addresses(1)

    assert len(attempts) == 3
    assert addresses[0].zip_code == "411001"


@pytest.mark.asyncio
async def test_timeout_becomes_collaborator_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with mock_client(handler) as http:
        with pytest.raises(CollaboratorTimeout):
            await HttpPaymentClient(http, "http://payments").initiate_payment(uuid4(), 1, 100.0, "CARD")


@pytest.mark.asyncio
async def test_reserve_stock_conflict_is_insufficient_stock():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(409, text="not enough stock")

    async with mock_client(handler) as http:
        with pytest.raises(InsufficientStock):
            await HttpStockClient(http, "http://products").reserve_stock(
                "RSV-1", [ReservationItem(product_id=7, quantity=2)]
            )

    assert bodies == [{"reservationId": "RSV-1", "items": [{"productId": 7, "quantity": 2}]}]


@pytest.mark.asyncio
async def test_payment_and_delivery_refs():
    order_id = uuid4()

    def handler(request):
        if request.url.path == "/api/payments/initiate":
            body = json.loads(request.content)
            assert body["orderId"] == str(order_id)
            assert body["paymentMethod"] == "CARD"
            return httpx.Response(200, json=envelope({"paymentRef": "PAY-77"}))
        if request.url.path == "/api/delivery/assign":
            assert json.loads(request.content)["agentId"] is None
            return httpx.Response(200, json=envelope({"id": 12}))
        if request.url.path == f"/api/notifications/order/{order_id}":
            assert request.url.params["eventType"] == "SHIPPED"
            return httpx.Response(200, json=envelope(None))
        return httpx.Response(500)

    async with mock_client(handler) as http:
        assert await HttpPaymentClient(http, "http://payments").initiate_payment(order_id, 1, 100.0, "CARD") == "PAY-77"
        assert await HttpDeliveryClient(http, "http://delivery").assign_delivery(order_id, 1, None, datetime.utcnow()) == "12"
        await HttpNotificationClient(http, "http://notify").notify(order_id, 1, "SHIPPED")


@pytest.mark.asyncio
async def test_server_error_raises(settings):
    async with mock_client(lambda request: httpx.Response(503, text="down")) as http:
        collaborators = build_http_collaborators(http, settings)
        with pytest.raises(CollaboratorError, match="HTTP 503"):
            await collaborators.deliveries.update_delivery_status(uuid4(), "DELIVERED")
