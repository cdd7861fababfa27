"""Clients for the services the order service coordinates.

Each collaborator is described by a Protocol so the saga and the state machine
can be driven by fakes in tests; the ``Http*`` classes are the production
implementations over a shared ``httpx.AsyncClient``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Protocol
from uuid import UUID

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .exceptions import CollaboratorError, CollaboratorTimeout, InsufficientStock
from .schemas import Address, Cart, DeliveryAgent, ReservationItem

logger = logging.getLogger(__name__)

# Only reads are retried here; writes go through the compensation outbox
retry_idempotent = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)


class CartClient(Protocol):
    async def get_cart(self, user_id: int) -> Optional[Cart]: ...

    async def validate_cart(self, user_id: int) -> bool: ...

    async def clear_cart(self, user_id: int) -> None: ...


class StockClient(Protocol):
    async def reserve_stock(self, reservation_id: str, items: List[ReservationItem]) -> None: ...

    async def release_stock(self, reservation_id: str, items: List[ReservationItem]) -> None: ...


class UserClient(Protocol):
    async def get_addresses(self, user_id: int) -> List[Address]: ...

    async def get_delivery_agents(self) -> List[DeliveryAgent]: ...


class PaymentClient(Protocol):
    async def initiate_payment(
        self, order_id: UUID, user_id: int, amount: float, method: str
    ) -> str: ...


class DeliveryClient(Protocol):
    async def assign_delivery(
        self, order_id: UUID, user_id: int, agent_id: Optional[int], eta: datetime
    ) -> str: ...

    async def update_delivery_status(self, order_id: UUID, status: str) -> None: ...


class NotificationClient(Protocol):
    async def notify(self, order_id: UUID, user_id: int, event_type: str) -> None: ...


@dataclass
class Collaborators:
    """The set of collaborator clients handed to the saga and the state machine."""

    cart: CartClient
    stock: StockClient
    users: UserClient
    payments: PaymentClient
    deliveries: DeliveryClient
    notifications: NotificationClient


class ServiceClient:
    """Base HTTP client that unwraps the ``{success, data, message}`` envelope."""

    service_name = "service"

    def __init__(self, http_client: httpx.AsyncClient, base_url: str):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        user_id: Optional[int] = None,
        json: Any = None,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        headers = {"X-User-Id": str(user_id)} if user_id is not None else None
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                json=json,
                params=params,
            )
        except httpx.TimeoutException as e:
            raise CollaboratorTimeout(self.service_name, f"{method} {path} timed out") from e

    def _unwrap(self, response: httpx.Response) -> Any:
        if response.is_error:
            raise CollaboratorError(
                self.service_name, f"HTTP {response.status_code}: {response.text[:200]}"
            )
        if not response.content:
            return None

        body = response.json()
        if isinstance(body, dict) and "success" in body:
            if not body["success"]:
                raise CollaboratorError(self.service_name, body.get("message") or "request failed")
            return body.get("data")
        return body


class HttpCartClient(ServiceClient):
    service_name = "cart-service"

    @retry_idempotent
    async def get_cart(self, user_id: int) -> Optional[Cart]:
        response = await self._request("GET", "/api/cart", user_id=user_id)
        if response.status_code == 404:
            return None
        data = self._unwrap(response)
        return Cart.model_validate(data) if data else None

    async def validate_cart(self, user_id: int) -> bool:
        response = await self._request("POST", "/api/cart/validate", user_id=user_id)
        return bool(self._unwrap(response))

    async def clear_cart(self, user_id: int) -> None:
        response = await self._request("DELETE", "/api/cart/clear", user_id=user_id)
        self._unwrap(response)


class HttpStockClient(ServiceClient):
    service_name = "product-service"

    async def reserve_stock(self, reservation_id: str, items: List[ReservationItem]) -> None:
        response = await self._request(
            "PUT",
            "/api/products/stock/reserve",
            json=_reservation_body(reservation_id, items),
        )
        if response.status_code == 409:
            raise InsufficientStock(response.text[:200])
        self._unwrap(response)

    async def release_stock(self, reservation_id: str, items: List[ReservationItem]) -> None:
        response = await self._request(
            "PUT",
            "/api/products/stock/release",
            json=_reservation_body(reservation_id, items),
        )
        self._unwrap(response)


class HttpUserClient(ServiceClient):
    service_name = "user-service"

    @retry_idempotent
    async def get_addresses(self, user_id: int) -> List[Address]:
        response = await self._request("GET", "/api/users/addresses", user_id=user_id)
        return [Address.model_validate(a) for a in self._unwrap(response) or []]

    @retry_idempotent
    async def get_delivery_agents(self) -> List[DeliveryAgent]:
        response = await self._request("GET", "/api/admin/delivery-agents")
        return [DeliveryAgent.model_validate(a) for a in self._unwrap(response) or []]


class HttpPaymentClient(ServiceClient):
    service_name = "payment-service"

    async def initiate_payment(
        self, order_id: UUID, user_id: int, amount: float, method: str
    ) -> str:
        response = await self._request(
            "POST",
            "/api/payments/initiate",
            user_id=user_id,
            json={
                "orderId": str(order_id),
                "userId": user_id,
                "amount": amount,
                "paymentMethod": method,
            },
        )
        data = self._unwrap(response) or {}
        return str(data.get("paymentRef") or data.get("id"))


class HttpDeliveryClient(ServiceClient):
    service_name = "delivery-service"

    async def assign_delivery(
        self, order_id: UUID, user_id: int, agent_id: Optional[int], eta: datetime
    ) -> str:
        response = await self._request(
            "POST",
            "/api/delivery/assign",
            json={
                "orderId": str(order_id),
                "userId": user_id,
                "agentId": agent_id,
                "estimatedDeliveryDate": eta.isoformat(),
            },
        )
        data = self._unwrap(response) or {}
        return str(data.get("deliveryRef") or data.get("id"))

    async def update_delivery_status(self, order_id: UUID, status: str) -> None:
        response = await self._request(
            "PUT", f"/api/delivery/{order_id}/status", json={"status": status}
        )
        self._unwrap(response)


class HttpNotificationClient(ServiceClient):
    service_name = "notification-service"

    async def notify(self, order_id: UUID, user_id: int, event_type: str) -> None:
        response = await self._request(
            "POST",
            f"/api/notifications/order/{order_id}",
            params={"userId": user_id, "eventType": event_type},
        )
        self._unwrap(response)


def _reservation_body(reservation_id: str, items: List[ReservationItem]) -> dict:
    return {
        "reservationId": reservation_id,
        "items": [item.model_dump(by_alias=True) for item in items],
    }


def build_http_collaborators(http_client: httpx.AsyncClient, settings) -> Collaborators:
    """Wire the HTTP implementations against the configured service URLs."""
    return Collaborators(
        cart=HttpCartClient(http_client, settings.cart_service_url),
        stock=HttpStockClient(http_client, settings.product_service_url),
        users=HttpUserClient(http_client, settings.user_service_url),
        payments=HttpPaymentClient(http_client, settings.payment_service_url),
        deliveries=HttpDeliveryClient(http_client, settings.delivery_service_url),
        notifications=HttpNotificationClient(http_client, settings.notification_service_url),
    )
