"""Pytest fixtures: a throwaway SQLite database and fake collaborators."""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

from services.order_service.clients import Collaborators
from services.order_service.exceptions import CollaboratorError, InsufficientStock
from services.order_service.models import Order, OrderStatus, PaymentStatus
from services.order_service.schemas import Address, Cart, CartItem, DeliveryAgent
from services.order_service.service import create_order_service
from shared.config import Settings
from shared.database import Database

USER_ID = 1
ADDRESS_ID = 3
AGENT_ID = 42


class FakeCartClient:
    """Fake cart service."""

    def __init__(self) -> None:
        self.carts: Dict[int, Cart] = {}
        self.valid = True
        self.cleared: List[int] = []
        self.fail_clear = False
        self.delay = 0.0

    async def get_cart(self, user_id: int) -> Optional[Cart]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.carts.get(user_id)

    async def validate_cart(self, user_id: int) -> bool:
        return self.valid

    async def clear_cart(self, user_id: int) -> None:
        if self.fail_clear:
            raise CollaboratorError("cart-service", "unavailable")
        self.cleared.append(user_id)


class FakeStockClient:
    """Fake product service that tracks stock levels and what each reservation key holds.

    Like the real service, releasing a key that holds nothing is a no-op.
    """

    def __init__(self) -> None:
        self.stock: Dict[int, int] = {}
        self.held: Dict[str, list] = {}
        self.reserve_calls: List[str] = []
        self.release_calls: List[str] = []
        self.fail_reserve = False
        self.fail_release = False
        # Applied after the stock is taken, so a timed out call still deducts
        self.delay_after_reserve = 0.0

    async def reserve_stock(self, reservation_id, items) -> None:
        if self.fail_reserve:
            raise CollaboratorError("product-service", "unavailable")
        for item in items:
            if self.stock.get(item.product_id, 0) < item.quantity:
                raise InsufficientStock(f"product {item.product_id}")
        for item in items:
            self.stock[item.product_id] -= item.quantity
        self.held[reservation_id] = list(items)
        self.reserve_calls.append(reservation_id)
        if self.delay_after_reserve:
            await asyncio.sleep(self.delay_after_reserve)

    async def release_stock(self, reservation_id, items) -> None:
        if self.fail_release:
            raise CollaboratorError("product-service", "unavailable")
        for item in self.held.pop(reservation_id, []):
            self.stock[item.product_id] += item.quantity
        self.release_calls.append(reservation_id)


class FakeUserClient:
    """Fake user service."""

    def __init__(self) -> None:
        self.addresses: Dict[int, List[Address]] = {}
        self.agents: List[DeliveryAgent] = []
        self.fail_agents = False

    async def get_addresses(self, user_id: int) -> List[Address]:
        return self.addresses.get(user_id, [])

    async def get_delivery_agents(self) -> List[DeliveryAgent]:
        if self.fail_agents:
            raise CollaboratorError("user-service", "unavailable")
        return self.agents


class FakePaymentClient:
    """Fake payment service."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fail = False

    async def initiate_payment(self, order_id, user_id, amount, method) -> str:
        if self.fail:
            raise CollaboratorError("payment-service", "gateway error")
        self.calls.append((order_id, user_id, amount, method))
        return f"PAY-{len(self.calls)}"


class FakeDeliveryClient:
    """Fake delivery service."""

    def __init__(self) -> None:
        self.assignments: List[tuple] = []
        self.status_updates: List[tuple] = []
        self.fail = False

    async def assign_delivery(self, order_id, user_id, agent_id, eta) -> str:
        if self.fail:
            raise CollaboratorError("delivery-service", "unavailable")
        self.assignments.append((order_id, user_id, agent_id, eta))
        return f"DLV-{len(self.assignments)}"

    async def update_delivery_status(self, order_id, status) -> None:
        if self.fail:
            raise CollaboratorError("delivery-service", "unavailable")
        self.status_updates.append((order_id, status))


class FakeNotificationClient:
    """Fake notification service."""

    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.fail = False

    async def notify(self, order_id, user_id, event_type) -> None:
        if self.fail:
            raise CollaboratorError("notification-service", "unavailable")
        self.sent.append((order_id, user_id, event_type))

    def events_for(self, order_id) -> List[str]:
        return [event for oid, _, event in self.sent if oid == order_id]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        collaborator_timeout_seconds=0.5,
        store_max_write_attempts=5,
        broker_enabled=False,
    )


@pytest_asyncio.fixture
async def database(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
def collaborators() -> Collaborators:
    cart = FakeCartClient()
    cart.carts[USER_ID] = Cart(
        items=[CartItem(product_id=7, product_name="Desk Lamp", quantity=2, price=50.0)],
        total_price=100.0,
    )

    stock = FakeStockClient()
    stock.stock[7] = 10

    users = FakeUserClient()
    users.addresses[USER_ID] = [
        Address(id=ADDRESS_ID, street="12 Park Road", city="Pune", state="MH", zip_code="411001", country="IN"),
    ]
    users.agents = [DeliveryAgent(id=AGENT_ID, name="Ravi")]

    return Collaborators(
        cart=cart,
        stock=stock,
        users=users,
        payments=FakePaymentClient(),
        deliveries=FakeDeliveryClient(),
        notifications=FakeNotificationClient(),
    )


@pytest.fixture
def order_service(session_factory, collaborators, settings):
    return create_order_service(session_factory, collaborators, settings)


@pytest.fixture
def make_order(session_factory):
    """Insert an order directly in the given state."""

    async def _make_order(
        status: OrderStatus = OrderStatus.PENDING,
        user_id: int = USER_ID,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        delivery_agent_id: Optional[int] = None,
        reservation_id: Optional[str] = None,
    ) -> Order:
        now = datetime.utcnow()
        order = Order(
            id=uuid4(),
            order_number=f"ORD-{now:%Y%m%d}-{uuid4().hex[:8].upper()}",
            user_id=user_id,
            status=status.value,
            items=[{"product_id": 7, "product_name": "Desk Lamp", "quantity": 2, "unit_price": 50.0, "image_url": None}],
            total_amount=100.0,
            delivery_address={"street": "12 Park Road", "city": "Pune", "state": "MH", "zip_code": "411001", "country": "IN"},
            payment_method="CARD",
            payment_status=payment_status.value,
            delivery_agent_id=delivery_agent_id,
            reservation_id=reservation_id,
            created_at=now,
            updated_at=now,
        )
        async with session_factory() as session:
            session.add(order)
            await session.commit()
        return order

    return _make_order
