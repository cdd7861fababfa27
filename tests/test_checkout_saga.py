"""Tests for the checkout saga."""
import asyncio

import pytest
from sqlalchemy import func, select

from services.order_service import saga_orchestrator
from services.order_service.compensation import CompensationReconciler
from services.order_service.exceptions import (
    AddressNotFound,
    CartEmpty,
    CartTotalMismatch,
    CheckoutTimeout,
    OrderNumberConflict,
)
from services.order_service.models import (
    CompensationAction,
    CompensationStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    ReservationState,
    SagaLog,
    StockReservation,
)
from services.order_service.saga_orchestrator import generate_order_number, is_cash_on_delivery, to_money
from services.order_service.schemas import Cart, CartItem, CheckoutRequest
from services.order_service.service import build_compensation_handlers
from shared.events import EventType
from shared.outbox import OutboxMessage

from conftest import ADDRESS_ID, USER_ID


async def count_orders(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(Order.id)))).scalar_one()


def test_generate_order_number_format():
    number = generate_order_number()
    prefix, day, suffix = number.split("-")
    assert prefix == "ORD"
    assert len(day) == 8 and day.isdigit()
    assert len(suffix) == 8


@pytest.mark.parametrize("method,expected", [("COD", True), (" cod ", True), ("CARD", False), ("UPI", False)])
def test_is_cash_on_delivery(method, expected):
    assert is_cash_on_delivery(method) is expected


@pytest.mark.asyncio
async def test_card_checkout(order_service, collaborators, session_factory):
    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert order.total_amount == 100.0
    assert order.status == OrderStatus.PENDING.value
    assert order.payment_status == PaymentStatus.PENDING.value
    assert order.items[0]["product_id"] == 7
    assert order.items[0]["unit_price"] == 50.0
    assert order.delivery_address["city"] == "Pune"
    assert order.reservation_id == f"RSV-{order.id}"
    assert order.payment_ref == "PAY-1"
    assert order.delivery_ref == "DLV-1"

    assert collaborators.stock.stock[7] == 8
    assert collaborators.payments.calls == [(order.id, USER_ID, 100.0, "CARD")]
    assert collaborators.cart.cleared == [USER_ID]
    _, _, agent_id, _ = collaborators.deliveries.assignments[0]
    assert agent_id is None

    async with session_factory() as session:
        events = (await session.execute(select(OutboxMessage.event_type))).scalars().all()
    assert events == [EventType.ORDER_PLACED.value]


@pytest.mark.asyncio
async def test_total_is_a_snapshot(order_service, collaborators):
    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    collaborators.cart.carts[USER_ID].items[0].price = 75.0

    assert (await order_service.get_order(order.id)).total_amount == 100.0


@pytest.mark.asyncio
async def test_payment_failure_still_places_order_and_clears_cart(order_service, collaborators):
    collaborators.payments.fail = True

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert order.status == OrderStatus.PENDING.value
    assert order.payment_status == PaymentStatus.PENDING.value
    assert order.payment_ref is None
    assert collaborators.cart.cleared == [USER_ID]

    pending = await order_service.list_compensations(CompensationStatus.PENDING)
    assert [(c.order_id, c.action) for c in pending] == [(order.id, CompensationAction.INITIATE_PAYMENT.value)]


@pytest.mark.asyncio
async def test_post_commit_failures_are_independent(order_service, collaborators):
    collaborators.deliveries.fail = True
    collaborators.cart.fail_clear = True

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert order.payment_ref == "PAY-1"
    actions = {c.action for c in await order_service.list_compensations()}
    assert actions == {CompensationAction.ASSIGN_DELIVERY.value, CompensationAction.CLEAR_CART.value}


@pytest.mark.asyncio
async def test_cod_checkout(order_service, collaborators):
    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="cod"))

    assert order.status == OrderStatus.PAYMENT_SUCCESS.value
    assert order.payment_status == PaymentStatus.COD.value
    assert collaborators.payments.calls == []
    assert collaborators.notifications.events_for(order.id) == ["CONFIRMED"]
    assert collaborators.cart.cleared == [USER_ID]


@pytest.mark.asyncio
@pytest.mark.parametrize("cart", [None, Cart(items=[], total_price=0)])
async def test_missing_or_empty_cart_persists_nothing(order_service, collaborators, session_factory, cart):
    if cart is None:
        del collaborators.cart.carts[USER_ID]
    else:
        collaborators.cart.carts[USER_ID] = cart

    with pytest.raises(CartEmpty):
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert await count_orders(session_factory) == 0
    assert collaborators.stock.reserve_calls == []


@pytest.mark.asyncio
async def test_unknown_address_is_fatal(order_service, collaborators, session_factory):
    with pytest.raises(AddressNotFound):
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=99, payment_method="CARD"))

    assert await count_orders(session_factory) == 0
    assert collaborators.stock.stock[7] == 10

    async with session_factory() as session:
        logs = (await session.execute(select(SagaLog))).scalars().all()
    assert [(log.step, log.status) for log in logs] == [("resolve_address", "failed")]


@pytest.mark.asyncio
async def test_cart_timeout_is_fatal(order_service, collaborators, session_factory):
    collaborators.cart.delay = 2.0

    with pytest.raises(CheckoutTimeout) as exc_info:
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert exc_info.value.step == "fetch_cart"
    assert await count_orders(session_factory) == 0


@pytest.mark.asyncio
async def test_invalid_cart_does_not_block_checkout(order_service, collaborators):
    collaborators.cart.valid = False

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    logs = {log.step: log.status for log in await order_service.get_saga_logs(order.id)}
    assert logs["validate_cart"] == "degraded"
    assert logs["persist_order"] == "completed"


@pytest.mark.asyncio
async def test_stock_failure_places_order_without_reservation(order_service, collaborators):
    collaborators.stock.fail_reserve = True

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert order.reservation_id is None
    pending = await order_service.list_compensations(CompensationStatus.PENDING)
    assert [c.action for c in pending] == [CompensationAction.RESERVE_STOCK.value]
    assert pending[0].payload == {"reservation_id": f"RSV-{order.id}"}


@pytest.mark.asyncio
async def test_cart_total_mismatch_is_fatal(order_service, collaborators, session_factory):
    collaborators.cart.carts[USER_ID] = Cart(
        items=[
            CartItem(product_id=7, product_name="Desk Lamp", quantity=2, price=50.0),
            CartItem(product_id=8, product_name="Bulb", quantity=3, price=2.5),
        ],
        total_price=99.0,
    )

    with pytest.raises(CartTotalMismatch) as exc_info:
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert exc_info.value.step == "price_order"
    assert exc_info.value.item_total == 107.5
    assert await count_orders(session_factory) == 0
    assert collaborators.stock.reserve_calls == []


@pytest.mark.asyncio
async def test_fractional_prices_total_exactly(order_service, collaborators):
    collaborators.cart.carts[USER_ID] = Cart(
        items=[CartItem(product_id=7, product_name="Sticker", quantity=3, price=0.1)],
        total_price=0.3,
    )

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert order.total_amount == 0.3
    assert collaborators.payments.calls[0][2] == 0.3


def test_to_money_rounds_to_cents():
    assert to_money(0.1 + 0.2) == to_money("0.30")
    assert str(to_money(2.005)) == "2.01"


@pytest.mark.asyncio
async def test_concurrent_checkouts_get_distinct_orders(order_service, collaborators):
    orders = await asyncio.gather(
        order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD")),
        order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD")),
    )

    assert orders[0].order_number != orders[1].order_number
    assert collaborators.stock.stock[7] == 6


async def reservations_by_state(session_factory) -> dict:
    async with session_factory() as session:
        rows = (await session.execute(select(StockReservation))).scalars().all()
    return {row.reservation_id: row.state for row in rows}


@pytest.mark.asyncio
async def test_taken_order_number_is_drawn_again(order_service, collaborators, session_factory, monkeypatch):
    first = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))
    numbers = iter([first.order_number, "ORD-20260101-0000FEED"])
    monkeypatch.setattr(saga_orchestrator, "generate_order_number", lambda now=None: next(numbers))

    second = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert second.order_number == "ORD-20260101-0000FEED"
    assert second.reservation_id == f"RSV-{second.id}"
    assert await count_orders(session_factory) == 2
    assert collaborators.stock.stock[7] == 6


@pytest.mark.asyncio
async def test_exhausted_order_numbers_release_the_reservation(
    order_service, collaborators, session_factory, monkeypatch
):
    first = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))
    monkeypatch.setattr(saga_orchestrator, "generate_order_number", lambda now=None: first.order_number)

    with pytest.raises(OrderNumberConflict) as exc_info:
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert exc_info.value.status_code == 409
    assert exc_info.value.step == "persist_order"
    assert await count_orders(session_factory) == 1
    assert collaborators.stock.stock[7] == 8

    states = await reservations_by_state(session_factory)
    abandoned = [key for key in states if key != first.reservation_id]
    assert len(abandoned) == 1
    assert states[abandoned[0]] == ReservationState.RELEASED.value
    assert states[first.reservation_id] == ReservationState.RESERVED.value
    assert collaborators.stock.release_calls == abandoned


@pytest.mark.asyncio
async def test_failed_persist_leaves_a_release_to_reconcile(
    order_service, collaborators, session_factory, monkeypatch
):
    async def unavailable(session, order):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(order_service.saga.store, "add", unavailable)
    collaborators.stock.fail_release = True

    with pytest.raises(RuntimeError):
        await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    assert collaborators.stock.stock[7] == 8
    [pending] = await order_service.list_compensations(CompensationStatus.PENDING)
    assert pending.action == CompensationAction.RELEASE_STOCK.value
    assert pending.payload == {"reservation_id": f"RSV-{pending.order_id}"}

    collaborators.stock.fail_release = False
    reconciler = CompensationReconciler(session_factory, build_compensation_handlers(order_service.saga))
    assert await reconciler.reconcile_due() == 1

    assert collaborators.stock.stock[7] == 10
    states = await reservations_by_state(session_factory)
    assert states == {f"RSV-{pending.order_id}": ReservationState.RELEASED.value}


@pytest.mark.asyncio
async def test_late_reserve_is_released_not_repeated(order_service, collaborators, session_factory):
    # Answers after the 0.5s collaborator timeout, but the stock is already taken
    collaborators.stock.delay_after_reserve = 1.0

    order = await order_service.checkout(USER_ID, CheckoutRequest(address_id=ADDRESS_ID, payment_method="CARD"))

    first_key = f"RSV-{order.id}"
    assert order.reservation_id is None
    assert collaborators.stock.stock[7] == 8
    states = await reservations_by_state(session_factory)
    assert states == {first_key: ReservationState.RESERVING.value}

    collaborators.stock.delay_after_reserve = 0.0
    reconciler = CompensationReconciler(session_factory, build_compensation_handlers(order_service.saga))
    assert await reconciler.reconcile_due() == 1

    order = await order_service.get_order(order.id)
    second_key = f"RSV-{order.id}-2"
    assert order.reservation_id == second_key
    assert collaborators.stock.reserve_calls == [first_key, second_key]
    assert collaborators.stock.release_calls == [first_key]
    assert collaborators.stock.stock[7] == 8
    assert await reservations_by_state(session_factory) == {
        first_key: ReservationState.RELEASED.value,
        second_key: ReservationState.RESERVED.value,
    }

    # Nothing left to do on the next pass
    assert await reconciler.reconcile_due() == 0
    assert collaborators.stock.reserve_calls == [first_key, second_key]
