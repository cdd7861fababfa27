"""Tests for the stock reservation coordinator."""
import asyncio
from uuid import uuid4

import pytest

from services.order_service.exceptions import (
    CollaboratorError,
    CollaboratorTimeout,
    InsufficientStock,
    ReservationUncertain,
)
from services.order_service.models import ReservationState
from services.order_service.schemas import ReservationItem
from services.order_service.stock_reservation import StockReservationCoordinator, reservation_key

ITEMS = [ReservationItem(product_id=7, quantity=2)]


@pytest.fixture
def coordinator(session_factory, collaborators):
    return StockReservationCoordinator(session_factory, collaborators.stock)


def test_reservation_key():
    order_id = uuid4()
    assert reservation_key(order_id) == f"RSV-{order_id}"
    assert reservation_key(order_id, 3) == f"RSV-{order_id}-3"


@pytest.mark.asyncio
async def test_reserve_twice_deducts_once(coordinator, collaborators):
    order_id = uuid4()

    first = await coordinator.reserve("RSV-1", order_id, ITEMS)
    second = await coordinator.reserve("RSV-1", order_id, ITEMS)

    assert first.reservation_id == second.reservation_id == "RSV-1"
    assert second.state == ReservationState.RESERVED.value
    assert collaborators.stock.stock[7] == 8
    assert collaborators.stock.reserve_calls == ["RSV-1"]


@pytest.mark.asyncio
async def test_concurrent_reserves_with_same_key_deduct_once(coordinator, collaborators):
    order_id = uuid4()

    await asyncio.gather(*(coordinator.reserve("RSV-2", order_id, ITEMS) for _ in range(5)))

    assert collaborators.stock.stock[7] == 8
    assert collaborators.stock.reserve_calls == ["RSV-2"]


@pytest.mark.asyncio
async def test_release_is_idempotent(coordinator, collaborators):
    await coordinator.reserve("RSV-3", uuid4(), ITEMS)

    released = await coordinator.release("RSV-3")
    again = await coordinator.release("RSV-3")

    assert released.state == ReservationState.RELEASED.value
    assert released.released_at is not None
    assert again.state == ReservationState.RELEASED.value
    assert collaborators.stock.stock[7] == 10
    assert collaborators.stock.release_calls == ["RSV-3"]


@pytest.mark.asyncio
async def test_release_unknown_key_is_noop(coordinator, collaborators):
    assert await coordinator.release("RSV-missing") is None
    assert collaborators.stock.release_calls == []


@pytest.mark.asyncio
async def test_failed_reserve_records_nothing(coordinator, collaborators):
    collaborators.stock.stock[7] = 1

    with pytest.raises(InsufficientStock):
        await coordinator.reserve("RSV-4", uuid4(), ITEMS)

    assert await coordinator.get("RSV-4") is None

    # A retry after a restock goes through
    collaborators.stock.stock[7] = 5
    reservation = await coordinator.reserve("RSV-4", uuid4(), ITEMS)
    assert reservation.state == ReservationState.RESERVED.value
    assert collaborators.stock.stock[7] == 3


@pytest.mark.asyncio
async def test_timed_out_reserve_is_never_sent_again(session_factory, collaborators):
    coordinator = StockReservationCoordinator(session_factory, collaborators.stock, call_timeout=0.05)
    collaborators.stock.delay_after_reserve = 1.0
    order_id = uuid4()

    with pytest.raises(CollaboratorTimeout):
        await coordinator.reserve("RSV-5", order_id, ITEMS)

    assert (await coordinator.get("RSV-5")).state == ReservationState.RESERVING.value
    assert collaborators.stock.stock[7] == 8

    collaborators.stock.delay_after_reserve = 0.0
    with pytest.raises(ReservationUncertain):
        await coordinator.reserve("RSV-5", order_id, ITEMS)
    assert collaborators.stock.reserve_calls == ["RSV-5"]

    # Releasing settles the unknown outcome
    released = await coordinator.release("RSV-5")
    assert released.state == ReservationState.RELEASED.value
    assert collaborators.stock.stock[7] == 10


@pytest.mark.asyncio
async def test_unanswered_reserve_stays_reserving(coordinator, collaborators):
    collaborators.stock.fail_reserve = True

    with pytest.raises(CollaboratorError):
        await coordinator.reserve("RSV-6", uuid4(), ITEMS)

    reservation = await coordinator.get("RSV-6")
    assert reservation.state == ReservationState.RESERVING.value
    assert reservation.reserved_at is None


@pytest.mark.asyncio
async def test_list_for_order(coordinator):
    order_id = uuid4()
    await coordinator.reserve("RSV-7", order_id, ITEMS)
    await coordinator.reserve("RSV-8", uuid4(), ITEMS)

    assert [r.reservation_id for r in await coordinator.list_for_order(order_id)] == ["RSV-7"]
