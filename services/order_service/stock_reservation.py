"""Stock reservation coordinator."""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.concurrency import KeyedLock

from .clients import StockClient
from .exceptions import CollaboratorTimeout, InsufficientStock, ReservationUncertain
from .models import ReservationState, StockReservation
from .schemas import ReservationItem

logger = logging.getLogger(__name__)


def reservation_key(order_id: UUID, attempt: int = 1) -> str:
    """Idempotency key for the stock held by an order.

    A key whose outcome is unknown is never reserved again, so later
    attempts for the same order get their own key.
    """
    if attempt == 1:
        return f"RSV-{order_id}"
    return f"RSV-{order_id}-{attempt}"


class StockReservationCoordinator:
    """Reserves and releases stock at most once per reservation id.

    The reservation row is written as RESERVING before the product service is
    asked, and becomes RESERVED once it answers. A reserve finding a row never
    calls the product service again: RESERVED rows are returned as they are and
    a RESERVING row raises ``ReservationUncertain``. Releasing is the only way
    out of RESERVING, since the product service treats releasing an unknown
    key as a no-op. Calls for the same key are serialized in-process; the
    primary key on ``reservation_id`` rejects a second writer from another
    process.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        stock: StockClient,
        locks: Optional[KeyedLock] = None,
        call_timeout: float = 5.0,
    ):
        self.session_factory = session_factory
        self.stock = stock
        self.locks = locks or KeyedLock()
        self.call_timeout = call_timeout

    async def reserve(
        self, reservation_id: str, order_id: UUID, items: List[ReservationItem]
    ) -> StockReservation:
        """Reserve ``items`` under ``reservation_id``.

        Raises:
            InsufficientStock: Nothing was reserved; the key may be used again
            ReservationUncertain: An earlier attempt under the key never finished
            CollaboratorTimeout: The product service did not answer in time;
                the row stays RESERVING
        """
        async with self.locks.hold(reservation_id):
            existing = await self.get(reservation_id)
            if existing is not None:
                return self._settled(existing)

            concurrent = await self._record_intent(reservation_id, order_id, items)
            if concurrent is not None:
                return self._settled(concurrent)

            try:
                await asyncio.wait_for(self.stock.reserve_stock(reservation_id, items), self.call_timeout)
            except InsufficientStock:
                await self._forget(reservation_id)
                raise
            except asyncio.TimeoutError as e:
                logger.error(f"Reserve {reservation_id} timed out after {self.call_timeout}s, outcome unknown")
                raise CollaboratorTimeout("product-service", f"reserve {reservation_id} timed out") from e
            except Exception as e:
                logger.error(f"Reserve {reservation_id} failed, outcome unknown: {e!r}")
                raise

            async with self.session_factory() as session:
                reservation = await session.get(StockReservation, reservation_id)
                reservation.state = ReservationState.RESERVED.value
                reservation.reserved_at = datetime.utcnow()
                await session.commit()

            logger.info(f"Reserved stock for order {order_id} under {reservation_id}")
            return reservation

    async def release(self, reservation_id: str) -> Optional[StockReservation]:
        """Release a reservation. Returns None when nothing was ever reserved under the key.

        RESERVING rows are released too: whatever the lost reserve did is undone.
        """
        async with self.locks.hold(reservation_id):
            async with self.session_factory() as session:
                reservation = await session.get(StockReservation, reservation_id)
                if reservation is None:
                    logger.info(f"No reservation {reservation_id}, nothing to release")
                    return None

                if reservation.state == ReservationState.RELEASED.value:
                    logger.info(f"Reservation {reservation_id} already released")
                    return reservation

                items = [ReservationItem.model_validate(item) for item in reservation.items]
                await self.stock.release_stock(reservation_id, items)

                previous = reservation.state
                reservation.state = ReservationState.RELEASED.value
                reservation.released_at = datetime.utcnow()
                await session.commit()

                logger.info(f"Released {previous} reservation {reservation_id} for order {reservation.order_id}")
                return reservation

    async def get(self, reservation_id: str) -> Optional[StockReservation]:
        async with self.session_factory() as session:
            return await session.get(StockReservation, reservation_id)

    async def list_for_order(self, order_id: UUID) -> Sequence[StockReservation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StockReservation)
                .where(StockReservation.order_id == order_id)
                .order_by(StockReservation.created_at)
            )
            return result.scalars().all()

    async def _record_intent(
        self, reservation_id: str, order_id: UUID, items: List[ReservationItem]
    ) -> Optional[StockReservation]:
        """Write the RESERVING row. Returns the row another process wrote first, if any."""
        reservation = StockReservation(
            reservation_id=reservation_id,
            order_id=order_id,
            items=[item.model_dump() for item in items],
            state=ReservationState.RESERVING.value,
            created_at=datetime.utcnow(),
        )
        async with self.session_factory() as session:
            session.add(reservation)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Reservation {reservation_id} recorded concurrently by another worker")
                existing = await self.get(reservation_id)
                if existing is None:
                    raise ReservationUncertain(reservation_id)
                return existing
        return None

    async def _forget(self, reservation_id: str):
        """Drop a RESERVING row whose reserve was refused outright."""
        async with self.session_factory() as session:
            await session.execute(
                delete(StockReservation)
                .where(StockReservation.reservation_id == reservation_id)
                .where(StockReservation.state == ReservationState.RESERVING.value)
            )
            await session.commit()

    @staticmethod
    def _settled(reservation: StockReservation) -> StockReservation:
        if reservation.state == ReservationState.RESERVING.value:
            logger.warning(f"Reservation {reservation.reservation_id} outcome is unknown, not reserving again")
            raise ReservationUncertain(reservation.reservation_id)
        logger.info(f"Reservation {reservation.reservation_id} already {reservation.state}, skipping reserve")
        return reservation
