"""Order store: persistence of the Order aggregate."""
import logging
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .exceptions import ConcurrentModification, NotFound
from .models import Order, OrderStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Filters accepted by list_for_agent
AGENT_FILTERS = {
    "all": None,
    "assigned": None,
    "in_transit": (OrderStatus.OUT_FOR_DELIVERY.value, OrderStatus.SHIPPED.value),
    "delivered": (OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value),
}
_CLOSED_STATUSES = (
    OrderStatus.DELIVERED.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
)


class OrderStore:
    """Reads and writes orders with optimistic concurrency on ``Order.version``.

    A writer whose read became stale while it was deciding gets a
    ``StaleDataError`` on flush; ``update`` then re-reads the order and
    re-runs the mutation against the fresh state, so one writer can never
    silently overwrite another.
    """

    def __init__(self, session_factory: async_sessionmaker, max_write_attempts: int = 3):
        self.session_factory = session_factory
        self.max_write_attempts = max_write_attempts

    async def add(self, session: AsyncSession, order: Order) -> Order:
        session.add(order)
        await session.flush()
        return order

    async def get(self, order_id: UUID, session: Optional[AsyncSession] = None) -> Order:
        if session is not None:
            return await self._get(session, order_id)
        async with self.session_factory() as session:
            return await self._get(session, order_id)

    async def exists(self, order_id: UUID) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.id).where(Order.id == order_id))
            return result.scalar_one_or_none() is not None

    async def number_taken(self, order_number: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.id).where(Order.order_number == order_number))
            return result.scalar_one_or_none() is not None

    async def list_for_user(self, user_id: int) -> Sequence[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc())
            )
            return result.scalars().all()

    async def list_for_agent(self, agent_id: int, status_filter: str = "all") -> Sequence[Order]:
        if status_filter not in AGENT_FILTERS:
            raise ValueError(f"Unknown delivery filter '{status_filter}'")

        query = select(Order).where(Order.delivery_agent_id == agent_id)
        if status_filter == "assigned":
            query = query.where(Order.status.not_in(_CLOSED_STATUSES))
        elif AGENT_FILTERS[status_filter]:
            query = query.where(Order.status.in_(AGENT_FILTERS[status_filter]))

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(Order.created_at.desc()))
            return result.scalars().all()

    async def list_pending_delivery(self) -> Sequence[Order]:
        """Packed orders that nobody has been assigned to deliver yet."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(Order.delivery_agent_id.is_(None))
                .where(Order.status == OrderStatus.PACKED.value)
                .order_by(Order.created_at)
            )
            return result.scalars().all()

    async def list_page(self, page: int, size: int) -> Tuple[List[Order], int]:
        async with self.session_factory() as session:
            total = (await session.execute(select(func.count(Order.id)))).scalar_one()
            result = await session.execute(
                select(Order)
                .order_by(Order.created_at.desc())
                .offset(page * size)
                .limit(size)
            )
            return list(result.scalars().all()), total

    async def update(
        self,
        order_id: UUID,
        mutate: Callable[[Order, AsyncSession], T],
    ) -> Tuple[Order, T]:
        """Apply ``mutate`` to a freshly read order and commit it.

        ``mutate`` may raise to abort (nothing is written) and may add other
        rows to the session (outbox events) that commit atomically with the
        order. It is re-invoked from the new state when another writer won.
        """
        for attempt in range(1, self.max_write_attempts + 1):
            async with self.session_factory() as session:
                order = await self._get(session, order_id)
                outcome = mutate(order, session)
                try:
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.warning(
                        f"Concurrent write on order {order_id} "
                        f"(attempt {attempt}/{self.max_write_attempts}), retrying from fresh state"
                    )
                    continue
                return order, outcome

        raise ConcurrentModification(order_id, self.max_write_attempts)

    async def _get(self, session: AsyncSession, order_id: UUID) -> Order:
        result = await session.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        return order
