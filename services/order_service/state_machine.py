"""Order lifecycle state machine and transition side effects."""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from shared.events import OrderStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .clients import Collaborators
from .compensation import CompensationOutbox
from .exceptions import AlreadyProcessed, InvalidTransition, Unauthorized
from .models import CompensationAction, Order, OrderStatus
from .repository import OrderStore
from .stock_reservation import StockReservationCoordinator

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAYMENT_SUCCESS, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_SUCCESS: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.PACKED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


class NotificationEvent(str, Enum):
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ENTRY_NOTIFICATIONS = {
    OrderStatus.PAYMENT_SUCCESS: NotificationEvent.CONFIRMED,
    OrderStatus.OUT_FOR_DELIVERY: NotificationEvent.SHIPPED,
    OrderStatus.DELIVERED: NotificationEvent.DELIVERED,
    OrderStatus.CANCELLED: NotificationEvent.CANCELLED,
}


def canonical_status(status: OrderStatus) -> OrderStatus:
    """SHIPPED is kept for old rows only; it is the same state as OUT_FOR_DELIVERY."""
    return OrderStatus.OUT_FOR_DELIVERY if status == OrderStatus.SHIPPED else status


def check_transition(current: OrderStatus, requested: OrderStatus) -> OrderStatus:
    """Validate ``current -> requested`` and return the status to store."""
    target = canonical_status(requested)
    if canonical_status(current) == target:
        raise AlreadyProcessed(f"Order is already {current.value}")
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, requested.value)
    return target


class OrderStateMachine:
    """Moves orders along ``TRANSITIONS`` and runs the side effects of entering a state.

    The status write and its ``order.status_changed`` event commit together.
    Side effects run after the commit; each one that fails is recorded in the
    compensation outbox instead of failing the transition.
    """

    def __init__(
        self,
        store: OrderStore,
        collaborators: Collaborators,
        reservations: StockReservationCoordinator,
        compensations: CompensationOutbox,
        call_timeout: float = 5.0,
    ):
        self.store = store
        self.collaborators = collaborators
        self.reservations = reservations
        self.compensations = compensations
        self.call_timeout = call_timeout

    async def transition(
        self,
        order_id: UUID,
        requested: OrderStatus,
        *,
        requesting_user_id: Optional[int] = None,
        on_apply: Optional[Callable[[Order, AsyncSession], None]] = None,
    ) -> Order:
        """Transition an order to ``requested``.

        Args:
            order_id: Order to move
            requested: Target status (SHIPPED is stored as OUT_FOR_DELIVERY)
            requesting_user_id: When given, only the owner may make the change
            on_apply: Extra mutation committed atomically with the status change
        """
        current = await self.store.get(order_id)
        self._authorize(current, requesting_user_id)
        target = check_transition(OrderStatus(current.status), requested)

        agent_id = None
        if target == OrderStatus.OUT_FOR_DELIVERY and current.delivery_agent_id is None:
            agent_id = await self._pick_delivery_agent(order_id)

        def apply(order: Order, session: AsyncSession) -> OrderStatus:
            # Re-validated against the freshly read row on every write attempt
            self._authorize(order, requesting_user_id)
            previous = OrderStatus(order.status)
            check_transition(previous, requested)

            now = datetime.utcnow()
            order.status = target.value
            order.updated_at = now
            if target == OrderStatus.OUT_FOR_DELIVERY and order.delivery_agent_id is None:
                order.delivery_agent_id = agent_id
            if target == OrderStatus.DELIVERED:
                order.delivered_at = now
            if on_apply is not None:
                on_apply(order, session)

            save_event_to_outbox(
                session,
                OrderStatusChangedEvent(
                    aggregate_id=order.id,
                    order_number=order.order_number,
                    user_id=order.user_id,
                    previous_status=previous.value,
                    status=target.value,
                    delivery_agent_id=order.delivery_agent_id,
                ),
            )
            return previous

        order, previous = await self.store.update(order_id, apply)
        logger.info(f"Order {order.order_number} status {previous.value} -> {target.value}")

        await self._on_enter(order, target)
        return order

    async def notify(self, order: Order, event: NotificationEvent) -> bool:
        return await self.compensations.attempt(
            order.id,
            CompensationAction.SEND_NOTIFICATION,
            lambda: self.collaborators.notifications.notify(order.id, order.user_id, event.value),
            timeout=self.call_timeout,
            payload={"user_id": order.user_id, "event_type": event.value},
            key_suffix=event.value,
        )

    async def release_stock(self, order: Order) -> bool:
        if not order.reservation_id:
            return True
        return await self.compensations.attempt(
            order.id,
            CompensationAction.RELEASE_STOCK,
            lambda: self.reservations.release(order.reservation_id),
            timeout=self.call_timeout,
            payload={"reservation_id": order.reservation_id},
        )

    async def _on_enter(self, order: Order, status: OrderStatus):
        if status == OrderStatus.CANCELLED:
            await self.release_stock(order)

        if status == OrderStatus.DELIVERED:
            await self.compensations.attempt(
                order.id,
                CompensationAction.UPDATE_DELIVERY_STATUS,
                lambda: self.collaborators.deliveries.update_delivery_status(
                    order.id, OrderStatus.DELIVERED.value
                ),
                timeout=self.call_timeout,
                payload={"status": OrderStatus.DELIVERED.value},
            )

        event = ENTRY_NOTIFICATIONS.get(status)
        if event is not None:
            await self.notify(order, event)

    async def _pick_delivery_agent(self, order_id: UUID) -> Optional[int]:
        """Placeholder balancing policy: the first agent the user service lists."""
        try:
            agents = await asyncio.wait_for(
                self.collaborators.users.get_delivery_agents(), self.call_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to auto-assign delivery agent for order {order_id}: {e!r}")
            return None

        if not agents:
            logger.warning(f"No delivery agents available for order {order_id}")
            return None

        logger.info(f"Auto-assigned delivery agent {agents[0].id} to order {order_id}")
        return agents[0].id

    @staticmethod
    def _authorize(order: Order, requesting_user_id: Optional[int]):
        if requesting_user_id is not None and order.user_id != requesting_user_id:
            raise Unauthorized(f"User {requesting_user_id} does not own order {order.id}")
