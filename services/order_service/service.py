"""Order service operations exposed to the HTTP API and the event consumers."""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.concurrency import KeyedLock
from shared.events import OrderPaymentStatusChangedEvent
from shared.outbox import save_event_to_outbox

from .clients import Collaborators
from .compensation import CompensationHandler, CompensationOutbox
from .exceptions import AlreadyProcessed, InvalidTransition, UnknownStatus
from .models import (
    CompensationAction,
    CompensationStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    PendingCompensation,
    SagaLog,
)
from .repository import AGENT_FILTERS, OrderStore
from .saga_orchestrator import CheckoutSaga
from .schemas import CheckoutRequest
from .state_machine import OrderStateMachine
from .status_mapping import CallerContext, normalize_payment_status, normalize_status
from .stock_reservation import StockReservationCoordinator

logger = logging.getLogger(__name__)


class OrderService:
    """Facade over the store, the state machine and the checkout saga."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: OrderStore,
        state_machine: OrderStateMachine,
        saga: CheckoutSaga,
        compensations: CompensationOutbox,
    ):
        self.session_factory = session_factory
        self.store = store
        self.state_machine = state_machine
        self.saga = saga
        self.compensations = compensations

    # Checkout
    async def checkout(self, user_id: int, request: CheckoutRequest) -> Order:
        return await self.saga.checkout(user_id, request)

    # Queries
    async def get_order(self, order_id: UUID) -> Order:
        return await self.store.get(order_id)

    async def list_orders_for_user(self, user_id: int) -> Sequence[Order]:
        return await self.store.list_for_user(user_id)

    async def list_orders_for_agent(self, agent_id: int, status_filter: str = "all") -> Sequence[Order]:
        status_filter = (status_filter or "all").strip().lower()
        if status_filter not in AGENT_FILTERS:
            raise UnknownStatus(status_filter, CallerContext.DELIVERY.value)
        return await self.store.list_for_agent(agent_id, status_filter)

    async def list_orders(self, page: int = 0, size: int = 20) -> Tuple[List[Order], int]:
        return await self.store.list_page(page, size)

    async def list_pending_delivery(self) -> Sequence[Order]:
        return await self.store.list_pending_delivery()

    async def validate_order(self, order_id: UUID) -> bool:
        return await self.store.exists(order_id)

    async def get_saga_logs(self, order_id: UUID) -> Sequence[SagaLog]:
        await self.store.get(order_id)
        async with self.session_factory() as session:
            result = await session.execute(
                select(SagaLog)
                .where(SagaLog.order_id == order_id)
                .order_by(SagaLog.created_at)
            )
            return result.scalars().all()

    # Status changes
    async def update_order_status(
        self,
        order_id: UUID,
        raw_status: str,
        context=CallerContext.GENERAL,
    ) -> Order:
        """Normalize a caller's status token and apply it through the state machine."""
        requested = normalize_status(raw_status, context)
        return await self.state_machine.transition(order_id, requested)

    async def cancel_order(self, order_id: UUID, user_id: int) -> Order:
        return await self.state_machine.transition(
            order_id, OrderStatus.CANCELLED, requesting_user_id=user_id
        )

    async def update_payment_status(self, order_id: UUID, raw_status: str) -> Order:
        """
        Apply a payment result reported by the payment service.

        A successful payment on a PENDING order moves it to PAYMENT_SUCCESS.
        Every other result only changes ``payment_status``.
        """
        payment_status = normalize_payment_status(raw_status)
        order = await self.store.get(order_id)

        if payment_status == PaymentStatus.COMPLETED:
            if order.payment_status == PaymentStatus.COMPLETED.value:
                raise AlreadyProcessed(f"Payment for order {order.order_number} already completed")
            if order.status == OrderStatus.PENDING.value:
                return await self.state_machine.transition(
                    order_id,
                    OrderStatus.PAYMENT_SUCCESS,
                    on_apply=lambda o, session: _apply_payment_status(o, session, payment_status),
                )
            if order.status == OrderStatus.CANCELLED.value:
                raise InvalidTransition(order.status, OrderStatus.PAYMENT_SUCCESS.value)

        updated, _ = await self.store.update(
            order_id, lambda o, session: _apply_payment_status(o, session, payment_status)
        )
        logger.info(f"Order {updated.order_number} payment status set to {payment_status.value}")
        return updated

    async def assign_delivery_agent(self, order_id: UUID, agent_id: int) -> Order:
        """Assign an agent to an order that has none; the same agent again is a no-op."""
        order = await self.store.get(order_id)
        if order.delivery_agent_id == agent_id:
            return order

        def apply(fresh: Order, session: AsyncSession):
            if fresh.delivery_agent_id == agent_id:
                return
            if fresh.delivery_agent_id is not None:
                raise AlreadyProcessed(
                    f"Order {fresh.order_number} already assigned to agent {fresh.delivery_agent_id}"
                )
            fresh.delivery_agent_id = agent_id
            fresh.updated_at = datetime.utcnow()

        order, _ = await self.store.update(order_id, apply)
        logger.info(f"Assigned delivery agent {agent_id} to order {order.order_number}")
        return order

    # Compensations
    async def list_compensations(
        self, status: Optional[CompensationStatus] = None, limit: int = 100
    ) -> List[PendingCompensation]:
        return await self.compensations.list(status, limit)

    async def retry_dead_compensations(self, limit: int = 100) -> int:
        return await self.compensations.requeue_dead(limit)


def _apply_payment_status(order: Order, session: AsyncSession, payment_status: PaymentStatus):
    previous = order.payment_status
    if previous == payment_status.value:
        raise AlreadyProcessed(f"Order {order.order_number} payment already {previous}")

    order.payment_status = payment_status.value
    order.updated_at = datetime.utcnow()
    save_event_to_outbox(
        session,
        OrderPaymentStatusChangedEvent(
            aggregate_id=order.id,
            order_number=order.order_number,
            previous_payment_status=previous,
            payment_status=payment_status.value,
        ),
    )


def build_compensation_handlers(saga: CheckoutSaga) -> Dict[CompensationAction, CompensationHandler]:
    """Reconciler handlers, one per compensation action. Each is safe to repeat."""
    reservations = saga.reservations
    collaborators = saga.collaborators

    async def initiate_payment(compensation: PendingCompensation):
        await saga.initiate_payment(compensation.order_id)

    async def assign_delivery(compensation: PendingCompensation):
        await saga.assign_delivery(compensation.order_id)

    async def clear_cart(compensation: PendingCompensation):
        await saga.clear_cart(compensation.payload["user_id"])

    async def reserve_stock(compensation: PendingCompensation):
        await saga.reserve_for_order(compensation.order_id)

    async def release_stock(compensation: PendingCompensation):
        await reservations.release(compensation.payload["reservation_id"])

    async def send_notification(compensation: PendingCompensation):
        await collaborators.notifications.notify(
            compensation.order_id,
            compensation.payload["user_id"],
            compensation.payload["event_type"],
        )

    async def update_delivery_status(compensation: PendingCompensation):
        await collaborators.deliveries.update_delivery_status(
            compensation.order_id, compensation.payload["status"]
        )

    return {
        CompensationAction.INITIATE_PAYMENT: initiate_payment,
        CompensationAction.ASSIGN_DELIVERY: assign_delivery,
        CompensationAction.CLEAR_CART: clear_cart,
        CompensationAction.RESERVE_STOCK: reserve_stock,
        CompensationAction.RELEASE_STOCK: release_stock,
        CompensationAction.SEND_NOTIFICATION: send_notification,
        CompensationAction.UPDATE_DELIVERY_STATUS: update_delivery_status,
    }


def create_order_service(session_factory: async_sessionmaker, collaborators: Collaborators, settings) -> OrderService:
    """Wire the order service components against one session factory."""
    timeout = settings.collaborator_timeout_seconds
    store = OrderStore(session_factory, settings.store_max_write_attempts)
    reservations = StockReservationCoordinator(session_factory, collaborators.stock, call_timeout=timeout)
    compensations = CompensationOutbox(session_factory)
    state_machine = OrderStateMachine(store, collaborators, reservations, compensations, timeout)
    saga = CheckoutSaga(
        session_factory,
        store,
        collaborators,
        reservations,
        state_machine,
        compensations,
        call_timeout=timeout,
        delivery_eta_days=settings.delivery_eta_days,
        order_locks=KeyedLock(),
    )
    return OrderService(session_factory, store, state_machine, saga, compensations)
