"""Checkout saga: turns a user's cart into a persisted order."""
import asyncio
import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.concurrency import KeyedLock
from shared.events import OrderPlacedEvent
from shared.outbox import save_event_to_outbox

from .clients import Collaborators
from .compensation import CompensationOutbox
from .exceptions import (
    AddressNotFound,
    AlreadyProcessed,
    CartEmpty,
    CartTotalMismatch,
    CheckoutTimeout,
    CollaboratorError,
    CollaboratorTimeout,
    Fatal,
    OrderNumberConflict,
)
from .models import (
    CompensationAction,
    Order,
    OrderStatus,
    PaymentStatus,
    ReservationState,
    SagaLog,
    SagaStep,
)
from .repository import OrderStore
from .schemas import Address, Cart, CheckoutRequest, DeliveryAddress, OrderItem, ReservationItem
from .state_machine import OrderStateMachine
from .stock_reservation import StockReservationCoordinator, reservation_key

logger = logging.getLogger(__name__)

COD_METHOD = "COD"
ORDER_NUMBER_ATTEMPTS = 3
CENTS = Decimal("0.01")

# (step, status, error message) rows written to the saga log
StepRecord = Tuple[SagaStep, str, Optional[str]]


def generate_order_number(now: Optional[datetime] = None) -> str:
    """ORD-<yyyymmdd>-<8 hex>."""
    now = now or datetime.utcnow()
    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)


def order_total(items: Sequence[OrderItem]) -> Decimal:
    """Sum of the item lines, in cents."""
    return to_money(sum(Decimal(str(item.unit_price)) * item.quantity for item in items))


def is_cash_on_delivery(payment_method: str) -> bool:
    return payment_method.strip().upper() == COD_METHOD


class CheckoutSaga:
    """Orchestrates checkout across the cart, product, user, payment and delivery services.

    Steps before the order is persisted are Fatal: they abort with nothing
    written. Persisting the order is the durability point; if it fails, stock
    already reserved for the order is released. Everything after it
    is Degraded: a failing step is logged, recorded in the compensation outbox
    and retried by the reconciler, and never undoes the order.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: OrderStore,
        collaborators: Collaborators,
        reservations: StockReservationCoordinator,
        state_machine: OrderStateMachine,
        compensations: CompensationOutbox,
        call_timeout: float = 5.0,
        delivery_eta_days: int = 3,
        order_locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.collaborators = collaborators
        self.reservations = reservations
        self.state_machine = state_machine
        self.compensations = compensations
        self.call_timeout = call_timeout
        self.delivery_eta_days = delivery_eta_days
        # Held while an order's post-commit steps run; the reconciler takes the same lock
        self.order_locks = order_locks or KeyedLock()

    async def checkout(self, user_id: int, request: CheckoutRequest) -> Order:
        """
        Place an order from the user's cart.

        Args:
            user_id: Owner of the cart and of the new order
            request: Address id and payment method

        Returns:
            The persisted order

        Raises:
            CartEmpty: No cart or no items in it
            CartTotalMismatch: The cart's total disagrees with its item lines
            AddressNotFound: ``request.address_id`` is not one of the user's addresses
            CheckoutTimeout: A Fatal step did not answer in time
            OrderNumberConflict: Every order number drawn was already taken
            Fatal: A Fatal step failed for another reason
        """
        steps: List[StepRecord] = []

        cart: Optional[Cart] = await self._fatal_step(
            SagaStep.FETCH_CART, user_id, self.collaborators.cart.get_cart(user_id)
        )
        if cart is None or not cart.items:
            error = CartEmpty(user_id)
            await self._log_abort(user_id, SagaStep.FETCH_CART, error)
            raise error
        steps.append((SagaStep.FETCH_CART, "completed", None))

        steps.append(await self._validate_cart(user_id))

        addresses: List[Address] = await self._fatal_step(
            SagaStep.RESOLVE_ADDRESS, user_id, self.collaborators.users.get_addresses(user_id)
        )
        address = next((a for a in addresses if a.id == request.address_id), None)
        if address is None:
            error = AddressNotFound(user_id, request.address_id)
            await self._log_abort(user_id, SagaStep.RESOLVE_ADDRESS, error)
            raise error
        steps.append((SagaStep.RESOLVE_ADDRESS, "completed", None))

        order_id = uuid4()
        items = [
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.price,
                image_url=item.image_url,
            )
            for item in cart.items
        ]
        total = order_total(items)
        if total != to_money(cart.total_price):
            error = CartTotalMismatch(cart.total_price, float(total))
            await self._log_abort(user_id, SagaStep.PRICE_ORDER, error)
            raise error
        steps.append((SagaStep.PRICE_ORDER, "completed", None))

        rsv_id = reservation_key(order_id)
        reservation_items = [
            ReservationItem(product_id=item.product_id, quantity=item.quantity)
            for item in cart.items
        ]

        reserve_error: Optional[Exception] = None
        try:
            # The coordinator bounds the product service call itself
            await self.reservations.reserve(rsv_id, order_id, reservation_items)
            steps.append((SagaStep.RESERVE_STOCK, "completed", None))
        except Exception as e:
            logger.error(f"Stock reservation failed for order {order_id}: {e!r}")
            reserve_error = e
            steps.append((SagaStep.RESERVE_STOCK, "degraded", str(e) or type(e).__name__))

        fields = dict(
            id=order_id,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            items=[item.model_dump() for item in items],
            total_amount=float(total),
            delivery_address=DeliveryAddress.model_validate(address.model_dump()).model_dump(),
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING.value,
            reservation_id=rsv_id if reserve_error is None else None,
        )
        try:
            order = await self._persist(fields, steps, reserve_error, rsv_id)
        except Exception:
            await self._abandon_reservation(order_id, rsv_id)
            raise

        logger.info(f"Order {order.order_number} placed for user {user_id}, total {total}")

        cod = is_cash_on_delivery(request.payment_method)
        async with self.order_locks.hold(order.id):
            if cod:
                # Also sends the CONFIRMED notification
                order = await self.state_machine.transition(order.id, OrderStatus.PAYMENT_SUCCESS, on_apply=_mark_cod)
                logger.info(f"Order {order.order_number} confirmed as cash on delivery")

            await self._run_post_commit(order, cod)

        return await self.store.get(order.id)

    async def initiate_payment(self, order_id: UUID) -> Optional[str]:
        """Ask the payment service to start collecting payment, unless there is nothing to collect."""
        order = await self.store.get(order_id)
        if order.payment_ref or order.payment_status != PaymentStatus.PENDING.value:
            logger.info(f"Payment already handled for order {order.order_number}, skipping")
            return order.payment_ref
        if order.status == OrderStatus.CANCELLED.value:
            logger.info(f"Order {order.order_number} is cancelled, not initiating payment")
            return None

        payment_ref = await self.collaborators.payments.initiate_payment(
            order.id, order.user_id, order.total_amount, order.payment_method
        )

        def apply(fresh: Order, session: AsyncSession):
            fresh.payment_ref = payment_ref
            fresh.updated_at = datetime.utcnow()

        await self.store.update(order_id, apply)
        logger.info(f"Initiated payment {payment_ref} for order {order.order_number}")
        return payment_ref

    async def assign_delivery(self, order_id: UUID) -> Optional[str]:
        """Create the delivery record for an order; the agent is chosen later."""
        order = await self.store.get(order_id)
        if order.delivery_ref:
            logger.info(f"Delivery already assigned for order {order.order_number}, skipping")
            return order.delivery_ref
        if order.status == OrderStatus.CANCELLED.value:
            logger.info(f"Order {order.order_number} is cancelled, not assigning delivery")
            return None

        eta = datetime.utcnow() + timedelta(days=self.delivery_eta_days)
        delivery_ref = await self.collaborators.deliveries.assign_delivery(
            order.id, order.user_id, order.delivery_agent_id, eta
        )

        def apply(fresh: Order, session: AsyncSession):
            fresh.delivery_ref = delivery_ref
            fresh.updated_at = datetime.utcnow()

        await self.store.update(order_id, apply)
        logger.info(f"Created delivery {delivery_ref} for order {order.order_number}, ETA {eta:%Y-%m-%d}")
        return delivery_ref

    async def clear_cart(self, user_id: int):
        await self.collaborators.cart.clear_cart(user_id)
        logger.info(f"Cleared cart for user {user_id}")

    async def reserve_for_order(self, order_id: UUID) -> Optional[str]:
        """Reserve stock for an order placed without a reservation.

        A reservation left RESERVING by a lost reply is released rather than
        retried, and a fresh key is used for the new attempt. If the order is
        cancelled between the reservation and attaching it to the order, the
        reservation is released again.
        """
        order = await self.store.get(order_id)
        cancelled = order.status == OrderStatus.CANCELLED.value
        if order.reservation_id and not cancelled:
            return order.reservation_id

        held = await self.reservations.list_for_order(order_id)
        unattached = [
            r for r in held
            if r.reservation_id != order.reservation_id and r.state != ReservationState.RELEASED.value
        ]
        if cancelled:
            logger.info(f"Order {order.order_number} is cancelled, not reserving stock")
            for reservation in unattached:
                await self.reservations.release(reservation.reservation_id)
            return None

        reserved = next((r for r in unattached if r.state == ReservationState.RESERVED.value), None)
        if reserved is not None:
            rsv_id = reserved.reservation_id
        else:
            for reservation in unattached:
                await self.reservations.release(reservation.reservation_id)

            taken = {r.reservation_id for r in held}
            attempt = 1
            while reservation_key(order.id, attempt) in taken:
                attempt += 1
            rsv_id = reservation_key(order.id, attempt)

            items = [
                ReservationItem(product_id=item["product_id"], quantity=item["quantity"])
                for item in order.items
            ]
            await self.reservations.reserve(rsv_id, order.id, items)

        def apply(fresh: Order, session: AsyncSession) -> bool:
            if fresh.status == OrderStatus.CANCELLED.value:
                return False
            fresh.reservation_id = rsv_id
            fresh.updated_at = datetime.utcnow()
            return True

        _, attached = await self.store.update(order_id, apply)
        if not attached:
            logger.warning(f"Order {order.order_number} was cancelled while reserving, releasing {rsv_id}")
            await self.reservations.release(rsv_id)
            return None
        return rsv_id

    async def _run_post_commit(self, order: Order, cod: bool):
        """Payment, delivery and cart clearing run concurrently; none can fail the others."""
        steps = [SagaStep.ASSIGN_DELIVERY, SagaStep.CLEAR_CART]
        calls = [
            self.compensations.attempt(
                order.id,
                CompensationAction.ASSIGN_DELIVERY,
                lambda: self.assign_delivery(order.id),
                timeout=self.call_timeout,
                payload={"eta_days": self.delivery_eta_days},
            ),
            self.compensations.attempt(
                order.id,
                CompensationAction.CLEAR_CART,
                lambda: self.clear_cart(order.user_id),
                timeout=self.call_timeout,
                payload={"user_id": order.user_id},
            ),
        ]
        if not cod:
            steps.insert(0, SagaStep.INITIATE_PAYMENT)
            calls.insert(
                0,
                self.compensations.attempt(
                    order.id,
                    CompensationAction.INITIATE_PAYMENT,
                    lambda: self.initiate_payment(order.id),
                    timeout=self.call_timeout,
                    payload={"amount": order.total_amount, "method": order.payment_method},
                ),
            )

        outcomes = await asyncio.gather(*calls)

        records: List[StepRecord] = [
            (step, "completed" if succeeded else "degraded", None)
            for step, succeeded in zip(steps, outcomes)
        ]
        if cod:
            records[:0] = [
                (SagaStep.CONFIRM_COD, "completed", None),
                (SagaStep.INITIATE_PAYMENT, "skipped", "cash on delivery"),
            ]

        async with self.session_factory() as session:
            self._add_saga_logs(session, order.id, order.user_id, records)
            await session.commit()

    async def _persist(
        self,
        fields: dict,
        steps: List[StepRecord],
        reserve_error: Optional[Exception],
        rsv_id: str,
    ) -> Order:
        """Commit the order with its placed event, saga log and any RESERVE_STOCK compensation.

        A collision on the order number draws a fresh one and writes again.
        """
        records = steps + [(SagaStep.PERSIST_ORDER, "completed", None)]
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            now = datetime.utcnow()
            candidate = Order(
                **fields,
                order_number=generate_order_number(now),
                created_at=now,
                updated_at=now,
            )
            async with self.session_factory() as session:
                try:
                    await self.store.add(session, candidate)
                    save_event_to_outbox(
                        session,
                        OrderPlacedEvent(
                            aggregate_id=candidate.id,
                            order_number=candidate.order_number,
                            user_id=candidate.user_id,
                            items=candidate.items,
                            total_amount=candidate.total_amount,
                            payment_method=candidate.payment_method,
                            reservation_id=candidate.reservation_id,
                        ),
                    )
                    if reserve_error is not None:
                        await self.compensations.record_in(
                            session,
                            candidate.id,
                            CompensationAction.RESERVE_STOCK,
                            payload={"reservation_id": rsv_id},
                            error=reserve_error,
                        )
                    self._add_saga_logs(session, candidate.id, candidate.user_id, records)
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if not await self.store.number_taken(candidate.order_number):
                        raise
                    logger.warning(
                        f"Order number {candidate.order_number} already taken "
                        f"(attempt {attempt}/{ORDER_NUMBER_ATTEMPTS}), drawing another"
                    )
                    continue
            return candidate

        error = OrderNumberConflict(ORDER_NUMBER_ATTEMPTS)
        await self._log_abort(fields["user_id"], SagaStep.PERSIST_ORDER, error)
        raise error

    async def _abandon_reservation(self, order_id: UUID, rsv_id: str):
        """Give back stock held for an order that was never persisted."""
        logger.warning(f"Order {order_id} was not persisted, releasing reservation {rsv_id}")
        await self.compensations.attempt(
            order_id,
            CompensationAction.RELEASE_STOCK,
            lambda: self.reservations.release(rsv_id),
            timeout=self.call_timeout,
            payload={"reservation_id": rsv_id},
        )

    async def _validate_cart(self, user_id: int) -> StepRecord:
        """Best effort: an invalid or unanswered validation is logged and checkout continues."""
        try:
            valid = await asyncio.wait_for(
                self.collaborators.cart.validate_cart(user_id), self.call_timeout
            )
        except Exception as e:
            logger.error(f"Cart validation failed for user {user_id}: {e!r}")
            return SagaStep.VALIDATE_CART, "degraded", str(e) or type(e).__name__

        if not valid:
            logger.warning(f"Cart for user {user_id} did not pass validation, continuing checkout")
            return SagaStep.VALIDATE_CART, "degraded", "cart reported invalid"
        return SagaStep.VALIDATE_CART, "completed", None

    async def _fatal_step(self, step: SagaStep, user_id: int, awaitable):
        try:
            return await asyncio.wait_for(awaitable, self.call_timeout)
        except (asyncio.TimeoutError, CollaboratorTimeout) as e:
            error = CheckoutTimeout(step.value, self.call_timeout)
            await self._log_abort(user_id, step, error)
            raise error from e
        except (CollaboratorError, httpx.HTTPError) as e:
            error = Fatal(f"Checkout step '{step.value}' failed: {e}", step=step.value)
            await self._log_abort(user_id, step, error)
            raise error from e

    async def _log_abort(self, user_id: int, step: SagaStep, error: Fatal):
        logger.error(f"Checkout aborted for user {user_id} at {step.value}: {error.message}")
        try:
            async with self.session_factory() as session:
                self._add_saga_logs(session, None, user_id, [(step, "failed", error.message)])
                await session.commit()
        except Exception:
            logger.exception(f"Failed to write saga log for user {user_id}")

    @staticmethod
    def _add_saga_logs(
        session: AsyncSession,
        order_id: Optional[UUID],
        user_id: int,
        records: List[StepRecord],
    ):
        for step, status, error_message in records:
            session.add(
                SagaLog(
                    order_id=order_id,
                    user_id=user_id,
                    step=step.value,
                    status=status,
                    error_message=error_message,
                    created_at=datetime.utcnow(),
                )
            )


def _mark_cod(order: Order, session: AsyncSession):
    if order.payment_status == PaymentStatus.COD.value:
        raise AlreadyProcessed(f"Order {order.order_number} already confirmed as cash on delivery")
    order.payment_status = PaymentStatus.COD.value
