"""
Compensation outbox for degraded steps.

A degraded step (payment not initiated, cart not cleared, notification not
sent, ...) never fails the operation that ran it. Instead it is recorded here
as a pending compensation, and the reconciler retries it in the background:

1. Due rows are picked up in batches, oldest first
2. Each row is claimed with a lease before it runs, and runs under the per-order
   lock the checkout saga also holds, so work for one order never overlaps
3. Failures back off exponentially; after ``max_attempts`` the row is marked
   DEAD, logged at CRITICAL and announced with an ``order.compensation_dead`` event
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.concurrency import KeyedLock, PollingWorker, retry_delay
from shared.events import CompensationDeadEvent
from shared.outbox import save_event_to_outbox

from .models import CompensationAction, CompensationStatus, PendingCompensation

logger = logging.getLogger(__name__)

CompensationHandler = Callable[[PendingCompensation], Awaitable[None]]

# Rows a reconciler may claim; IN_PROGRESS only once its lease ran out
_CLAIMABLE = (CompensationStatus.PENDING.value, CompensationStatus.IN_PROGRESS.value)


def compensation_key(action: CompensationAction, order_id: UUID, suffix: Optional[str] = None) -> str:
    key = f"{action.value}:{order_id}"
    return f"{key}:{suffix}" if suffix else key


class CompensationOutbox:
    """Records degraded steps and lets operators inspect and re-queue them."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        order_id: UUID,
        action: CompensationAction,
        *,
        payload: Optional[dict] = None,
        error: Optional[BaseException] = None,
        key_suffix: Optional[str] = None,
    ) -> PendingCompensation:
        """Record (or refresh) the pending compensation for ``action`` on ``order_id``."""
        async with self.session_factory() as session:
            compensation = await self.record_in(
                session, order_id, action, payload=payload, error=error, key_suffix=key_suffix
            )
            await session.commit()
            return compensation

    async def record_in(
        self,
        session: AsyncSession,
        order_id: UUID,
        action: CompensationAction,
        *,
        payload: Optional[dict] = None,
        error: Optional[BaseException] = None,
        key_suffix: Optional[str] = None,
    ) -> PendingCompensation:
        """Same as ``record`` but inside the caller's transaction."""
        key = compensation_key(action, order_id, key_suffix)
        result = await session.execute(
            select(PendingCompensation).where(PendingCompensation.idempotency_key == key)
        )
        compensation = result.scalar_one_or_none()
        last_error = (str(error) or type(error).__name__) if error is not None else None

        if compensation is None:
            compensation = PendingCompensation(
                order_id=order_id,
                action=action.value,
                idempotency_key=key,
                payload=payload or {},
                status=CompensationStatus.PENDING.value,
                attempts=0,
                next_attempt_at=datetime.utcnow(),
                last_error=last_error,
            )
            session.add(compensation)
            logger.warning(f"Recorded pending compensation {key}: {last_error}")
        elif compensation.status == CompensationStatus.DONE.value:
            compensation.status = CompensationStatus.PENDING.value
            compensation.attempts = 0
            compensation.next_attempt_at = datetime.utcnow()
            compensation.last_error = last_error
            logger.warning(f"Re-opened compensation {key}: {last_error}")
        else:
            compensation.last_error = last_error or compensation.last_error
            logger.info(f"Compensation {key} already {compensation.status}")

        return compensation

    async def attempt(
        self,
        order_id: UUID,
        action: CompensationAction,
        call: Callable[[], Awaitable[Any]],
        *,
        timeout: float,
        payload: Optional[dict] = None,
        key_suffix: Optional[str] = None,
    ) -> bool:
        """Run a degraded step; on failure or timeout record it and return False."""
        try:
            await asyncio.wait_for(call(), timeout)
            return True
        except Exception as e:
            logger.error(f"{action.value} failed for order {order_id}: {e!r}")
            error = e

        try:
            await self.record(order_id, action, payload=payload, error=error, key_suffix=key_suffix)
        except Exception:
            logger.critical(
                f"ALERT: could not record compensation {action.value} for order {order_id}",
                exc_info=True,
            )
        return False

    async def list(self, status: Optional[CompensationStatus] = None, limit: int = 100) -> List[PendingCompensation]:
        query = select(PendingCompensation).order_by(PendingCompensation.created_at).limit(limit)
        if status is not None:
            query = query.where(PendingCompensation.status == status.value)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def requeue_dead(self, limit: int = 100) -> int:
        """Reset dead compensations so the reconciler picks them up again."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCompensation)
                .where(PendingCompensation.status == CompensationStatus.DEAD.value)
                .order_by(PendingCompensation.created_at)
                .limit(limit)
            )
            compensations = result.scalars().all()

            for compensation in compensations:
                compensation.status = CompensationStatus.PENDING.value
                compensation.attempts = 0
                compensation.next_attempt_at = datetime.utcnow()

            await session.commit()

        logger.info(f"Re-queued {len(compensations)} dead compensations")
        return len(compensations)


class CompensationReconciler(PollingWorker):
    """Retries pending compensations with exponential backoff."""

    name = "Compensation reconciler"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        handlers: Dict[CompensationAction, CompensationHandler],
        order_locks: Optional[KeyedLock] = None,
        poll_interval: float = 5,
        batch_size: int = 50,
        max_attempts: int = 8,
        base_delay: float = 2.0,
        max_delay: float = 300.0,
        handler_timeout: float = 30.0,
        lease_seconds: Optional[float] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            session_factory: Async session factory for database access
            handlers: Callable per action; raising marks the attempt as failed
            order_locks: Per-order locks, shared with the checkout saga
            poll_interval: Seconds to wait between polls
            batch_size: Number of due compensations to process per poll
            max_attempts: Attempts before a compensation is marked DEAD
            base_delay: Backoff base in seconds
            max_delay: Backoff cap in seconds
            handler_timeout: Seconds a single handler call may take
            lease_seconds: How long a claimed row is kept from other workers
                (defaults to twice ``handler_timeout``)
        """
        super().__init__(poll_interval)
        self.session_factory = session_factory
        self.handlers = handlers
        self.order_locks = order_locks or KeyedLock()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.handler_timeout = handler_timeout
        self.lease_seconds = lease_seconds if lease_seconds is not None else handler_timeout * 2

    async def run_once(self) -> int:
        return await self.reconcile_due()

    async def reconcile_due(self, now: Optional[datetime] = None) -> int:
        """Run one batch of due compensations. Returns how many succeeded."""
        now = now or datetime.utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(PendingCompensation.id, PendingCompensation.order_id)
                .where(PendingCompensation.status.in_(_CLAIMABLE))
                .where(PendingCompensation.next_attempt_at <= now)
                .order_by(PendingCompensation.next_attempt_at)
                .limit(self.batch_size)
            )
            due = result.all()

        if not due:
            return 0

        logger.info(f"Reconciling {len(due)} pending compensations")
        outcomes = await asyncio.gather(
            *(self._reconcile_one(compensation_id, order_id, now) for compensation_id, order_id in due)
        )
        return sum(1 for succeeded in outcomes if succeeded)

    async def _reconcile_one(self, compensation_id: UUID, order_id: UUID, now: datetime) -> bool:
        async with self.order_locks.hold(order_id):
            if not await self._claim(compensation_id, now):
                logger.debug(f"Compensation {compensation_id} claimed elsewhere or no longer due")
                return False

            async with self.session_factory() as session:
                compensation = await session.get(PendingCompensation, compensation_id)

                action = CompensationAction(compensation.action)
                handler = self.handlers.get(action)

                try:
                    if handler is None:
                        raise LookupError(f"No handler registered for {action.value}")
                    await asyncio.wait_for(handler(compensation), self.handler_timeout)
                except Exception as e:
                    self._record_failure(session, compensation, e)
                    await session.commit()
                    return False

                compensation.status = CompensationStatus.DONE.value
                compensation.attempts += 1
                compensation.last_error = None
                await session.commit()

                logger.info(f"Compensation {compensation.idempotency_key} completed")
                return True

    async def _claim(self, compensation_id: UUID, now: datetime) -> bool:
        """Lease a due row to this worker. Only one concurrent claim of a row succeeds."""
        lease_until = datetime.utcnow() + timedelta(seconds=self.lease_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                update(PendingCompensation)
                .where(PendingCompensation.id == compensation_id)
                .where(PendingCompensation.status.in_(_CLAIMABLE))
                .where(PendingCompensation.next_attempt_at <= now)
                .values(status=CompensationStatus.IN_PROGRESS.value, next_attempt_at=lease_until)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    def _record_failure(self, session: AsyncSession, compensation: PendingCompensation, error: Exception):
        compensation.attempts += 1
        compensation.last_error = str(error) or type(error).__name__

        if compensation.attempts >= self.max_attempts:
            compensation.status = CompensationStatus.DEAD.value
            save_event_to_outbox(
                session,
                CompensationDeadEvent(
                    aggregate_id=compensation.order_id,
                    compensation_id=compensation.id,
                    action=compensation.action,
                    attempts=compensation.attempts,
                    last_error=compensation.last_error,
                ),
            )
            logger.critical(
                f"ALERT: compensation {compensation.idempotency_key} is dead after "
                f"{compensation.attempts} attempts, operator action required: {error}"
            )
            return

        compensation.status = CompensationStatus.PENDING.value
        delay = retry_delay(compensation.attempts, base=self.base_delay, cap=self.max_delay)
        compensation.next_attempt_at = datetime.utcnow() + timedelta(seconds=delay)
        logger.error(
            f"Compensation {compensation.idempotency_key} failed "
            f"(attempt {compensation.attempts}/{self.max_attempts}), retrying in {delay:.0f}s: {error}"
        )
