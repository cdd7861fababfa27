"""Order Service FastAPI application."""
import logging
import math
from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from shared.config import Settings
from shared.database import Database
from shared.events import (
    DeliveryStatusChangedEvent,
    EventType,
    PaymentFailedEvent,
    PaymentProcessedEvent,
)
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .clients import build_http_collaborators
from .compensation import CompensationReconciler
from .exceptions import AlreadyProcessed, InvalidTransition, OrderServiceError, UnknownStatus
from .models import CompensationStatus
from .schemas import (
    AssignAgentRequest,
    CheckoutRequest,
    CompensationResponse,
    OrderPage,
    OrderResponse,
    SagaLogResponse,
    StatusUpdateRequest,
)
from .service import OrderService, build_compensation_handlers, create_order_service
from .status_mapping import CallerContext

# Settings
settings = Settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database and message broker
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
http_client: Optional[httpx.AsyncClient] = None
order_service: Optional[OrderService] = None
outbox_publisher: Optional[OutboxPublisher] = None
reconciler: Optional[CompensationReconciler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global http_client, order_service, outbox_publisher, reconciler

    # Startup
    logger.info("Starting Order Service...")

    # Create tables
    await database.create_tables()

    http_client = httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds)
    collaborators = build_http_collaborators(http_client, settings)
    order_service = create_order_service(database.session_factory, collaborators, settings)

    # Start compensation reconciler
    reconciler = CompensationReconciler(
        session_factory=database.session_factory,
        handlers=build_compensation_handlers(order_service.saga),
        order_locks=order_service.saga.order_locks,
        poll_interval=settings.reconciler_poll_interval,
        batch_size=settings.reconciler_batch_size,
        max_attempts=settings.reconciler_max_attempts,
        base_delay=settings.reconciler_base_delay_seconds,
        max_delay=settings.reconciler_max_delay_seconds,
    )
    await reconciler.start()

    if settings.broker_enabled:
        # Connect to message broker
        await message_broker.connect()

        # Start outbox publisher
        outbox_publisher = OutboxPublisher(
            session_factory=database.session_factory,
            message_broker=message_broker,
            poll_interval=settings.outbox_poll_interval,
            batch_size=settings.outbox_batch_size,
            max_retries=settings.outbox_max_retries,
        )
        await outbox_publisher.start()

        # Subscribe to events
        await subscribe_to_events()
    else:
        logger.warning("Message broker disabled; order events stay in the outbox")

    logger.info("Order Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Order Service...")
    if outbox_publisher:
        await outbox_publisher.stop()
    if reconciler:
        await reconciler.stop()
    if settings.broker_enabled:
        await message_broker.disconnect()
    await http_client.aclose()
    await database.close()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Dependencies
def get_order_service() -> OrderService:
    """Get the wired order service."""
    if order_service is None:
        raise HTTPException(status_code=503, detail="Order service not ready")
    return order_service


def get_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """User id of the caller, set by the gateway."""
    return x_user_id


# Order API
@app.post("/api/orders/checkout", response_model=OrderResponse, status_code=201)
async def checkout(
    request: CheckoutRequest,
    user_id: int = Depends(get_user_id),
    service: OrderService = Depends(get_order_service),
):
    """
    Place an order from the caller's cart.

    The order is returned as soon as it is persisted; payment initiation,
    delivery assignment and cart clearing finish (or are queued for retry)
    before the response is sent.
    """
    order = await service.checkout(user_id, request)
    return OrderResponse.model_validate(order)


@app.get("/api/orders", response_model=List[OrderResponse])
async def list_user_orders(
    user_id: int = Depends(get_user_id),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders_for_user(user_id)
    return [OrderResponse.model_validate(order) for order in orders]


@app.post("/api/orders/validate")
async def validate_order(
    order_id: UUID = Query(..., alias="orderId"),
    service: OrderService = Depends(get_order_service),
):
    """Whether an order with this id exists."""
    return {"orderId": str(order_id), "valid": await service.validate_order(order_id)}


@app.get("/api/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: UUID, service: OrderService = Depends(get_order_service)):
    """Get order by ID."""
    return OrderResponse.model_validate(await service.get_order(order_id))


@app.put("/api/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: UUID,
    request: StatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_order_status(order_id, request.status, CallerContext.GENERAL)
    return OrderResponse.model_validate(order)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: UUID,
    user_id: int = Depends(get_user_id),
    service: OrderService = Depends(get_order_service),
):
    return OrderResponse.model_validate(await service.cancel_order(order_id, user_id))


@app.put("/api/orders/{order_id}/payment-status", response_model=OrderResponse)
async def update_payment_status(
    order_id: UUID,
    status: str = Query(...),
    service: OrderService = Depends(get_order_service),
):
    """Payment service callback."""
    return OrderResponse.model_validate(await service.update_payment_status(order_id, status))


@app.get("/api/orders/{order_id}/saga-logs", response_model=List[SagaLogResponse])
async def get_saga_logs(order_id: UUID, service: OrderService = Depends(get_order_service)):
    """Get checkout saga logs for an order."""
    logs = await service.get_saga_logs(order_id)
    return [SagaLogResponse.model_validate(log) for log in logs]


# Admin dashboard
@app.get("/api/admin/orders", response_model=OrderPage)
async def list_all_orders(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=200),
    service: OrderService = Depends(get_order_service),
):
    orders, total = await service.list_orders(page, size)
    return OrderPage(
        content=[OrderResponse.model_validate(order) for order in orders],
        page=page,
        size=size,
        total_elements=total,
        total_pages=math.ceil(total / size),
    )


@app.post("/api/admin/orders/{order_id}/status", response_model=OrderResponse)
async def admin_update_order_status(
    order_id: UUID,
    request: StatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_order_status(order_id, request.status, CallerContext.ADMIN)
    return OrderResponse.model_validate(order)


@app.get("/api/admin/compensations", response_model=List[CompensationResponse])
async def list_compensations(
    status: Optional[CompensationStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    service: OrderService = Depends(get_order_service),
):
    compensations = await service.list_compensations(status, limit)
    return [CompensationResponse.model_validate(c) for c in compensations]


@app.post("/api/admin/compensations/retry")
async def retry_dead_compensations(service: OrderService = Depends(get_order_service)):
    """Re-queue dead compensations for the reconciler."""
    return {"requeued": await service.retry_dead_compensations()}


# Delivery dashboard
@app.get("/api/delivery/orders", response_model=List[OrderResponse])
async def list_agent_orders(
    status: str = Query("all"),
    agent_id: int = Depends(get_user_id),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders_for_agent(agent_id, status)
    return [OrderResponse.model_validate(order) for order in orders]


@app.get("/api/delivery/orders/pending", response_model=List[OrderResponse])
async def list_pending_delivery(service: OrderService = Depends(get_order_service)):
    orders = await service.list_pending_delivery()
    return [OrderResponse.model_validate(order) for order in orders]


@app.post("/api/delivery/orders/{order_id}/status", response_model=OrderResponse)
async def delivery_update_order_status(
    order_id: UUID,
    request: StatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_order_status(order_id, request.status, CallerContext.DELIVERY)
    return OrderResponse.model_validate(order)


@app.post("/api/delivery/orders/{order_id}/assign", response_model=OrderResponse)
async def assign_delivery_agent(
    order_id: UUID,
    request: AssignAgentRequest,
    service: OrderService = Depends(get_order_service),
):
    order = await service.assign_delivery_agent(order_id, request.agent_id)
    return OrderResponse.model_validate(order)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    database_up = await database.ping()
    return {
        "status": "healthy" if database_up else "degraded",
        "service": settings.service_name,
        "database": "up" if database_up else "down",
        "broker": "up" if message_broker.is_connected else ("disabled" if not settings.broker_enabled else "down"),
    }


# Event Handlers
async def subscribe_to_events():
    """Subscribe to payment and delivery results."""

    async def apply_idempotently(description: str, operation):
        # Redelivered or out-of-order events cannot succeed on retry; acknowledge them
        try:
            await operation
        except (AlreadyProcessed, InvalidTransition, UnknownStatus) as e:
            logger.warning(f"Ignoring {description}: {e.message}")

    async def handle_payment_processed(event: PaymentProcessedEvent):
        """Handle payment processed event."""
        await apply_idempotently(
            f"payment.processed for order {event.order_id}",
            order_service.update_payment_status(event.order_id, "success"),
        )

    async def handle_payment_failed(event: PaymentFailedEvent):
        """Handle payment failure."""
        logger.warning(f"Payment failed for order {event.order_id}: {event.reason}")
        await apply_idempotently(
            f"payment.failed for order {event.order_id}",
            order_service.update_payment_status(event.order_id, "failed"),
        )

    async def handle_delivery_status_changed(event: DeliveryStatusChangedEvent):
        """Handle delivery progress reported by the delivery service."""
        await apply_idempotently(
            f"delivery.status_changed '{event.status}' for order {event.order_id}",
            order_service.update_order_status(event.order_id, event.status, CallerContext.DELIVERY),
        )

    # Subscribe to events
    await message_broker.subscribe_to_event(
        EventType.PAYMENT_PROCESSED,
        "order_service_payment_processed",
        handle_payment_processed,
    )

    await message_broker.subscribe_to_event(
        EventType.PAYMENT_FAILED,
        "order_service_payment_failed",
        handle_payment_failed,
    )

    await message_broker.subscribe_to_event(
        EventType.DELIVERY_STATUS_CHANGED,
        "order_service_delivery_status_changed",
        handle_delivery_status_changed,
    )

    logger.info("Subscribed to payment and delivery events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
