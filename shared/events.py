"""Event definitions exchanged between the order service and its collaborators."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types published or consumed by the order service."""

    # Order events (published)
    ORDER_PLACED = "order.placed"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_PAYMENT_STATUS_CHANGED = "order.payment_status_changed"
    ORDER_COMPENSATION_DEAD = "order.compensation_dead"

    # Payment events (consumed)
    PAYMENT_PROCESSED = "payment.processed"
    PAYMENT_FAILED = "payment.failed"

    # Delivery events (consumed)
    DELIVERY_STATUS_CHANGED = "delivery.status_changed"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # order id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Order Events
class OrderPlacedEvent(BaseEvent):
    """Emitted when checkout persists a new order."""
    event_type: EventType = EventType.ORDER_PLACED
    order_number: str
    user_id: int
    items: list[Dict[str, Any]]
    total_amount: float
    payment_method: str
    reservation_id: Optional[str] = None


class OrderStatusChangedEvent(BaseEvent):
    """Emitted for every committed status transition."""
    event_type: EventType = EventType.ORDER_STATUS_CHANGED
    order_number: str
    user_id: int
    previous_status: str
    status: str
    delivery_agent_id: Optional[int] = None


class OrderPaymentStatusChangedEvent(BaseEvent):
    """Emitted when a payment callback changes the order's payment status."""
    event_type: EventType = EventType.ORDER_PAYMENT_STATUS_CHANGED
    order_number: str
    previous_payment_status: str
    payment_status: str


class CompensationDeadEvent(BaseEvent):
    """Emitted when a pending compensation exhausts its retries."""
    event_type: EventType = EventType.ORDER_COMPENSATION_DEAD
    compensation_id: UUID
    action: str
    attempts: int
    last_error: Optional[str] = None


# Payment Events
class PaymentProcessedEvent(BaseEvent):
    """Payment service confirmed a payment for an order."""
    event_type: EventType = EventType.PAYMENT_PROCESSED
    order_id: UUID
    payment_ref: str
    amount: float


class PaymentFailedEvent(BaseEvent):
    """Payment service rejected a payment for an order."""
    event_type: EventType = EventType.PAYMENT_FAILED
    order_id: UUID
    reason: str
    error_code: Optional[str] = None


# Delivery Events
class DeliveryStatusChangedEvent(BaseEvent):
    """Delivery service reported progress for an order's delivery."""
    event_type: EventType = EventType.DELIVERY_STATUS_CHANGED
    order_id: UUID
    status: str
    location: Optional[str] = None


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_PLACED: OrderPlacedEvent,
    EventType.ORDER_STATUS_CHANGED: OrderStatusChangedEvent,
    EventType.ORDER_PAYMENT_STATUS_CHANGED: OrderPaymentStatusChangedEvent,
    EventType.ORDER_COMPENSATION_DEAD: CompensationDeadEvent,

    EventType.PAYMENT_PROCESSED: PaymentProcessedEvent,
    EventType.PAYMENT_FAILED: PaymentFailedEvent,

    EventType.DELIVERY_STATUS_CHANGED: DeliveryStatusChangedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
