"""Database models for Order Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from shared.database import Base

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class OrderStatus(str, Enum):
    """Canonical order lifecycle status."""
    PENDING = "PENDING"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    PACKED = "PACKED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    SHIPPED = "SHIPPED"  # legacy alias of OUT_FOR_DELIVERY
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment status as reported by the payment service."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    COD = "COD"


class ReservationState(str, Enum):
    """Stock reservation state.

    RESERVING rows were written before the product service answered; whether
    stock is held under them is unknown until they are released.
    """
    RESERVING = "RESERVING"
    RESERVED = "RESERVED"
    RELEASED = "RELEASED"


class CompensationAction(str, Enum):
    """Degraded steps that the reconciler knows how to retry."""
    INITIATE_PAYMENT = "INITIATE_PAYMENT"
    ASSIGN_DELIVERY = "ASSIGN_DELIVERY"
    CLEAR_CART = "CLEAR_CART"
    RESERVE_STOCK = "RESERVE_STOCK"
    RELEASE_STOCK = "RELEASE_STOCK"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    UPDATE_DELIVERY_STATUS = "UPDATE_DELIVERY_STATUS"


class CompensationStatus(str, Enum):
    """Pending compensation lifecycle."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    DEAD = "DEAD"


class SagaStep(str, Enum):
    """Steps in the checkout saga."""
    FETCH_CART = "fetch_cart"
    VALIDATE_CART = "validate_cart"
    RESOLVE_ADDRESS = "resolve_address"
    PRICE_ORDER = "price_order"
    RESERVE_STOCK = "reserve_stock"
    PERSIST_ORDER = "persist_order"
    CONFIRM_COD = "confirm_cod"
    INITIATE_PAYMENT = "initiate_payment"
    ASSIGN_DELIVERY = "assign_delivery"
    CLEAR_CART = "clear_cart"


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_number = Column(String(40), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String(30), default=OrderStatus.PENDING.value, nullable=False, index=True)

    # Snapshot taken at checkout
    items = Column(JsonColumn, nullable=False)  # [{"product_id", "product_name", "quantity", "unit_price", "image_url"}]
    total_amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    delivery_address = Column(JsonColumn, nullable=False)
    payment_method = Column(String(50), nullable=False)

    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    delivery_agent_id = Column(Integer, nullable=True, index=True)

    # Collaborator references; presence makes the matching post-commit step a no-op
    reservation_id = Column(String(60), nullable=True)
    payment_ref = Column(String(100), nullable=True)
    delivery_ref = Column(String(100), nullable=True)

    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )


class StockReservation(Base):
    """Stock held for an order, keyed by its idempotency key."""

    __tablename__ = "stock_reservations"

    reservation_id = Column(String(60), primary_key=True)
    order_id = Column(Uuid, nullable=False, index=True)
    items = Column(JsonColumn, nullable=False)  # [{"product_id": int, "quantity": int}]
    state = Column(String(20), default=ReservationState.RESERVING.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    reserved_at = Column(DateTime, nullable=True)
    released_at = Column(DateTime, nullable=True)


class PendingCompensation(Base):
    """A degraded step waiting to be retried by the reconciler."""

    __tablename__ = "pending_compensations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, nullable=False, index=True)
    action = Column(String(40), nullable=False)
    idempotency_key = Column(String(200), nullable=False, unique=True)
    payload = Column(JsonColumn, nullable=False, default=dict)

    status = Column(String(20), default=CompensationStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    # Lease expiry while IN_PROGRESS
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_compensations_status_next", "status", "next_attempt_at"),
    )


class SagaLog(Base):
    """Audit log for checkout saga steps."""

    __tablename__ = "saga_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, nullable=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    step = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)  # completed, degraded, failed, skipped
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_saga_logs_order_created", "order_id", "created_at"),
    )
