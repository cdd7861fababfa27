"""Request/response and collaborator payload models."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits the camelCase field names used by the other services."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# Collaborator payloads
class CartItem(CamelModel):
    product_id: int
    product_name: str = ""
    quantity: int = Field(gt=0)
    price: float = Field(ge=0)
    image_url: Optional[str] = None


class Cart(CamelModel):
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = 0.0


class Address(CamelModel):
    id: int
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class DeliveryAgent(CamelModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class ReservationItem(CamelModel):
    product_id: int
    quantity: int = Field(gt=0)


# Order snapshot
class OrderItem(CamelModel):
    product_id: int
    product_name: str
    quantity: int = Field(gt=0)
    unit_price: float = Field(ge=0)
    image_url: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


class DeliveryAddress(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


# API models
class CheckoutRequest(CamelModel):
    """Request to place an order from the caller's cart."""
    address_id: int
    payment_method: str = Field(min_length=1)


class StatusUpdateRequest(CamelModel):
    status: str


class AssignAgentRequest(CamelModel):
    agent_id: int


class OrderResponse(CamelModel):
    """Order response."""
    id: UUID
    order_number: str
    user_id: int
    status: str
    payment_status: str
    payment_method: str
    total_amount: float
    items: List[OrderItem]
    delivery_address: DeliveryAddress
    delivery_agent_id: Optional[int] = None
    reservation_id: Optional[str] = None
    payment_ref: Optional[str] = None
    delivery_ref: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OrderPage(CamelModel):
    content: List[OrderResponse]
    page: int
    size: int
    total_elements: int
    total_pages: int


class CompensationResponse(CamelModel):
    id: UUID
    order_id: UUID
    action: str
    status: str
    attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    created_at: datetime


class SagaLogResponse(CamelModel):
    """Saga log response."""
    id: UUID
    order_id: Optional[UUID] = None
    step: str
    status: str
    error_message: Optional[str] = None
    created_at: datetime
