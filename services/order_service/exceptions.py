"""Error taxonomy for the order service."""
from typing import Optional


class OrderServiceError(Exception):
    """Base class for errors surfaced to order service callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message}


# Fatal checkout errors: abort the saga before the order is persisted
class Fatal(OrderServiceError):
    """A checkout step whose failure aborts the saga."""

    def __init__(self, message: str, step: str):
        super().__init__(message)
        self.step = step

    def to_dict(self) -> dict:
        return {**super().to_dict(), "step": self.step}


class CartEmpty(Fatal):
    def __init__(self, user_id: int):
        super().__init__(f"Cart is empty for user {user_id}", step="fetch_cart")
        self.user_id = user_id


class AddressNotFound(Fatal):
    def __init__(self, user_id: int, address_id: int):
        super().__init__(
            f"Address {address_id} not found for user {user_id}", step="resolve_address"
        )
        self.address_id = address_id


class CheckoutTimeout(Fatal):
    status_code = 504

    def __init__(self, step: str, timeout: float):
        super().__init__(f"Checkout step '{step}' timed out after {timeout}s", step=step)
        self.timeout = timeout


class CartTotalMismatch(Fatal):
    status_code = 409

    def __init__(self, cart_total: float, item_total: float):
        super().__init__(
            f"Cart total {cart_total} does not match the sum of its items {item_total}",
            step="price_order",
        )
        self.cart_total = cart_total
        self.item_total = item_total


class OrderNumberConflict(Fatal):
    status_code = 409

    def __init__(self, attempts: int):
        super().__init__(
            f"No free order number after {attempts} attempts", step="persist_order"
        )
        self.attempts = attempts


class Degraded(OrderServiceError):
    """A step that failed without aborting its operation; recorded for reconciliation."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"Step '{step}' degraded: {cause}")
        self.step = step
        self.cause = cause


# Status validation errors
class InvalidTransition(OrderServiceError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot transition order from {current} to {requested}")
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        return {**super().to_dict(), "current": self.current, "requested": self.requested}


class UnknownStatus(OrderServiceError):
    def __init__(self, token: str, context: Optional[str] = None):
        where = f" for caller context '{context}'" if context else ""
        super().__init__(f"Unknown status '{token}'{where}")
        self.token = token
        self.context = context

    def to_dict(self) -> dict:
        return {**super().to_dict(), "token": self.token, "context": self.context}


class NotFound(OrderServiceError):
    status_code = 404

    def __init__(self, resource: str, identifier):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class Unauthorized(OrderServiceError):
    status_code = 403


class AlreadyProcessed(OrderServiceError):
    status_code = 409


class ConcurrentModification(OrderServiceError):
    status_code = 409

    def __init__(self, order_id, attempts: int):
        super().__init__(f"Order {order_id} kept changing underneath {attempts} write attempts")
        self.order_id = order_id
        self.attempts = attempts


class ReservationUncertain(OrderServiceError):
    """A reservation key whose reserve call never reported back; it can only be released."""

    status_code = 409

    def __init__(self, reservation_id: str):
        super().__init__(f"Outcome of reservation {reservation_id} is unknown")
        self.reservation_id = reservation_id


# Collaborator errors: raised by clients, classified by the caller
class CollaboratorError(Exception):
    """A collaborator call failed or returned an unsuccessful response."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class CollaboratorTimeout(CollaboratorError):
    pass


class InsufficientStock(CollaboratorError):
    def __init__(self, message: str):
        super().__init__("product-service", message)
