"""Status normalizer: one mapping from UI status vocabularies to OrderStatus.

The general order API, the admin dashboard and the delivery dashboard each
send their own status words. Historically every entry point carried its own
translation table and the tables disagreed (the admin table shifted labels by
one step, so "packed" meant OUT_FOR_DELIVERY and "delivered" meant
COMPLETED). This module replaces them with a single table keyed by
``(token, context)``; every token maps to the lifecycle state it names.
"""
import logging
from enum import Enum
from typing import Dict, Tuple

from .exceptions import UnknownStatus
from .models import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


class CallerContext(str, Enum):
    GENERAL = "general"
    ADMIN = "admin"
    DELIVERY = "delivery"


_ALL = tuple(CallerContext)
_DASHBOARDS = (CallerContext.GENERAL, CallerContext.ADMIN)

# token -> (status, contexts that may send it)
_VOCABULARY: Dict[str, Tuple[OrderStatus, Tuple[CallerContext, ...]]] = {
    "pending": (OrderStatus.PENDING, _DASHBOARDS),
    "placed": (OrderStatus.PENDING, _DASHBOARDS),
    "payment_success": (OrderStatus.PAYMENT_SUCCESS, _DASHBOARDS),
    "confirmed": (OrderStatus.CONFIRMED, _DASHBOARDS),
    "processing": (OrderStatus.PROCESSING, _DASHBOARDS),
    "packed": (OrderStatus.PACKED, _DASHBOARDS),
    "out_for_delivery": (OrderStatus.OUT_FOR_DELIVERY, _ALL),
    "shipped": (OrderStatus.OUT_FOR_DELIVERY, _ALL),
    "in_transit": (OrderStatus.OUT_FOR_DELIVERY, _ALL),
    "picked_up": (OrderStatus.OUT_FOR_DELIVERY, (CallerContext.DELIVERY,)),
    "delivered": (OrderStatus.DELIVERED, _ALL),
    "completed": (OrderStatus.COMPLETED, _DASHBOARDS),
    "cancelled": (OrderStatus.CANCELLED, _DASHBOARDS),
    "canceled": (OrderStatus.CANCELLED, _DASHBOARDS),
}

STATUS_TABLE: Dict[Tuple[str, CallerContext], OrderStatus] = {
    (token, context): status
    for token, (status, contexts) in _VOCABULARY.items()
    for context in contexts
}

# Tokens the old per-endpoint tables translated differently; value lists the other readings
HISTORICALLY_AMBIGUOUS: Dict[str, Tuple[OrderStatus, ...]] = {
    "processing": (OrderStatus.PACKED,),
    "packed": (OrderStatus.OUT_FOR_DELIVERY,),
    "in_transit": (OrderStatus.DELIVERED,),
    "delivered": (OrderStatus.COMPLETED,),
    "shipped": (OrderStatus.SHIPPED,),
}

PAYMENT_TOKENS: Dict[str, PaymentStatus] = {
    "payment_success": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "payment_failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.PENDING,
}


def fold_token(raw: str) -> str:
    """'Out for Delivery' / 'OUT-FOR-DELIVERY' / ' out_for_delivery ' -> 'out_for_delivery'."""
    return "_".join(raw.strip().lower().replace("-", " ").split())


def parse_context(raw) -> CallerContext:
    if isinstance(raw, CallerContext):
        return raw
    folded = fold_token(str(raw))
    if folded.endswith("_dashboard"):
        folded = folded[: -len("_dashboard")]
    try:
        return CallerContext(folded)
    except ValueError:
        raise ValueError(f"Unknown caller context '{raw}'") from None


def normalize_status(raw: str, context) -> OrderStatus:
    """Translate a caller's status token into the canonical OrderStatus.

    Raises UnknownStatus for tokens outside the caller's vocabulary; never
    falls back to a default.
    """
    context = parse_context(context)
    if raw is None or not str(raw).strip():
        raise UnknownStatus("", context.value)

    token = fold_token(str(raw))
    status = STATUS_TABLE.get((token, context))
    if status is None:
        raise UnknownStatus(str(raw), context.value)

    if token in HISTORICALLY_AMBIGUOUS:
        alternatives = ", ".join(s.value for s in HISTORICALLY_AMBIGUOUS[token])
        logger.warning(
            f"Status token '{token}' from {context.value} mapped to {status.value}; "
            f"older clients may have meant {alternatives}"
        )
    return status


def normalize_payment_status(raw: str) -> PaymentStatus:
    token = fold_token(str(raw or ""))
    status = PAYMENT_TOKENS.get(token)
    if status is None:
        raise UnknownStatus(str(raw), "payment")
    return status
