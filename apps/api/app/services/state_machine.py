from dataclasses import dataclass

from fastapi import HTTPException, status

from app.models.order import OrderStatus

ORDER_STATE_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Valid, but the operator has to acknowledge the warning.
CONFIRMATION_REQUIRED: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SHIPPED: frozenset({OrderStatus.CANCELLED}),
}

SHIPPED_CANCEL_WARNING = (
    "Package may already be in transit. Customer might still receive it. "
    "Consider processing a refund after delivery instead."
)

_SPECIFIC_TRANSITION_ERRORS: dict[tuple[OrderStatus, OrderStatus], str] = {
    (OrderStatus.SHIPPED, OrderStatus.PENDING): (
        "Cannot mark shipped order as pending. Order is already in transit."
    ),
    (OrderStatus.SHIPPED, OrderStatus.PROCESSING): (
        "Cannot reprocess shipped order. Order is already with carrier."
    ),
}


@dataclass(frozen=True)
class TransitionResult:
    valid: bool
    warning: str | None = None


def valid_next_statuses(current: OrderStatus) -> list[OrderStatus]:
    allowed = ORDER_STATE_TRANSITIONS.get(current, frozenset())
    return [candidate for candidate in OrderStatus if candidate in allowed]


def requires_confirmation(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in CONFIRMATION_REQUIRED.get(current, frozenset())


def transition_warning(current: OrderStatus, requested: OrderStatus) -> str | None:
    if current == OrderStatus.SHIPPED and requested == OrderStatus.CANCELLED:
        return SHIPPED_CANCEL_WARNING
    return None


def validate_transition(current: OrderStatus, requested: OrderStatus) -> TransitionResult:
    """Decide whether ``current -> requested`` is a legal edge.

    Pure and total over the status enum: same-status pairs and anything leaving a
    terminal status are invalid. The only advisory outcome is SHIPPED -> CANCELLED.
    """
    if requested not in ORDER_STATE_TRANSITIONS.get(current, frozenset()):
        return TransitionResult(valid=False)
    return TransitionResult(valid=True, warning=transition_warning(current, requested))


def transition_error_message(current: OrderStatus, requested: OrderStatus) -> str:
    if current == OrderStatus.DELIVERED:
        return "Cannot change status of delivered orders. Use the refund flow to process returns."
    if current == OrderStatus.CANCELLED:
        return "Cannot change status of cancelled orders. Create a new order instead."

    specific = _SPECIFIC_TRANSITION_ERRORS.get((current, requested))
    if specific:
        return specific
    return f"Cannot transition from {current.value} to {requested.value}. Invalid status change."


def ensure_valid_transition(current: OrderStatus, requested: OrderStatus) -> TransitionResult:
    result = validate_transition(current, requested)
    if not result.valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid state transition: {current.value} -> {requested.value}. "
            f"{transition_error_message(current, requested)}",
        )
    return result
