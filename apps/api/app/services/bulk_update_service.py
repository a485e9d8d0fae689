import uuid
from dataclasses import dataclass, field

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.order import Order, OrderStatus
from app.observability import log_event, metrics_store
from app.services.order_effects import OrderEffects
from app.services.orders_service import commit_or_conflict, record_status_change
from app.services.state_machine import validate_transition

BULK_UPDATE_NOTE = "Bulk status update"


@dataclass
class BulkUpdateResult:
    updated_count: int
    orders: list[Order]
    warnings: list[str] = field(default_factory=list)


def _unique_ids(order_ids: list[uuid.UUID]) -> list[uuid.UUID]:
    return list(dict.fromkeys(order_ids))


def bulk_update_status(
    db: Session,
    order_ids: list[uuid.UUID],
    new_status: OrderStatus,
    *,
    actor_id: str,
    effects: OrderEffects,
) -> BulkUpdateResult:
    """Move every referenced order to ``new_status``, or none of them.

    All orders are loaded and every transition is validated before the first
    mutation; the updates then share one transaction, so a failure at any point
    leaves every order untouched.
    """
    ids = _unique_ids(order_ids)
    if not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="At least one order id is required"
        )

    found = {order.id: order for order in db.scalars(select(Order).where(Order.id.in_(ids)))}
    missing = [order_id for order_id in ids if order_id not in found]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": "Some orders not found",
                "missing_order_ids": [str(order_id) for order_id in missing],
            },
        )

    orders = [found[order_id] for order_id in ids]
    invalid: list[str] = []
    warnings: list[str] = []
    for order in orders:
        result = validate_transition(order.status, new_status)
        if not result.valid:
            invalid.append(f"Order {order.order_number}: {order.status.value} -> {new_status.value}")
        elif result.warning:
            warnings.append(f"Order {order.order_number}: {result.warning}")

    if invalid:
        metrics_store.increment("bulk_update_rejected_total")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid transitions", "invalid_transitions": invalid},
        )

    previous_statuses = {order.id: order.status for order in orders}
    for order in orders:
        order.status = new_status
        record_status_change(db, order, previous_statuses[order.id], actor_id, BULK_UPDATE_NOTE)
    commit_or_conflict(db)

    for order in orders:
        db.refresh(order)
        effects.status_changed(order, previous_statuses[order.id])
    effects.orders_changed()

    metrics_store.increment("bulk_update_orders_total", len(orders))
    log_event(
        "orders_bulk_status_updated",
        actor_id=actor_id,
        detail={"count": len(orders), "status": new_status.value},
    )
    return BulkUpdateResult(updated_count=len(orders), orders=orders, warnings=warnings)
