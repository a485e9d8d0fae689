import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from fastapi import HTTPException, status
from sqlalchemy import ColumnElement, and_, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.models.customer import Customer
from app.models.order import Order, OrderItem, OrderStatus
from app.models.order_status_change import OrderStatusChange
from app.models.product import Product
from app.observability import log_event
from app.services.order_effects import OrderEffects
from app.services.state_machine import ensure_valid_transition

SYSTEM_ACTOR = "system"
TRACKING_EDITABLE_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED)

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

SortField = Literal["order_number", "created_at", "total"]
SortOrder = Literal["asc", "desc"]


@dataclass(frozen=True)
class OrderFilters:
    status: OrderStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class OrderLine:
    product_id: uuid.UUID
    quantity: int


@dataclass
class StatusUpdateResult:
    order: Order
    warning: str | None = None


def build_filter_clauses(filters: OrderFilters) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    if filters.status:
        clauses.append(Order.status == filters.status)
    if filters.start_date:
        clauses.append(Order.created_at >= filters.start_date)
    if filters.end_date:
        clauses.append(Order.created_at <= filters.end_date)

    search = (filters.search or "").strip()
    if search:
        # Literal substring match; % and _ in the search text are escaped.
        clauses.append(
            or_(
                Order.order_number.icontains(search, autoescape=True),
                Order.customer.has(
                    or_(
                        Customer.name.icontains(search, autoescape=True),
                        Customer.email.icontains(search, autoescape=True),
                    )
                ),
            )
        )
    return clauses


def not_found(order_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND, detail=f"Order with ID {order_id} not found"
    )


def commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as err:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order was modified concurrently; reload and retry",
        ) from err


def record_status_change(
    db: Session,
    order: Order,
    previous: OrderStatus | None,
    actor_id: str,
    notes: str | None = None,
) -> None:
    db.add(
        OrderStatusChange(
            order_id=order.id,
            previous_status=previous,
            new_status=order.status,
            changed_by=actor_id,
            notes=notes,
        )
    )


def _generate_order_number(length: int = 8) -> str:
    return "ORD-" + "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(length))


def _generate_unique_order_number(db: Session) -> str:
    while True:
        order_number = _generate_order_number()
        exists = db.scalar(select(Order.id).where(Order.order_number == order_number))
        if not exists:
            return order_number


def create_order(
    db: Session,
    *,
    customer_id: uuid.UUID,
    lines: list[OrderLine],
    shipping: int = 0,
    tax: int = 0,
    payment_reference: str | None = None,
) -> Order:
    """Convert a cart snapshot into an order with its items in one transaction."""
    if not lines:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="An order needs at least one item"
        )
    if any(line.quantity <= 0 for line in lines):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Item quantity must be positive"
        )
    if shipping < 0 or tax < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Shipping and tax must not be negative"
        )

    if db.get(Customer, customer_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")

    product_ids = {line.product_id for line in lines}
    products = {
        product.id: product
        for product in db.scalars(select(Product).where(Product.id.in_(product_ids)))
    }
    missing = product_ids - products.keys()
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Products not found: {', '.join(sorted(str(value) for value in missing))}",
        )

    items = [
        OrderItem(
            product_id=line.product_id,
            position=position,
            quantity=line.quantity,
            unit_price=products[line.product_id].price,
        )
        for position, line in enumerate(lines)
    ]
    subtotal = sum(item.unit_price * item.quantity for item in items)

    order = Order(
        order_number=_generate_unique_order_number(db),
        customer_id=customer_id,
        status=OrderStatus.PENDING,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
        payment_reference=payment_reference,
        items=items,
    )
    db.add(order)
    db.flush()
    record_status_change(db, order, None, SYSTEM_ACTOR, "Order created")

    db.commit()
    db.refresh(order)
    log_event("order_created", order_id=str(order.id))
    return order


def get_order(db: Session, order_id: uuid.UUID) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise not_found(order_id)
    return order


def list_orders(
    db: Session,
    filters: OrderFilters,
    *,
    sort_by: SortField = "created_at",
    sort_order: SortOrder = "desc",
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Order], int]:
    clauses = build_filter_clauses(filters)
    condition = and_(*clauses) if clauses else None

    count_query = select(func.count()).select_from(Order)
    query = select(Order)
    if condition is not None:
        count_query = count_query.where(condition)
        query = query.where(condition)

    column = getattr(Order, sort_by)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    query = query.order_by(ordering, Order.id.asc()).offset((page - 1) * limit).limit(limit)

    total = int(db.scalar(count_query) or 0)
    return list(db.scalars(query).unique()), total


def list_status_history(db: Session, order_id: uuid.UUID) -> list[OrderStatusChange]:
    get_order(db, order_id)
    history = db.scalars(
        select(OrderStatusChange)
        .where(OrderStatusChange.order_id == order_id)
        .order_by(OrderStatusChange.created_at.asc(), OrderStatusChange.id.asc())
    )
    return list(history)


def update_order_status(
    db: Session,
    order_id: uuid.UUID,
    new_status: OrderStatus,
    *,
    actor_id: str,
    effects: OrderEffects,
    notes: str | None = None,
) -> StatusUpdateResult:
    order = get_order(db, order_id)
    previous = order.status
    result = ensure_valid_transition(previous, new_status)

    order.status = new_status
    record_status_change(db, order, previous, actor_id, notes)
    commit_or_conflict(db)
    db.refresh(order)

    effects.status_changed(order, previous)
    effects.orders_changed()
    log_event(
        "order_status_changed",
        order_id=str(order.id),
        actor_id=actor_id,
        detail={"from": previous.value, "to": new_status.value, "notes": notes},
    )
    return StatusUpdateResult(order=order, warning=result.warning)


def _require_tracking_fields(tracking_number: str, shipping_carrier: str) -> tuple[str, str]:
    tracking_number = tracking_number.strip()
    shipping_carrier = shipping_carrier.strip()
    if not tracking_number or not shipping_carrier:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tracking number and shipping carrier must be provided together",
        )
    return tracking_number, shipping_carrier


def add_shipping_tracking(
    db: Session,
    order_id: uuid.UUID,
    *,
    tracking_number: str,
    shipping_carrier: str,
    estimated_delivery: datetime | None,
    actor_id: str,
    effects: OrderEffects,
) -> Order:
    tracking_number, shipping_carrier = _require_tracking_fields(tracking_number, shipping_carrier)
    order = get_order(db, order_id)
    if order.status != OrderStatus.PROCESSING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot add tracking to order with status {order.status.value}. "
            "Order must be PROCESSING.",
        )

    previous = order.status
    ensure_valid_transition(previous, OrderStatus.SHIPPED)
    order.tracking_number = tracking_number
    order.shipping_carrier = shipping_carrier
    order.estimated_delivery = estimated_delivery
    order.status = OrderStatus.SHIPPED
    record_status_change(
        db, order, previous, actor_id, f"Tracking added: {shipping_carrier} {tracking_number}"
    )
    commit_or_conflict(db)
    db.refresh(order)

    effects.shipment_added(order)
    effects.orders_changed()
    log_event(
        "order_tracking_added",
        order_id=str(order.id),
        actor_id=actor_id,
        detail={"carrier": shipping_carrier, "tracking_number": tracking_number},
    )
    return order


def update_shipping_tracking(
    db: Session,
    order_id: uuid.UUID,
    *,
    tracking_number: str,
    shipping_carrier: str,
    estimated_delivery: datetime | None,
    actor_id: str,
) -> Order:
    tracking_number, shipping_carrier = _require_tracking_fields(tracking_number, shipping_carrier)
    order = get_order(db, order_id)
    if not order.tracking_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Order {order_id} has no tracking information to update. Add tracking first.",
        )
    if order.status not in TRACKING_EDITABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot update tracking for order with status {order.status.value}. "
            "Order must be PROCESSING or SHIPPED.",
        )

    order.tracking_number = tracking_number
    order.shipping_carrier = shipping_carrier
    order.estimated_delivery = estimated_delivery
    commit_or_conflict(db)
    db.refresh(order)

    log_event(
        "order_tracking_updated",
        order_id=str(order.id),
        actor_id=actor_id,
        detail={"carrier": shipping_carrier, "tracking_number": tracking_number},
    )
    return order
