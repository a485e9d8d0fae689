from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app.models.order import Order
from app.observability import log_event, metrics_store, observe_timing
from app.services.orders_service import OrderFilters, build_filter_clauses

CSV_HEADER = [
    "Order Number",
    "Order Date",
    "Status",
    "Customer Name",
    "Customer Email",
    "Items Count",
    "Item Details",
    "Product SKUs",
    "Subtotal",
    "Shipping",
    "Tax",
    "Total",
    "Payment Reference",
    "Tracking Number",
    "Shipping Carrier",
    "Refund Amount",
    "Refund Reason",
]

ExportCursor = tuple[datetime, uuid.UUID]


def escape_csv_field(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    if any(char in text for char in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def _dollars(cents: int | None) -> str:
    return f"{(cents or 0) / 100:.2f}"


def header_row() -> str:
    return ",".join(escape_csv_field(column) for column in CSV_HEADER)


def format_order_row(order: Order) -> str:
    item_details = "; ".join(f"{item.product.name} x{item.quantity}" for item in order.items)
    skus = "; ".join(item.product.sku or "N/A" for item in order.items)
    fields = [
        order.order_number,
        order.created_at.date().isoformat(),
        order.status.value,
        order.customer.name or "",
        order.customer.email,
        len(order.items),
        item_details,
        skus,
        _dollars(order.subtotal),
        _dollars(order.shipping),
        _dollars(order.tax),
        _dollars(order.total),
        order.payment_reference or "",
        order.tracking_number or "",
        order.shipping_carrier or "",
        _dollars(order.refund_amount) if order.refund_amount else "",
        order.refund_reason.value if order.refund_reason else "",
    ]
    return ",".join(escape_csv_field(value) for value in fields)


def fetch_order_batch(
    db: Session,
    filters: OrderFilters,
    *,
    after: ExportCursor | None,
    limit: int,
) -> list[Order]:
    """One page of matching orders, newest first, strictly after the keyset cursor."""
    clauses = build_filter_clauses(filters)
    if after is not None:
        created_at, order_id = after
        clauses.append(
            or_(
                Order.created_at < created_at,
                and_(Order.created_at == created_at, Order.id < order_id),
            )
        )

    query = select(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
    if clauses:
        query = query.where(and_(*clauses))
    return list(db.scalars(query).unique())


def stream_orders_csv(
    db: Session,
    filters: OrderFilters,
    *,
    batch_size: int = 100,
    fetch_batch: Callable[..., list[Order]] = fetch_order_batch,
) -> Iterator[str]:
    """Yield the header and then one CSV line per matching order.

    Only the current batch is referenced, so earlier rows can be collected as
    the consumer advances.
    """
    yield header_row() + "\n"

    cursor: ExportCursor | None = None
    exported = 0
    with observe_timing("export_stream_seconds"):
        while True:
            batch = fetch_batch(db, filters, after=cursor, limit=batch_size)
            for order in batch:
                yield format_order_row(order) + "\n"
            exported += len(batch)

            if len(batch) < batch_size:
                break
            last = batch[-1]
            cursor = (last.created_at, last.id)

    metrics_store.increment("export_rows_total", exported)
    log_event("orders_exported", detail={"rows": exported})


def export_to_csv_string(db: Session, filters: OrderFilters, *, max_rows: int = 1000) -> str:
    """Whole export as one string; only for small result sets."""
    orders = fetch_order_batch(db, filters, after=None, limit=max_rows)
    rows = [header_row()]
    rows.extend(format_order_row(order) for order in orders)
    metrics_store.increment("export_rows_total", len(orders))
    log_event("orders_exported", detail={"rows": len(orders), "inline": True})
    return "\n".join(rows)


def stream_orders_csv_with_session(
    session_factory: Callable[[], Session],
    filters: OrderFilters,
    *,
    batch_size: int,
) -> Iterator[str]:
    """Own the session for the lifetime of a streamed HTTP response."""
    db = session_factory()
    try:
        yield from stream_orders_csv(db, filters, batch_size=batch_size)
    finally:
        db.close()
