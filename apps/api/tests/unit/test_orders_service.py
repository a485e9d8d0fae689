import uuid
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from app.models.order import OrderStatus
from app.services.orders_service import (
    OrderFilters,
    OrderLine,
    add_shipping_tracking,
    create_order,
    get_order,
    list_orders,
    list_status_history,
    update_order_status,
    update_shipping_tracking,
)


def test_create_order_snapshots_prices_and_records_history(db_session, make_customer, make_product):
    customer = make_customer()
    widget = make_product(price=1250)
    gadget = make_product(price=400)

    order = create_order(
        db_session,
        customer_id=customer.id,
        lines=[OrderLine(widget.id, 2), OrderLine(gadget.id, 1)],
        shipping=500,
        tax=200,
        payment_reference="pi_abc",
    )

    assert order.order_number.startswith("ORD-")
    assert len(order.order_number) == 12
    assert order.status == OrderStatus.PENDING
    assert order.subtotal == 2900
    assert order.total == 3600
    assert [(item.quantity, item.unit_price) for item in order.items] == [(2, 1250), (1, 400)]

    widget.price = 9999
    db_session.commit()
    db_session.refresh(order)
    assert order.items[0].unit_price == 1250

    history = list_status_history(db_session, order.id)
    assert len(history) == 1
    assert history[0].previous_status is None
    assert history[0].new_status == OrderStatus.PENDING
    assert history[0].changed_by == "system"


def test_create_order_rejects_empty_cart(db_session, make_customer):
    with pytest.raises(HTTPException) as exc_info:
        create_order(db_session, customer_id=make_customer().id, lines=[])
    assert exc_info.value.status_code == 400


def test_create_order_rejects_unknown_product(db_session, make_customer):
    missing = uuid.uuid4()
    with pytest.raises(HTTPException) as exc_info:
        create_order(db_session, customer_id=make_customer().id, lines=[OrderLine(missing, 1)])
    assert exc_info.value.status_code == 404
    assert str(missing) in exc_info.value.detail


def test_create_order_rejects_unknown_customer(db_session, make_product):
    product = make_product()
    with pytest.raises(HTTPException) as exc_info:
        create_order(db_session, customer_id=uuid.uuid4(), lines=[OrderLine(product.id, 1)])
    assert exc_info.value.status_code == 404


def test_get_order_missing_returns_404(db_session):
    with pytest.raises(HTTPException) as exc_info:
        get_order(db_session, uuid.uuid4())
    assert exc_info.value.status_code == 404


def test_list_orders_filters_and_paginates(db_session, make_order, make_customer):
    base = datetime(2026, 3, 1, 12, 0, 0)
    findable = make_customer(name="Findable Buyer", email="buyer@shop.test")
    make_order(status=OrderStatus.SHIPPED, total=100, created_at=base, customer=findable)
    make_order(status=OrderStatus.SHIPPED, total=300, created_at=base + timedelta(hours=1))
    make_order(status=OrderStatus.PENDING, total=200, created_at=base + timedelta(hours=2))

    shipped, total = list_orders(db_session, OrderFilters(status=OrderStatus.SHIPPED))
    assert total == 2
    assert [order.total for order in shipped] == [300, 100]

    by_total, _ = list_orders(db_session, OrderFilters(), sort_by="total", sort_order="asc")
    assert [order.total for order in by_total] == [100, 200, 300]

    page_two, total = list_orders(db_session, OrderFilters(), page=2, limit=2)
    assert total == 3
    assert len(page_two) == 1

    searched, total = list_orders(db_session, OrderFilters(search="BUYER@shop"))
    assert total == 1
    assert searched[0].customer.name == "Findable Buyer"

    ranged, total = list_orders(
        db_session,
        OrderFilters(start_date=base + timedelta(minutes=30), end_date=base + timedelta(hours=1)),
    )
    assert [order.total for order in ranged] == [300]


def test_update_status_records_history_and_notifies(db_session, make_order, effects, notifier):
    order = make_order(status=OrderStatus.PENDING)

    result = update_order_status(
        db_session, order.id, OrderStatus.PROCESSING, actor_id="admin-1", effects=effects, notes="go"
    )

    assert result.order.status == OrderStatus.PROCESSING
    assert result.warning is None
    assert result.order.version == 2
    history = list_status_history(db_session, order.id)
    assert history[-1].notes == "go"
    assert history[-1].changed_by == "admin-1"
    assert notifier.sent[0][1] == f"Your order {order.order_number} is being prepared"


def test_update_status_rejects_invalid_transition(db_session, make_order, effects, notifier):
    order = make_order(status=OrderStatus.DELIVERED)

    with pytest.raises(HTTPException) as exc_info:
        update_order_status(db_session, order.id, OrderStatus.PENDING, actor_id="a", effects=effects)

    assert exc_info.value.status_code == 400
    assert "Invalid state transition: DELIVERED -> PENDING" in exc_info.value.detail
    assert notifier.sent == []


def test_cancelling_shipped_order_returns_warning(db_session, make_order, effects, notifier):
    order = make_order(status=OrderStatus.SHIPPED)

    result = update_order_status(
        db_session, order.id, OrderStatus.CANCELLED, actor_id="a", effects=effects
    )

    assert result.order.status == OrderStatus.CANCELLED
    assert result.warning
    assert "A refund will be processed" in notifier.sent[0][2]


def test_add_tracking_ships_processing_order(db_session, make_order, effects, notifier, task_queue):
    order = make_order(status=OrderStatus.PROCESSING)
    eta = datetime(2026, 3, 10)

    shipped = add_shipping_tracking(
        db_session,
        order.id,
        tracking_number=" 1Z999 ",
        shipping_carrier="UPS",
        estimated_delivery=eta,
        actor_id="admin-1",
        effects=effects,
    )

    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.tracking_number == "1Z999"
    history = list_status_history(db_session, order.id)
    assert history[-1].notes == "Tracking added: UPS 1Z999"
    assert "Tracking Number: 1Z999" in notifier.sent[0][2]
    assert "Estimated Delivery: 2026-03-10" in notifier.sent[0][2]
    assert "analytics_cache_invalidation" in task_queue.submitted


@pytest.mark.parametrize("status_value", [OrderStatus.PENDING, OrderStatus.SHIPPED])
def test_add_tracking_requires_processing(db_session, make_order, effects, status_value):
    order = make_order(status=status_value)

    with pytest.raises(HTTPException) as exc_info:
        add_shipping_tracking(
            db_session,
            order.id,
            tracking_number="1Z",
            shipping_carrier="UPS",
            estimated_delivery=None,
            actor_id="a",
            effects=effects,
        )
    assert exc_info.value.status_code == 400


def test_add_tracking_requires_both_fields(db_session, make_order, effects):
    order = make_order(status=OrderStatus.PROCESSING)

    with pytest.raises(HTTPException) as exc_info:
        add_shipping_tracking(
            db_session,
            order.id,
            tracking_number="1Z",
            shipping_carrier="   ",
            estimated_delivery=None,
            actor_id="a",
            effects=effects,
        )
    assert exc_info.value.status_code == 400


def test_update_tracking_amends_without_status_change(db_session, make_order):
    order = make_order(status=OrderStatus.SHIPPED, tracking_number="OLD", shipping_carrier="UPS")

    updated = update_shipping_tracking(
        db_session,
        order.id,
        tracking_number="NEW",
        shipping_carrier="FedEx",
        estimated_delivery=None,
        actor_id="a",
    )

    assert updated.status == OrderStatus.SHIPPED
    assert (updated.tracking_number, updated.shipping_carrier) == ("NEW", "FedEx")
    assert list_status_history(db_session, order.id) == []


def test_update_tracking_requires_existing_tracking(db_session, make_order):
    order = make_order(status=OrderStatus.SHIPPED)

    with pytest.raises(HTTPException) as exc_info:
        update_shipping_tracking(
            db_session,
            order.id,
            tracking_number="NEW",
            shipping_carrier="FedEx",
            estimated_delivery=None,
            actor_id="a",
        )
    assert exc_info.value.status_code == 400


def test_update_tracking_rejected_after_delivery(db_session, make_order):
    order = make_order(status=OrderStatus.DELIVERED, tracking_number="OLD", shipping_carrier="UPS")

    with pytest.raises(HTTPException) as exc_info:
        update_shipping_tracking(
            db_session,
            order.id,
            tracking_number="NEW",
            shipping_carrier="FedEx",
            estimated_delivery=None,
            actor_id="a",
        )
    assert exc_info.value.status_code == 400
