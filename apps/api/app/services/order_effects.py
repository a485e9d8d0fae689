from dataclasses import dataclass

from app.integrations.notification_client import NotifierProtocol
from app.models.order import Order, OrderStatus
from app.services.cache import AnalyticsCache, invalidate_order_caches
from app.services.task_queue import TaskQueue


def format_cents(amount: int | None) -> str:
    return f"${(amount or 0) / 100:.2f}"


def status_change_message(
    order: Order, previous: OrderStatus, new_status: OrderStatus
) -> tuple[str, str] | None:
    number = order.order_number
    if new_status == OrderStatus.PROCESSING:
        subject = f"Your order {number} is being prepared"
        message = (
            "We're preparing your order for shipment. "
            "You'll receive a tracking number once it ships."
        )
    elif new_status == OrderStatus.SHIPPED:
        subject = f"Your order {number} has been shipped"
        if order.tracking_number:
            message = (
                f"Your package is on its way! Track it with "
                f"{order.shipping_carrier}: {order.tracking_number}"
            )
        else:
            message = "Your package is on its way! You'll receive tracking information soon."
    elif new_status == OrderStatus.DELIVERED:
        subject = f"Your order {number} has been delivered"
        message = "Your package has been delivered. Thank you for your order!"
    elif new_status == OrderStatus.CANCELLED:
        subject = f"Your order {number} has been cancelled"
        message = "Your order has been cancelled."
        if previous in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            message += " A refund will be processed if payment was made."
    else:
        return None

    body = f"{message}\n\nOrder Number: {number}\nOrder Total: {format_cents(order.total)}\n"
    return subject, body


def shipment_message(order: Order) -> tuple[str, str]:
    lines = [
        "Your package is on its way.",
        "",
        f"Order Number: {order.order_number}",
        f"Tracking Number: {order.tracking_number or 'Not available'}",
        f"Carrier: {order.shipping_carrier or 'Not specified'}",
    ]
    if order.estimated_delivery:
        lines.append(f"Estimated Delivery: {order.estimated_delivery.date().isoformat()}")
    return f"Your order {order.order_number} has been shipped", "\n".join(lines) + "\n"


def refund_message(order: Order, refund_amount: int, processor_refund_id: str) -> tuple[str, str]:
    refund_type = "Full Refund" if order.refunded_so_far >= order.total else "Partial Refund"
    body = (
        "A refund has been processed for your order.\n\n"
        f"Order Number: {order.order_number}\n"
        f"Refund Amount: {format_cents(refund_amount)}\n"
        f"Refund Type: {refund_type}\n\n"
        "The refund has been submitted to your payment provider and should appear "
        "on the original payment method within 5-10 business days.\n\n"
        f"Refund Reference: {processor_refund_id}\n"
    )
    return f"Refund processed for order {order.order_number}", body


@dataclass
class OrderEffects:
    """Post-commit side effects of order mutations, submitted to the outbound queue."""

    notifier: NotifierProtocol
    cache: AnalyticsCache
    tasks: TaskQueue

    def status_changed(self, order: Order, previous: OrderStatus) -> None:
        message = status_change_message(order, previous, order.status)
        if message is None:
            return
        subject, body = message
        self.tasks.submit(
            f"status_change_email:{order.id}",
            self.notifier.send,
            order.customer.email,
            subject,
            body,
        )

    def shipment_added(self, order: Order) -> None:
        subject, body = shipment_message(order)
        self.tasks.submit(
            f"shipment_email:{order.id}", self.notifier.send, order.customer.email, subject, body
        )

    def refund_processed(self, order: Order, refund_amount: int, processor_refund_id: str) -> None:
        subject, body = refund_message(order, refund_amount, processor_refund_id)
        self.tasks.submit(
            f"refund_email:{order.id}", self.notifier.send, order.customer.email, subject, body
        )

    def orders_changed(self) -> None:
        self.tasks.submit("analytics_cache_invalidation", invalidate_order_caches, self.cache)
