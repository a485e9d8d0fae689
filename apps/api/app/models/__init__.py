# Import SQLAlchemy models so they register on Base.metadata
from app.models.customer import Customer  # noqa: F401
from app.models.idempotency_record import IdempotencyRecord  # noqa: F401
from app.models.order import Order, OrderItem, OrderStatus, RefundReason  # noqa: F401
from app.models.order_status_change import OrderStatusChange  # noqa: F401
from app.models.product import Product  # noqa: F401
from app.models.refund_reconciliation import (  # noqa: F401
    ReconciliationStatus,
    RefundReconciliation,
)
