import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.order import RefundReason, refund_reason_enum, utcnow


class ReconciliationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPLIED = "APPLIED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class RefundReconciliation(Base):
    """A refund the payment processor confirmed, tracked until the order reflects it."""

    __tablename__ = "refund_reconciliations"
    __table_args__ = (Index("ix_refund_reconciliations_status_created", "status", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    processor_refund_id: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[RefundReason] = mapped_column(refund_reason_enum, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus, name="refund_reconciliation_status"),
        nullable=False,
        default=ReconciliationStatus.PENDING,
    )
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
