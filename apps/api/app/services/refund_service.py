import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.integrations.errors import IntegrationError
from app.integrations.payment_client import PaymentProcessorProtocol
from app.models.order import Order, OrderStatus, RefundReason
from app.models.refund_reconciliation import ReconciliationStatus, RefundReconciliation
from app.observability import log_event, metrics_store
from app.services.order_effects import OrderEffects
from app.services.orders_service import commit_or_conflict, get_order, record_status_change

REFUNDABLE_STATUSES = (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


@dataclass
class RefundSummary:
    id: str
    amount: int
    status: str
    reason: RefundReason


@dataclass
class RefundOutcome:
    order: Order
    refund: RefundSummary


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def calculate_refund_amount(total: int, already_refunded: int | None, requested: int) -> int:
    """Resolve a requested amount: 0 or anything above the balance means "refund the rest"."""
    if requested < 0:
        raise _bad_request("Refund amount must not be negative")
    remaining = total - (already_refunded or 0)
    if requested == 0 or requested > remaining:
        return remaining
    return requested


def validate_refundable(order: Order) -> None:
    if not order.payment_reference:
        raise _bad_request("Order has no payment record. Cannot process refund.")
    if order.status not in REFUNDABLE_STATUSES:
        raise _bad_request(
            f"Cannot refund order with status {order.status.value}. "
            "Order must be PROCESSING, SHIPPED, or DELIVERED."
        )
    if order.refundable_balance <= 0:
        raise _bad_request("Order has already been fully refunded.")


def ensure_within_total(order: Order, amount: int) -> None:
    if amount <= 0 or amount > order.refundable_balance:
        raise _bad_request(
            f"Refund amount {amount} + existing refunds {order.refunded_so_far} "
            f"would exceed order total {order.total}"
        )


def build_refund_idempotency_key(order_id: uuid.UUID, amount: int, attempt_id: str) -> str:
    return f"refund:{order_id}:{amount}:{attempt_id}"


def apply_refund_to_order(
    db: Session,
    order: Order,
    amount: int,
    reason: RefundReason,
    actor_id: str,
    notes: str | None = None,
) -> None:
    """Record a processor-confirmed refund on the order; cancels it once fully refunded."""
    order.refund_amount = order.refunded_so_far + amount
    order.refund_reason = reason
    order.refunded_at = datetime.now(timezone.utc)
    if order.refund_amount >= order.total and order.status != OrderStatus.CANCELLED:
        previous = order.status
        order.status = OrderStatus.CANCELLED
        note = "Fully refunded"
        if notes:
            note = f"{note}: {notes}"
        record_status_change(db, order, previous, actor_id, note)


class RefundCoordinator:
    """Return money through the payment processor, then mirror it on the order.

    The processor is always called first. A ``RefundReconciliation`` row is
    committed as soon as the processor confirms, so a failed local write can be
    repaired later by :func:`reconcile_pending_refunds`.
    """

    def __init__(
        self,
        db: Session,
        payment_client: PaymentProcessorProtocol,
        effects: OrderEffects,
    ) -> None:
        self.db = db
        self.payment_client = payment_client
        self.effects = effects

    def process_refund(
        self,
        order_id: uuid.UUID,
        *,
        amount: int,
        reason: RefundReason,
        actor_id: str,
        notes: str | None = None,
        attempt_id: str | None = None,
    ) -> RefundOutcome:
        db = self.db
        order = get_order(db, order_id)
        validate_refundable(order)

        refund_amount = calculate_refund_amount(order.total, order.refund_amount, amount)
        ensure_within_total(order, refund_amount)

        attempt_id = attempt_id or str(uuid.uuid4())
        idempotency_key = build_refund_idempotency_key(order.id, refund_amount, attempt_id)
        reconciliation = db.scalar(
            select(RefundReconciliation).where(
                RefundReconciliation.idempotency_key == idempotency_key
            )
        )
        if reconciliation is not None and reconciliation.status != ReconciliationStatus.PENDING:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Refund attempt {attempt_id} was already processed",
            )
        expected_version = order.version

        try:
            processor_refund = self.payment_client.create_refund(
                payment_reference=order.payment_reference,
                amount=refund_amount,
                idempotency_key=idempotency_key,
                reason=reason.value,
            )
        except IntegrationError as err:
            metrics_store.increment("refund_failed_total")
            log_event(
                "refund_processor_failed",
                level=logging.WARNING,
                order_id=str(order.id),
                actor_id=actor_id,
                detail={"code": err.code, "message": err.message},
            )
            raise

        if reconciliation is None:
            reconciliation = RefundReconciliation(
                order_id=order.id,
                processor_refund_id=processor_refund.id,
                idempotency_key=idempotency_key,
                amount=refund_amount,
                reason=reason,
                actor_id=actor_id,
            )
            db.add(reconciliation)
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            metrics_store.increment("refund_unrecorded_total")
            log_event(
                "refund_reconciliation_write_failed",
                level=logging.CRITICAL,
                order_id=str(order_id),
                actor_id=actor_id,
                refund_id=processor_refund.id,
                detail={"amount": refund_amount},
                exc_info=True,
            )
            raise

        db.refresh(order)
        if order.version != expected_version:
            self._leave_pending(reconciliation, "order changed while the refund was in flight")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Order was modified while the refund was processed; "
                "the refund is queued for reconciliation",
            )

        apply_refund_to_order(db, order, refund_amount, reason, actor_id, notes)
        reconciliation.status = ReconciliationStatus.APPLIED
        reconciliation.resolved_at = datetime.now(timezone.utc)
        try:
            commit_or_conflict(db)
        except HTTPException:
            self._leave_pending(reconciliation, "concurrent order update during refund write")
            raise
        except SQLAlchemyError:
            db.rollback()
            self._leave_pending(reconciliation, "local write failed after processor success")
            raise
        db.refresh(order)

        metrics_store.increment("refund_processed_total")
        self.effects.refund_processed(order, refund_amount, processor_refund.id)
        self.effects.orders_changed()
        log_event(
            "refund_processed",
            order_id=str(order.id),
            actor_id=actor_id,
            refund_id=processor_refund.id,
            detail={"amount": refund_amount, "reason": reason.value, "notes": notes},
        )
        return RefundOutcome(
            order=order,
            refund=RefundSummary(
                id=processor_refund.id,
                amount=refund_amount,
                status=processor_refund.status,
                reason=reason,
            ),
        )

    def _leave_pending(self, reconciliation: RefundReconciliation, why: str) -> None:
        metrics_store.increment("refund_pending_reconciliation_total")
        log_event(
            "refund_pending_reconciliation",
            level=logging.ERROR,
            order_id=str(reconciliation.order_id),
            actor_id=reconciliation.actor_id,
            refund_id=reconciliation.processor_refund_id,
            detail={"reconciliation_id": str(reconciliation.id), "reason": why},
        )


@dataclass
class ReconcileResult:
    applied: int = 0
    needs_review: int = 0
    skipped: int = 0


def reconcile_pending_refunds(
    db: Session,
    *,
    older_than_s: int,
    limit: int = 100,
    effects: OrderEffects | None = None,
) -> ReconcileResult:
    """Apply processor-confirmed refunds whose local order write never landed.

    Each record is resolved in the same transaction as its order update, so a
    refund is applied at most once.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_s)
    pending = list(
        db.scalars(
            select(RefundReconciliation)
            .where(
                RefundReconciliation.status == ReconciliationStatus.PENDING,
                RefundReconciliation.created_at <= cutoff,
            )
            .order_by(RefundReconciliation.created_at.asc())
            .limit(limit)
        )
    )

    result = ReconcileResult()
    for record in pending:
        order = db.get(Order, record.order_id)
        if order is None:
            result.skipped += 1
            continue

        if order.refunded_so_far + record.amount > order.total:
            record.status = ReconciliationStatus.NEEDS_REVIEW
            record.detail = (
                f"Applying {record.amount} to {order.refunded_so_far} exceeds total {order.total}"
            )
            record.resolved_at = datetime.now(timezone.utc)
            db.commit()
            result.needs_review += 1
            log_event(
                "refund_reconciliation_needs_review",
                level=logging.ERROR,
                order_id=str(order.id),
                refund_id=record.processor_refund_id,
                detail={"amount": record.amount},
            )
            continue

        apply_refund_to_order(db, order, record.amount, record.reason, record.actor_id)
        record.status = ReconciliationStatus.APPLIED
        record.resolved_at = datetime.now(timezone.utc)
        try:
            commit_or_conflict(db)
        except HTTPException:
            result.skipped += 1
            continue
        result.applied += 1
        log_event(
            "refund_reconciled",
            order_id=str(order.id),
            refund_id=record.processor_refund_id,
            detail={"amount": record.amount},
        )
        if effects is not None:
            db.refresh(order)
            effects.refund_processed(order, record.amount, record.processor_refund_id)

    if result.applied and effects is not None:
        effects.orders_changed()
    return result
