from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import get_db
from app.dependencies import get_actor_id, get_inline_order_effects
from app.observability import log_event
from app.schemas.refund import ReconcileRequest, ReconcileResponse
from app.services.order_effects import OrderEffects
from app.services.refund_service import reconcile_pending_refunds

router = APIRouter(prefix="/api/v1/admin/refunds", tags=["refunds"])


@router.post("/reconcile", response_model=ReconcileResponse, summary="Apply pending refunds")
def reconcile_endpoint(
    payload: ReconcileRequest | None = None,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    effects: OrderEffects = Depends(get_inline_order_effects),
) -> ReconcileResponse:
    """Apply processor-confirmed refunds that never reached their order."""
    payload = payload or ReconcileRequest()
    older_than_s = (
        payload.older_than_s
        if payload.older_than_s is not None
        else settings.refund_reconcile_grace_s
    )
    result = reconcile_pending_refunds(
        db, older_than_s=older_than_s, limit=payload.limit, effects=effects
    )
    log_event(
        "refund_reconcile_run",
        actor_id=actor_id,
        detail={
            "applied": result.applied,
            "needs_review": result.needs_review,
            "skipped": result.skipped,
        },
    )
    return ReconcileResponse(
        applied=result.applied, needs_review=result.needs_review, skipped=result.skipped
    )
