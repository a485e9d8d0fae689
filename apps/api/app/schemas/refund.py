from pydantic import BaseModel, Field

from app.models.order import RefundReason
from app.schemas.order import OrderResponse


class RefundRequest(BaseModel):
    # 0 refunds the remaining balance.
    amount: int = Field(default=0, ge=0)
    reason: RefundReason
    notes: str | None = Field(default=None, max_length=2000)


class RefundDetail(BaseModel):
    id: str
    amount: int
    status: str
    reason: RefundReason


class RefundResponse(BaseModel):
    order: OrderResponse
    refund: RefundDetail


class ReconcileRequest(BaseModel):
    older_than_s: int | None = Field(default=None, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


class ReconcileResponse(BaseModel):
    applied: int
    needs_review: int
    skipped: int
