import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.order import OrderStatus, RefundReason


class CustomerSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str | None
    email: str


class ProductSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    sku: str | None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    quantity: int
    unit_price: int
    product: ProductSummary


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    status: OrderStatus
    customer: CustomerSummary
    items: list[OrderItemResponse]
    subtotal: int
    tax: int
    shipping: int
    total: int
    payment_reference: str | None
    refund_amount: int | None
    refund_reason: RefundReason | None
    refunded_at: datetime | None
    tracking_number: str | None
    shipping_carrier: str | None
    estimated_delivery: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    pagination: PaginationMeta


class OrderLineRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(gt=0)


class OrderCreateRequest(BaseModel):
    customer_id: uuid.UUID
    items: list[OrderLineRequest] = Field(min_length=1)
    shipping: int = Field(default=0, ge=0)
    tax: int = Field(default=0, ge=0)
    payment_reference: str | None = Field(default=None, max_length=255)


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=2000)


class StatusUpdateResponse(BaseModel):
    order: OrderResponse
    warning: str | None = None


class NextStatusesResponse(BaseModel):
    current_status: OrderStatus
    next_statuses: list[OrderStatus]
    requires_confirmation: list[OrderStatus]


class StatusChangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    previous_status: OrderStatus | None
    new_status: OrderStatus
    changed_by: str
    notes: str | None
    created_at: datetime


class StatusHistoryResponse(BaseModel):
    items: list[StatusChangeResponse]


class TrackingRequest(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=100)
    shipping_carrier: str = Field(min_length=1, max_length=100)
    estimated_delivery: datetime | None = None

    @field_validator("tracking_number", "shipping_carrier")
    @classmethod
    def strip_strings(cls, value: str) -> str:
        return value.strip()


class BulkStatusRequest(BaseModel):
    order_ids: list[uuid.UUID] = Field(max_length=500)
    status: OrderStatus


class BulkStatusResponse(BaseModel):
    updated_count: int
    orders: list[OrderResponse]
    warnings: list[str]
