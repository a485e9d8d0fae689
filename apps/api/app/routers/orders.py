import math
import uuid
from collections.abc import Callable
from datetime import date, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import get_db, get_session_factory
from app.dependencies import (
    get_actor_id,
    get_order_effects,
    get_payment_processor,
    rate_limit_exports,
    rate_limit_refunds,
)
from app.integrations.errors import IntegrationError
from app.integrations.payment_client import PaymentProcessorProtocol
from app.models.order import OrderStatus
from app.routers.rate_limit_headers import RATE_LIMITED_RESPONSE
from app.schemas.order import (
    BulkStatusRequest,
    BulkStatusResponse,
    NextStatusesResponse,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    PaginationMeta,
    StatusChangeResponse,
    StatusHistoryResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TrackingRequest,
)
from app.schemas.refund import RefundDetail, RefundRequest, RefundResponse
from app.services.bulk_update_service import bulk_update_status
from app.services.export_service import export_to_csv_string, stream_orders_csv_with_session
from app.services.idempotency_service import (
    build_scope,
    check_idempotency,
    save_idempotency_result,
    validate_idempotency_key,
)
from app.services.order_effects import OrderEffects
from app.services.orders_service import (
    OrderFilters,
    OrderLine,
    SortField,
    SortOrder,
    add_shipping_tracking,
    create_order,
    get_order,
    list_orders,
    list_status_history,
    update_order_status,
    update_shipping_tracking,
)
from app.services.refund_service import RefundCoordinator
from app.services.state_machine import requires_confirmation, valid_next_statuses

router = APIRouter(prefix="/api/v1/admin/orders", tags=["orders"])


def _translate_integration_error(err: IntegrationError) -> HTTPException:
    return HTTPException(status_code=err.http_status, detail=err.as_detail())


def _filters(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
) -> OrderFilters:
    return OrderFilters(
        status=status_filter, start_date=start_date, end_date=end_date, search=search
    )


@router.get("", response_model=OrderListResponse, summary="List orders")
def list_orders_endpoint(
    filters: OrderFilters = Depends(_filters),
    sort_by: SortField = Query(default="created_at"),
    sort_order: SortOrder = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> OrderListResponse:
    items, total = list_orders(
        db, filters, sort_by=sort_by, sort_order=sort_order, page=page, limit=limit
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in items],
        pagination=PaginationMeta(
            page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
        ),
    )


@router.post(
    "",
    response_model=OrderResponse,
    summary="Create order",
    status_code=status.HTTP_201_CREATED,
)
def create_order_endpoint(
    payload: OrderCreateRequest,
    db: Session = Depends(get_db),
    effects: OrderEffects = Depends(get_order_effects),
) -> OrderResponse:
    order = create_order(
        db,
        customer_id=payload.customer_id,
        lines=[OrderLine(product_id=line.product_id, quantity=line.quantity) for line in payload.items],
        shipping=payload.shipping,
        tax=payload.tax,
        payment_reference=payload.payment_reference,
    )
    effects.orders_changed()
    return OrderResponse.model_validate(order)


@router.get(
    "/export",
    summary="Stream matching orders as CSV",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/csv": {}}}, **RATE_LIMITED_RESPONSE},
    dependencies=[Depends(rate_limit_exports)],
)
def export_orders_endpoint(
    filters: OrderFilters = Depends(_filters),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> StreamingResponse:
    filename = f"orders-export-{date.today().isoformat()}.csv"
    return StreamingResponse(
        stream_orders_csv_with_session(
            session_factory, filters, batch_size=settings.export_batch_size
        ),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/export/inline",
    summary="Export a small set of matching orders as one CSV document",
    response_class=Response,
    responses={200: {"content": {"text/csv": {}}}, **RATE_LIMITED_RESPONSE},
    dependencies=[Depends(rate_limit_exports)],
)
def export_orders_inline_endpoint(
    filters: OrderFilters = Depends(_filters),
    db: Session = Depends(get_db),
) -> Response:
    content = export_to_csv_string(db, filters, max_rows=settings.export_string_max_rows)
    filename = f"orders-export-{date.today().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/bulk-status", response_model=BulkStatusResponse, summary="Bulk status update")
def bulk_status_endpoint(
    payload: BulkStatusRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    effects: OrderEffects = Depends(get_order_effects),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> BulkStatusResponse:
    idempotency_key = validate_idempotency_key(idempotency_key)
    request_payload = payload.model_dump(mode="json")
    route_scope = build_scope("POST:/api/v1/admin/orders/bulk-status")

    if idempotency_key:
        idem = check_idempotency(
            db=db,
            actor_id=actor_id,
            route=route_scope,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if idem.replay and idem.response_payload:
            return BulkStatusResponse.model_validate(idem.response_payload)

    result = bulk_update_status(
        db, payload.order_ids, payload.status, actor_id=actor_id, effects=effects
    )
    response_payload = BulkStatusResponse(
        updated_count=result.updated_count,
        orders=[OrderResponse.model_validate(order) for order in result.orders],
        warnings=result.warnings,
    ).model_dump(mode="json")

    if idempotency_key:
        save_idempotency_result(
            db=db,
            actor_id=actor_id,
            route=route_scope,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response_payload,
        )

    return BulkStatusResponse.model_validate(response_payload)


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order detail")
def get_order_endpoint(order_id: uuid.UUID, db: Session = Depends(get_db)) -> OrderResponse:
    return OrderResponse.model_validate(get_order(db, order_id))


@router.get(
    "/{order_id}/history", response_model=StatusHistoryResponse, summary="Status change history"
)
def history_endpoint(order_id: uuid.UUID, db: Session = Depends(get_db)) -> StatusHistoryResponse:
    return StatusHistoryResponse(
        items=[StatusChangeResponse.model_validate(row) for row in list_status_history(db, order_id)]
    )


@router.get(
    "/{order_id}/next-statuses",
    response_model=NextStatusesResponse,
    summary="Statuses reachable from the current one",
)
def next_statuses_endpoint(
    order_id: uuid.UUID, db: Session = Depends(get_db)
) -> NextStatusesResponse:
    order = get_order(db, order_id)
    candidates = valid_next_statuses(order.status)
    return NextStatusesResponse(
        current_status=order.status,
        next_statuses=candidates,
        requires_confirmation=[
            candidate for candidate in candidates if requires_confirmation(order.status, candidate)
        ],
    )


@router.patch("/{order_id}/status", response_model=StatusUpdateResponse, summary="Update status")
def update_status_endpoint(
    order_id: uuid.UUID,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    effects: OrderEffects = Depends(get_order_effects),
) -> StatusUpdateResponse:
    result = update_order_status(
        db, order_id, payload.status, actor_id=actor_id, effects=effects, notes=payload.notes
    )
    return StatusUpdateResponse(
        order=OrderResponse.model_validate(result.order), warning=result.warning
    )


@router.post("/{order_id}/tracking", response_model=OrderResponse, summary="Add tracking")
def add_tracking_endpoint(
    order_id: uuid.UUID,
    payload: TrackingRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    effects: OrderEffects = Depends(get_order_effects),
) -> OrderResponse:
    order = add_shipping_tracking(
        db,
        order_id,
        tracking_number=payload.tracking_number,
        shipping_carrier=payload.shipping_carrier,
        estimated_delivery=payload.estimated_delivery,
        actor_id=actor_id,
        effects=effects,
    )
    return OrderResponse.model_validate(order)


@router.put("/{order_id}/tracking", response_model=OrderResponse, summary="Amend tracking")
def update_tracking_endpoint(
    order_id: uuid.UUID,
    payload: TrackingRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
) -> OrderResponse:
    order = update_shipping_tracking(
        db,
        order_id,
        tracking_number=payload.tracking_number,
        shipping_carrier=payload.shipping_carrier,
        estimated_delivery=payload.estimated_delivery,
        actor_id=actor_id,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/refunds",
    response_model=RefundResponse,
    summary="Refund an order",
    responses=RATE_LIMITED_RESPONSE,
    dependencies=[Depends(rate_limit_refunds)],
)
def refund_endpoint(
    order_id: uuid.UUID,
    payload: RefundRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    effects: OrderEffects = Depends(get_order_effects),
    payment_client: PaymentProcessorProtocol = Depends(get_payment_processor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> RefundResponse:
    idempotency_key = validate_idempotency_key(idempotency_key)
    request_payload = payload.model_dump(mode="json")
    route_scope = build_scope("POST:/api/v1/admin/orders/{order_id}/refunds", order_id=str(order_id))

    if idempotency_key:
        idem = check_idempotency(
            db=db,
            actor_id=actor_id,
            route=route_scope,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
        )
        if idem.replay and idem.response_payload:
            return RefundResponse.model_validate(idem.response_payload)

    coordinator = RefundCoordinator(db, payment_client, effects)
    try:
        outcome = coordinator.process_refund(
            order_id,
            amount=payload.amount,
            reason=payload.reason,
            actor_id=actor_id,
            notes=payload.notes,
            attempt_id=idempotency_key,
        )
    except IntegrationError as err:
        raise _translate_integration_error(err) from err

    response_payload = RefundResponse(
        order=OrderResponse.model_validate(outcome.order),
        refund=RefundDetail(
            id=outcome.refund.id,
            amount=outcome.refund.amount,
            status=outcome.refund.status,
            reason=outcome.refund.reason,
        ),
    ).model_dump(mode="json")

    if idempotency_key:
        save_idempotency_result(
            db=db,
            actor_id=actor_id,
            route=route_scope,
            idempotency_key=idempotency_key,
            request_payload=request_payload,
            response_payload=response_payload,
        )

    return RefundResponse.model_validate(response_payload)
