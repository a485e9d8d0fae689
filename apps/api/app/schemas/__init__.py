from app.schemas.analytics import (
    CacheClearResponse,
    CacheStatsResponse,
    DashboardMetricsResponse,
    OrderStatisticsResponse,
)
from app.schemas.order import (
    BulkStatusRequest,
    BulkStatusResponse,
    NextStatusesResponse,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    StatusHistoryResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TrackingRequest,
)
from app.schemas.refund import ReconcileRequest, ReconcileResponse, RefundRequest, RefundResponse

__all__ = [
    "OrderCreateRequest",
    "OrderResponse",
    "OrderListResponse",
    "StatusUpdateRequest",
    "StatusUpdateResponse",
    "NextStatusesResponse",
    "StatusHistoryResponse",
    "TrackingRequest",
    "BulkStatusRequest",
    "BulkStatusResponse",
    "RefundRequest",
    "RefundResponse",
    "ReconcileRequest",
    "ReconcileResponse",
    "OrderStatisticsResponse",
    "DashboardMetricsResponse",
    "CacheStatsResponse",
    "CacheClearResponse",
]
