from pydantic import BaseModel


class StatusBreakdownItem(BaseModel):
    status: str
    count: int
    percentage: float


class RevenuePeriod(BaseModel):
    date: str
    revenue: int
    order_count: int


class TopCustomer(BaseModel):
    customer_id: str
    name: str | None
    email: str
    total_spent: int
    order_count: int


class OrderStatisticsResponse(BaseModel):
    total_orders: int
    total_revenue: int
    average_order_value: int
    status_breakdown: list[StatusBreakdownItem]
    revenue_by_period: list[RevenuePeriod]
    top_customers: list[TopCustomer]


class DashboardMetricsResponse(BaseModel):
    orders_by_status: dict[str, int]
    gross_revenue: int
    refunded_total: int
    net_revenue: int
    open_orders: int


class CacheStatsResponse(BaseModel):
    enabled: bool
    connected: bool
    cache_working: bool | None = None
    latency_ms: int | None = None
    message: str


class CacheClearResponse(BaseModel):
    cleared: bool
    # Unknown when the whole store was flushed.
    deleted_keys: int | None = None
