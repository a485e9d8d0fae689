from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.config import settings
from app.db.session import get_db
from app.dependencies import get_actor_id, get_cache
from app.observability import log_event
from app.schemas.analytics import (
    CacheClearResponse,
    CacheStatsResponse,
    DashboardMetricsResponse,
    OrderStatisticsResponse,
)
from app.services.analytics_service import Period, get_dashboard_metrics, get_order_statistics
from app.services.cache import ADMIN_METRICS_KEY, ANALYTICS_KEY_PATTERN, AnalyticsCache

router = APIRouter(prefix="/api/v1/admin/analytics", tags=["analytics"])


@router.get("/orders", response_model=OrderStatisticsResponse, summary="Order statistics")
def order_statistics_endpoint(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    period: Period = Query(default="daily"),
    db: Session = Depends(get_db),
    cache: AnalyticsCache = Depends(get_cache),
) -> OrderStatisticsResponse:
    stats = get_order_statistics(
        db,
        cache,
        start_date=start_date,
        end_date=end_date,
        period=period,
        ttl_s=settings.analytics_cache_ttl_s,
    )
    return OrderStatisticsResponse.model_validate(stats)


@router.get("/dashboard", response_model=DashboardMetricsResponse, summary="Dashboard metrics")
def dashboard_endpoint(
    db: Session = Depends(get_db),
    cache: AnalyticsCache = Depends(get_cache),
) -> DashboardMetricsResponse:
    metrics = get_dashboard_metrics(db, cache, ttl_s=settings.analytics_cache_ttl_s)
    return DashboardMetricsResponse.model_validate(metrics)


@router.get("/cache", response_model=CacheStatsResponse, summary="Cache health")
def cache_stats_endpoint(cache: AnalyticsCache = Depends(get_cache)) -> CacheStatsResponse:
    return CacheStatsResponse.model_validate(cache.stats())


@router.delete("/cache", response_model=CacheClearResponse, summary="Drop cached analytics")
def cache_clear_endpoint(
    flush: bool = Query(default=False, description="Flush the whole cache database"),
    cache: AnalyticsCache = Depends(get_cache),
    actor_id: str = Depends(get_actor_id),
) -> CacheClearResponse:
    if flush:
        cleared = cache.clear_all()
        log_event("analytics_cache_flushed", actor_id=actor_id, detail={"cleared": cleared})
        return CacheClearResponse(cleared=cleared)

    deleted = int(cache.invalidate_key(ADMIN_METRICS_KEY))
    deleted += cache.invalidate_pattern(ANALYTICS_KEY_PATTERN)
    log_event("analytics_cache_cleared", actor_id=actor_id, detail={"deleted": deleted})
    return CacheClearResponse(cleared=cache.enabled, deleted_keys=deleted)
