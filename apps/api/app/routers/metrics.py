from fastapi import APIRouter, Depends

from app.dependencies import get_rate_limiter
from app.observability import metrics_store
from app.schemas.metrics import MetricsResponse
from app.services.rate_limiter import InMemoryRateLimiter, RateLimiter

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("", summary="Observability metrics", response_model=MetricsResponse)
def metrics_endpoint(limiter: RateLimiter = Depends(get_rate_limiter)) -> MetricsResponse:
    """Counters and timings; served behind the internal gateway only."""
    snapshot = metrics_store.snapshot()
    buckets = limiter.bucket_count() if isinstance(limiter, InMemoryRateLimiter) else None
    return MetricsResponse(
        counters=snapshot.counters,
        timings=snapshot.timings,
        rate_limit_buckets=buckets,
    )
