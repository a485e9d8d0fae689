import logging

from fastapi import BackgroundTasks, Depends, Header, HTTPException, Request, Response, status

from app.config import settings
from app.integrations.errors import CacheStoreError
from app.integrations.notification_client import NotifierProtocol, get_notifier
from app.integrations.payment_client import PaymentProcessorProtocol, get_payment_client
from app.observability import log_event, metrics_store
from app.routers.rate_limit_headers import apply_rate_limit_headers, rate_limit_header_values
from app.services.cache import AnalyticsCache, get_analytics_cache
from app.services.order_effects import OrderEffects
from app.services.orders_service import SYSTEM_ACTOR
from app.services.rate_limiter import RateLimiter, RateLimitResult
from app.services.task_queue import BackgroundTaskQueue, ImmediateTaskQueue, TaskQueue

ACTOR_ID_MAX_LENGTH = 128


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """Identity of the admin performing the action, recorded in history and logs."""
    if x_actor_id is None or not x_actor_id.strip():
        return SYSTEM_ACTOR
    actor_id = x_actor_id.strip()
    if len(actor_id) > ACTOR_ID_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Actor-Id exceeds max length {ACTOR_ID_MAX_LENGTH}",
        )
    return actor_id


def get_task_queue(background_tasks: BackgroundTasks) -> TaskQueue:
    return BackgroundTaskQueue(background_tasks)


def get_cache() -> AnalyticsCache:
    return get_analytics_cache()


def get_order_effects(
    tasks: TaskQueue = Depends(get_task_queue),
    notifier: NotifierProtocol = Depends(get_notifier),
    cache: AnalyticsCache = Depends(get_cache),
) -> OrderEffects:
    return OrderEffects(notifier=notifier, cache=cache, tasks=tasks)


def get_inline_order_effects(
    notifier: NotifierProtocol = Depends(get_notifier),
    cache: AnalyticsCache = Depends(get_cache),
) -> OrderEffects:
    """Effects that finish before the response, for batch callers such as the reconciler."""
    return OrderEffects(notifier=notifier, cache=cache, tasks=ImmediateTaskQueue())


def get_payment_processor() -> PaymentProcessorProtocol:
    return get_payment_client()


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def enforce_rate_limit(
    limiter: RateLimiter,
    response: Response,
    key: str,
    *,
    max_requests: int,
    window_s: int,
) -> RateLimitResult | None:
    try:
        result = limiter.check(key, max_requests=max_requests, window_s=window_s)
    except (CacheStoreError, OSError) as err:
        # Shared limiter unreachable: admit the request.
        metrics_store.increment("rate_limit_backend_errors_total")
        log_event(
            "rate_limit_backend_failed",
            level=logging.WARNING,
            detail={"key": key, "error": str(err)},
        )
        return None

    if not result.allowed:
        metrics_store.increment("rate_limited_total")
        log_event("rate_limited", level=logging.WARNING, detail={"key": key})
        headers = rate_limit_header_values(
            limit=max_requests, remaining=0, reset_at_s=result.reset_at_s
        )
        headers["Retry-After"] = str(result.reset_after_s)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers=headers,
        )

    apply_rate_limit_headers(
        response, limit=max_requests, remaining=result.remaining, reset_at_s=result.reset_at_s
    )
    return result


def rate_limit_refunds(
    response: Response,
    actor_id: str = Depends(get_actor_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    enforce_rate_limit(
        limiter,
        response,
        f"refund:{actor_id}",
        max_requests=settings.refund_rate_limit_requests,
        window_s=settings.refund_rate_limit_window_s,
    )


def rate_limit_exports(
    response: Response,
    actor_id: str = Depends(get_actor_id),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    enforce_rate_limit(
        limiter,
        response,
        f"export:{actor_id}",
        max_requests=settings.export_rate_limit_requests,
        window_s=settings.export_rate_limit_window_s,
    )
