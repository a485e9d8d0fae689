import logging
from collections.abc import Callable
from typing import Literal

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import cache_configured, settings
from app.db.session import SessionLocal
from app.integrations.errors import CacheStoreError
from app.integrations.redis_client import RedisClient
from app.observability import log_event, metrics_store
from app.schemas.health import HealthResponse, ReadinessDependency, ReadinessResponse

ReadinessStatus = Literal["ok", "error"]

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health check", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    summary="Readiness check",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
def readiness(response: Response) -> ReadinessResponse:
    """Database must answer. Redis is checked when it backs the rate limiter or the cache."""
    dependencies: list[ReadinessDependency] = []

    database_status = _safe_dependency_status(
        "database", lambda: _database_dependency_status(SessionLocal)
    )
    dependencies.append(ReadinessDependency(name="database", status=database_status))

    if settings.rate_limit_backend == "redis" or cache_configured():
        redis_status = _safe_dependency_status(
            "redis",
            lambda: _redis_dependency_status(settings.redis_url),
        )
        dependencies.append(ReadinessDependency(name="redis", status=redis_status))

    readiness_status = "ok" if all(dep.status == "ok" for dep in dependencies) else "degraded"
    if readiness_status != "ok":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status=readiness_status, dependencies=dependencies)


def _safe_dependency_status(
    dependency_name: str,
    checker: Callable[[], ReadinessStatus],
) -> ReadinessStatus:
    metrics_store.increment("readiness_dependency_checked_total")
    try:
        result = checker()
    except Exception as exc:  # readiness reports any probe failure as degraded
        log_event(
            "readiness_dependency_check_failed",
            level=logging.WARNING,
            detail={"dependency": dependency_name, "error": type(exc).__name__},
        )
        result = "error"
    if result != "ok":
        metrics_store.increment("readiness_dependency_error_total")
    return result


def _database_dependency_status(
    session_factory: Callable[[], Session],
) -> ReadinessStatus:
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "error"
    return "ok"


def _redis_dependency_status(redis_url: str) -> ReadinessStatus:
    try:
        client = RedisClient(redis_url)
    except ValueError:
        return "error"

    try:
        return "ok" if client.ping() else "error"
    except (CacheStoreError, OSError):
        return "error"
