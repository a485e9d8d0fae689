import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from app.config import allowed_origins, ensure_secure_runtime_settings, settings
from app.db.base import Base
from app.db.session import engine
from app.observability import configure_logging, log_event, metrics_store, set_request_id
from app.routers.analytics import router as analytics_router
from app.routers.health import router as health_router
from app.routers.metrics import router as metrics_router
from app.routers.orders import router as orders_router
from app.routers.refunds import router as refunds_router
from app.services.rate_limiter import build_rate_limiter


@asynccontextmanager
async def lifespan(app_: FastAPI):
    import app.models  # noqa: F401 (register all SQLAlchemy models)

    if not settings.testing:
        configure_logging()
    ensure_secure_runtime_settings()
    Base.metadata.create_all(bind=engine)
    app_.state.rate_limiter = build_rate_limiter()
    log_event("service_started", detail={"rate_limit_backend": settings.rate_limit_backend})
    yield


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Order lifecycle, refund, export and analytics endpoints for storefront admins",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    set_request_id(request_id)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    metrics_store.increment("http_requests_total")
    metrics_store.observe("http_request_duration_seconds", elapsed)
    log_event(
        "http_request",
        order_id=request.path_params.get("order_id"),
        detail={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
        },
    )
    return response


app.include_router(health_router)
app.include_router(orders_router)
app.include_router(analytics_router)
app.include_router(refunds_router)
app.include_router(metrics_router)
