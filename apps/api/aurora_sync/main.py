from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from .config import settings
from .core.exceptions import AuroraSyncError, aurora_sync_error_handler
from .core.logging import configure_structlog, get_logger
from .db import check_db, close_redis_client, create_redis_client
from .middleware.correlation_middleware import CorrelationMiddleware
from .routers import admin_dlq as admin_dlq_router
from .routers import analytics as analytics_router
from .routers import billing_webhooks as billing_webhooks_router
from .routers import events as events_router
from .routers import subscriptions as subscriptions_router
from .routers import terminals as terminals_router

configure_structlog()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_startup", env=settings.env, push_channel=settings.push_channel_backend)

    try:
        app.state.redis = await create_redis_client()
    except (RedisError, OSError) as e:
        logger.error("redis_startup_failed", error_type=type(e).__name__, exc_info=True)
        # Terminal streams are unavailable until restart; every other endpoint works
        app.state.redis = None

    yield

    logger.info("application_shutdown")
    await close_redis_client(getattr(app.state, "redis", None))


app = FastAPI(
    title="Aurora License Sync API",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(CorrelationMiddleware)
app.add_exception_handler(AuroraSyncError, aurora_sync_error_handler)

app.include_router(billing_webhooks_router.router)
app.include_router(terminals_router.router)
app.include_router(events_router.router)
app.include_router(subscriptions_router.router)
app.include_router(admin_dlq_router.router)
app.include_router(analytics_router.router)


@app.get("/healthz", tags=["health"])
def healthz() -> dict:
    return {"status": "ok", "database": "ok" if check_db() else "unavailable"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
