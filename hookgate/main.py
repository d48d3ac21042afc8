"""
Hookgate - Main FastAPI Application
"""
from fastapi import FastAPI

from hookgate.core.config import settings
from hookgate.core.logging import get_logger, setup_logging
from hookgate.core.middleware import setup_exception_handlers, setup_middleware
from hookgate.api.webhooks.incoming import router as incoming_router
from hookgate.db.database import AsyncSessionLocal, Base, engine

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Webhook gateway: verified intake, handler dispatch, outbound delivery.",
    openapi_tags=[
        {"name": "Webhooks", "description": "Inbound webhook intake."},
        {"name": "Health", "description": "Liveness probe."},
    ],
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(incoming_router)


@app.on_event("startup")
async def startup() -> None:
    """Create tables, load handler modules and build the service container"""
    from hookgate.container import build_container
    from hookgate.core.redis_client import get_redis
    from hookgate.domain.services.handler_registry import registry
    from hookgate.workers.tasks import CeleryTaskQueue

    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    registry.load_modules(settings.handler_modules)

    redis = await get_redis() if settings.SHARED_STATE_BACKEND == "redis" else None
    app.state.container = build_container(
        AsyncSessionLocal,
        task_queue=CeleryTaskQueue(),
        redis=redis,
    )
    logger.info(
        "Service container ready",
        extra_data={
            "shared_state_backend": settings.SHARED_STATE_BACKEND,
            "handlers": registry.keys(),
        }
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    from hookgate.core.redis_client import close_redis

    logger.info("Shutting down application")
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="Process is up and responding. Does not check DB or Redis.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
