"""
Webhook Hub - Main FastAPI Application
"""
from fastapi import Depends, FastAPI

from webhook_hub.core.config import settings
from webhook_hub.core.logging import setup_logging, get_logger
from webhook_hub.core.middleware import setup_middleware, setup_exception_handlers
from webhook_hub.api.webhooks.incoming import router as incoming_router
from webhook_hub.db.database import engine, Base
from webhook_hub.db import models  # noqa: F401  registers tables on Base
from webhook_hub.runtime import Runtime, configure_runtime, get_runtime

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
    description="Webhook ingestion and dispatch: verification, deduplication, actions and outgoing delivery.",
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(incoming_router, prefix="/webhooks")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and the runtime on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")
    configure_runtime()


@app.get("/health", tags=["Health"])
async def health(runtime: Runtime = Depends(get_runtime)) -> dict:
    return {
        "status": "ok",
        "providers": sorted(runtime.providers),
        "circuits": runtime.circuit_breaker.all_states(),
    }
