"""FastAPI Application Entry Point"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from lab_platform.api.exception_handlers import register_exception_handlers
from lab_platform.api.v1 import containers, health, quotas
from lab_platform.core.config import settings
from lab_platform.core.database import (
    init_db, close_db, get_session_factory,
    init_mongodb, close_mongodb, get_mongodb,
    init_redis, close_redis, get_redis
)
from lab_platform.core.logging_config import get_logger
from lab_platform.services.event_sink import create_event_sink
from lab_platform.services.platform import LabPlatform, build_platform
from lab_platform.services.reservation_lock import RedisLockBackend

logger = get_logger(__name__)


async def startup_platform() -> LabPlatform:
    """Open connections and build the service graph from settings"""
    await init_db()
    await init_mongodb()

    lock_backend = None
    if settings.LOCK_BACKEND == "redis":
        await init_redis()
        lock_backend = RedisLockBackend(get_redis(), ttl_seconds=settings.LOCK_TTL_SECONDS)

    return build_platform(
        get_session_factory(),
        event_sink=create_event_sink(get_mongodb(), settings.MONGODB_EVENTS_COLLECTION),
        lock_backend=lock_backend
    )


async def shutdown_platform() -> None:
    await close_db()
    await close_mongodb()
    await close_redis()


def create_app(platform: Optional[LabPlatform] = None, run_workers: bool = True) -> FastAPI:
    """
    Build the API application.

    Args:
        platform: Prebuilt service graph; when None one is built from settings at startup
        run_workers: Run the queue worker pool inside the API process
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown events"""
        owns_resources = app.state.platform is None
        if owns_resources:
            app.state.platform = await startup_platform()
        if run_workers:
            await app.state.platform.workers.start()
        logger.info("lab_platform_started", environment=settings.ENVIRONMENT, workers=run_workers)
        yield
        if run_workers:
            await app.state.platform.workers.stop()
        if owns_resources:
            await shutdown_platform()
            app.state.platform = None
        logger.info("lab_platform_stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan
    )
    app.state.platform = platform

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(containers.router, prefix="/api/v1")
    app.include_router(quotas.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {"message": settings.APP_NAME, "version": settings.APP_VERSION}

    return app


app = create_app()
