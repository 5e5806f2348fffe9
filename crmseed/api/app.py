from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from crmseed.api.routes.datasets import router as datasets_router
from crmseed.api.routes.health import router as health_router
from crmseed.api.routes.jobs import router as jobs_router
from crmseed.api.routes.snapshots import router as snapshots_router
from crmseed.core.config import get_settings
from crmseed.core.logging import configure_logging
from crmseed.db.init_db import initialize_database


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(datasets_router, prefix="/api/v1")
    app.include_router(snapshots_router, prefix="/api/v1")
    return app
