from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from resizepipe.api.routes.health import router as health_router
from resizepipe.api.routes.jobs import router as jobs_router
from resizepipe.api.routes.ledger import router as ledger_router
from resizepipe.api.routes.metrics import router as metrics_router
from resizepipe.api.routes.notifications import router as notifications_router
from resizepipe.core.config import get_settings
from resizepipe.core.logging import configure_logging
from resizepipe.db.init_db import initialize_database


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
    app.include_router(notifications_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(ledger_router, prefix="/api/v1")
    app.include_router(metrics_router, prefix="/api/v1")
    return app
