from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from resizepipe.core.config import get_settings
from resizepipe.db.session import get_session_factory

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(response: Response) -> dict[str, object]:
    settings = get_settings()
    database_ok = True
    try:
        with get_session_factory()() as session:
            session.execute(text("SELECT 1"))
    except DBAPIError:
        database_ok = False
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "ok" if database_ok else "degraded",
        "service": settings.app_name,
        "environment": settings.environment,
        "store_backend": settings.store_backend,
        "database": "ok" if database_ok else "unavailable",
        "timestamp": datetime.now(tz=timezone.utc),
    }
