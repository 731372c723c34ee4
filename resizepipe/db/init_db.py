from __future__ import annotations

import logging

from sqlalchemy import inspect, text

from resizepipe.core.config import get_settings
from resizepipe.db.models import Base
from resizepipe.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    settings = get_settings()
    engine = get_engine()
    existing = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    created = sorted(set(Base.metadata.tables) - existing)
    if created:
        logger.info("Created tables %s at %s", ", ".join(created), engine.url.render_as_string(hide_password=True))

    if settings.store_backend == "filesystem":
        settings.store_root.mkdir(parents=True, exist_ok=True)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
