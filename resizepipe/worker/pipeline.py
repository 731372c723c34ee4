from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterable
from typing import Any

from resizepipe.core.config import Settings, get_settings
from resizepipe.core.logging import configure_logging
from resizepipe.db.init_db import initialize_database
from resizepipe.db.session import get_session_factory
from resizepipe.dispatch.pool import WorkerPool
from resizepipe.dispatch.service import Dispatcher, FailureSink
from resizepipe.dispatch.types import JobSnapshot
from resizepipe.notifications import ObjectCreatedNotification, parse_s3_event
from resizepipe.store.base import ObjectStore
from resizepipe.store.factory import get_object_store

logger = logging.getLogger(__name__)

_EVICTION_INTERVAL_SECONDS = 60.0


def build_dispatcher(
    settings: Settings | None = None,
    *,
    store: ObjectStore | None = None,
    failure_sinks: Iterable[FailureSink] | None = None,
) -> Dispatcher:
    return Dispatcher(
        settings=settings or get_settings(),
        session_factory=get_session_factory(),
        store=store or get_object_store(),
        failure_sinks=failure_sinks,
    )


def submit_notification(
    *,
    collection: str,
    key: str,
    version: str | None = None,
    content_type_hint: str | None = None,
    block_seconds: float | None = None,
) -> str | None:
    notification = ObjectCreatedNotification(
        collection=collection,
        key=key,
        version=version,
        content_type_hint=content_type_hint,
    )
    snapshot = build_dispatcher().submit(notification, block_seconds=block_seconds)
    return snapshot.id if snapshot is not None else None


def submit_s3_event(event: dict[str, Any], *, block_seconds: float | None = None) -> list[str]:
    dispatcher = build_dispatcher()
    job_ids: list[str] = []
    for notification in parse_s3_event(event):
        snapshot = dispatcher.submit(notification, block_seconds=block_seconds)
        if snapshot is not None:
            job_ids.append(snapshot.id)
    return job_ids


def drain_once(*, worker_id: str = "drain", max_jobs: int | None = None) -> list[JobSnapshot]:
    return build_dispatcher().drain(worker_id, max_jobs=max_jobs)


def run_worker(
    *,
    max_concurrency: int | None = None,
    worker_prefix: str | None = None,
    stop_event: threading.Event | None = None,
    install_signal_handlers: bool = True,
) -> bool:
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    dispatcher = build_dispatcher(settings)
    pool = WorkerPool(
        dispatcher,
        max_concurrency=max_concurrency or settings.max_concurrency,
        poll_interval=settings.worker_poll_seconds,
        worker_prefix=worker_prefix,
    )
    stop = stop_event or threading.Event()

    if install_signal_handlers and threading.current_thread() is threading.main_thread():

        def _request_stop(signum: int, _frame: object) -> None:
            logger.info("Received signal %s; stopping worker pool", signum)
            stop.set()

        signal.signal(signal.SIGINT, _request_stop)
        signal.signal(signal.SIGTERM, _request_stop)

    pool.start()
    next_eviction = time.monotonic()
    try:
        while not stop.wait(timeout=settings.worker_poll_seconds):
            if settings.ledger_done_retention_seconds is not None and time.monotonic() >= next_eviction:
                dispatcher.ledger.evict_done()
                next_eviction = time.monotonic() + _EVICTION_INTERVAL_SECONDS
    finally:
        clean = pool.stop(grace_seconds=settings.shutdown_grace_seconds)
    return clean
