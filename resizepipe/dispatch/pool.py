from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from uuid import uuid4

from resizepipe.db.models import JobState
from resizepipe.dispatch.service import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class WorkerSlot:
    index: int
    worker_id: str
    processed: int = 0
    failed: int = 0
    errors: int = 0
    current_job_id: str | None = None
    thread: threading.Thread | None = field(default=None, repr=False)


class WorkerPoolError(RuntimeError):
    pass


class WorkerPool:
    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        max_concurrency: int,
        poll_interval: float = 1.0,
        worker_prefix: str | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._dispatcher = dispatcher
        self._max_concurrency = max_concurrency
        self._poll_interval = max(0.01, float(poll_interval))
        self._worker_prefix = worker_prefix or f"{socket.gethostname()}-{uuid4().hex[:8]}"
        self._stopping = threading.Event()
        self._abandon = threading.Event()
        self._slots: list[WorkerSlot] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        with self._lock:
            return any(slot.thread is not None and slot.thread.is_alive() for slot in self._slots)

    def slots(self) -> list[WorkerSlot]:
        with self._lock:
            return list(self._slots)

    def start(self) -> None:
        with self._lock:
            self._slots = [slot for slot in self._slots if slot.thread is not None and slot.thread.is_alive()]
            if self._slots:
                raise WorkerPoolError("Worker pool already started")
            self._stopping.clear()
            self._abandon.clear()
            threads: list[threading.Thread] = []
            for index in range(self._max_concurrency):
                slot = WorkerSlot(index=index, worker_id=f"{self._worker_prefix}-{index}")
                thread = threading.Thread(
                    target=self._run_slot,
                    args=(slot,),
                    name=f"resizepipe-worker-{index}",
                    daemon=True,
                )
                slot.thread = thread
                self._slots.append(slot)
                threads.append(thread)
            for thread in threads:
                thread.start()
        logger.info("Started worker pool with %s slots prefix=%s", self._max_concurrency, self._worker_prefix)

    def wake(self) -> None:
        self._dispatcher.wake_waiters()

    def stop(self, grace_seconds: float = 30.0) -> bool:
        self._stopping.set()
        self.wake()
        workers = [(slot, slot.thread) for slot in self.slots() if slot.thread is not None]

        deadline = time.monotonic() + max(0.0, grace_seconds)
        for _, thread in workers:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))

        lingering = [(slot, thread) for slot, thread in workers if thread.is_alive()]
        if lingering:
            logger.warning(
                "%s worker slots still busy after %.1fs grace; abandoning in-flight attempts",
                len(lingering),
                grace_seconds,
            )
            self._abandon.set()
            for _, thread in lingering:
                thread.join(timeout=self._poll_interval * 5)

        stuck = [slot for slot, thread in lingering if thread.is_alive()]
        with self._lock:
            self._slots = stuck
        if stuck:
            logger.error(
                "Worker pool stop left %s slots running: %s",
                len(stuck),
                ", ".join(f"{slot.worker_id} job_id={slot.current_job_id}" for slot in stuck),
            )
        logger.info("Worker pool stopped clean=%s", not stuck)
        return not stuck

    def _run_slot(self, slot: WorkerSlot) -> None:
        logger.debug("Worker slot %s running", slot.worker_id)
        while not self._stopping.is_set():
            try:
                job = self._dispatcher.claim_next(slot.worker_id)
                if job is None:
                    self._dispatcher.wait_for_change(self._poll_interval)
                    continue
                slot.current_job_id = job.id
                outcome = self._dispatcher.execute(job, slot.worker_id, cancel_event=self._abandon)
                slot.processed += 1
                if outcome.state == JobState.FAILED:
                    slot.failed += 1
            except Exception:
                slot.errors += 1
                logger.exception("Worker slot %s hit an error outside job handling", slot.worker_id)
                self._stopping.wait(self._poll_interval)
            finally:
                slot.current_job_id = None
        logger.debug("Worker slot %s exiting", slot.worker_id)
