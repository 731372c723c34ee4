from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, delete, func, insert, literal, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from resizepipe.core.clock import Clock, SystemClock, coerce_utc
from resizepipe.core.config import Settings
from resizepipe.core.errors import (
    AttemptDeadlineExceededError,
    DerivedKeyCollisionError,
    ErrorKind,
    LeaseLostError,
    LedgerUnavailableError,
    ObjectNotFoundError,
    classify,
    error_code,
)
from resizepipe.db.models import IN_FLIGHT_STATES, OPEN_STATES, JobState, LedgerState, PipelineJob
from resizepipe.dispatch.retry import RetryPolicy
from resizepipe.dispatch.types import DispatchMetricsSnapshot, FailureRecord, JobSnapshot
from resizepipe.ledger.service import IdempotencyLedger
from resizepipe.ledger.types import ReserveOutcome
from resizepipe.notifications import ObjectCreatedNotification
from resizepipe.store.base import ObjectStore
from resizepipe.transform.engine import (
    build_derived_key,
    normalize_content_type,
    output_extension,
    params_from_settings,
    transform,
)
from resizepipe.transform.types import TransformedImage, TransformParams

logger = logging.getLogger(__name__)

FailureSink = Callable[[FailureRecord], None]

_CLAIM_ROUNDS = 3


class DispatcherBusyError(RuntimeError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class ShutdownRequestedError(RuntimeError):
    pass


GENERIC_CONTENT_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

ALLOWED_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.RECEIVED: {JobState.RESERVING, JobState.FAILED},
    JobState.RESERVING: {JobState.FETCHING, JobState.ACKNOWLEDGED, JobState.RECEIVED, JobState.FAILED},
    JobState.FETCHING: {JobState.TRANSFORMING, JobState.RECEIVED, JobState.FAILED},
    JobState.TRANSFORMING: {JobState.WRITING, JobState.RECEIVED, JobState.FAILED},
    JobState.WRITING: {JobState.COMMITTING, JobState.RECEIVED, JobState.FAILED},
    JobState.COMMITTING: {JobState.ACKNOWLEDGED, JobState.RECEIVED, JobState.FAILED},
    JobState.ACKNOWLEDGED: set(),
    JobState.FAILED: set(),
}


def build_job_key(collection: str, key: str, version: str | None) -> str:
    material = json.dumps([collection, key, version or ""], separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(material).hexdigest()


def log_failure_record(record: FailureRecord) -> None:
    logger.error(
        "Job failed job_id=%s job_key=%s source=%s/%s kind=%s reason=%s attempts=%s received_at=%s finished_at=%s: %s",
        record.job_id,
        record.job_key,
        record.source_collection,
        record.source_key,
        record.kind,
        record.reason,
        record.attempt_count,
        record.received_at.isoformat(),
        record.finished_at.isoformat(),
        record.message,
    )


@dataclass
class _Attempt:
    job: JobSnapshot
    worker_id: str
    owner_id: str
    started_monotonic: float
    cancel_event: threading.Event | None
    reserved: bool = False


class Dispatcher:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        store: ObjectStore,
        *,
        ledger: IdempotencyLedger | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        transform_params: TransformParams | None = None,
        failure_sinks: Iterable[FailureSink] | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._store = store
        self._clock = clock or SystemClock()
        self._ledger = ledger or IdempotencyLedger(settings, session_factory, clock=self._clock)
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._params = transform_params or params_from_settings(settings)
        self._failure_sinks: list[FailureSink] = (
            list(failure_sinks) if failure_sinks is not None else [log_failure_record]
        )
        self._changed = threading.Condition()

    @property
    def ledger(self) -> IdempotencyLedger:
        return self._ledger

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.lease_duration_seconds)

    def _enforce_transition(self, from_state: JobState, to_state: JobState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise InvalidJobStateError(f"Illegal transition: {from_state.value} -> {to_state.value}")

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def wake_waiters(self) -> None:
        self._notify()

    def wait_for_change(self, timeout: float) -> None:
        with self._changed:
            self._changed.wait(timeout=timeout)

    def _output_collection(self, job: JobSnapshot) -> str:
        return self._settings.output_collection or job.source_collection

    def _is_derived_output(self, notification: ObjectCreatedNotification) -> bool:
        output_collection = self._settings.output_collection or notification.collection
        return output_collection == notification.collection and notification.key.startswith(
            self._settings.derived_key_prefix
        )

    # Admission

    def submit(
        self,
        notification: ObjectCreatedNotification,
        *,
        block_seconds: float | None = None,
    ) -> JobSnapshot | None:
        if self._is_derived_output(notification):
            logger.info(
                "Ignoring notification for derived object %s/%s",
                notification.collection,
                notification.key,
            )
            return None

        job_id = str(uuid4())
        job_key = build_job_key(notification.collection, notification.key, notification.version)
        wait_seconds = self._settings.submit_block_seconds if block_seconds is None else max(0.0, block_seconds)
        give_up_at = time.monotonic() + wait_seconds

        while True:
            if self._try_enqueue(job_id=job_id, job_key=job_key, notification=notification):
                logger.info(
                    "Accepted job_id=%s job_key=%s source=%s/%s",
                    job_id,
                    job_key,
                    notification.collection,
                    notification.key,
                )
                self._notify()
                return self.get_job(job_id)

            remaining = give_up_at - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Rejecting notification for %s/%s: queue at capacity %s",
                    notification.collection,
                    notification.key,
                    self._settings.queue_capacity,
                )
                raise DispatcherBusyError("Dispatch queue is at capacity; retry later")
            self.wait_for_change(min(remaining, float(self._settings.worker_poll_seconds)))

    def _try_enqueue(self, *, job_id: str, job_key: str, notification: ObjectCreatedNotification) -> bool:
        table = PipelineJob.__table__
        now = self._clock.now()
        values: dict[str, Any] = {
            "id": job_id,
            "job_key": job_key,
            "source_collection": notification.collection,
            "source_key": notification.key,
            "source_version": notification.version,
            "content_type_hint": notification.content_type_hint,
            "state": JobState.RECEIVED,
            "attempt_count": 0,
            "deferral_count": 0,
            "received_at": now,
            "updated_at": now,
        }
        open_jobs = (
            select(func.count())
            .select_from(table)
            .where(table.c.state.in_([state.value for state in OPEN_STATES]))
            .scalar_subquery()
        )
        source = select(*[literal(value, type_=table.c[name].type) for name, value in values.items()]).where(
            open_jobs < int(self._settings.queue_capacity)
        )
        with self._session_factory() as session:
            result = session.execute(insert(table).from_select(list(values), source))
            session.commit()
            return int(result.rowcount or 0) == 1

    # Claiming

    def claim_next(self, worker_id: str) -> JobSnapshot | None:
        normalized_worker_id = worker_id.strip()
        if not normalized_worker_id:
            raise ValueError("worker_id cannot be blank")

        self.recover_stale_jobs()
        with self._session_factory() as session:
            for _ in range(_CLAIM_ROUNDS):
                now = self._clock.now()
                candidate = session.scalar(
                    select(PipelineJob.id)
                    .where(
                        PipelineJob.state == JobState.RECEIVED,
                        or_(PipelineJob.available_at.is_(None), PipelineJob.available_at <= now),
                    )
                    .order_by(PipelineJob.received_at.asc(), PipelineJob.id.asc())
                    .limit(1)
                )
                if candidate is None:
                    session.rollback()
                    return None

                result = session.execute(
                    update(PipelineJob)
                    .where(PipelineJob.id == candidate, PipelineJob.state == JobState.RECEIVED)
                    .values(
                        state=JobState.RESERVING,
                        worker_id=normalized_worker_id,
                        lease_expires_at=now + self._lease_delta(),
                        attempt_count=PipelineJob.attempt_count + 1,
                        available_at=None,
                        started_at=func.coalesce(
                            PipelineJob.started_at, literal(now, type_=DateTime(timezone=True))
                        ),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if int(result.rowcount or 0) == 1:
                    session.commit()
                    job = session.get(PipelineJob, candidate, populate_existing=True)
                    if job is None:
                        raise JobNotFoundError(f"Claimed job disappeared: {candidate}")
                    return self._to_snapshot(job)
                session.rollback()
        return None

    def recover_stale_jobs(self) -> int:
        now = self._clock.now()
        with self._session_factory() as session:
            result = session.execute(
                update(PipelineJob)
                .where(
                    PipelineJob.state.in_(IN_FLIGHT_STATES),
                    or_(PipelineJob.lease_expires_at.is_(None), PipelineJob.lease_expires_at <= now),
                )
                .values(
                    state=JobState.RECEIVED,
                    worker_id=None,
                    lease_expires_at=None,
                    available_at=None,
                    error_code="CLAIM_EXPIRED",
                    error_message="Claim lease expired and job was returned to the queue",
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            recovered = int(result.rowcount or 0)
        if recovered:
            logger.warning("Recovered %s stale in-flight jobs", recovered)
            self._notify()
        return recovered

    # Execution

    def process_next(self, worker_id: str, cancel_event: threading.Event | None = None) -> JobSnapshot | None:
        job = self.claim_next(worker_id)
        if job is None:
            return None
        return self.execute(job, worker_id, cancel_event=cancel_event)

    def drain(self, worker_id: str, *, max_jobs: int | None = None) -> list[JobSnapshot]:
        processed: list[JobSnapshot] = []
        while max_jobs is None or len(processed) < max_jobs:
            outcome = self.process_next(worker_id)
            if outcome is None:
                break
            processed.append(outcome)
        return processed

    def execute(self, job: JobSnapshot, worker_id: str, *, cancel_event: threading.Event | None = None) -> JobSnapshot:
        if job.state != JobState.RESERVING or job.worker_id != worker_id:
            raise InvalidJobStateError(f"Job {job.id} is not claimed by {worker_id}")

        attempt = _Attempt(
            job=job,
            worker_id=worker_id,
            owner_id=f"{worker_id}/{job.id}/{job.attempt_count}",
            started_monotonic=self._clock.monotonic(),
            cancel_event=cancel_event,
        )
        logger.info(
            "Starting job_id=%s job_key=%s attempt=%s worker=%s",
            job.id,
            job.job_key,
            job.attempt_count,
            worker_id,
        )
        try:
            return self._run_attempt(attempt)
        except ShutdownRequestedError:
            logger.info("Abandoning job_id=%s job_key=%s for shutdown", job.id, job.job_key)
            self._release_quietly(attempt)
            return self._requeue(attempt, delay_seconds=0.0, charge_attempt=False, exc=None)
        except Exception as exc:
            return self._handle_failure(attempt, exc)

    def _checkpoint(self, attempt: _Attempt) -> None:
        if attempt.cancel_event is not None and attempt.cancel_event.is_set():
            raise ShutdownRequestedError("Worker pool is shutting down")
        elapsed = self._clock.monotonic() - attempt.started_monotonic
        if elapsed > self._settings.per_attempt_deadline_seconds:
            raise AttemptDeadlineExceededError(
                f"Attempt exceeded deadline of {self._settings.per_attempt_deadline_seconds}s after {elapsed:.3f}s"
            )

    def _run_attempt(self, attempt: _Attempt) -> JobSnapshot:
        job = attempt.job
        reservation = self._ledger.reserve(job.job_key, attempt.owner_id)

        if reservation.outcome == ReserveOutcome.ALREADY_DONE:
            logger.info("Job key already done job_id=%s job_key=%s", job.id, job.job_key)
            return self._acknowledge(attempt, derived_key=reservation.derived_key)
        if reservation.outcome == ReserveOutcome.ALREADY_FAILED:
            return self._fail(
                attempt,
                kind=ErrorKind.PERMANENT,
                reason="LEDGER_FAILED",
                message="Job key is parked as failed in the ledger; replay it to retry",
            )
        if reservation.outcome == ReserveOutcome.ALREADY_RESERVED:
            return self._defer(attempt, reservation.lease_expires_at)

        attempt.reserved = True
        self._advance(attempt, JobState.RESERVING, JobState.FETCHING)
        self._checkpoint(attempt)

        source = self._store.get(job.source_collection, job.source_key, job.source_version)
        content_type = source.content_type
        if normalize_content_type(content_type) in GENERIC_CONTENT_TYPES:
            content_type = job.content_type_hint or content_type
        self._advance(attempt, JobState.FETCHING, JobState.TRANSFORMING, content_type=content_type)
        self._checkpoint(attempt)

        result = transform(source.data, content_type, self._params)
        derived_key = build_derived_key(
            job.source_key,
            result.width,
            result.height,
            prefix=self._settings.derived_key_prefix,
            fallback_extension=output_extension(self._params),
        )
        self._advance(
            attempt,
            JobState.TRANSFORMING,
            JobState.WRITING,
            derived_key=derived_key,
            width=result.width,
            height=result.height,
        )
        self._checkpoint(attempt)

        self._write_derived(attempt, derived_key, result)
        self._advance(attempt, JobState.WRITING, JobState.COMMITTING)
        self._checkpoint(attempt)

        self._ledger.commit(job.job_key, attempt.owner_id, derived_key)
        attempt.reserved = False
        return self._acknowledge(attempt, derived_key=derived_key, from_state=JobState.COMMITTING)

    def _write_derived(self, attempt: _Attempt, derived_key: str, result: TransformedImage) -> bool:
        job = attempt.job
        collection = self._output_collection(job)
        if self._settings.verify_derived_collisions:
            try:
                existing = self._store.get(collection, derived_key)
            except ObjectNotFoundError:
                existing = None
            if existing is not None:
                if existing.data == result.data:
                    logger.info("Derived object %s/%s already present with identical bytes", collection, derived_key)
                    return False
                existing_source_key = existing.metadata.get("source-key")
                if existing_source_key and existing_source_key != job.source_key:
                    raise DerivedKeyCollisionError(
                        f"Derived key {collection}/{derived_key} already holds different content "
                        f"for source_key={existing_source_key}"
                    )

        self._store.put(
            collection,
            derived_key,
            result.data,
            result.content_type,
            metadata={
                "source-key": job.source_key,
                "job-key": job.job_key,
                "width": str(result.width),
                "height": str(result.height),
            },
        )
        logger.info(
            "Wrote derived object %s/%s (%sx%s, %s bytes) job_id=%s",
            collection,
            derived_key,
            result.width,
            result.height,
            len(result.data),
            job.id,
        )
        return True

    # State transitions

    def _update_owned(
        self,
        attempt: _Attempt,
        from_states: Iterable[JobState],
        values: dict[str, Any],
    ) -> PipelineJob | None:
        with self._session_factory() as session:
            result = session.execute(
                update(PipelineJob)
                .where(
                    PipelineJob.id == attempt.job.id,
                    PipelineJob.worker_id == attempt.worker_id,
                    PipelineJob.state.in_(list(from_states)),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if int(result.rowcount or 0) != 1:
                return None
            return session.get(PipelineJob, attempt.job.id, populate_existing=True)

    def _advance(self, attempt: _Attempt, from_state: JobState, to_state: JobState, **values: Any) -> None:
        self._enforce_transition(from_state, to_state)
        now = self._clock.now()
        row = self._update_owned(
            attempt,
            [from_state],
            {"state": to_state, "lease_expires_at": now + self._lease_delta(), "updated_at": now, **values},
        )
        if row is None:
            raise LeaseLostError(f"Job {attempt.job.id} is no longer claimed by {attempt.worker_id}")
        logger.debug("job_id=%s %s -> %s", attempt.job.id, from_state.value, to_state.value)

    def _finish(self, attempt: _Attempt, to_state: JobState, values: dict[str, Any]) -> JobSnapshot:
        sources = [state for state in IN_FLIGHT_STATES if to_state in ALLOWED_TRANSITIONS[state]]
        row = self._update_owned(attempt, sources, values)
        self._notify()
        if row is None:
            logger.warning(
                "Job %s was reclaimed before reaching %s; leaving it to the current owner",
                attempt.job.id,
                to_state.value,
            )
            return self.get_job(attempt.job.id)
        return self._to_snapshot(row)

    def _acknowledge(
        self,
        attempt: _Attempt,
        *,
        derived_key: str | None,
        from_state: JobState = JobState.RESERVING,
    ) -> JobSnapshot:
        self._enforce_transition(from_state, JobState.ACKNOWLEDGED)
        now = self._clock.now()
        snapshot = self._finish(
            attempt,
            JobState.ACKNOWLEDGED,
            {
                "state": JobState.ACKNOWLEDGED,
                "derived_key": derived_key,
                "lease_expires_at": None,
                "error_kind": None,
                "error_code": None,
                "error_message": None,
                "finished_at": now,
                "updated_at": now,
            },
        )
        logger.info(
            "Acknowledged job_id=%s job_key=%s derived_key=%s attempts=%s",
            snapshot.id,
            snapshot.job_key,
            snapshot.derived_key,
            snapshot.attempt_count,
        )
        return snapshot

    def _fail(self, attempt: _Attempt, *, kind: ErrorKind, reason: str, message: str) -> JobSnapshot:
        now = self._clock.now()
        snapshot = self._finish(
            attempt,
            JobState.FAILED,
            {
                "state": JobState.FAILED,
                "lease_expires_at": None,
                "error_kind": kind.value,
                "error_code": reason,
                "error_message": message,
                "finished_at": now,
                "updated_at": now,
            },
        )
        if snapshot.state == JobState.FAILED and snapshot.worker_id == attempt.worker_id:
            self._emit_failure(snapshot)
        return snapshot

    def _requeue(
        self,
        attempt: _Attempt,
        *,
        delay_seconds: float,
        charge_attempt: bool,
        exc: BaseException | None,
        deferral: bool = False,
    ) -> JobSnapshot:
        now = self._clock.now()
        values: dict[str, Any] = {
            "state": JobState.RECEIVED,
            "worker_id": None,
            "lease_expires_at": None,
            "available_at": now + timedelta(seconds=delay_seconds),
            "updated_at": now,
        }
        if not charge_attempt:
            values["attempt_count"] = PipelineJob.attempt_count - 1
        if deferral:
            values["deferral_count"] = PipelineJob.deferral_count + 1
        if exc is not None:
            values["error_kind"] = ErrorKind.TRANSIENT.value
            values["error_code"] = error_code(exc)
            values["error_message"] = str(exc) or exc.__class__.__name__
        return self._finish(attempt, JobState.RECEIVED, values)

    def _defer(self, attempt: _Attempt, lease_expires_at: datetime | None) -> JobSnapshot:
        delay = float(self._settings.deferral_seconds)
        lease_expires_at = coerce_utc(lease_expires_at)
        if lease_expires_at is not None:
            until_expiry = (lease_expires_at - self._clock.now()).total_seconds()
            delay = max(0.0, min(delay, until_expiry))
        logger.info(
            "Deferring job_id=%s job_key=%s for %.3fs; key reserved by another attempt",
            attempt.job.id,
            attempt.job.job_key,
            delay,
        )
        return self._requeue(attempt, delay_seconds=delay, charge_attempt=False, exc=None, deferral=True)

    def _release_quietly(self, attempt: _Attempt) -> None:
        if not attempt.reserved:
            return
        try:
            self._ledger.release(attempt.job.job_key, attempt.owner_id)
        except LedgerUnavailableError:
            logger.exception(
                "Ledger release failed for job_key=%s; reservation will lapse with its lease",
                attempt.job.job_key,
            )
        attempt.reserved = False

    def _park_quietly(self, attempt: _Attempt, reason: str) -> None:
        try:
            if attempt.reserved:
                self._ledger.mark_failed(attempt.job.job_key, attempt.owner_id, reason)
                attempt.reserved = False
            else:
                self._ledger.park_failed(attempt.job.job_key, reason)
        except LedgerUnavailableError:
            logger.exception("Ledger unavailable while recording failure for job_key=%s", attempt.job.job_key)

    def _handle_failure(self, attempt: _Attempt, exc: Exception) -> JobSnapshot:
        job = attempt.job
        kind = classify(exc)
        reason = error_code(exc)
        message = str(exc) or exc.__class__.__name__

        if kind == ErrorKind.PERMANENT:
            logger.warning("Permanent failure job_id=%s job_key=%s reason=%s: %s", job.id, job.job_key, reason, message)
            self._park_quietly(attempt, f"{reason}: {message}")
            return self._fail(attempt, kind=ErrorKind.PERMANENT, reason=reason, message=message)

        if reason == "UNEXPECTED_ERROR":
            logger.exception("Unexpected error job_id=%s job_key=%s", job.id, job.job_key)

        if not self._retry.should_retry(job.attempt_count):
            logger.warning(
                "Attempts exhausted job_id=%s job_key=%s after %s attempts; last error %s",
                job.id,
                job.job_key,
                job.attempt_count,
                reason,
            )
            self._park_quietly(attempt, f"Exhausted after {job.attempt_count} attempts; last error {reason}")
            return self._fail(attempt, kind=ErrorKind.EXHAUSTED, reason=reason, message=message)

        self._release_quietly(attempt)
        delay = self._retry.next_delay(job.attempt_count)
        logger.warning(
            "Transient failure job_id=%s job_key=%s attempt=%s reason=%s; retrying in %.3fs: %s",
            job.id,
            job.job_key,
            job.attempt_count,
            reason,
            delay,
            message,
        )
        return self._requeue(attempt, delay_seconds=delay, charge_attempt=True, exc=exc)

    def _emit_failure(self, snapshot: JobSnapshot) -> None:
        record = FailureRecord(
            job_id=snapshot.id,
            job_key=snapshot.job_key,
            source_collection=snapshot.source_collection,
            source_key=snapshot.source_key,
            kind=snapshot.error_kind or ErrorKind.PERMANENT.value,
            reason=snapshot.error_code or "UNKNOWN",
            message=snapshot.error_message or "",
            attempt_count=snapshot.attempt_count,
            received_at=snapshot.received_at,
            finished_at=snapshot.finished_at or self._clock.now(),
        )
        for sink in self._failure_sinks:
            try:
                sink(record)
            except Exception:
                logger.exception("Failure sink %r raised for job_id=%s", sink, snapshot.id)

    # Queries and operator actions

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(PipelineJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def list_jobs(
        self,
        *,
        state: JobState | None = None,
        job_key: str | None = None,
        limit: int = 50,
    ) -> list[JobSnapshot]:
        bounded_limit = max(1, min(limit, 500))
        with self._session_factory() as session:
            stmt = (
                select(PipelineJob)
                .order_by(PipelineJob.received_at.desc(), PipelineJob.id.desc())
                .limit(bounded_limit)
            )
            if state is not None:
                stmt = stmt.where(PipelineJob.state == state)
            if job_key is not None:
                stmt = stmt.where(PipelineJob.job_key == job_key)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def list_failures(self, *, limit: int = 50) -> list[JobSnapshot]:
        bounded_limit = max(1, min(limit, 500))
        with self._session_factory() as session:
            stmt = (
                select(PipelineJob)
                .where(PipelineJob.state == JobState.FAILED)
                .order_by(PipelineJob.finished_at.desc(), PipelineJob.id.desc())
                .limit(bounded_limit)
            )
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def replay(self, job_key: str, *, block_seconds: float | None = None) -> JobSnapshot | None:
        with self._session_factory() as session:
            latest = session.scalar(
                select(PipelineJob)
                .where(PipelineJob.job_key == job_key)
                .order_by(PipelineJob.received_at.desc(), PipelineJob.id.desc())
                .limit(1)
            )
            if latest is None:
                raise JobNotFoundError(f"No job recorded for job_key={job_key}")
            notification = ObjectCreatedNotification(
                collection=latest.source_collection,
                key=latest.source_key,
                version=latest.source_version,
                content_type_hint=latest.content_type_hint,
            )

        self._ledger.replay(job_key)
        logger.info("Replaying job_key=%s", job_key)
        return self.submit(notification, block_seconds=block_seconds)

    def purge_finished(self, *, older_than_seconds: float) -> int:
        cutoff = self._clock.now() - timedelta(seconds=older_than_seconds)
        with self._session_factory() as session:
            result = session.execute(
                delete(PipelineJob).where(
                    PipelineJob.state.in_([JobState.ACKNOWLEDGED, JobState.FAILED]),
                    PipelineJob.finished_at <= cutoff,
                )
            )
            session.commit()
            purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %s finished jobs older than %ss", purged, older_than_seconds)
        return purged

    def get_metrics(self) -> DispatchMetricsSnapshot:
        now = self._clock.now()
        with self._session_factory() as session:
            state_counts = {
                JobState(state): int(count)
                for state, count in session.execute(
                    select(PipelineJob.state, func.count(PipelineJob.id)).group_by(PipelineJob.state)
                ).all()
            }
            retry_backlog = int(
                session.scalar(
                    select(func.count(PipelineJob.id)).where(
                        PipelineJob.state == JobState.RECEIVED,
                        PipelineJob.available_at.is_not(None),
                        PipelineJob.available_at > now,
                    )
                )
                or 0
            )
            failed_by_kind = {
                str(kind): int(count)
                for kind, count in session.execute(
                    select(PipelineJob.error_kind, func.count(PipelineJob.id))
                    .where(PipelineJob.state == JobState.FAILED)
                    .group_by(PipelineJob.error_kind)
                ).all()
            }
        ledger_counts = self._ledger.counts()

        in_flight = sum(state_counts.get(state, 0) for state in IN_FLIGHT_STATES)
        received = state_counts.get(JobState.RECEIVED, 0)
        return DispatchMetricsSnapshot(
            generated_at=now,
            queue_capacity=int(self._settings.queue_capacity),
            queue_depth=received + in_flight,
            queue_received=received,
            queue_in_flight=in_flight,
            retry_backlog=retry_backlog,
            acknowledged=state_counts.get(JobState.ACKNOWLEDGED, 0),
            failed=state_counts.get(JobState.FAILED, 0),
            failed_permanent=failed_by_kind.get(ErrorKind.PERMANENT.value, 0),
            failed_exhausted=failed_by_kind.get(ErrorKind.EXHAUSTED.value, 0),
            ledger_reserved=ledger_counts[LedgerState.RESERVED],
            ledger_released=ledger_counts[LedgerState.RELEASED],
            ledger_done=ledger_counts[LedgerState.DONE],
            ledger_failed=ledger_counts[LedgerState.FAILED],
        )

    def _to_snapshot(self, job: PipelineJob) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            job_key=job.job_key,
            source_collection=job.source_collection,
            source_key=job.source_key,
            source_version=job.source_version,
            content_type_hint=job.content_type_hint,
            content_type=job.content_type,
            state=job.state,
            attempt_count=job.attempt_count,
            deferral_count=job.deferral_count,
            available_at=coerce_utc(job.available_at),
            worker_id=job.worker_id,
            lease_expires_at=coerce_utc(job.lease_expires_at),
            derived_key=job.derived_key,
            width=job.width,
            height=job.height,
            error_kind=job.error_kind,
            error_code=job.error_code,
            error_message=job.error_message,
            received_at=coerce_utc(job.received_at) or job.received_at,
            updated_at=coerce_utc(job.updated_at) or job.updated_at,
            started_at=coerce_utc(job.started_at),
            finished_at=coerce_utc(job.finished_at),
        )


def job_snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, object]:
    return {
        "id": snapshot.id,
        "job_key": snapshot.job_key,
        "source_collection": snapshot.source_collection,
        "source_key": snapshot.source_key,
        "source_version": snapshot.source_version,
        "content_type_hint": snapshot.content_type_hint,
        "content_type": snapshot.content_type,
        "state": snapshot.state.value,
        "attempt_count": snapshot.attempt_count,
        "deferral_count": snapshot.deferral_count,
        "available_at": snapshot.available_at,
        "worker_id": snapshot.worker_id,
        "lease_expires_at": snapshot.lease_expires_at,
        "derived_key": snapshot.derived_key,
        "width": snapshot.width,
        "height": snapshot.height,
        "error_kind": snapshot.error_kind,
        "error_code": snapshot.error_code,
        "error_message": snapshot.error_message,
        "received_at": snapshot.received_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "finished_at": snapshot.finished_at,
    }


def dispatch_metrics_snapshot_to_dict(snapshot: DispatchMetricsSnapshot) -> dict[str, object]:
    return {
        "generated_at": snapshot.generated_at,
        "queue_capacity": snapshot.queue_capacity,
        "queue_depth": snapshot.queue_depth,
        "queue_received": snapshot.queue_received,
        "queue_in_flight": snapshot.queue_in_flight,
        "retry_backlog": snapshot.retry_backlog,
        "acknowledged": snapshot.acknowledged,
        "failed": snapshot.failed,
        "failed_permanent": snapshot.failed_permanent,
        "failed_exhausted": snapshot.failed_exhausted,
        "ledger_reserved": snapshot.ledger_reserved,
        "ledger_released": snapshot.ledger_released,
        "ledger_done": snapshot.ledger_done,
        "ledger_failed": snapshot.ledger_failed,
    }
