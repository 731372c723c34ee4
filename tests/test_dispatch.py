from __future__ import annotations

import io
import os
import random
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from PIL import Image
from sqlalchemy.exc import OperationalError

import resizepipe.db.session as db_session_module
from resizepipe.core.clock import ManualClock
from resizepipe.core.config import get_settings
from resizepipe.core.errors import LedgerUnavailableError, StoreUnavailableError
from resizepipe.db.init_db import initialize_database
from resizepipe.db.models import JobState, LedgerState
from resizepipe.dispatch.retry import RetryPolicy
from resizepipe.dispatch.service import (
    ALLOWED_TRANSITIONS,
    Dispatcher,
    DispatcherBusyError,
    JobNotFoundError,
    build_job_key,
    dispatch_metrics_snapshot_to_dict,
    job_snapshot_to_dict,
)
from resizepipe.dispatch.types import FailureRecord, JobSnapshot
from resizepipe.ledger.service import IdempotencyLedger, LedgerEntryNotFoundError, LedgerStateError
from resizepipe.ledger.types import ReserveResult
from resizepipe.notifications import ObjectCreatedNotification
from resizepipe.store.base import StoredObject
from resizepipe.store.memory import InMemoryObjectStore
from resizepipe.transform.engine import params_from_settings, transform

COLLECTION = "uploads"


class FlakyStore(InMemoryObjectStore):
    def __init__(self, *, failing_puts: int = 0, failing_gets: int = 0, get_error: Exception | None = None) -> None:
        super().__init__()
        self.failing_puts = failing_puts
        self.failing_gets = failing_gets
        self.get_error = get_error or StoreUnavailableError("simulated read outage")

    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        if collection == COLLECTION and not key.startswith("resized/") and self.failing_gets > 0:
            self.failing_gets -= 1
            raise self.get_error
        return super().get(collection, key, version)

    def put(self, collection, key, data, content_type, metadata=None) -> None:  # type: ignore[no-untyped-def]
        if key.startswith("resized/") and self.failing_puts > 0:
            self.failing_puts -= 1
            raise StoreUnavailableError("simulated write outage")
        super().put(collection, key, data, content_type, metadata)


class SlowFetchStore(InMemoryObjectStore):
    def __init__(self, clock: ManualClock, delay_seconds: float) -> None:
        super().__init__()
        self._clock = clock
        self._delay_seconds = delay_seconds

    def get(self, collection: str, key: str, version: str | None = None) -> StoredObject:
        item = super().get(collection, key, version)
        if self._delay_seconds:
            self._clock.advance(self._delay_seconds)
            self._delay_seconds = 0.0
        return item


class UnavailableLedger(IdempotencyLedger):
    def __init__(self, *args, failing_reserves: int = 1, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self.failing_reserves = failing_reserves

    def reserve(self, job_key: str, owner_id: str) -> ReserveResult:
        if self.failing_reserves > 0:
            self.failing_reserves -= 1
            with self._guard("reserve"):
                raise OperationalError("INSERT INTO ledger_entries", {}, Exception("database is locked"))
        return super().reserve(job_key, owner_id)


def configure_env(tmp_path: Path, **overrides: str) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    for name in [key for key in os.environ if key.startswith("RESIZEPIPE_")]:
        del os.environ[name]
    os.environ["RESIZEPIPE_STATE_ROOT"] = state_root.as_posix()
    os.environ["RESIZEPIPE_STORE_BACKEND"] = "memory"
    os.environ["RESIZEPIPE_MAX_ATTEMPTS"] = "4"
    os.environ["RESIZEPIPE_RETRY_BASE_SECONDS"] = "1"
    os.environ["RESIZEPIPE_RETRY_MAX_SECONDS"] = "8"
    os.environ["RESIZEPIPE_LEASE_DURATION_SECONDS"] = "60"
    os.environ["RESIZEPIPE_PER_ATTEMPT_DEADLINE_SECONDS"] = "30"
    os.environ["RESIZEPIPE_DEFERRAL_SECONDS"] = "5"
    os.environ["RESIZEPIPE_SUBMIT_BLOCK_SECONDS"] = "0"
    os.environ["RESIZEPIPE_WORKER_POLL_SECONDS"] = "0.05"
    for key, value in overrides.items():
        os.environ[f"RESIZEPIPE_{key.upper()}"] = value

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()


def make_dispatcher(
    tmp_path: Path,
    *,
    store: InMemoryObjectStore | None = None,
    clock: ManualClock | None = None,
    failures: list[FailureRecord] | None = None,
    **overrides: str,
) -> tuple[Dispatcher, InMemoryObjectStore, ManualClock]:
    configure_env(tmp_path, **overrides)
    clock = clock or ManualClock()
    store = store if store is not None else InMemoryObjectStore()
    settings = get_settings()
    dispatcher = Dispatcher(
        settings,
        db_session_module.get_session_factory(),
        store,
        clock=clock,
        retry_policy=RetryPolicy.from_settings(settings, rng=random.Random(7)),
        failure_sinks=[failures.append] if failures is not None else None,
    )
    return dispatcher, store, clock


def jpeg_bytes(width: int = 1600, height: int = 1200, color: tuple[int, int, int] = (30, 120, 200)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def notify(key: str, *, collection: str = COLLECTION, version: str | None = None) -> ObjectCreatedNotification:
    return ObjectCreatedNotification(collection=collection, key=key, version=version)


def run_until_settled(dispatcher: Dispatcher, clock: ManualClock, job_id: str, *, rounds: int = 10) -> JobSnapshot:
    job = dispatcher.get_job(job_id)
    for _ in range(rounds):
        dispatcher.drain("worker-1")
        job = dispatcher.get_job(job_id)
        if job.is_terminal:
            return job
        clock.advance(10)
    return job


def test_new_object_is_resized_written_and_acknowledged(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "uploads/test-image.jpg", jpeg_bytes(), "image/jpeg")

    submitted = dispatcher.submit(notify("uploads/test-image.jpg"))
    assert submitted is not None
    assert submitted.state == JobState.RECEIVED

    processed = dispatcher.drain("worker-1")
    assert [item.state for item in processed] == [JobState.ACKNOWLEDGED]

    job = dispatcher.get_job(submitted.id)
    assert job.derived_key == "resized/test-image_800x600.jpg"
    assert (job.width, job.height) == (800, 600)
    assert job.attempt_count == 1
    assert job.content_type == "image/jpeg"
    assert job.finished_at is not None

    derived = store.get(COLLECTION, "resized/test-image_800x600.jpg")
    assert derived.content_type == "image/jpeg"
    assert derived.metadata["source-key"] == "uploads/test-image.jpg"
    assert derived.metadata["job-key"] == job.job_key
    with Image.open(io.BytesIO(derived.data)) as image:
        assert image.size == (800, 600)

    entry = dispatcher.ledger.get_entry(job.job_key)
    assert entry.state == LedgerState.DONE
    assert entry.derived_key == "resized/test-image_800x600.jpg"


def test_duplicate_notifications_write_once(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    writes_before = store.put_count

    first = dispatcher.submit(notify("photo.jpg"))
    second = dispatcher.submit(notify("photo.jpg"))
    assert first is not None and second is not None
    assert first.job_key == second.job_key
    assert first.id != second.id

    dispatcher.drain("worker-1")

    assert store.put_count - writes_before == 1
    for job_id in (first.id, second.id):
        job = dispatcher.get_job(job_id)
        assert job.state == JobState.ACKNOWLEDGED
        assert job.derived_key == "resized/photo_800x600.jpg"


def test_new_version_of_same_key_is_processed_again(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(color=(30, 120, 200)), "image/jpeg")

    first = dispatcher.submit(notify("photo.jpg", version="v1"))
    assert first is not None
    dispatcher.drain("worker-1")
    assert dispatcher.get_job(first.id).state == JobState.ACKNOWLEDGED
    first_output = store.get(COLLECTION, "resized/photo_800x600.jpg").data

    store.put(COLLECTION, "photo.jpg", jpeg_bytes(color=(220, 40, 10)), "image/jpeg")
    second = dispatcher.submit(notify("photo.jpg", version="v2"))
    assert second is not None
    assert first.job_key != second.job_key
    assert build_job_key(COLLECTION, "photo.jpg", "v1") == first.job_key
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(second.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.error_code is None
    second_output = store.get(COLLECTION, "resized/photo_800x600.jpg")
    assert second_output.data != first_output
    assert second_output.metadata["job-key"] == second.job_key
    assert dispatcher.ledger.get_entry(first.job_key).state == LedgerState.DONE
    assert dispatcher.ledger.get_entry(second.job_key).state == LedgerState.DONE


def test_ledger_outage_is_retried_without_touching_the_store(tmp_path: Path) -> None:
    configure_env(tmp_path)
    settings = get_settings()
    session_factory = db_session_module.get_session_factory()
    clock = ManualClock()
    store = InMemoryObjectStore()
    ledger = UnavailableLedger(settings, session_factory, clock=clock)
    dispatcher = Dispatcher(
        settings,
        session_factory,
        store,
        ledger=ledger,
        clock=clock,
        retry_policy=RetryPolicy.from_settings(settings, rng=random.Random(7)),
    )
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    writes_before = store.put_count

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.RECEIVED
    assert job.error_kind == "transient"
    assert job.error_code == LedgerUnavailableError.code == "LEDGER_UNAVAILABLE"
    assert job.attempt_count == 1
    assert job.derived_key is None
    assert store.put_count == writes_before
    with pytest.raises(LedgerEntryNotFoundError):
        ledger.get_entry(job.job_key)

    settled = run_until_settled(dispatcher, clock, submitted.id)
    assert settled.state == JobState.ACKNOWLEDGED
    assert settled.attempt_count == 2
    assert store.put_count - writes_before == 1
    assert ledger.get_entry(job.job_key).state == LedgerState.DONE


def test_generic_stored_content_type_falls_back_to_hint(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "untyped.jpg", jpeg_bytes(), "binary/octet-stream")

    submitted = dispatcher.submit(
        ObjectCreatedNotification(collection=COLLECTION, key="untyped.jpg", content_type_hint="image/jpeg")
    )
    assert submitted is not None
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.content_type == "image/jpeg"
    assert store.keys(COLLECTION) == ["resized/untyped_800x600.jpg", "untyped.jpg"]


def test_unsupported_content_type_fails_permanently_without_retry(tmp_path: Path) -> None:
    failures: list[FailureRecord] = []
    dispatcher, store, _ = make_dispatcher(tmp_path, failures=failures)
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64)).save(buffer, format="BMP")
    store.put(COLLECTION, "scan.bmp", buffer.getvalue(), "image/bmp")
    writes_before = store.put_count

    submitted = dispatcher.submit(notify("scan.bmp"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.FAILED
    assert job.error_kind == "permanent"
    assert job.error_code == "UNSUPPORTED_CONTENT_TYPE"
    assert job.attempt_count == 1
    assert store.put_count == writes_before

    assert len(failures) == 1
    assert failures[0].job_key == job.job_key
    assert failures[0].kind == "permanent"
    assert failures[0].reason == "UNSUPPORTED_CONTENT_TYPE"
    assert dispatcher.ledger.get_entry(job.job_key).state == LedgerState.FAILED


def test_missing_source_fails_permanently(tmp_path: Path) -> None:
    dispatcher, _, _ = make_dispatcher(tmp_path)
    submitted = dispatcher.submit(notify("never-uploaded.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.FAILED
    assert job.error_code == "SOURCE_NOT_FOUND"
    assert job.attempt_count == 1


def test_transient_write_failures_are_retried_until_success(tmp_path: Path) -> None:
    failures: list[FailureRecord] = []
    store = FlakyStore(failing_puts=2)
    dispatcher, _, clock = make_dispatcher(tmp_path, store=store, failures=failures)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None

    dispatcher.drain("worker-1")
    retrying = dispatcher.get_job(submitted.id)
    assert retrying.state == JobState.RECEIVED
    assert retrying.error_code == "STORE_UNAVAILABLE"
    assert retrying.error_kind == "transient"
    assert retrying.available_at is not None
    assert retrying.available_at <= clock.now() + timedelta(seconds=1)
    assert dispatcher.ledger.get_entry(retrying.job_key).state == LedgerState.RELEASED

    job = run_until_settled(dispatcher, clock, submitted.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.attempt_count == 3
    assert job.error_code is None
    assert store.keys(COLLECTION) == ["photo.jpg", "resized/photo_800x600.jpg"]
    assert failures == []

    entry = dispatcher.ledger.get_entry(job.job_key)
    assert entry.state == LedgerState.DONE
    assert entry.release_count == 2


def test_exhausted_retries_fail_job_and_park_ledger(tmp_path: Path) -> None:
    failures: list[FailureRecord] = []
    store = FlakyStore(failing_gets=100)
    dispatcher, _, clock = make_dispatcher(tmp_path, store=store, failures=failures, max_attempts="3")
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    job = run_until_settled(dispatcher, clock, submitted.id)

    assert job.state == JobState.FAILED
    assert job.error_kind == "exhausted"
    assert job.error_code == "STORE_UNAVAILABLE"
    assert job.attempt_count == 3
    assert [record.kind for record in failures] == ["exhausted"]
    assert failures[0].attempt_count == 3
    assert dispatcher.ledger.get_entry(job.job_key).state == LedgerState.FAILED

    assert [item.id for item in dispatcher.list_failures()] == [submitted.id]


def test_unexpected_errors_are_retried_as_transient(tmp_path: Path) -> None:
    store = FlakyStore(failing_gets=1, get_error=KeyError("boom"))
    dispatcher, _, clock = make_dispatcher(tmp_path, store=store)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")
    assert dispatcher.get_job(submitted.id).error_code == "UNEXPECTED_ERROR"

    job = run_until_settled(dispatcher, clock, submitted.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.attempt_count == 2


def test_full_queue_signals_busy_without_dropping(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path, queue_capacity="2")
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        store.put(COLLECTION, name, jpeg_bytes(320, 240), "image/jpeg")

    assert dispatcher.submit(notify("a.jpg")) is not None
    assert dispatcher.submit(notify("b.jpg")) is not None
    with pytest.raises(DispatcherBusyError):
        dispatcher.submit(notify("c.jpg"), block_seconds=0)

    queued = dispatcher.list_jobs(state=JobState.RECEIVED)
    assert sorted(job.source_key for job in queued) == ["a.jpg", "b.jpg"]
    assert dispatcher.get_metrics().queue_depth == 2

    dispatcher.drain("worker-1")
    accepted = dispatcher.submit(notify("c.jpg"), block_seconds=0)
    assert accepted is not None
    dispatcher.drain("worker-1")
    assert dispatcher.get_job(accepted.id).state == JobState.ACKNOWLEDGED


def test_blocked_submit_is_admitted_when_capacity_frees(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path, queue_capacity="1")
    store.put(COLLECTION, "a.jpg", jpeg_bytes(320, 240), "image/jpeg")
    store.put(COLLECTION, "b.jpg", jpeg_bytes(320, 240), "image/jpeg")
    assert dispatcher.submit(notify("a.jpg")) is not None

    results: list[JobSnapshot | None] = []
    errors: list[Exception] = []

    def blocked_submit() -> None:
        try:
            results.append(dispatcher.submit(notify("b.jpg"), block_seconds=10))
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=blocked_submit)
    thread.start()
    dispatcher.process_next("worker-1")
    thread.join(timeout=15)

    assert not thread.is_alive()
    assert errors == []
    assert len(results) == 1 and results[0] is not None
    assert results[0].source_key == "b.jpg"


def test_replay_reprocesses_failed_key_and_is_idempotent_afterwards(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", b"\xff\xd8\xff not really a jpeg", "image/jpeg")

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")
    failed = dispatcher.get_job(submitted.id)
    assert failed.error_code == "CORRUPT_PAYLOAD"

    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    replayed = dispatcher.replay(failed.job_key)
    assert replayed is not None
    assert replayed.id != submitted.id
    dispatcher.drain("worker-1")
    assert dispatcher.get_job(replayed.id).state == JobState.ACKNOWLEDGED
    writes_after_success = store.put_count

    with pytest.raises(LedgerStateError):
        dispatcher.replay(failed.job_key)

    again = dispatcher.submit(notify("photo.jpg"))
    assert again is not None
    dispatcher.drain("worker-1")
    assert dispatcher.get_job(again.id).state == JobState.ACKNOWLEDGED
    assert store.put_count == writes_after_success

    with pytest.raises(JobNotFoundError):
        dispatcher.replay("unknown-job-key")


def test_stale_claim_is_recovered_after_worker_crash(tmp_path: Path) -> None:
    dispatcher, store, clock = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None

    crashed = dispatcher.claim_next("crashed-worker")
    assert crashed is not None
    assert crashed.state == JobState.RESERVING
    dispatcher.ledger.reserve(crashed.job_key, f"crashed-worker/{crashed.id}/{crashed.attempt_count}")

    assert dispatcher.claim_next("rescuer") is None
    clock.advance(61)

    rescued = dispatcher.claim_next("rescuer")
    assert rescued is not None
    assert rescued.id == submitted.id
    assert rescued.attempt_count == 2

    outcome = dispatcher.execute(rescued, "rescuer")
    assert outcome.state == JobState.ACKNOWLEDGED
    entry = dispatcher.ledger.get_entry(outcome.job_key)
    assert entry.state == LedgerState.DONE
    assert entry.reclaim_count == 1


def test_key_reserved_elsewhere_defers_without_charging_attempt(tmp_path: Path) -> None:
    dispatcher, store, clock = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    assert dispatcher.ledger.reserve(submitted.job_key, "other-process").acquired

    dispatcher.drain("worker-1")
    deferred = dispatcher.get_job(submitted.id)
    assert deferred.state == JobState.RECEIVED
    assert deferred.attempt_count == 0
    assert deferred.deferral_count == 1
    assert deferred.available_at == clock.now() + timedelta(seconds=5)

    dispatcher.ledger.release(submitted.job_key, "other-process")
    clock.advance(6)
    dispatcher.drain("worker-1")
    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.attempt_count == 1


def test_attempt_deadline_exceeded_is_retried(tmp_path: Path) -> None:
    clock = ManualClock()
    store = SlowFetchStore(clock, delay_seconds=31)
    dispatcher, _, _ = make_dispatcher(tmp_path, store=store, clock=clock)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None

    dispatcher.drain("worker-1")
    timed_out = dispatcher.get_job(submitted.id)
    assert timed_out.state == JobState.RECEIVED
    assert timed_out.error_code == "ATTEMPT_DEADLINE_EXCEEDED"
    assert dispatcher.ledger.get_entry(timed_out.job_key).state == LedgerState.RELEASED

    job = run_until_settled(dispatcher, clock, submitted.id)
    assert job.state == JobState.ACKNOWLEDGED
    assert job.attempt_count == 2


def test_cancelled_attempt_returns_job_without_charging(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None

    claimed = dispatcher.claim_next("worker-1")
    assert claimed is not None
    cancel = threading.Event()
    cancel.set()
    outcome = dispatcher.execute(claimed, "worker-1", cancel_event=cancel)

    assert outcome.state == JobState.RECEIVED
    assert outcome.attempt_count == 0
    assert outcome.worker_id is None
    assert dispatcher.ledger.get_entry(claimed.job_key).state == LedgerState.RELEASED


def test_notifications_for_derived_objects_are_ignored(tmp_path: Path) -> None:
    dispatcher, _, _ = make_dispatcher(tmp_path)
    assert dispatcher.submit(notify("resized/photo_800x600.jpg")) is None
    assert dispatcher.list_jobs() == []


def test_separate_output_collection_accepts_prefixed_sources(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path, output_collection="derived")
    store.put(COLLECTION, "resized/already-small.png", jpeg_bytes(100, 100), "image/jpeg")

    submitted = dispatcher.submit(notify("resized/already-small.png"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    assert dispatcher.get_job(submitted.id).derived_key == "resized/already-small_100x100.png"
    assert store.keys("derived") == ["resized/already-small_100x100.png"]
    assert dispatcher.submit(notify("resized/already-small_100x100.png", collection="derived")) is None


def test_identical_existing_derived_object_is_not_rewritten(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    payload = jpeg_bytes()
    store.put(COLLECTION, "photo.jpg", payload, "image/jpeg")
    expected = transform(payload, "image/jpeg", params_from_settings(get_settings()))
    store.put(COLLECTION, "resized/photo_800x600.jpg", expected.data, "image/jpeg")
    writes_before = store.put_count

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    assert dispatcher.get_job(submitted.id).state == JobState.ACKNOWLEDGED
    assert store.put_count == writes_before


def test_derived_key_collision_with_other_source_fails(tmp_path: Path) -> None:
    dispatcher, store, _ = make_dispatcher(tmp_path)
    store.put(COLLECTION, "photo.jpg", jpeg_bytes(), "image/jpeg")
    store.put(
        COLLECTION,
        "resized/photo_800x600.jpg",
        b"somebody else's bytes",
        "image/jpeg",
        metadata={"source-key": "albums/photo.jpg", "job-key": "another-job-key"},
    )

    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    job = dispatcher.get_job(submitted.id)
    assert job.state == JobState.FAILED
    assert job.error_code == "DERIVED_KEY_COLLISION"
    assert store.get(COLLECTION, "resized/photo_800x600.jpg").data == b"somebody else's bytes"


def test_failure_sink_errors_do_not_break_processing(tmp_path: Path) -> None:
    configure_env(tmp_path)
    store = InMemoryObjectStore()
    calls: list[str] = []

    def exploding_sink(record: FailureRecord) -> None:
        calls.append(record.reason)
        raise RuntimeError("sink offline")

    dispatcher = Dispatcher(
        get_settings(),
        db_session_module.get_session_factory(),
        store,
        clock=ManualClock(),
        failure_sinks=[exploding_sink, lambda record: calls.append(f"second:{record.reason}")],
    )
    submitted = dispatcher.submit(notify("missing.jpg"))
    assert submitted is not None
    dispatcher.drain("worker-1")

    assert calls == ["SOURCE_NOT_FOUND", "second:SOURCE_NOT_FOUND"]
    assert dispatcher.get_job(submitted.id).state == JobState.FAILED


def test_metrics_and_purge(tmp_path: Path) -> None:
    dispatcher, store, clock = make_dispatcher(tmp_path)
    store.put(COLLECTION, "good.jpg", jpeg_bytes(320, 240), "image/jpeg")
    dispatcher.submit(notify("good.jpg"))
    dispatcher.submit(notify("missing.jpg"))
    dispatcher.drain("worker-1")
    dispatcher.submit(notify("good.jpg", version="v2"))

    metrics = dispatcher.get_metrics()
    assert metrics.acknowledged == 1
    assert metrics.failed == 1
    assert metrics.failed_permanent == 1
    assert metrics.failed_exhausted == 0
    assert metrics.queue_received == 1
    assert metrics.queue_in_flight == 0
    assert metrics.ledger_done == 1
    assert metrics.ledger_failed == 1
    payload = dispatch_metrics_snapshot_to_dict(metrics)
    assert payload["queue_capacity"] == 10000

    clock.advance(3600)
    assert dispatcher.purge_finished(older_than_seconds=60) == 2
    assert [job.state for job in dispatcher.list_jobs()] == [JobState.RECEIVED]


def test_transition_table_has_no_exit_from_terminal_states() -> None:
    assert ALLOWED_TRANSITIONS[JobState.ACKNOWLEDGED] == set()
    assert ALLOWED_TRANSITIONS[JobState.FAILED] == set()
    for state, targets in ALLOWED_TRANSITIONS.items():
        if state not in {JobState.ACKNOWLEDGED, JobState.FAILED}:
            assert JobState.FAILED in targets


def test_snapshot_dict_serializes_state(tmp_path: Path) -> None:
    dispatcher, _, _ = make_dispatcher(tmp_path)
    submitted = dispatcher.submit(notify("photo.jpg"))
    assert submitted is not None
    payload = job_snapshot_to_dict(submitted)
    assert payload["state"] == "received"
    assert payload["source_key"] == "photo.jpg"
    assert payload["attempt_count"] == 0
