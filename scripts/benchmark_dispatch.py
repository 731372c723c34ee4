from __future__ import annotations

import argparse
import collections
import io
import os
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

import resizepipe.db.session as db_session_module
from resizepipe.core.config import get_settings
from resizepipe.db.init_db import initialize_database
from resizepipe.dispatch.pool import WorkerPool
from resizepipe.dispatch.service import Dispatcher, DispatcherBusyError
from resizepipe.notifications import ObjectCreatedNotification
from resizepipe.store.memory import InMemoryObjectStore

BENCH_COLLECTION = "bench-uploads"


@dataclass(slots=True)
class RunStats:
    submit_seconds: float
    drain_seconds: float
    notifications: int
    accepted: int
    busy: int
    failed_submits: int
    unique_sources: int
    derived_writes: int
    acknowledged: int
    failed_jobs: int
    error_top: list[tuple[str, int]]

    @property
    def throughput_jobs_per_second(self) -> float:
        if self.drain_seconds <= 0:
            return 0.0
        return self.acknowledged / self.drain_seconds

    @property
    def duplicate_write_ratio(self) -> float:
        if self.unique_sources <= 0:
            return 0.0
        return max(0, self.derived_writes - self.unique_sources) / self.unique_sources


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark dispatch admission, deduplication, and resize throughput")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--sources", type=int, default=200, help="Number of seeded source images")
    parser.add_argument("--notifications", type=int, default=1000, help="Total notifications submitted")
    parser.add_argument("--submitters", type=int, default=8, help="Concurrent notification submitters")
    parser.add_argument("--concurrency", type=int, default=8, help="Worker pool size")
    parser.add_argument("--queue-capacity", type=int, default=10000, help="Dispatch queue capacity")
    parser.add_argument("--image-size", type=int, default=1600, help="Seed image width in pixels")
    parser.add_argument("--seed", type=int, default=20240101, help="Random seed")
    parser.add_argument("--timeout", type=float, default=600.0, help="Seconds to wait for the queue to drain")
    parser.add_argument("--max-duplicate-write-ratio", type=float, default=0.0, help="Fail above this ratio")
    parser.add_argument("--min-throughput", type=float, default=None, help="Fail if jobs/s falls below threshold")
    return parser.parse_args()


def configure_env(state_root: Path, queue_capacity: int, concurrency: int) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["RESIZEPIPE_STATE_ROOT"] = state_root.as_posix()
    os.environ["RESIZEPIPE_STORE_BACKEND"] = "memory"
    os.environ["RESIZEPIPE_QUEUE_CAPACITY"] = str(max(1, queue_capacity))
    os.environ["RESIZEPIPE_MAX_CONCURRENCY"] = str(max(1, concurrency))
    os.environ["RESIZEPIPE_WORKER_POLL_SECONDS"] = "0.05"
    os.environ["RESIZEPIPE_LOG_LEVEL"] = "WARNING"

    get_settings.cache_clear()
    db_session_module.reset_engine()


def seed_sources(store: InMemoryObjectStore, *, count: int, width: int, rng: random.Random) -> list[str]:
    keys: list[str] = []
    height = max(1, (width * 3) // 4)
    for index in range(count):
        color = (rng.randrange(256), rng.randrange(256), rng.randrange(256))
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=90)
        key = f"uploads/source-{index:05d}.jpg"
        store.put(BENCH_COLLECTION, key, buffer.getvalue(), "image/jpeg")
        keys.append(key)
    store.put_count = 0
    return keys


def run_benchmark(
    *,
    dispatcher: Dispatcher,
    store: InMemoryObjectStore,
    source_keys: list[str],
    notifications: int,
    submitters: int,
    concurrency: int,
    timeout: float,
    rng: random.Random,
) -> RunStats:
    chosen = [rng.choice(source_keys) for _ in range(notifications)]
    error_counter: collections.Counter[str] = collections.Counter()
    accepted = 0
    busy = 0
    failed_submits = 0

    pool = WorkerPool(dispatcher, max_concurrency=concurrency, poll_interval=0.05, worker_prefix="bench")
    pool.start()

    def submit_once(key: str) -> str:
        try:
            dispatcher.submit(
                ObjectCreatedNotification(collection=BENCH_COLLECTION, key=key, content_type_hint="image/jpeg")
            )
            return "accepted"
        except DispatcherBusyError:
            return "busy"
        except Exception as exc:
            error_counter[f"{exc.__class__.__name__}:{str(exc).strip()[:180]}"] += 1
            return "failed"

    started = time.perf_counter()
    with ThreadPoolExecutor(max_workers=max(1, submitters)) as executor:
        futures = [executor.submit(submit_once, key) for key in chosen]
        for future in as_completed(futures):
            outcome = future.result()
            if outcome == "accepted":
                accepted += 1
            elif outcome == "busy":
                busy += 1
            else:
                failed_submits += 1
    submit_seconds = time.perf_counter() - started

    deadline = time.monotonic() + timeout
    drained = False
    while time.monotonic() < deadline:
        metrics = dispatcher.get_metrics()
        if metrics.queue_depth == 0:
            drained = True
            break
        time.sleep(0.1)
    drain_seconds = time.perf_counter() - started
    pool.stop(grace_seconds=10.0)

    if not drained:
        error_counter["DRAIN_TIMEOUT"] += 1

    metrics = dispatcher.get_metrics()
    for failure in dispatcher.list_failures(limit=500):
        error_counter[f"job:{failure.error_code}"] += 1

    return RunStats(
        submit_seconds=submit_seconds,
        drain_seconds=drain_seconds,
        notifications=notifications,
        accepted=accepted,
        busy=busy,
        failed_submits=failed_submits,
        unique_sources=len(set(chosen)),
        derived_writes=store.put_count,
        acknowledged=metrics.acknowledged,
        failed_jobs=metrics.failed,
        error_top=error_counter.most_common(5),
    )


def assert_thresholds(args: argparse.Namespace, stats: RunStats) -> None:
    failures: list[str] = []
    if stats.duplicate_write_ratio > args.max_duplicate_write_ratio:
        failures.append(
            f"duplicate_write_ratio={stats.duplicate_write_ratio:.4f} > "
            f"max_duplicate_write_ratio={args.max_duplicate_write_ratio:.4f}"
        )
    if args.min_throughput is not None and stats.throughput_jobs_per_second < args.min_throughput:
        failures.append(
            f"throughput={stats.throughput_jobs_per_second:.2f} < min_throughput={args.min_throughput:.2f}"
        )
    if failures:
        raise RuntimeError("; ".join(failures))


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root), queue_capacity=args.queue_capacity, concurrency=args.concurrency)
    initialize_database()

    rng = random.Random(args.seed)
    store = InMemoryObjectStore()
    source_keys = seed_sources(store, count=max(1, args.sources), width=max(16, args.image_size), rng=rng)
    dispatcher = Dispatcher(get_settings(), db_session_module.get_session_factory(), store)

    stats = run_benchmark(
        dispatcher=dispatcher,
        store=store,
        source_keys=source_keys,
        notifications=max(1, args.notifications),
        submitters=max(1, args.submitters),
        concurrency=max(1, args.concurrency),
        timeout=max(1.0, args.timeout),
        rng=rng,
    )

    print("== Dispatch Benchmark ==")
    print(f"notifications={stats.notifications}")
    print(f"accepted={stats.accepted}")
    print(f"busy={stats.busy}")
    print(f"failed_submits={stats.failed_submits}")
    print(f"unique_sources={stats.unique_sources}")
    print(f"derived_writes={stats.derived_writes}")
    print(f"acknowledged={stats.acknowledged}")
    print(f"failed_jobs={stats.failed_jobs}")
    print(f"submit_seconds={stats.submit_seconds:.3f}")
    print(f"drain_seconds={stats.drain_seconds:.3f}")
    print(f"throughput_jobs_per_second={stats.throughput_jobs_per_second:.2f}")
    print(f"duplicate_write_ratio={stats.duplicate_write_ratio:.4f}")
    if stats.error_top:
        print("top_errors:")
        for signature, count in stats.error_top:
            print(f"- {count}x {signature}")

    assert_thresholds(args, stats)


if __name__ == "__main__":
    main()
