from __future__ import annotations

import argparse
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import backfill.db.session as db_session_module
from backfill.core.config import get_settings
from backfill.core.logging import configure_logging
from backfill.db.models import JobType
from backfill.jobs.manager import JobManager
from backfill.jobs.types import CreateJobRequest, JobResult
from backfill.storage.factory import create_job_store


@dataclass(slots=True)
class RunStats:
    elapsed_seconds: float
    updates: int
    persisted_writes: int
    final_processed: int

    @property
    def updates_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.updates / self.elapsed_seconds

    @property
    def write_reduction(self) -> float:
        if self.updates <= 0:
            return 0.0
        return 1.0 - (self.persisted_writes / self.updates)


class WriteCounter:
    def __init__(self, store: Any):
        self._store = store
        self._lock = threading.Lock()
        self.progress_writes = 0

    def __getattr__(self, name: str) -> Any:
        return getattr(self._store, name)

    def update_job(self, job_id: str, updates: Mapping[str, Any]) -> None:
        if "progress" in updates:
            with self._lock:
                self.progress_writes += 1
        self._store.update_job(job_id, updates)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark progress batching write amplification")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--provider", default="local", choices=("local", "sql"), help="Job store provider")
    parser.add_argument("--updates", type=int, default=5000, help="Total progress updates")
    parser.add_argument("--workers", type=int, default=4, help="Concurrent reporting threads")
    parser.add_argument("--interval", type=float, default=0.25, help="Batch window in seconds")
    parser.add_argument("--log-level", default="WARNING", help="Log level for the backfill logger")
    parser.add_argument("--min-write-reduction", type=float, default=None, help="Fail if write reduction is below threshold")
    return parser.parse_args()


def configure_env(state_root: Path, provider: str, interval: float) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["BACKFILL_STATE_ROOT"] = state_root.as_posix()
    os.environ["BACKFILL_STORAGE_PROVIDER"] = provider
    os.environ["BACKFILL_PROGRESS_BATCH_INTERVAL_SECONDS"] = str(interval)
    os.environ["BACKFILL_AUTO_RECOVER_ON_INIT"] = "false"

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None


def run_benchmark(*, manager: JobManager, counter: WriteCounter, updates: int, workers: int) -> RunStats:
    job = manager.create_job(CreateJobRequest(job_type=JobType.DATA_COLLECTION))
    manager.start_job(job.job_id)
    manager.update_progress(job.job_id, {"total_items": updates})

    next_value = iter(range(1, updates + 1))
    value_lock = threading.Lock()

    def report_once() -> None:
        with value_lock:
            processed = next(next_value)
        manager.update_progress(job.job_id, {"processed_items": processed, "current_item": f"item-{processed}"})

    start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        for future in [executor.submit(report_once) for _ in range(updates)]:
            future.result()
    completed = manager.complete_job(job.job_id, JobResult(items_processed=updates))
    elapsed = time.perf_counter() - start

    return RunStats(
        elapsed_seconds=elapsed,
        updates=updates,
        persisted_writes=counter.progress_writes,
        final_processed=completed.progress.processed_items,
    )


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root), provider=args.provider, interval=args.interval)
    configure_logging(args.log_level)
    settings = get_settings()
    counter = WriteCounter(create_job_store(settings))
    manager = JobManager(settings=settings, store=counter)

    try:
        stats = run_benchmark(
            manager=manager,
            counter=counter,
            updates=max(1, args.updates),
            workers=max(1, args.workers),
        )
    finally:
        manager.dispose()

    print("== Progress Batching Benchmark ==")
    print(f"provider={args.provider}")
    print(f"updates={stats.updates}")
    print(f"persisted_writes={stats.persisted_writes}")
    print(f"final_processed={stats.final_processed}")
    print(f"elapsed_seconds={stats.elapsed_seconds:.3f}")
    print(f"updates_per_second={stats.updates_per_second:.2f}")
    print(f"write_reduction={stats.write_reduction:.4f}")

    if args.min_write_reduction is not None and stats.write_reduction < args.min_write_reduction:
        raise RuntimeError(
            f"write_reduction={stats.write_reduction:.4f} < min_write_reduction={args.min_write_reduction:.4f}"
        )


if __name__ == "__main__":
    main()
