from __future__ import annotations

import logging
import threading
from typing import Callable

from backfill.jobs.errors import JobStorageError
from backfill.jobs.types import JobProgress, ProgressUpdate

logger = logging.getLogger(__name__)

SCALAR_PROGRESS_FIELDS = ("total_items", "processed_items", "failed_items", "skipped_items", "current_item")

PersistProgress = Callable[[str, ProgressUpdate], None]


def _scalar_fields(update: ProgressUpdate) -> list[str]:
    # Counters cannot be cleared; only current_item accepts an explicit None.
    return [
        name
        for name in SCALAR_PROGRESS_FIELDS
        if name in update.model_fields_set and (name == "current_item" or getattr(update, name) is not None)
    ]


def merge_updates(existing: ProgressUpdate, incoming: ProgressUpdate) -> ProgressUpdate:
    merged = existing.model_dump(exclude_unset=True)
    for name in _scalar_fields(incoming):
        merged[name] = getattr(incoming, name)

    if incoming.partition_progress is not None:
        partitions = dict(existing.partition_progress or {})
        partitions.update(incoming.partition_progress)
        merged["partition_progress"] = partitions

    if incoming.errors is not None:
        merged["errors"] = [*(existing.errors or []), *incoming.errors]

    return ProgressUpdate.model_validate(merged)


def apply_update(progress: JobProgress, update: ProgressUpdate) -> JobProgress:
    values = progress.model_dump()
    for name in _scalar_fields(update):
        values[name] = getattr(update, name)

    if update.partition_progress is not None:
        values["partition_progress"].update(
            {key: partition.model_dump() for key, partition in update.partition_progress.items()}
        )

    if update.errors is not None:
        values["errors"].extend(error.model_dump() for error in update.errors)

    return JobProgress.model_validate(values)


class ProgressBatcher:
    def __init__(self, interval_seconds: float, persist: PersistProgress):
        self._interval_seconds = interval_seconds
        self._persist = persist
        self._pending: dict[str, ProgressUpdate] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._closed = False

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    def pending_job_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def pending_update(self, job_id: str) -> ProgressUpdate | None:
        with self._lock:
            return self._pending.get(job_id)

    def add(self, job_id: str, update: ProgressUpdate) -> None:
        with self._lock:
            if not self._closed:
                self._queue(job_id, update)
                self._schedule()
                return
        # Closed batchers no longer own a timer; write through.
        with self._flush_lock:
            self._persist(job_id, update)

    def flush(self, job_id: str) -> bool:
        with self._flush_lock:
            with self._lock:
                update = self._pending.pop(job_id, None)
            if update is None:
                return False
            try:
                self._persist(job_id, update)
            except JobStorageError as exc:
                if exc.retryable:
                    self._requeue(job_id, update)
                raise
            return True

    def flush_all(self) -> int:
        flushed = 0
        with self._flush_lock:
            with self._lock:
                batch = self._pending
                self._pending = {}
            for job_id, update in batch.items():
                try:
                    self._persist(job_id, update)
                    flushed += 1
                except JobStorageError as exc:
                    logger.error(
                        "Failed to flush progress update for job %s (retryable=%s): %s",
                        job_id,
                        exc.retryable,
                        exc,
                    )
                    if exc.retryable:
                        self._requeue(job_id, update)
                except Exception:
                    logger.exception("Unexpected error while flushing progress update for job %s", job_id)
        if flushed:
            logger.debug("Flushed %d batched progress update(s)", flushed)
        return flushed

    def close(self) -> int:
        with self._lock:
            self._closed = True
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()
        return self.flush_all()

    def _queue(self, job_id: str, update: ProgressUpdate) -> None:
        existing = self._pending.get(job_id)
        self._pending[job_id] = update if existing is None else merge_updates(existing, update)

    def _requeue(self, job_id: str, update: ProgressUpdate) -> None:
        with self._lock:
            newer = self._pending.get(job_id)
            self._pending[job_id] = update if newer is None else merge_updates(update, newer)
            if not self._closed:
                self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None or self._closed:
            return
        timer = threading.Timer(self._interval_seconds, self._on_timer)
        timer.daemon = True
        timer.name = "backfill-progress-flush"
        self._timer = timer
        timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush_all()
