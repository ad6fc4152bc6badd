from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from uuid import uuid4

from backfill.core.config import Settings
from backfill.db.models import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus
from backfill.jobs.batching import ProgressBatcher, apply_update
from backfill.jobs.checkpoint import validate_checkpoint
from backfill.jobs.errors import InvalidJobStateError, JobConflictError, JobNotFoundError
from backfill.jobs.types import (
    BackfillJob,
    CreateJobRequest,
    JobCheckpoint,
    JobError,
    JobProgress,
    JobResult,
    PartitionProgress,
    ProgressUpdate,
)
from backfill.storage.base import JobStore, ListJobsOptions

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Job marked as failed due to inactivity (no progress for {minutes} minutes)"


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED, JobStatus.RECOVERING},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.RECOVERING},
    JobStatus.RECOVERING: {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

CANCELLABLE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RUNNING})
RESUME_BLOCKING_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.RUNNING})


def enforce_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")


class JobManager:
    def __init__(self, settings: Settings, store: JobStore):
        self._settings = settings
        self._store = store
        self._slot_lock = threading.RLock()
        self._batcher = ProgressBatcher(
            interval_seconds=settings.progress_batch_interval_seconds,
            persist=self._persist_progress,
        )
        logger.debug(
            "JobManager initialized (stale_threshold=%ss, batch_interval=%ss)",
            settings.stale_job_threshold_seconds,
            settings.progress_batch_interval_seconds,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _stale_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.stale_job_threshold_seconds)

    def _stale_message(self) -> str:
        minutes = self._settings.stale_job_threshold_seconds // 60
        return STALE_JOB_MESSAGE.format(minutes=minutes)

    def _require_job(self, job_id: str) -> BackfillJob:
        job = self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def create_job(self, request: CreateJobRequest | Mapping[str, Any]) -> BackfillJob:
        if not isinstance(request, CreateJobRequest):
            request = CreateJobRequest.model_validate(request)

        with self._slot_lock:
            self._ensure_slot_available()
            job = BackfillJob(
                job_id=str(uuid4()),
                job_type=request.job_type,
                status=JobStatus.PENDING,
                config=request.to_config(),
                progress=JobProgress(),
                checkpoint=None,
                created_at=self._now(),
            )
            self._store.create_job(job)

        logger.info(
            "Backfill job created: %s (type=%s, range=%s..%s, partitions=%s)",
            job.job_id,
            job.job_type.value,
            job.config.start_date,
            job.config.end_date,
            len(job.config.target_partitions) if job.config.target_partitions is not None else "all",
        )
        return job

    def start_job(self, job_id: str) -> BackfillJob:
        with self._slot_lock:
            job = self._require_job(job_id)
            enforce_transition(job.status, JobStatus.RUNNING)
            # Recovered jobs queue behind each other; only a running job blocks a resume.
            blocking = RESUME_BLOCKING_STATUSES if job.status == JobStatus.RECOVERING else ACTIVE_STATUSES
            self._ensure_slot_available(exclude_job_id=job_id, blocking_statuses=blocking)
            now = self._now()
            self._store.update_job(job_id, {"status": JobStatus.RUNNING, "started_at": now})

        logger.info("Job started: %s (previous status=%s)", job_id, job.status.value)
        return job.model_copy(update={"status": JobStatus.RUNNING, "started_at": now})

    def update_progress(self, job_id: str, update: ProgressUpdate | Mapping[str, Any]) -> None:
        if not isinstance(update, ProgressUpdate):
            update = ProgressUpdate.model_validate(update)
        self._validate_counters(job_id, update)
        self._batcher.add(job_id, update)
        logger.debug(
            "Progress update queued for job %s (processed=%s, current=%s)",
            job_id,
            update.processed_items,
            update.current_item,
        )

    def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint | Mapping[str, Any]) -> JobCheckpoint:
        validated = validate_checkpoint(checkpoint)
        self._store.update_checkpoint(job_id, validated)
        logger.debug(
            "Checkpoint updated for job %s (last=%s, completed=%d)",
            job_id,
            validated.last_processed_item,
            len(validated.items_completed),
        )
        return validated

    def complete_job(self, job_id: str, result: JobResult | Mapping[str, Any]) -> BackfillJob:
        if not isinstance(result, JobResult):
            result = JobResult.model_validate(result)
        self._batcher.flush(job_id)
        job = self._transition(job_id, JobStatus.COMPLETED, completed_at=self._now(), result=result)
        logger.info(
            "Job completed: %s (processed=%d, failed=%d, skipped=%d, duration=%.3fs)",
            job_id,
            result.items_processed,
            result.items_failed,
            result.items_skipped,
            result.duration_seconds,
        )
        return job

    def fail_job(self, job_id: str, error: str) -> BackfillJob:
        self._batcher.flush(job_id)
        job = self._transition(job_id, JobStatus.FAILED, completed_at=self._now(), error=error)
        logger.error("Job failed: %s (%s)", job_id, error)
        return job

    def cancel_job(self, job_id: str) -> bool:
        self._batcher.flush(job_id)
        with self._slot_lock:
            job = self._store.get_job(job_id)
            if job is None:
                logger.warning("Cannot cancel job %s: job not found", job_id)
                return False
            if job.status not in CANCELLABLE_STATUSES:
                logger.warning("Cannot cancel job %s: status %s is not cancellable", job_id, job.status.value)
                return False
            self._store.update_job(job_id, {"status": JobStatus.CANCELLED, "completed_at": self._now()})
        logger.info("Job cancelled: %s (previous status=%s)", job_id, job.status.value)
        return True

    def force_cancel_job(self, job_id: str, *, reason: str | None = None, operator: str | None = None) -> bool:
        self._batcher.flush(job_id)
        with self._slot_lock:
            job = self._store.get_job(job_id)
            if job is None:
                logger.warning("Cannot force-cancel job %s: job not found", job_id)
                return False
            if job.status in TERMINAL_STATUSES:
                logger.warning("Cannot force-cancel job %s: already %s", job_id, job.status.value)
                return False

            now = self._now()
            message = f"Force-cancelled by operator at {now.isoformat()}."
            if reason:
                message += f" Reason: {reason}"
            if operator:
                message += f" (operator: {operator})"
            self._store.update_job(
                job_id,
                {"status": JobStatus.CANCELLED, "completed_at": now, "error": message, "checkpoint": None},
            )
        logger.warning("Job force-cancelled: %s (previous status=%s)", job_id, job.status.value)
        return True

    def can_start_new_job(self) -> bool:
        with self._slot_lock:
            try:
                self._ensure_slot_available()
            except JobConflictError:
                return False
            return True

    def get_active_job(self) -> BackfillJob | None:
        return self._store.get_active_job()

    def get_job(self, job_id: str) -> BackfillJob | None:
        return self._store.get_job(job_id)

    def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        options = options or ListJobsOptions()
        limit = self._settings.default_page_size if options.limit is None else options.limit
        bounded = max(1, min(limit, self._settings.max_page_size))
        return self._store.list_jobs(options.with_limit(bounded))

    def cleanup_old_jobs(self, retention_days: int | None = None) -> int:
        days = self._settings.job_retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError("retention_days must be >= 0")
        removed = self._store.cleanup_old_jobs(days)
        logger.info("Removed %d terminal job(s) older than %d day(s)", removed, days)
        return removed

    def add_error(self, job_id: str, error: JobError | Mapping[str, Any]) -> None:
        if self._store.get_job(job_id) is None:
            logger.warning("Cannot add error: job %s not found", job_id)
            return
        if not isinstance(error, JobError):
            error = JobError.model_validate(error)
        self.update_progress(job_id, ProgressUpdate(errors=[error]))
        logger.debug("Error recorded for job %s (item=%s, retryable=%s)", job_id, error.item_id, error.is_retryable)

    def update_partition_progress(
        self,
        job_id: str,
        partition_id: str,
        progress: PartitionProgress | Mapping[str, Any],
    ) -> None:
        if self._store.get_job(job_id) is None:
            logger.warning("Cannot update partition %s progress: job %s not found", partition_id, job_id)
            return
        if not isinstance(progress, PartitionProgress):
            progress = PartitionProgress.model_validate({"partition_id": partition_id, **progress})
        self.update_progress(job_id, ProgressUpdate(partition_progress={partition_id: progress}))

    def flush_progress(self, job_id: str | None = None) -> int:
        if job_id is None:
            return self._batcher.flush_all()
        return int(self._batcher.flush(job_id))

    def dispose(self) -> None:
        flushed = self._batcher.close()
        logger.info("JobManager disposed (%d pending progress update(s) flushed)", flushed)

    def last_progress_at(self, job: BackfillJob) -> datetime:
        # A resume counts as activity.
        marks = [job.checkpoint.last_processed_at] if job.checkpoint is not None else []
        if job.resumed_at is not None:
            marks.append(job.resumed_at)
        if marks:
            return max(marks)
        if job.started_at is not None:
            return job.started_at
        return job.created_at

    def is_job_stale(self, job: BackfillJob) -> bool:
        return self._now() - self.last_progress_at(job) > self._stale_delta()

    def _ensure_slot_available(
        self,
        exclude_job_id: str | None = None,
        blocking_statuses: frozenset[JobStatus] = ACTIVE_STATUSES,
    ) -> None:
        active_jobs = [
            job for job in self._store.get_jobs_by_status(list(blocking_statuses)) if job.job_id != exclude_job_id
        ]
        blocking: BackfillJob | None = None
        for job in active_jobs:
            if self.is_job_stale(job):
                logger.warning(
                    "Active job %s is stale (status=%s, last progress at %s); marking it failed",
                    job.job_id,
                    job.status.value,
                    self.last_progress_at(job).isoformat(),
                )
                self.fail_job(job.job_id, self._stale_message())
            elif blocking is None:
                blocking = job
        if blocking is not None:
            raise JobConflictError(
                f"Cannot start a new job: job '{blocking.job_id}' is already {blocking.status.value}. "
                "Only one job can run at a time.",
                active_job_id=blocking.job_id,
            )

    def _transition(self, job_id: str, target: JobStatus, **fields: Any) -> BackfillJob:
        # Terminal states must not be overwritten by a concurrent caller.
        with self._slot_lock:
            job = self._require_job(job_id)
            enforce_transition(job.status, target)
            self._store.update_job(job_id, {"status": target, **fields})
            return self._require_job(job_id)

    def _validate_counters(self, job_id: str, update: ProgressUpdate) -> None:
        pending = self._batcher.pending_update(job_id)
        effective: dict[str, int | None] = {}
        for name in ("total_items", "processed_items", "failed_items", "skipped_items"):
            value = getattr(update, name) if name in update.model_fields_set else None
            if value is None and pending is not None and name in pending.model_fields_set:
                value = getattr(pending, name)
            effective[name] = value
        total = effective["total_items"]
        if not total:
            return
        accounted = sum(effective[name] or 0 for name in ("processed_items", "failed_items", "skipped_items"))
        if accounted > total:
            raise ValueError(
                f"processed + failed + skipped ({accounted}) exceeds total_items ({total}) for job {job_id}"
            )

    def _persist_progress(self, job_id: str, update: ProgressUpdate) -> None:
        job = self._store.get_job(job_id)
        if job is None:
            logger.warning("Cannot persist progress: job %s not found", job_id)
            return
        progress = apply_update(job.progress, update)
        self._store.update_job(job_id, {"progress": progress})
        logger.debug(
            "Progress persisted for job %s (%d/%d)",
            job_id,
            progress.processed_items,
            progress.total_items,
        )
