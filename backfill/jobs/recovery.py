from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from backfill.db.models import INCOMPLETE_STATUSES, JobStatus, JobType
from backfill.jobs.checkpoint import validate_checkpoint
from backfill.jobs.errors import CheckpointValidationError, ResumeCallbackError
from backfill.jobs.manager import enforce_transition
from backfill.jobs.supervisor import ThreadSupervisor
from backfill.jobs.types import (
    BackfillJob,
    JobCheckpoint,
    RecoveryError,
    RecoveryResult,
    RecoveryState,
    RecoveryStatus,
)
from backfill.storage.base import JobStore

logger = logging.getLogger(__name__)

ResumeCallback = Callable[[BackfillJob, JobCheckpoint | None], None]

NO_CALLBACK_ERROR = "No resume callback configured"


class RecoveryManager:
    def __init__(self, store: JobStore):
        self._store = store
        self._default_callback: ResumeCallback | None = None
        self._callbacks: dict[JobType, ResumeCallback] = {}
        self._status = RecoveryStatus()
        self._callback_errors: list[ResumeCallbackError] = []
        self._lock = threading.Lock()
        self._supervisor = ThreadSupervisor("backfill-resume")

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def set_resume_callback(self, callback: ResumeCallback, *, job_type: JobType | None = None) -> None:
        if job_type is None:
            self._default_callback = callback
            logger.debug("Default resume callback set")
            return
        job_type = JobType(job_type)
        self._callbacks[job_type] = callback
        logger.debug("Resume callback set for job type %s", job_type.value)

    def get_recovery_status(self) -> RecoveryStatus:
        with self._lock:
            return replace(self._status)

    def callback_errors(self) -> list[ResumeCallbackError]:
        with self._lock:
            return list(self._callback_errors)

    def wait_for_resumes(self, timeout: float | None = None) -> bool:
        return self._supervisor.join(timeout)

    def recover_incomplete_jobs(self) -> RecoveryResult:
        self._set_status(RecoveryStatus(state=RecoveryState.RECOVERING, last_recovery_at=self._now()))
        result = RecoveryResult()
        logger.info("Starting recovery of incomplete jobs")

        try:
            jobs = self._store.get_jobs_by_status(INCOMPLETE_STATUSES)
        except Exception as exc:
            logger.error("Failed to recover incomplete jobs: %s", exc)
            result.success = False
            result.jobs_failed += 1
            result.errors.append(RecoveryError(job_id="unknown", message=f"Recovery process failed: {exc}"))
            self._finish(result)
            return result

        if not jobs:
            logger.info("No incomplete jobs found for recovery")
        else:
            logger.info("Found %d incomplete job(s) for recovery: %s", len(jobs), [job.job_id for job in jobs])

        # Callbacks run only after every job is marked recovering.
        dispatches: list[tuple[ResumeCallback, BackfillJob, JobCheckpoint | None]] = []
        for job in sorted(jobs, key=lambda item: (item.created_at, item.job_id)):
            error = self._recover_job(job, dispatches)
            if error is None:
                result.jobs_recovered += 1
            else:
                result.jobs_failed += 1
                result.errors.append(RecoveryError(job_id=job.job_id, message=error))

        for callback, job, checkpoint in dispatches:
            self._dispatch(callback, job, checkpoint)

        result.success = result.jobs_failed == 0
        self._finish(result)
        logger.info(
            "Recovery of incomplete jobs completed (success=%s, recovered=%d, failed=%d)",
            result.success,
            result.jobs_recovered,
            result.jobs_failed,
        )
        return result

    def _recover_job(
        self,
        job: BackfillJob,
        dispatches: list[tuple[ResumeCallback, BackfillJob, JobCheckpoint | None]],
    ) -> str | None:
        logger.info(
            "Recovering job %s (type=%s, previous status=%s)",
            job.job_id,
            job.job_type.value,
            job.status.value,
        )
        try:
            enforce_transition(job.status, JobStatus.RECOVERING)
            resumed_at = self._now()
            self._store.update_job(job.job_id, {"status": JobStatus.RECOVERING, "resumed_at": resumed_at})

            checkpoint = self._load_checkpoint(job.job_id)

            callback = self._callback_for(job.job_type)
            if callback is None:
                logger.warning("No resume callback set for job %s; marking it failed", job.job_id)
                self._mark_failed(job.job_id, f"Recovery failed: {NO_CALLBACK_ERROR}")
                return NO_CALLBACK_ERROR

            recovering = job.model_copy(update={"status": JobStatus.RECOVERING, "resumed_at": resumed_at})
            dispatches.append((callback, recovering, checkpoint))
        except Exception as exc:
            logger.error("Failed to recover job %s: %s", job.job_id, exc)
            try:
                self._mark_failed(job.job_id, f"Recovery failed: {exc}")
            except Exception as update_exc:
                logger.error("Failed to mark job %s as failed after recovery error: %s", job.job_id, update_exc)
            return str(exc)

        logger.info(
            "Job recovery scheduled for %s (valid checkpoint=%s, items completed=%d)",
            job.job_id,
            checkpoint is not None,
            len(checkpoint.items_completed) if checkpoint is not None else 0,
        )
        return None

    def _load_checkpoint(self, job_id: str) -> JobCheckpoint | None:
        raw = self._store.get_checkpoint(job_id)
        if raw is None:
            return None
        try:
            return validate_checkpoint(raw)
        except CheckpointValidationError as exc:
            logger.warning(
                "Corrupted checkpoint for job %s (%s); it will restart from the beginning",
                job_id,
                exc.reason,
            )
            return None

    def _callback_for(self, job_type: JobType) -> ResumeCallback | None:
        return self._callbacks.get(job_type, self._default_callback)

    def _dispatch(self, callback: ResumeCallback, job: BackfillJob, checkpoint: JobCheckpoint | None) -> None:
        def _on_error(exc: BaseException) -> None:
            error = ResumeCallbackError(job.job_id, str(exc))
            error.__cause__ = exc
            with self._lock:
                self._callback_errors.append(error)
            logger.error("Job resume failed for %s", job.job_id, exc_info=exc)

        self._supervisor.spawn(job.job_id, lambda: callback(job, checkpoint), _on_error)

    def _mark_failed(self, job_id: str, message: str) -> None:
        self._store.update_job(
            job_id,
            {"status": JobStatus.FAILED, "completed_at": self._now(), "error": message},
        )
        logger.debug("Job %s marked as failed: %s", job_id, message)

    def _set_status(self, status: RecoveryStatus) -> None:
        with self._lock:
            self._status = status

    def _finish(self, result: RecoveryResult) -> None:
        self._set_status(
            RecoveryStatus(
                state=RecoveryState.COMPLETED if result.success else RecoveryState.FAILED,
                last_recovery_at=self._now(),
                jobs_recovered=result.jobs_recovered,
                jobs_failed=result.jobs_failed,
            )
        )
