from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from backfill.core.config import Settings
from backfill.db.models import JobStatus, JobType
from backfill.jobs.errors import InvalidJobStateError, JobCancelledError, JobConflictError, ResumeCallbackError
from backfill.jobs.manager import JobManager
from backfill.jobs.recovery import RecoveryManager
from backfill.jobs.supervisor import ThreadSupervisor
from backfill.jobs.types import (
    BackfillJob,
    CreateJobRequest,
    JobCheckpoint,
    JobError,
    JobResult,
    RecoveryResult,
    RecoveryStatus,
)
from backfill.storage.base import JobStore, ListJobsOptions

logger = logging.getLogger(__name__)


class JobContext:
    def __init__(self, manager: JobManager, job: BackfillJob, checkpoint: JobCheckpoint | None = None):
        self._manager = manager
        self._job = job
        self._checkpoint = checkpoint
        self._items_completed: list[str] = list(checkpoint.items_completed) if checkpoint is not None else []
        self._completed_set = set(self._items_completed)
        self._cancelled = threading.Event()

    @property
    def job(self) -> BackfillJob:
        return self._job

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def checkpoint(self) -> JobCheckpoint | None:
        return self._checkpoint

    def is_item_done(self, item_id: str) -> bool:
        return item_id in self._completed_set

    def report_progress(self, **fields: Any) -> None:
        self._manager.update_progress(self.job_id, fields)

    def mark_item_done(self, item_id: str) -> JobCheckpoint:
        if item_id not in self._completed_set:
            self._items_completed.append(item_id)
            self._completed_set.add(item_id)
        checkpoint = JobCheckpoint(
            last_processed_item=item_id,
            last_processed_at=datetime.now(tz=timezone.utc),
            items_completed=list(self._items_completed),
        )
        self._checkpoint = self._manager.update_checkpoint(self.job_id, checkpoint)
        return self._checkpoint

    def record_error(self, item_id: str, message: str, *, is_retryable: bool = False) -> None:
        self._manager.add_error(self.job_id, JobError(item_id=item_id, message=message, is_retryable=is_retryable))

    def update_partition(self, partition_id: str, **fields: Any) -> None:
        self._manager.update_partition_progress(self.job_id, partition_id, fields)

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        job = self._manager.get_job(self.job_id)
        if job is not None and job.status == JobStatus.CANCELLED:
            self._cancelled.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise JobCancelledError(self.job_id)


Executor = Callable[[BackfillJob, JobContext], JobResult | Mapping[str, Any]]


class BackfillRunner:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        executors: Mapping[JobType, Executor] | None = None,
    ):
        self._settings = settings
        self._store = store
        self._manager = JobManager(settings=settings, store=store)
        self._recovery = RecoveryManager(store=store)
        self._recovery.set_resume_callback(self._resume_job)
        self._executors: dict[JobType, Executor] = {JobType(key): value for key, value in (executors or {}).items()}
        self._supervisor = ThreadSupervisor("backfill-job")
        self._contexts: dict[str, JobContext] = {}
        self._lock = threading.Lock()
        self._resume_lock = threading.Lock()
        self._initialized = False
        self._initialize_result: RecoveryResult | None = None

    @property
    def manager(self) -> JobManager:
        return self._manager

    @property
    def recovery(self) -> RecoveryManager:
        return self._recovery

    def register_executor(self, job_type: JobType, executor: Executor) -> None:
        self._executors[JobType(job_type)] = executor
        logger.debug("Executor registered for job type %s", JobType(job_type).value)

    def initialize(self) -> RecoveryResult | None:
        with self._lock:
            if self._initialized:
                return self._initialize_result
            self._initialized = True

        if not self._store.is_ready():
            logger.warning("Job store (%s) is not ready; continuing without guarantees", self._store.provider)

        if self._settings.auto_recover_on_init:
            self._initialize_result = self._recovery.recover_incomplete_jobs()
        logger.info("BackfillRunner initialized (provider=%s)", self._store.provider)
        return self._initialize_result

    def submit(self, request: CreateJobRequest | Mapping[str, Any]) -> BackfillJob:
        job = self._manager.create_job(request)
        self._supervisor.spawn(job.job_id, lambda: self.run_job(job), self._executor_crashed(job.job_id))
        return job

    def run_job(self, job: BackfillJob, checkpoint: JobCheckpoint | None = None) -> BackfillJob | None:
        executor = self._executors.get(job.job_type)
        if executor is None:
            return self._fail(job.job_id, f"No executor registered for job type {job.job_type.value}")

        try:
            started = self._manager.start_job(job.job_id)
        except JobConflictError as exc:
            logger.warning("Job %s could not start: %s", job.job_id, exc)
            return self._fail(job.job_id, f"Could not start job: {exc}")
        except InvalidJobStateError as exc:
            logger.warning("Job %s is no longer runnable: %s", job.job_id, exc)
            return self._manager.get_job(job.job_id)

        context = JobContext(self._manager, started, checkpoint)
        with self._lock:
            self._contexts[job.job_id] = context

        started_at = time.monotonic()
        try:
            outcome = executor(started, context)
        except JobCancelledError:
            logger.info("Job %s stopped after cancellation", job.job_id)
            self._manager.flush_progress(job.job_id)
            return self._manager.get_job(job.job_id)
        except Exception as exc:
            logger.exception("Executor for job %s raised", job.job_id)
            return self._fail(job.job_id, str(exc) or exc.__class__.__name__)
        finally:
            with self._lock:
                self._contexts.pop(job.job_id, None)

        result = outcome if isinstance(outcome, JobResult) else JobResult.model_validate(outcome)
        if not result.duration_seconds:
            result = result.model_copy(update={"duration_seconds": time.monotonic() - started_at})
        try:
            return self._manager.complete_job(job.job_id, result)
        except InvalidJobStateError as exc:
            logger.warning("Job %s finished but could not be completed: %s", job.job_id, exc)
            return self._manager.get_job(job.job_id)

    def cancel_job(self, job_id: str) -> bool:
        cancelled = self._manager.cancel_job(job_id)
        if cancelled:
            self._signal_cancel(job_id)
        return cancelled

    def force_cancel_job(self, job_id: str, *, reason: str | None = None, operator: str | None = None) -> bool:
        cancelled = self._manager.force_cancel_job(job_id, reason=reason, operator=operator)
        if cancelled:
            self._signal_cancel(job_id)
        return cancelled

    def get_job(self, job_id: str) -> BackfillJob | None:
        return self._manager.get_job(job_id)

    def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        return self._manager.list_jobs(options)

    def recover_incomplete_jobs(self) -> RecoveryResult:
        return self._recovery.recover_incomplete_jobs()

    def get_recovery_status(self) -> RecoveryStatus:
        return self._recovery.get_recovery_status()

    def callback_errors(self) -> list[ResumeCallbackError]:
        return self._recovery.callback_errors()

    def cleanup_old_jobs(self, retention_days: int | None = None) -> int:
        return self._manager.cleanup_old_jobs(retention_days)

    def wait(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        resumed = self._recovery.wait_for_resumes(timeout)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return self._supervisor.join(remaining) and resumed

    def dispose(self) -> None:
        running = self._supervisor.active_count()
        if running:
            logger.warning("Disposing BackfillRunner with %d job thread(s) still running", running)
        self._manager.dispose()

    def _resume_job(self, job: BackfillJob, checkpoint: JobCheckpoint | None) -> None:
        logger.info(
            "Resuming job %s from %s",
            job.job_id,
            checkpoint.last_processed_item if checkpoint is not None else "the beginning",
        )
        with self._resume_lock:
            self.run_job(job, checkpoint)

    def _fail(self, job_id: str, message: str) -> BackfillJob | None:
        try:
            return self._manager.fail_job(job_id, message)
        except InvalidJobStateError as exc:
            logger.warning("Job %s could not be marked failed: %s", job_id, exc)
            return self._manager.get_job(job_id)

    def _signal_cancel(self, job_id: str) -> None:
        with self._lock:
            context = self._contexts.get(job_id)
        if context is not None:
            context.cancel()

    def _executor_crashed(self, job_id: str) -> Callable[[BaseException], None]:
        def _on_error(exc: BaseException) -> None:
            logger.error("Job thread for %s crashed", job_id, exc_info=exc)

        return _on_error
