from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from backfill.db.models import JobStatus, TERMINAL_STATUSES
from backfill.jobs.errors import JobNotFoundError, JobStorageError
from backfill.jobs.types import BackfillJob, JobCheckpoint, encode_job_updates
from backfill.storage.base import (
    ListJobsOptions,
    active_statuses,
    is_expired,
    retention_cutoff,
    sort_newest_first,
)

logger = logging.getLogger(__name__)

PROVIDER = "local"


class LocalJobStore:
    provider = PROVIDER

    def __init__(self, jobs_root: Path):
        self._jobs_root = Path(jobs_root)
        self._lock = threading.RLock()
        logger.debug("LocalJobStore initialized at %s", self._jobs_root.as_posix())

    @property
    def jobs_root(self) -> Path:
        return self._jobs_root

    def create_job(self, job: BackfillJob) -> None:
        with self._lock:
            self._ensure_root("createJob")
            path = self._job_path(job.job_id)
            if path.exists():
                raise JobStorageError(
                    f"Job with ID '{job.job_id}' already exists",
                    operation="createJob",
                    provider=PROVIDER,
                )
            self._write_document(path, job.to_document(), operation="createJob")
        logger.debug("Stored job %s (type=%s, status=%s)", job.job_id, job.job_type.value, job.status.value)

    def get_job(self, job_id: str) -> BackfillJob | None:
        document = self._read_document(job_id, operation="getJob")
        if document is None:
            return None
        return self._to_job(document, source=job_id)

    def update_job(self, job_id: str, updates: Mapping[str, Any]) -> None:
        encoded = encode_job_updates(updates)
        with self._lock:
            document = self._read_document(job_id, operation="updateJob")
            if document is None or self._to_job(document, source=job_id) is None:
                raise JobNotFoundError(job_id)
            document.update(encoded)
            document["job_id"] = job_id
            try:
                BackfillJob.from_document(document)
            except ValidationError as exc:
                raise ValueError(f"Update would corrupt job {job_id}: {exc}") from exc
            self._write_document(self._job_path(job_id), document, operation="updateJob")
        logger.debug("Updated job %s (fields=%s)", job_id, sorted(encoded))

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            path = self._job_path(job_id)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise JobStorageError(
                    f"Failed to delete backfill job: {exc}",
                    operation="deleteJob",
                    provider=PROVIDER,
                    retryable=True,
                ) from exc
        logger.debug("Deleted job %s", job_id)
        return True

    def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        options = options or ListJobsOptions()
        jobs = [job for job in self._load_all() if options.matches(job)]
        return options.paginate(sort_newest_first(jobs))

    def get_active_job(self) -> BackfillJob | None:
        jobs = self.get_jobs_by_status(active_statuses())
        return jobs[0] if jobs else None

    def get_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[BackfillJob]:
        return self.list_jobs(ListJobsOptions(status=tuple(statuses)))

    def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint) -> None:
        self.update_job(job_id, {"checkpoint": checkpoint})

    def get_checkpoint(self, job_id: str) -> dict[str, Any] | None:
        document = self._read_document(job_id, operation="getCheckpoint")
        if document is None:
            return None
        checkpoint = document.get("checkpoint")
        return dict(checkpoint) if isinstance(checkpoint, dict) else checkpoint

    def cleanup_old_jobs(self, retention_days: int) -> int:
        cutoff = retention_cutoff(retention_days)
        removed = 0
        with self._lock:
            for job in self.get_jobs_by_status(TERMINAL_STATUSES):
                if is_expired(job, cutoff) and self.delete_job(job.job_id):
                    removed += 1
        logger.info("Cleaned up %d backfill job(s) older than %s", removed, cutoff.isoformat())
        return removed

    def is_ready(self) -> bool:
        try:
            self._ensure_root("isReady")
            return os.access(self._jobs_root, os.R_OK | os.W_OK)
        except JobStorageError as exc:
            logger.warning("Local job store is not ready: %s", exc)
            return False

    def _job_path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self._jobs_root / f"{job_id}.json"

    def _ensure_root(self, operation: str) -> None:
        try:
            self._jobs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise JobStorageError(
                f"Cannot create jobs directory {self._jobs_root.as_posix()}: {exc}",
                operation=operation,
                provider=PROVIDER,
            ) from exc

    def _read_document(self, job_id: str, *, operation: str) -> dict[str, Any] | None:
        path = self._job_path(job_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise JobStorageError(
                f"Failed to read job {job_id}: {exc}",
                operation=operation,
                provider=PROVIDER,
                retryable=True,
            ) from exc
        try:
            document = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Job file %s is not valid JSON; ignoring it", path.as_posix())
            return None
        if not isinstance(document, dict):
            logger.warning("Job file %s does not hold an object; ignoring it", path.as_posix())
            return None
        return document

    def _write_document(self, path: Path, document: Mapping[str, Any], *, operation: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        payload = json.dumps(document, indent=2, ensure_ascii=False)
        try:
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise JobStorageError(
                f"Failed to write {path.name}: {exc}",
                operation=operation,
                provider=PROVIDER,
                retryable=True,
            ) from exc

    def _to_job(self, document: Mapping[str, Any], *, source: str) -> BackfillJob | None:
        try:
            return BackfillJob.from_document(document)
        except ValidationError:
            logger.warning("Job record %s has an invalid structure; ignoring it", source)
            return None

    def _load_all(self) -> list[BackfillJob]:
        self._ensure_root("listJobs")
        jobs: list[BackfillJob] = []
        for path in sorted(self._jobs_root.glob("*.json")):
            document = self._read_document(path.stem, operation="listJobs")
            if document is None:
                continue
            job = self._to_job(document, source=path.name)
            if job is not None:
                jobs.append(job)
        return jobs
