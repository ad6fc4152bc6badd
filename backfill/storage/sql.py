from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backfill.db.models import TERMINAL_STATUSES, BackfillJobRow, JobStatus
from backfill.jobs.errors import JobNotFoundError, JobStorageError
from backfill.jobs.types import BackfillJob, JobCheckpoint, encode_job_updates
from backfill.storage.base import ListJobsOptions, active_statuses, retention_cutoff

logger = logging.getLogger(__name__)

PROVIDER = "sql"


class SqlJobStore:
    provider = PROVIDER

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _storage_error(self, operation: str, exc: SQLAlchemyError) -> JobStorageError:
        return JobStorageError(
            f"Database error during {operation}: {exc}",
            operation=operation,
            provider=PROVIDER,
            retryable=isinstance(exc, OperationalError),
        )

    def create_job(self, job: BackfillJob) -> None:
        row = BackfillJobRow(
            job_id=job.job_id,
            job_type=job.job_type,
            status=job.status,
            document=job.to_document(),
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
        with self._write_lock, self._session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise JobStorageError(
                    f"Job with ID '{job.job_id}' already exists",
                    operation="createJob",
                    provider=PROVIDER,
                ) from exc
            except SQLAlchemyError as exc:
                session.rollback()
                raise self._storage_error("createJob", exc) from exc
        logger.debug("Stored job %s (type=%s, status=%s)", job.job_id, job.job_type.value, job.status.value)

    def get_job(self, job_id: str) -> BackfillJob | None:
        with self._session_factory() as session:
            try:
                row = session.get(BackfillJobRow, job_id)
            except SQLAlchemyError as exc:
                raise self._storage_error("getJob", exc) from exc
            if row is None:
                return None
            return self._to_job(row)

    def update_job(self, job_id: str, updates: Mapping[str, Any]) -> None:
        encoded = encode_job_updates(updates)
        with self._write_lock, self._session_factory() as session:
            try:
                row = session.get(BackfillJobRow, job_id)
                if row is None or self._to_job(row) is None:
                    raise JobNotFoundError(job_id)

                document = dict(row.document)
                document.update(encoded)
                document["job_id"] = job_id
                try:
                    merged = BackfillJob.from_document(document)
                except ValidationError as exc:
                    raise ValueError(f"Update would corrupt job {job_id}: {exc}") from exc

                row.document = document
                row.status = merged.status
                row.completed_at = merged.completed_at
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise self._storage_error("updateJob", exc) from exc
        logger.debug("Updated job %s (fields=%s)", job_id, sorted(encoded))

    def delete_job(self, job_id: str) -> bool:
        with self._write_lock, self._session_factory() as session:
            try:
                result = session.execute(delete(BackfillJobRow).where(BackfillJobRow.job_id == job_id))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise self._storage_error("deleteJob", exc) from exc
        return bool(result.rowcount)

    def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]:
        options = options or ListJobsOptions()
        stmt = select(BackfillJobRow).order_by(BackfillJobRow.created_at.desc(), BackfillJobRow.job_id.desc())
        if options.status:
            stmt = stmt.where(BackfillJobRow.status.in_(list(options.status)))
        if options.job_type:
            stmt = stmt.where(BackfillJobRow.job_type.in_(list(options.job_type)))
        if options.created_from is not None:
            stmt = stmt.where(BackfillJobRow.created_at >= options.created_from)
        if options.created_to is not None:
            stmt = stmt.where(BackfillJobRow.created_at <= options.created_to)
        if options.offset:
            stmt = stmt.offset(options.offset)
        if options.limit is not None:
            stmt = stmt.limit(options.limit)

        with self._session_factory() as session:
            try:
                rows = list(session.scalars(stmt).all())
            except SQLAlchemyError as exc:
                raise self._storage_error("listJobs", exc) from exc
            jobs = [self._to_job(row) for row in rows]
        return [job for job in jobs if job is not None]

    def get_active_job(self) -> BackfillJob | None:
        jobs = self.list_jobs(ListJobsOptions(status=active_statuses(), limit=1))
        return jobs[0] if jobs else None

    def get_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[BackfillJob]:
        return self.list_jobs(ListJobsOptions(status=tuple(statuses)))

    def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint) -> None:
        self.update_job(job_id, {"checkpoint": checkpoint})

    def get_checkpoint(self, job_id: str) -> dict[str, Any] | None:
        with self._session_factory() as session:
            try:
                row = session.get(BackfillJobRow, job_id)
            except SQLAlchemyError as exc:
                raise self._storage_error("getCheckpoint", exc) from exc
            if row is None:
                return None
            checkpoint = row.document.get("checkpoint")
        return dict(checkpoint) if isinstance(checkpoint, dict) else checkpoint

    def cleanup_old_jobs(self, retention_days: int) -> int:
        cutoff = retention_cutoff(retention_days)
        with self._write_lock, self._session_factory() as session:
            try:
                rows = session.scalars(
                    select(BackfillJobRow).where(BackfillJobRow.status.in_(list(TERMINAL_STATUSES)))
                ).all()
                expired = [
                    row.job_id
                    for row in rows
                    if (self._coerce_utc(row.completed_at) or self._coerce_utc(row.created_at)) < cutoff
                ]
                if expired:
                    session.execute(delete(BackfillJobRow).where(BackfillJobRow.job_id.in_(expired)))
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise self._storage_error("cleanupOldJobs", exc) from exc
        logger.info("Cleaned up %d backfill job(s) older than %s", len(expired), cutoff.isoformat())
        return len(expired)

    def is_ready(self) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning("SQL job store is not ready: %s", exc)
            return False

    def _to_job(self, row: BackfillJobRow) -> BackfillJob | None:
        try:
            return BackfillJob.from_document(row.document)
        except ValidationError:
            logger.warning("Job row %s has an invalid document; ignoring it", row.job_id)
            return None
