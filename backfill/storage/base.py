from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Protocol, Sequence

from backfill.db.models import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus, JobType
from backfill.jobs.types import BackfillJob, JobCheckpoint


@dataclass(frozen=True)
class ListJobsOptions:
    status: Sequence[JobStatus] | None = None
    job_type: Sequence[JobType] | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")

    def with_limit(self, limit: int | None) -> "ListJobsOptions":
        return replace(self, limit=limit)

    def matches(self, job: BackfillJob) -> bool:
        if self.status and job.status not in self.status:
            return False
        if self.job_type and job.job_type not in self.job_type:
            return False
        if self.created_from is not None and job.created_at < self.created_from:
            return False
        if self.created_to is not None and job.created_at > self.created_to:
            return False
        return True

    def paginate(self, jobs: Sequence[BackfillJob]) -> list[BackfillJob]:
        end = None if self.limit is None else self.offset + self.limit
        return list(jobs[self.offset : end])


class JobStore(Protocol):
    provider: str

    def create_job(self, job: BackfillJob) -> None: ...

    def get_job(self, job_id: str) -> BackfillJob | None: ...

    def update_job(self, job_id: str, updates: Mapping[str, Any]) -> None: ...

    def delete_job(self, job_id: str) -> bool: ...

    def list_jobs(self, options: ListJobsOptions | None = None) -> list[BackfillJob]: ...

    def get_active_job(self) -> BackfillJob | None: ...

    def get_jobs_by_status(self, statuses: Iterable[JobStatus]) -> list[BackfillJob]: ...

    def update_checkpoint(self, job_id: str, checkpoint: JobCheckpoint) -> None: ...

    def get_checkpoint(self, job_id: str) -> dict[str, Any] | None: ...

    def cleanup_old_jobs(self, retention_days: int) -> int: ...

    def is_ready(self) -> bool: ...


def sort_newest_first(jobs: Iterable[BackfillJob]) -> list[BackfillJob]:
    return sorted(jobs, key=lambda job: (job.created_at, job.job_id), reverse=True)


def retention_cutoff(retention_days: int, now: datetime | None = None) -> datetime:
    now = now or datetime.now(tz=timezone.utc)
    return now - timedelta(days=retention_days)


def is_expired(job: BackfillJob, cutoff: datetime) -> bool:
    if job.status not in TERMINAL_STATUSES:
        return False
    reference = job.completed_at or job.created_at
    return reference < cutoff


def active_statuses() -> list[JobStatus]:
    return sorted(ACTIVE_STATUSES, key=lambda status: status.value)
