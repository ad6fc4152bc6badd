from backfill.storage.base import JobStore, ListJobsOptions
from backfill.storage.factory import create_job_store
from backfill.storage.local import LocalJobStore
from backfill.storage.sql import SqlJobStore

__all__ = [
    "JobStore",
    "ListJobsOptions",
    "LocalJobStore",
    "SqlJobStore",
    "create_job_store",
]
