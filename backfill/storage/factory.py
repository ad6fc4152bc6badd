from __future__ import annotations

import logging

from backfill.core.config import Settings
from backfill.db.init_db import initialize_database
from backfill.db.session import get_session_factory
from backfill.storage.base import JobStore
from backfill.storage.local import LocalJobStore
from backfill.storage.sql import SqlJobStore

logger = logging.getLogger(__name__)


def create_job_store(settings: Settings) -> JobStore:
    if settings.storage_provider == "sql":
        initialize_database(settings)
        store: JobStore = SqlJobStore(session_factory=get_session_factory(settings))
    else:
        store = LocalJobStore(jobs_root=settings.jobs_root)
    logger.info("Using %s job store", store.provider)
    return store
