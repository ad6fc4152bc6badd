from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Enum as SAEnum, Index, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobType(str, Enum):
    DATA_COLLECTION = "data-collection"
    ANALYTICS_GENERATION = "analytics-generation"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RECOVERING = "recovering"


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.RUNNING, JobStatus.RECOVERING})
INCOMPLETE_STATUSES: tuple[JobStatus, ...] = (JobStatus.RUNNING, JobStatus.PENDING)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class BackfillJobRow(Base):
    __tablename__ = "backfill_jobs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_type: Mapped[JobType] = mapped_column(
        SAEnum(JobType, native_enum=False, values_callable=_enum_values, length=32),
        nullable=False,
    )
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
        default=JobStatus.PENDING,
    )
    document: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_backfill_jobs_status_created", "status", "created_at"),
        Index("ix_backfill_jobs_type_created", "job_type", "created_at"),
        Index("ix_backfill_jobs_created_id", "created_at", "job_id"),
        Index("ix_backfill_jobs_status_completed", "status", "completed_at"),
    )
