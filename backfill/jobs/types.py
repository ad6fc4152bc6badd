from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Mapping

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeFloat,
    NonNegativeInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_core import to_jsonable_python

from backfill.db.models import JobStatus, JobType

logger = logging.getLogger(__name__)


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]

PartitionStatus = Literal["pending", "processing", "completed", "failed", "skipped"]


class JobConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    start_date: date | None = None
    end_date: date | None = None
    target_partitions: list[str] | None = None
    skip_existing: bool = True
    rate_limit_overrides: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _validate_date_range(self) -> "JobConfig":
        if self.start_date is not None and self.end_date is not None and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class PartitionProgress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    partition_id: str
    status: PartitionStatus = "pending"
    items_processed: NonNegativeInt = 0
    items_total: NonNegativeInt = 0
    last_error: str | None = None


class JobError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item_id: str
    message: str
    occurred_at: UtcDatetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    is_retryable: bool = False


class JobProgress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_items: NonNegativeInt = 0
    processed_items: NonNegativeInt = 0
    failed_items: NonNegativeInt = 0
    skipped_items: NonNegativeInt = 0
    current_item: str | None = None
    partition_progress: dict[str, PartitionProgress] = Field(default_factory=dict)
    errors: list[JobError] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_items: NonNegativeInt | None = None
    processed_items: NonNegativeInt | None = None
    failed_items: NonNegativeInt | None = None
    skipped_items: NonNegativeInt | None = None
    current_item: str | None = None
    partition_progress: dict[str, PartitionProgress] | None = None
    errors: list[JobError] | None = None


class JobCheckpoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    last_processed_item: StrictStr
    last_processed_at: UtcDatetime
    items_completed: list[StrictStr] = Field(default_factory=list)


class JobResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    items_processed: NonNegativeInt = 0
    items_failed: NonNegativeInt = 0
    items_skipped: NonNegativeInt = 0
    output_ids: list[str] = Field(default_factory=list)
    duration_seconds: NonNegativeFloat = 0.0


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_type: JobType
    start_date: date | None = None
    end_date: date | None = None
    target_partitions: list[str] | None = None
    skip_existing: bool = True
    rate_limit_overrides: dict[str, Any] | None = None

    def to_config(self) -> JobConfig:
        return JobConfig(
            start_date=self.start_date,
            end_date=self.end_date,
            target_partitions=self.target_partitions,
            skip_existing=self.skip_existing,
            rate_limit_overrides=self.rate_limit_overrides,
        )


class BackfillJob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_id: str
    job_type: JobType
    status: JobStatus
    config: JobConfig
    progress: JobProgress = Field(default_factory=JobProgress)
    checkpoint: JobCheckpoint | None = None
    created_at: UtcDatetime
    started_at: UtcDatetime | None = None
    completed_at: UtcDatetime | None = None
    resumed_at: UtcDatetime | None = None
    result: JobResult | None = None
    error: str | None = None

    @field_validator("checkpoint", mode="before")
    @classmethod
    def _tolerate_corrupt_checkpoint(cls, value: Any) -> Any:
        if value is None or isinstance(value, JobCheckpoint):
            return value
        try:
            return JobCheckpoint.model_validate(value)
        except ValidationError:
            logger.warning("Ignoring malformed checkpoint on job record")
            return None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "BackfillJob":
        return cls.model_validate(dict(document))


JOB_FIELDS: frozenset[str] = frozenset(BackfillJob.model_fields)


def encode_job_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(updates) - JOB_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")
    return {key: to_jsonable_python(value) for key, value in updates.items() if key != "job_id"}


class RecoveryState(str, Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RecoveryError:
    job_id: str
    message: str


@dataclass(slots=True)
class RecoveryResult:
    success: bool = True
    jobs_recovered: int = 0
    jobs_failed: int = 0
    errors: list[RecoveryError] = field(default_factory=list)


@dataclass(slots=True)
class RecoveryStatus:
    state: RecoveryState = RecoveryState.IDLE
    last_recovery_at: datetime | None = None
    jobs_recovered: int = 0
    jobs_failed: int = 0
