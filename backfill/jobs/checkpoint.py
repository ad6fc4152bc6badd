from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from backfill.jobs.errors import CheckpointValidationError
from backfill.jobs.types import JobCheckpoint


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise CheckpointValidationError("Invalid last_processed_at timestamp format") from exc
    else:
        raise CheckpointValidationError("Missing or invalid last_processed_at")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def validate_checkpoint(raw: JobCheckpoint | Mapping[str, Any] | None) -> JobCheckpoint:
    if isinstance(raw, JobCheckpoint):
        return raw
    if not isinstance(raw, Mapping):
        raise CheckpointValidationError("Checkpoint must be a mapping")

    last_item = raw.get("last_processed_item")
    if not isinstance(last_item, str):
        raise CheckpointValidationError("Missing or invalid last_processed_item")

    last_processed_at = _parse_timestamp(raw.get("last_processed_at"))

    items_completed = raw.get("items_completed")
    if not isinstance(items_completed, list):
        raise CheckpointValidationError("Missing or invalid items_completed array")
    if any(not isinstance(item, str) for item in items_completed):
        raise CheckpointValidationError("items_completed contains non-string values")

    return JobCheckpoint(
        last_processed_item=last_item,
        last_processed_at=last_processed_at,
        items_completed=list(items_completed),
    )
