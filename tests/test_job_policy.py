from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from backfill.core.config import get_settings
from backfill.db.models import JobStatus, JobType
from backfill.jobs.errors import (
    CheckpointValidationError,
    InvalidJobStateError,
    JobConflictError,
    JobNotFoundError,
)
from backfill.jobs.manager import JobManager
from backfill.jobs.types import BackfillJob, CreateJobRequest, JobCheckpoint, JobResult
from backfill.storage.base import ListJobsOptions
from backfill.storage.local import LocalJobStore


def make_manager(tmp_path: Path, *, page_size: int = 50, max_page_size: int = 200) -> tuple[JobManager, LocalJobStore]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["BACKFILL_STATE_ROOT"] = state_root.as_posix()
    os.environ["BACKFILL_STORAGE_PROVIDER"] = "local"
    os.environ["BACKFILL_PROGRESS_BATCH_INTERVAL_SECONDS"] = "60"
    os.environ["BACKFILL_STALE_JOB_THRESHOLD_SECONDS"] = "600"
    os.environ["BACKFILL_DEFAULT_PAGE_SIZE"] = str(page_size)
    os.environ["BACKFILL_MAX_PAGE_SIZE"] = str(max_page_size)

    get_settings.cache_clear()
    settings = get_settings()
    store = LocalJobStore(settings.jobs_root)
    return JobManager(settings, store), store


def request(job_type: JobType = JobType.DATA_COLLECTION, **fields: object) -> CreateJobRequest:
    return CreateJobRequest(job_type=job_type, **fields)


class PausingStore(LocalJobStore):
    def __init__(self, jobs_root: Path):
        super().__init__(jobs_root)
        self.pause_thread: str | None = None
        self.paused = threading.Event()
        self.release = threading.Event()

    def get_job(self, job_id: str) -> BackfillJob | None:
        job = super().get_job(job_id)
        if threading.current_thread().name == self.pause_thread and not self.paused.is_set():
            self.paused.set()
            self.release.wait(timeout=5)
        return job


def make_pausing_manager(tmp_path: Path) -> tuple[JobManager, PausingStore]:
    _, base = make_manager(tmp_path)
    store = PausingStore(base.jobs_root)
    return JobManager(get_settings(), store), store


def test_create_job_persists_pending_job_with_zeroed_progress(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request(target_partitions=["42", "61"], start_date="2024-01-01", end_date="2024-01-31"))

    stored = store.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.checkpoint is None
    assert stored.progress.total_items == 0
    assert stored.progress.processed_items == 0
    assert stored.config.target_partitions == ["42", "61"]
    assert stored.started_at is None


def test_create_job_accepts_plain_mapping(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    job = manager.create_job({"job_type": "analytics-generation", "skip_existing": False})
    assert job.job_type == JobType.ANALYTICS_GENERATION
    assert job.config.skip_existing is False


def test_create_job_rejects_inverted_date_range(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    with pytest.raises(ValueError):
        manager.create_job(request(start_date="2024-02-01", end_date="2024-01-01"))


def test_running_job_blocks_new_jobs(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    first = manager.create_job(request())
    manager.start_job(first.job_id)

    with pytest.raises(JobConflictError) as excinfo:
        manager.create_job(request(JobType.ANALYTICS_GENERATION))
    assert excinfo.value.active_job_id == first.job_id
    assert manager.can_start_new_job() is False


def test_pending_jobs_do_not_block_creation_but_only_one_can_start(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    first = manager.create_job(request())
    second = manager.create_job(request())
    assert manager.can_start_new_job() is True

    manager.start_job(first.job_id)
    with pytest.raises(JobConflictError):
        manager.start_job(second.job_id)

    active = manager.get_active_job()
    assert active is not None
    assert active.job_id == first.job_id


def test_stale_active_job_is_failed_and_creation_proceeds(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    stale = manager.create_job(request())
    manager.start_job(stale.job_id)
    store.update_job(stale.job_id, {"started_at": datetime.now(tz=timezone.utc) - timedelta(minutes=11)})

    assert manager.can_start_new_job() is True
    fresh = manager.create_job(request())

    healed = store.get_job(stale.job_id)
    assert healed is not None
    assert healed.status == JobStatus.FAILED
    assert healed.error == "Job marked as failed due to inactivity (no progress for 10 minutes)"
    assert healed.completed_at is not None
    assert store.get_job(fresh.job_id) is not None


def test_stale_checkpoint_fails_job_even_when_recently_started(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    stale = manager.create_job(request())
    manager.start_job(stale.job_id)
    manager.update_checkpoint(
        stale.job_id,
        {
            "last_processed_item": "2024-01-05",
            "last_processed_at": datetime.now(tz=timezone.utc) - timedelta(minutes=11),
            "items_completed": ["2024-01-04", "2024-01-05"],
        },
    )

    current = store.get_job(stale.job_id)
    assert current is not None
    assert current.started_at is not None
    assert datetime.now(tz=timezone.utc) - current.started_at < timedelta(minutes=1)
    assert manager.is_job_stale(current) is True

    fresh = manager.create_job(request())

    healed = store.get_job(stale.job_id)
    assert healed is not None
    assert healed.status == JobStatus.FAILED
    assert healed.error == "Job marked as failed due to inactivity (no progress for 10 minutes)"
    created = store.get_job(fresh.job_id)
    assert created is not None
    assert created.status == JobStatus.PENDING


def test_recent_checkpoint_keeps_job_fresh(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    store.update_job(job.job_id, {"started_at": datetime.now(tz=timezone.utc) - timedelta(hours=2)})
    manager.update_checkpoint(
        job.job_id,
        {"last_processed_item": "42", "last_processed_at": datetime.now(tz=timezone.utc), "items_completed": ["42"]},
    )

    current = store.get_job(job.job_id)
    assert current is not None
    assert manager.is_job_stale(current) is False
    with pytest.raises(JobConflictError):
        manager.create_job(request())


def test_recently_resumed_job_is_not_stale(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    old = datetime.now(tz=timezone.utc) - timedelta(hours=3)
    store.update_job(
        job.job_id,
        {"status": JobStatus.RECOVERING, "started_at": old, "resumed_at": datetime.now(tz=timezone.utc)},
    )

    current = store.get_job(job.job_id)
    assert current is not None
    assert manager.is_job_stale(current) is False
    assert manager.can_start_new_job() is False


def test_fsm_rejects_leaving_terminal_states(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    completed = manager.complete_job(job.job_id, JobResult(items_processed=3, output_ids=["snap-1"]))
    assert completed.status == JobStatus.COMPLETED
    assert completed.result is not None
    assert completed.result.output_ids == ["snap-1"]

    with pytest.raises(InvalidJobStateError):
        manager.fail_job(job.job_id, "late failure")
    with pytest.raises(InvalidJobStateError):
        manager.start_job(job.job_id)


def test_pending_job_cannot_complete_directly(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    job = manager.create_job(request())
    with pytest.raises(InvalidJobStateError):
        manager.complete_job(job.job_id, {"items_processed": 0})


def test_terminal_operations_on_unknown_job_raise_not_found(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    with pytest.raises(JobNotFoundError):
        manager.start_job("missing")
    with pytest.raises(JobNotFoundError):
        manager.fail_job("missing", "boom")


def test_cancel_job_semantics(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    pending = manager.create_job(request())
    assert manager.cancel_job(pending.job_id) is True

    cancelled = store.get_job(pending.job_id)
    assert cancelled is not None
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.completed_at is not None

    assert manager.cancel_job(pending.job_id) is False
    assert manager.cancel_job("does-not-exist") is False


def test_cancel_running_job_sets_completed_at(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)

    before = datetime.now(tz=timezone.utc)
    assert manager.cancel_job(job.job_id) is True
    after = datetime.now(tz=timezone.utc)

    cancelled = store.get_job(job.job_id)
    assert cancelled is not None
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert before <= cancelled.completed_at <= after


def test_cancel_completed_job_leaves_record_unchanged(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    manager.complete_job(job.job_id, JobResult(items_processed=2, output_ids=["snap-2"]))

    before = store.get_job(job.job_id)
    assert before is not None
    assert manager.cancel_job(job.job_id) is False

    after = store.get_job(job.job_id)
    assert after is not None
    assert after.model_dump() == before.model_dump()


def test_cancel_waits_for_inflight_completion(tmp_path: Path) -> None:
    manager, store = make_pausing_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    outcome: dict[str, object] = {}

    def complete() -> None:
        outcome["completed"] = manager.complete_job(job.job_id, JobResult(items_processed=1))

    def cancel() -> None:
        outcome["cancelled"] = manager.cancel_job(job.job_id)

    store.pause_thread = "completer"
    completer = threading.Thread(target=complete, name="completer")
    completer.start()
    assert store.paused.wait(timeout=5)

    canceller = threading.Thread(target=cancel, name="canceller")
    canceller.start()
    canceller.join(timeout=0.2)
    assert canceller.is_alive()

    store.release.set()
    completer.join(timeout=5)
    canceller.join(timeout=5)

    assert outcome["cancelled"] is False
    final = store.get_job(job.job_id)
    assert final is not None
    assert final.status == JobStatus.COMPLETED
    assert final.result is not None
    assert final.result.items_processed == 1


def test_completion_after_inflight_cancel_is_rejected(tmp_path: Path) -> None:
    manager, store = make_pausing_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    outcome: dict[str, object] = {}

    def cancel() -> None:
        outcome["cancelled"] = manager.cancel_job(job.job_id)

    def complete() -> None:
        try:
            manager.complete_job(job.job_id, JobResult(items_processed=1))
        except InvalidJobStateError as exc:
            outcome["error"] = exc

    store.pause_thread = "canceller"
    canceller = threading.Thread(target=cancel, name="canceller")
    canceller.start()
    assert store.paused.wait(timeout=5)

    completer = threading.Thread(target=complete, name="completer")
    completer.start()
    completer.join(timeout=0.2)
    assert completer.is_alive()

    store.release.set()
    canceller.join(timeout=5)
    completer.join(timeout=5)

    assert outcome["cancelled"] is True
    assert isinstance(outcome.get("error"), InvalidJobStateError)
    final = store.get_job(job.job_id)
    assert final is not None
    assert final.status == JobStatus.CANCELLED
    assert final.result is None


def test_cancel_job_refuses_recovering_job_but_force_cancel_accepts_it(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    store.update_job(job.job_id, {"status": JobStatus.RECOVERING, "resumed_at": datetime.now(tz=timezone.utc)})
    manager.update_checkpoint(
        job.job_id,
        JobCheckpoint(last_processed_item="7", last_processed_at=datetime.now(tz=timezone.utc), items_completed=["7"]),
    )

    assert manager.cancel_job(job.job_id) is False
    assert manager.force_cancel_job(job.job_id, reason="stuck on partition 7", operator="ops") is True

    forced = store.get_job(job.job_id)
    assert forced is not None
    assert forced.status == JobStatus.CANCELLED
    assert forced.checkpoint is None
    assert forced.error is not None
    assert "stuck on partition 7" in forced.error
    assert "ops" in forced.error
    assert manager.force_cancel_job(job.job_id) is False


def test_checkpoint_is_validated_and_persisted_synchronously(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.update_checkpoint(
        job.job_id,
        {"last_processed_item": "b", "last_processed_at": "2024-03-01T10:00:00Z", "items_completed": ["a", "b"]},
    )

    raw = store.get_checkpoint(job.job_id)
    assert raw is not None
    assert raw["items_completed"] == ["a", "b"]
    assert raw["last_processed_item"] == "b"

    with pytest.raises(CheckpointValidationError):
        manager.update_checkpoint(job.job_id, {"last_processed_item": 5, "items_completed": []})
    with pytest.raises(JobNotFoundError):
        manager.update_checkpoint(
            "missing",
            {"last_processed_item": "a", "last_processed_at": "2024-03-01T10:00:00Z", "items_completed": []},
        )


def test_update_progress_rejects_counters_beyond_total(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.update_progress(job.job_id, {"total_items": 5, "processed_items": 3})

    with pytest.raises(ValueError):
        manager.update_progress(job.job_id, {"failed_items": 3})
    manager.update_progress(job.job_id, {"skipped_items": 2})


def test_add_error_and_partition_progress_ignore_unknown_jobs(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path)
    manager.add_error("missing", {"item_id": "x", "message": "boom"})
    manager.update_partition_progress("missing", "42", {"status": "processing"})
    assert manager.flush_progress() == 0


def test_add_error_and_partition_progress_reach_the_store(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    job = manager.create_job(request())
    manager.start_job(job.job_id)
    manager.add_error(job.job_id, {"item_id": "42", "message": "timeout", "is_retryable": True})
    manager.update_partition_progress(job.job_id, "42", {"status": "failed", "last_error": "timeout"})
    manager.update_partition_progress(job.job_id, "61", {"status": "completed", "items_processed": 4})
    assert manager.flush_progress(job.job_id) == 1

    stored = store.get_job(job.job_id)
    assert stored is not None
    assert [error.item_id for error in stored.progress.errors] == ["42"]
    assert stored.progress.failed_items == 0
    assert stored.progress.errors[0].is_retryable is True
    assert stored.progress.partition_progress["42"].status == "failed"
    assert stored.progress.partition_progress["61"].items_processed == 4


def test_list_jobs_is_newest_first_and_bounded(tmp_path: Path) -> None:
    manager, _ = make_manager(tmp_path, page_size=2, max_page_size=3)
    created = [manager.create_job(request()).job_id for _ in range(5)]

    page = manager.list_jobs()
    assert [job.job_id for job in page] == created[::-1][:2]

    bounded = manager.list_jobs(ListJobsOptions(limit=100))
    assert len(bounded) == 3

    second_page = manager.list_jobs(ListJobsOptions(limit=2, offset=2))
    assert [job.job_id for job in second_page] == created[::-1][2:4]


def test_cleanup_old_jobs_only_removes_expired_terminal_jobs(tmp_path: Path) -> None:
    manager, store = make_manager(tmp_path)
    old = manager.create_job(request())
    manager.fail_job(old.job_id, "boom")
    store.update_job(old.job_id, {"completed_at": datetime.now(tz=timezone.utc) - timedelta(days=45)})

    recent = manager.create_job(request())
    manager.cancel_job(recent.job_id)
    pending = manager.create_job(request())
    store.update_job(pending.job_id, {"created_at": datetime.now(tz=timezone.utc) - timedelta(days=90)})

    assert manager.cleanup_old_jobs() == 1
    assert store.get_job(old.job_id) is None
    assert store.get_job(recent.job_id) is not None
    assert store.get_job(pending.job_id) is not None

    with pytest.raises(ValueError):
        manager.cleanup_old_jobs(-1)
