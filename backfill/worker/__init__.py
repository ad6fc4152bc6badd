from backfill.worker.runner import BackfillRunner, Executor, JobContext

__all__ = [
    "BackfillRunner",
    "Executor",
    "JobContext",
]
