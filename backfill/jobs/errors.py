from __future__ import annotations


class JobConflictError(RuntimeError):
    def __init__(self, message: str, *, active_job_id: str | None = None):
        super().__init__(message)
        self.active_job_id = active_job_id


class JobNotFoundError(RuntimeError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(RuntimeError):
    pass


class CheckpointValidationError(ValueError):
    def __init__(self, reason: str):
        super().__init__(f"Invalid checkpoint: {reason}")
        self.reason = reason


class JobStorageError(RuntimeError):
    def __init__(self, message: str, *, operation: str, provider: str, retryable: bool = False):
        super().__init__(message)
        self.operation = operation
        self.provider = provider
        self.retryable = retryable


class ResumeCallbackError(RuntimeError):
    def __init__(self, job_id: str, message: str):
        super().__init__(f"Resume callback failed for job {job_id}: {message}")
        self.job_id = job_id


class JobCancelledError(RuntimeError):
    def __init__(self, job_id: str):
        super().__init__(f"Job cancelled: {job_id}")
        self.job_id = job_id
