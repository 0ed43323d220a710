from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY = "RETRY"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
# Statuses that keep later jobs for the same clerk_id waiting.
BLOCKING_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRY})


def status_after_failure(retry_count: int, *, max_retries: int, permanent: bool = False) -> JobStatus:
    """Status for a job whose ``retry_count`` already includes the failed attempt."""
    if permanent:
        return JobStatus.FAILED
    if retry_count <= max(0, max_retries):
        return JobStatus.RETRY
    return JobStatus.FAILED


def backoff_seconds(attempt: int, *, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max(0, max_seconds))
