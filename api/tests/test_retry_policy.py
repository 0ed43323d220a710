from usersync.services.retry_policy import JobStatus, backoff_seconds, status_after_failure


def test_failures_retry_until_ceiling_then_fail() -> None:
    statuses = [status_after_failure(count, max_retries=3) for count in range(1, 6)]

    assert statuses == [
        JobStatus.RETRY,
        JobStatus.RETRY,
        JobStatus.RETRY,
        JobStatus.FAILED,
        JobStatus.FAILED,
    ]


def test_permanent_failure_skips_retry() -> None:
    assert status_after_failure(1, max_retries=3, permanent=True) is JobStatus.FAILED


def test_zero_max_retries_fails_first_attempt() -> None:
    assert status_after_failure(1, max_retries=0) is JobStatus.FAILED
    assert status_after_failure(1, max_retries=-2) is JobStatus.FAILED


def test_backoff_disabled_by_default_base() -> None:
    assert backoff_seconds(1, base_seconds=0, max_seconds=3600) == 0
    assert backoff_seconds(3, base_seconds=0, max_seconds=3600) == 0


def test_backoff_doubles_and_caps() -> None:
    delays = [backoff_seconds(attempt, base_seconds=30, max_seconds=100) for attempt in range(1, 5)]
    assert delays == [30, 60, 100, 100]
