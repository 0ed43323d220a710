from __future__ import annotations

import asyncio
import hashlib
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import pytest
from svix.webhooks import Webhook

from usersync.core.config import Settings
from usersync.services.normalizer import JobType
from usersync.services.repository import (
    FailureOutcome,
    JobRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    UserRecord,
    coerce_retry_count,
)
from usersync.services.retry_policy import BLOCKING_STATUSES, JobStatus, status_after_failure

WEBHOOK_SECRET = "whsec_MfKQ9r8GKYqrTwjUPD8ILPZIo2LaLaSw"
PROCESSOR_API_KEY = "local-processor-key"
PROCESSOR_HEADERS = {
    "X-Module-Id": "local-processor",
    "X-API-Key": PROCESSOR_API_KEY,
}


class FakeUserSyncRepository:
    """In-memory job queue and users table with the same state rules as Postgres."""

    def __init__(self, *, job_max_retries: int = 3) -> None:
        self.job_max_retries = job_max_retries
        self.jobs: dict[str, JobRecord] = {}
        self.users: dict[str, UserRecord] = {}
        self.fail_enqueue = False
        self._lock = asyncio.Lock()
        self._sequence = 0

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def enqueue_job(self, *, job_type: JobType, payload: dict[str, Any], priority: int = 1) -> JobRecord:
        if self.fail_enqueue:
            raise RuntimeError("database is down")
        stored_payload = dict(payload)
        stored_payload["retry_count"] = coerce_retry_count(stored_payload.get("retry_count"))
        job = JobRecord(
            id=str(uuid.uuid4()),
            job_type=job_type.value,
            payload=stored_payload,
            status=JobStatus.PENDING.value,
            priority=priority,
            created_at=self._tick(),
        )
        job.updated_at = job.created_at
        self.jobs[job.id] = job
        return job

    async def claim_next_job(self) -> JobRecord | None:
        async with self._lock:
            # Yield while holding the lock so concurrent claimers interleave.
            await asyncio.sleep(0)
            blocking = {status.value for status in BLOCKING_STATUSES}
            candidates = sorted(
                (job for job in self.jobs.values() if job.status == JobStatus.PENDING.value),
                key=lambda job: (-job.priority, job.created_at),
            )
            for job in candidates:
                blocked = any(
                    prior.id != job.id
                    and job.clerk_id is not None
                    and prior.clerk_id == job.clerk_id
                    and prior.created_at < job.created_at
                    and prior.status in blocking
                    for prior in self.jobs.values()
                )
                if blocked:
                    continue
                job.status = JobStatus.PROCESSING.value
                job.updated_at = self._tick()
                return job
            return None

    async def complete_job(self, job_id: str, result: dict[str, Any] | None) -> JobRecord:
        job = self._processing(job_id)
        job.status = JobStatus.COMPLETED.value
        job.result = result
        job.error = None
        job.processed_at = self._tick()
        job.updated_at = job.processed_at
        return job

    async def fail_job(self, job_id: str, error: str, *, permanent: bool = False) -> FailureOutcome:
        job = self._processing(job_id)
        retry_count = job.retry_count + 1
        resolved = status_after_failure(retry_count, max_retries=self.job_max_retries, permanent=permanent)
        job.payload = {**job.payload, "retry_count": retry_count}
        job.status = resolved.value
        job.error = error
        job.updated_at = self._tick()
        if resolved is JobStatus.FAILED:
            job.processed_at = job.updated_at
        return FailureOutcome(job=job, retry_delay_seconds=0 if resolved is JobStatus.RETRY else None)

    async def requeue_retry_jobs(self, limit: int = 1000) -> int:
        due = [job for job in self.jobs.values() if job.status == JobStatus.RETRY.value][:limit]
        for job in due:
            job.status = JobStatus.PENDING.value
            job.updated_at = self._tick()
        return len(due)

    async def fail_stale_processing_jobs(self, *, stale_after_seconds: int, limit: int = 100) -> int:
        return 0

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        clerk_id: str | None = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        rows = [
            job
            for job in self.jobs.values()
            if (status is None or job.status == status)
            and (job_type is None or job.job_type == job_type)
            and (clerk_id is None or job.clerk_id == clerk_id)
        ]
        rows.sort(key=lambda job: job.created_at, reverse=True)
        return rows[:limit]

    async def get_user_by_clerk_id(self, clerk_id: str) -> UserRecord | None:
        return self.users.get(clerk_id)

    async def insert_user(
        self,
        *,
        clerk_id: str,
        email: str | None,
        name: str | None,
        user_role: str,
    ) -> UserRecord | None:
        if clerk_id in self.users:
            return None
        user = UserRecord(id=str(uuid.uuid4()), clerk_id=clerk_id, email=email, name=name, user_role=user_role)
        self.users[clerk_id] = user
        return user

    async def update_user_by_clerk_id(self, clerk_id: str, fields: dict[str, Any]) -> UserRecord | None:
        user = self.users.get(clerk_id)
        if user is None:
            return None
        for column in ("email", "name", "user_role"):
            if column in fields:
                setattr(user, column, fields[column])
        return user

    async def delete_user_by_clerk_id(self, clerk_id: str) -> UserRecord | None:
        return self.users.pop(clerk_id, None)

    def _processing(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != JobStatus.PROCESSING.value:
            raise RepositoryConflictError("job is not processing")
        return job

    def _tick(self) -> datetime:
        # Monotonic timestamps keep created_at ordering deterministic.
        self._sequence += 1
        return datetime.fromtimestamp(1_700_000_000 + self._sequence, tz=timezone.utc)


class FakeIdentityStore:
    enabled = True

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.auth_users: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []

    async def create_user(self, *, email: str, metadata: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create", email))
        if self.fail_with is not None:
            raise self.fail_with
        user = {"id": str(uuid.uuid4()), "email": email, "user_metadata": metadata}
        self.auth_users[user["id"]] = user
        return user

    async def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        self.calls.append(("find", email))
        if self.fail_with is not None:
            raise self.fail_with
        for user in self.auth_users.values():
            if user["email"] == email:
                return user
        return None

    async def update_user(self, user_id: str, *, email: str | None, metadata: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", user_id))
        user = self.auth_users[user_id]
        if email:
            user["email"] = email
        user["user_metadata"] = metadata
        return user

    async def delete_user(self, user_id: str) -> None:
        self.calls.append(("delete", user_id))
        self.auth_users.pop(user_id, None)


def svix_headers(
    body: bytes,
    *,
    msg_id: str = "msg_1",
    timestamp: int | None = None,
    secret: str = WEBHOOK_SECRET,
) -> dict[str, str]:
    sent_at = int(time.time()) if timestamp is None else timestamp
    signature = Webhook(secret).sign(msg_id, datetime.fromtimestamp(sent_at, tz=timezone.utc), body.decode("utf-8"))
    return {"svix-id": msg_id, "svix-timestamp": str(sent_at), "svix-signature": signature}


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "clerk_webhook_secret": WEBHOOK_SECRET,
        "processor_module_id": PROCESSOR_HEADERS["X-Module-Id"],
        "processor_api_key_hash": hashlib.sha256(PROCESSOR_API_KEY.encode("utf-8")).hexdigest(),
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_repo() -> FakeUserSyncRepository:
    return FakeUserSyncRepository()


@pytest.fixture
def fake_identity() -> FakeIdentityStore:
    return FakeIdentityStore()
