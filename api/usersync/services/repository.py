from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from usersync.core.config import get_settings
from usersync.services.normalizer import JobType
from usersync.services.retry_policy import (
    BLOCKING_STATUSES,
    JobStatus,
    backoff_seconds,
    status_after_failure,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class JobRecord:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int = 1
    error: str | None = None
    result: dict[str, Any] | None = None
    processed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def clerk_id(self) -> str | None:
        value = self.payload.get("clerk_id")
        return value if isinstance(value, str) and value else None

    @property
    def retry_count(self) -> int:
        return coerce_retry_count(self.payload.get("retry_count"))


@dataclass(slots=True)
class UserRecord:
    id: str
    clerk_id: str | None
    email: str | None
    name: str | None
    user_role: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "clerk_id": self.clerk_id,
            "email": self.email,
            "name": self.name,
            "user_role": self.user_role,
        }


@dataclass(slots=True)
class FailureOutcome:
    job: JobRecord
    retry_delay_seconds: int | None = None


JOB_STATUSES = {status.value for status in JobStatus}
JOB_TYPES = {job_type.value for job_type in JobType}
USER_UPDATABLE_COLUMNS = ("email", "name", "user_role")

_JOB_COLUMNS = """
  id::text as id,
  job_type,
  payload,
  status,
  priority,
  error,
  result,
  processed_at,
  next_attempt_at,
  created_at,
  updated_at
"""

_QUALIFIED_JOB_COLUMNS = """
  j.id::text as id,
  j.job_type,
  j.payload,
  j.status,
  j.priority,
  j.error,
  j.result,
  j.processed_at,
  j.next_attempt_at,
  j.created_at,
  j.updated_at
"""

_USER_COLUMNS = """
  id::text as id,
  clerk_id,
  email,
  name,
  user_role,
  created_at,
  updated_at
"""


def coerce_retry_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_retries: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_retries = max(0, job_max_retries)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def enqueue_job(self, *, job_type: JobType, payload: dict[str, Any], priority: int = 1) -> JobRecord:
        if job_type.value not in JOB_TYPES:
            raise RepositoryValidationError(f"unsupported job_type: {job_type}")
        stored_payload = dict(payload)
        stored_payload["retry_count"] = coerce_retry_count(stored_payload.get("retry_count"))

        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into job_queue (job_type, payload, status, priority)
            values ($1, $2::jsonb, 'PENDING', $3)
            returning {_JOB_COLUMNS}
            """,
            job_type.value,
            json.dumps(stored_payload),
            priority,
        )
        return self._job_row_to_record(row)

    async def claim_next_job(self) -> JobRecord | None:
        """Atomically move the next eligible PENDING job to PROCESSING.

        Rows locked by a concurrent claim are skipped, and a job stays
        ineligible while an older job for the same clerk_id is unfinished.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select j.id
                      from job_queue j
                      where j.status = 'PENDING'
                        and (j.next_attempt_at is null or j.next_attempt_at <= now())
                        and not exists (
                          select 1
                          from job_queue prior
                          where prior.payload->>'clerk_id' = j.payload->>'clerk_id'
                            and prior.id <> j.id
                            and prior.created_at < j.created_at
                            and prior.status = any($1::text[])
                        )
                      order by j.priority desc, j.created_at asc
                      limit 1
                      for update skip locked
                    )
                    update job_queue j
                    set
                      status = 'PROCESSING',
                      updated_at = now()
                    from next_job
                    where j.id = next_job.id and j.status = 'PENDING'
                    returning {_QUALIFIED_JOB_COLUMNS}
                    """,
                    sorted(status.value for status in BLOCKING_STATUSES),
                )
        if row is None:
            return None
        return self._job_row_to_record(row)

    async def complete_job(self, job_id: str, result: dict[str, Any] | None) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update job_queue
                set
                  status = 'COMPLETED',
                  result = $2::jsonb,
                  error = null,
                  processed_at = now(),
                  updated_at = now()
                where id = $1::uuid and status = 'PROCESSING'
                returning {_JOB_COLUMNS}
                """,
                job_id,
                json.dumps(result, default=str) if result is not None else None,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

        if row is None:
            await self._raise_missing_or_conflict(job_id, "job is not processing")
        return self._job_row_to_record(row)

    async def fail_job(self, job_id: str, error: str, *, permanent: bool = False) -> FailureOutcome:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        select {_JOB_COLUMNS}
                        from job_queue
                        where id = $1::uuid
                        for update
                        """,
                        job_id,
                    )
                    if row is None:
                        raise RepositoryNotFoundError("job not found")
                    job = self._job_row_to_record(row)
                    if job.status != JobStatus.PROCESSING.value:
                        raise RepositoryConflictError("job is not processing")
                    return await self._record_failure(conn, job, error=error, permanent=permanent)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_retry_jobs(self, limit: int = 1000) -> int:
        """Move due RETRY jobs back to PENDING; the payload is left untouched."""
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 10000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with due as (
                      select id
                      from job_queue
                      where status = 'RETRY'
                        and (next_attempt_at is null or next_attempt_at <= now())
                      order by updated_at asc
                      limit $1
                      for update skip locked
                    )
                    update job_queue j
                    set
                      status = 'PENDING',
                      next_attempt_at = null,
                      updated_at = now()
                    from due
                    where j.id = due.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
        if rows:
            logger.info("retry sweep requeued jobs count=%s", len(rows))
        return len(rows)

    async def fail_stale_processing_jobs(self, *, stale_after_seconds: int, limit: int = 100) -> int:
        if stale_after_seconds <= 0:
            return 0
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    select {_JOB_COLUMNS}
                    from job_queue
                    where status = 'PROCESSING'
                      and updated_at <= now() - ($1::int * interval '1 second')
                    order by updated_at asc
                    limit $2
                    for update skip locked
                    """,
                    stale_after_seconds,
                    bounded_limit,
                )
                for row in rows:
                    job = self._job_row_to_record(row)
                    outcome = await self._record_failure(conn, job, error="processing timed out", permanent=False)
                    logger.warning(
                        "stale processing job released id=%s status=%s retry_count=%s",
                        job.id,
                        outcome.job.status,
                        outcome.job.retry_count,
                    )
        return len(rows)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_JOB_COLUMNS}
                from job_queue
                where id = $1::uuid
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        job_type: str | None = None,
        clerk_id: str | None = None,
        limit: int = 50,
    ) -> list[JobRecord]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"status must be one of: {', '.join(sorted(JOB_STATUSES))}")
        if job_type is not None and job_type not in JOB_TYPES:
            raise RepositoryValidationError(f"job_type must be one of: {', '.join(sorted(JOB_TYPES))}")

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from job_queue
            where ($1::text is null or status = $1)
              and ($2::text is null or job_type = $2)
              and ($3::text is null or payload->>'clerk_id' = $3)
            order by created_at desc
            limit $4
            """,
            status,
            job_type,
            clerk_id,
            max(1, min(limit, 500)),
        )
        return [self._job_row_to_record(row) for row in rows]

    async def get_user_by_clerk_id(self, clerk_id: str) -> UserRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_USER_COLUMNS}
            from users
            where clerk_id = $1
            """,
            clerk_id,
        )
        return self._user_row_to_record(row) if row else None

    async def insert_user(
        self,
        *,
        clerk_id: str,
        email: str | None,
        name: str | None,
        user_role: str,
    ) -> UserRecord | None:
        """Insert a user row; returns None when the clerk_id already exists."""
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into users (clerk_id, email, name, user_role)
                values ($1, $2, $3, $4)
                on conflict (clerk_id) do nothing
                returning {_USER_COLUMNS}
                """,
                clerk_id,
                email,
                name,
                user_role,
            )
        except (pg_exc.CheckViolationError, pg_exc.NotNullViolationError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._user_row_to_record(row) if row else None

    async def update_user_by_clerk_id(self, clerk_id: str, fields: dict[str, Any]) -> UserRecord | None:
        updates = {column: fields[column] for column in USER_UPDATABLE_COLUMNS if column in fields}
        assignments = [f"{column} = ${index}" for index, column in enumerate(updates, start=2)]
        assignments.append("updated_at = now()")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update users
                set {", ".join(assignments)}
                where clerk_id = $1
                returning {_USER_COLUMNS}
                """,
                clerk_id,
                *updates.values(),
            )
        except (pg_exc.CheckViolationError, pg_exc.NotNullViolationError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._user_row_to_record(row) if row else None

    async def delete_user_by_clerk_id(self, clerk_id: str) -> UserRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            delete from users
            where clerk_id = $1
            returning {_USER_COLUMNS}
            """,
            clerk_id,
        )
        return self._user_row_to_record(row) if row else None

    async def _record_failure(
        self,
        conn: asyncpg.Connection,
        job: JobRecord,
        *,
        error: str,
        permanent: bool,
    ) -> FailureOutcome:
        retry_count = job.retry_count + 1
        resolved_status = status_after_failure(
            retry_count,
            max_retries=self.job_max_retries,
            permanent=permanent,
        )
        retry_delay_seconds: int | None = None
        next_attempt_at: datetime | None = None
        if resolved_status is JobStatus.RETRY:
            retry_delay_seconds = backoff_seconds(
                retry_count,
                base_seconds=self.job_retry_base_seconds,
                max_seconds=self.job_retry_max_seconds,
            )
            if retry_delay_seconds > 0:
                next_attempt_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds)

        row = await conn.fetchrow(
            f"""
            update job_queue
            set
              status = $2,
              error = $3,
              payload = jsonb_set(payload, '{{retry_count}}', to_jsonb($4::int)),
              processed_at = case when $2 = 'FAILED' then now() else processed_at end,
              next_attempt_at = $5::timestamptz,
              updated_at = now()
            where id = $1::uuid
            returning {_JOB_COLUMNS}
            """,
            job.id,
            resolved_status.value,
            error,
            retry_count,
            next_attempt_at,
        )
        return FailureOutcome(job=self._job_row_to_record(row), retry_delay_seconds=retry_delay_seconds)

    async def _raise_missing_or_conflict(self, job_id: str, conflict_message: str) -> None:
        pool = await self._get_pool()
        exists = await pool.fetchval("select 1 from job_queue where id = $1::uuid", job_id)
        if not exists:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError(conflict_message)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("US_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            job_type=row["job_type"],
            payload=_coerce_json_dict(row["payload"]),
            status=row["status"],
            priority=int(row["priority"]) if row["priority"] is not None else 1,
            error=row["error"],
            result=_coerce_json_dict(row["result"]) if row["result"] is not None else None,
            processed_at=row["processed_at"],
            next_attempt_at=row["next_attempt_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _user_row_to_record(row: asyncpg.Record) -> UserRecord:
        return UserRecord(
            id=row["id"],
            clerk_id=row["clerk_id"],
            email=row["email"],
            name=row["name"],
            user_role=row["user_role"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_retries=settings.job_max_retries,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
