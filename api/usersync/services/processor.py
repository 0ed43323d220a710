"""Single-job processor for the user-sync queue.

Each call to :meth:`JobProcessor.process_next` claims at most one job, runs
the handler registered for its ``job_type`` and records the outcome. Handlers
receive the claimed :class:`JobRecord` explicitly; nothing is shared between
invocations except the database.

User mutations follow a two-step saga: the ``users`` row is written first and
the Supabase auth user second. A failure in the second step is logged and
reported in the job result but never fails the job.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from opentelemetry import trace

from usersync.services.identity import IdentityStore
from usersync.services.normalizer import JobType, map_role
from usersync.services.repository import JobRecord, PostgresRepository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

NO_PENDING_JOBS = "No pending jobs"

Handler = Callable[..., Awaitable[dict[str, Any]]]


class JobError(Exception):
    """Base error raised by job handlers."""


class PermanentJobError(JobError):
    """Raised when a job can never succeed, e.g. its payload is malformed."""


async def handle_user_created(
    job: JobRecord,
    *,
    repository: PostgresRepository,
    identity: IdentityStore,
) -> dict[str, Any]:
    clerk_id = _require_clerk_id(job)
    existing = await repository.get_user_by_clerk_id(clerk_id)
    if existing is not None:
        logger.info("user already exists clerk_id=%s job_id=%s", clerk_id, job.id)
        return {"message": "User already exists", "user": existing.as_dict()}

    email = _payload_text(job, "email")
    name = _payload_text(job, "name") or ""
    user_role = map_role(job.payload.get("user_role")).value

    user = await repository.insert_user(clerk_id=clerk_id, email=email, name=name, user_role=user_role)
    if user is None:
        # Lost an insert race against a replayed creation event.
        existing = await repository.get_user_by_clerk_id(clerk_id)
        return {"message": "User already exists", "user": existing.as_dict() if existing else None}

    identity_outcome = await _sync_identity(
        "create",
        job,
        lambda: _create_identity_user(identity, email=email, clerk_id=clerk_id, name=name, user_role=user_role),
    )
    logger.info("user created clerk_id=%s job_id=%s", clerk_id, job.id)
    return {"message": "User created", "user": user.as_dict(), "identity": identity_outcome}


async def handle_user_updated(
    job: JobRecord,
    *,
    repository: PostgresRepository,
    identity: IdentityStore,
) -> dict[str, Any]:
    clerk_id = _require_clerk_id(job)
    fields: dict[str, Any] = {}
    for column in ("email", "name"):
        if job.payload.get(column) is not None:
            fields[column] = job.payload[column]
    if job.payload.get("user_role") is not None:
        fields["user_role"] = map_role(job.payload["user_role"]).value

    # The auth user is still keyed by the email stored before this update.
    previous = await repository.get_user_by_clerk_id(clerk_id)
    previous_email = previous.email if previous else None
    user = await repository.update_user_by_clerk_id(clerk_id, fields)
    if user is None:
        logger.info("update skipped, no user row clerk_id=%s job_id=%s", clerk_id, job.id)
        return {"message": "User not found", "updated": False}

    identity_outcome = await _sync_identity(
        "update",
        job,
        lambda: _update_identity_user(
            identity,
            previous_email=previous_email,
            email=user.email,
            clerk_id=clerk_id,
            name=user.name or "",
            user_role=user.user_role,
        ),
    )
    return {"message": "User updated", "updated": True, "user": user.as_dict(), "identity": identity_outcome}


async def handle_user_deleted(
    job: JobRecord,
    *,
    repository: PostgresRepository,
    identity: IdentityStore,
) -> dict[str, Any]:
    clerk_id = _require_clerk_id(job)
    deleted = await repository.delete_user_by_clerk_id(clerk_id)
    email = _payload_text(job, "email") or (deleted.email if deleted else None)
    if deleted is None:
        logger.info("delete skipped, no user row clerk_id=%s job_id=%s", clerk_id, job.id)

    identity_outcome = await _sync_identity(
        "delete",
        job,
        lambda: _delete_identity_user(identity, email=email),
    )
    return {
        "message": "User deleted" if deleted else "User not found",
        "deleted": deleted is not None,
        "identity": identity_outcome,
    }


DEFAULT_HANDLERS: dict[str, Handler] = {
    JobType.USER_CREATED.value: handle_user_created,
    JobType.USER_UPDATED.value: handle_user_updated,
    JobType.USER_DELETED.value: handle_user_deleted,
}


class JobProcessor:
    def __init__(
        self,
        *,
        repository: PostgresRepository,
        identity: IdentityStore,
        handlers: dict[str, Handler] | None = None,
    ) -> None:
        self.repository = repository
        self.identity = identity
        self.handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)

    async def process_next(self) -> dict[str, Any]:
        try:
            job = await self.repository.claim_next_job()
        except Exception as exc:
            logger.exception("failed to claim next job")
            return {"success": False, "error": f"claim failed: {exc}"}

        if job is None:
            return {"success": True, "message": NO_PENDING_JOBS}

        with tracer.start_as_current_span("processor.process_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.type", job.job_type)
            try:
                outcome = await self._run(job)
            except Exception as exc:
                logger.exception("failed to record outcome for job id=%s", job.id)
                return {"success": False, "jobId": job.id, "jobType": job.job_type, "error": str(exc)}
            span.set_attribute("job.status", outcome["status"])

        return {"success": True, "jobId": job.id, "jobType": job.job_type, "result": outcome}

    async def process_batch(self, max_jobs: int) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for _ in range(max(1, max_jobs)):
            summary = await self.process_next()
            summaries.append(summary)
            if not summary.get("success") or "jobId" not in summary:
                break
        return summaries

    async def _run(self, job: JobRecord) -> dict[str, Any]:
        handler = self.handlers.get(job.job_type)
        try:
            if handler is None:
                raise PermanentJobError(f"Unknown job type: {job.job_type}")
            result = await handler(job, repository=self.repository, identity=self.identity)
        except PermanentJobError as exc:
            failure = await self.repository.fail_job(job.id, str(exc), permanent=True)
            logger.warning("job failed permanently id=%s type=%s error=%s", job.id, job.job_type, exc)
            return {"status": failure.job.status, "error": str(exc), "retry_count": failure.job.retry_count}
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            failure = await self.repository.fail_job(job.id, error)
            logger.exception(
                "job failed id=%s type=%s status=%s retry_count=%s",
                job.id,
                job.job_type,
                failure.job.status,
                failure.job.retry_count,
            )
            return {
                "status": failure.job.status,
                "error": error,
                "retry_count": failure.job.retry_count,
                "retry_delay_seconds": failure.retry_delay_seconds,
            }

        completed = await self.repository.complete_job(job.id, result)
        logger.info("job completed id=%s type=%s", job.id, job.job_type)
        return {"status": completed.status, **result}


async def _sync_identity(
    operation: str,
    job: JobRecord,
    step: Callable[[], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    try:
        return await step()
    except Exception as exc:  # second saga step never fails the job
        logger.exception("identity %s failed job_id=%s clerk_id=%s", operation, job.id, job.clerk_id)
        return {"ok": False, "error": f"{type(exc).__name__}: {exc}"}


async def _create_identity_user(
    identity: IdentityStore,
    *,
    email: str | None,
    clerk_id: str,
    name: str,
    user_role: str,
) -> dict[str, Any]:
    if not identity.enabled:
        return {"ok": True, "skipped": True, "reason": "identity store disabled"}
    if not email:
        return {"ok": True, "skipped": True, "reason": "no email"}
    created = await identity.create_user(email=email, metadata=_identity_metadata(clerk_id, name, user_role))
    return {"ok": True, "auth_user_id": _auth_user_id(created)}


async def _update_identity_user(
    identity: IdentityStore,
    *,
    previous_email: str | None,
    email: str | None,
    clerk_id: str,
    name: str,
    user_role: str,
) -> dict[str, Any]:
    if not identity.enabled:
        return {"ok": True, "skipped": True, "reason": "identity store disabled"}
    lookup_emails = [candidate for candidate in dict.fromkeys((previous_email, email)) if candidate]
    if not lookup_emails:
        return {"ok": True, "skipped": True, "reason": "no email"}
    auth_user = None
    for lookup_email in lookup_emails:
        auth_user = await identity.find_user_by_email(lookup_email)
        if auth_user is not None:
            break
    if auth_user is None:
        return {"ok": True, "skipped": True, "reason": "auth user not found"}
    auth_user_id = str(auth_user["id"])
    await identity.update_user(auth_user_id, email=email, metadata=_identity_metadata(clerk_id, name, user_role))
    return {"ok": True, "auth_user_id": auth_user_id}


async def _delete_identity_user(identity: IdentityStore, *, email: str | None) -> dict[str, Any]:
    if not identity.enabled:
        return {"ok": True, "skipped": True, "reason": "identity store disabled"}
    if not email:
        return {"ok": True, "skipped": True, "reason": "no email"}
    auth_user = await identity.find_user_by_email(email)
    if auth_user is None:
        return {"ok": True, "skipped": True, "reason": "auth user not found"}
    auth_user_id = str(auth_user["id"])
    await identity.delete_user(auth_user_id)
    return {"ok": True, "auth_user_id": auth_user_id}


def _identity_metadata(clerk_id: str, name: str, user_role: str) -> dict[str, Any]:
    return {"clerk_id": clerk_id, "full_name": name, "role": user_role}


def _auth_user_id(body: dict[str, Any]) -> str | None:
    user = body.get("user") if isinstance(body.get("user"), dict) else body
    value = user.get("id")
    return str(value) if value else None


def _require_clerk_id(job: JobRecord) -> str:
    clerk_id = job.clerk_id
    if clerk_id is None:
        raise PermanentJobError("payload.clerk_id is required")
    return clerk_id


def _payload_text(job: JobRecord, key: str) -> str | None:
    value = job.payload.get(key)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
