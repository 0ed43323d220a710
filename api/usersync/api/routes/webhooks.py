import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from usersync.core.config import Settings, get_settings
from usersync.core.security import SVIX_HEADERS, WebhookVerificationError, verify_svix_signature
from usersync.schemas.jobs import JobAccepted
from usersync.schemas.webhooks import ClerkWebhookEvent, ErrorOut
from usersync.services.normalizer import build_job_payload, job_type_for_event
from usersync.services.repository import get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/clerk",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobAccepted,
    responses={400: {"model": ErrorOut}, 401: {"model": ErrorOut}, 500: {"model": ErrorOut}},
)
async def receive_clerk_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
):
    body = await request.body()
    headers = {name: request.headers.get(name, "") for name in SVIX_HEADERS}
    try:
        verify_svix_signature(settings.clerk_webhook_secret, headers, body)
    except WebhookVerificationError as exc:
        logger.warning("clerk webhook rejected svix_id=%s reason=%s", headers["svix-id"] or None, exc)
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        event = ClerkWebhookEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        logger.warning("clerk webhook body malformed svix_id=%s error=%s", headers["svix-id"], exc)
        return _error(status.HTTP_400_BAD_REQUEST, "Malformed event payload")

    job_type = job_type_for_event(event.type)
    if job_type is None:
        logger.info("clerk webhook ignored unsupported type=%s", event.type)
        return _error(status.HTTP_400_BAD_REQUEST, f"Unsupported event type: {event.type}")

    try:
        job = await repository.enqueue_job(
            job_type=job_type,
            payload=build_job_payload(job_type, event.data),
            priority=settings.job_default_priority,
        )
    except Exception:
        logger.exception("failed to enqueue clerk webhook svix_id=%s type=%s", headers["svix-id"], event.type)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to enqueue job")

    logger.info(
        "clerk webhook queued job_id=%s job_type=%s clerk_id=%s",
        job.id,
        job.job_type,
        job.clerk_id,
    )
    return JobAccepted(jobId=job.id)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})
