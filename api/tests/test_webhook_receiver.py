from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from conftest import WEBHOOK_SECRET, FakeUserSyncRepository, make_settings, svix_headers
from usersync.core.config import get_settings
from usersync.main import app
from usersync.services.repository import get_repository


@pytest.fixture
def webhook_client(fake_repo: FakeUserSyncRepository) -> TestClient:
    app.dependency_overrides[get_settings] = lambda: make_settings()
    app.dependency_overrides[get_repository] = lambda: fake_repo
    yield TestClient(app)
    app.dependency_overrides.clear()


def _signed_post(client: TestClient, event: object, *, raw: bytes | None = None, secret: str = WEBHOOK_SECRET):
    body = raw if raw is not None else json.dumps(event).encode("utf-8")
    headers = {"Content-Type": "application/json", **svix_headers(body, msg_id="msg_2xyz", secret=secret)}
    return client.post("/webhooks/clerk", content=body, headers=headers)


def _user_created_event() -> dict[str, object]:
    return {
        "type": "user.created",
        "object": "event",
        "data": {
            "id": "user_2abc",
            "first_name": "Grace",
            "last_name": "Hopper",
            "primary_email_address_id": "idn_1",
            "email_addresses": [{"id": "idn_1", "email_address": "grace@example.com"}],
            "public_metadata": {"role": "Administrator"},
        },
    }


def test_signed_event_is_enqueued(webhook_client: TestClient, fake_repo: FakeUserSyncRepository) -> None:
    response = _signed_post(webhook_client, _user_created_event())

    assert response.status_code == 202
    job_id = response.json()["jobId"]
    job = fake_repo.jobs[job_id]
    assert job.job_type == "USER_CREATED"
    assert job.status == "PENDING"
    assert job.priority == 1
    assert job.payload == {
        "clerk_id": "user_2abc",
        "email": "grace@example.com",
        "name": "Grace Hopper",
        "user_role": "admin",
        "retry_count": 0,
    }


def test_bad_signature_is_rejected_without_enqueue(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
) -> None:
    response = _signed_post(webhook_client, _user_created_event(), secret="whsec_" + "d3Jvbmctc2VjcmV0")

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid signature"}
    assert fake_repo.jobs == {}


def test_unsigned_event_is_rejected(webhook_client: TestClient, fake_repo: FakeUserSyncRepository) -> None:
    response = webhook_client.post("/webhooks/clerk", json=_user_created_event())

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid signature"}
    assert fake_repo.jobs == {}


def test_unconfigured_secret_rejects_everything(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
) -> None:
    app.dependency_overrides[get_settings] = lambda: make_settings(clerk_webhook_secret=None)

    response = _signed_post(webhook_client, _user_created_event())

    assert response.status_code == 401
    assert fake_repo.jobs == {}


def test_unsupported_event_type_is_a_client_error(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
) -> None:
    response = _signed_post(webhook_client, {"type": "session.created", "data": {"id": "sess_1"}})

    assert response.status_code == 400
    assert response.json() == {"error": "Unsupported event type: session.created"}
    assert fake_repo.jobs == {}


@pytest.mark.parametrize(
    "raw",
    [b"not json", b"[1, 2, 3]", b'{"data": {"id": "user_2abc"}}', b'{"type": "user.created", "data": "x"}'],
)
def test_malformed_body_is_a_client_error(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
    raw: bytes,
) -> None:
    response = _signed_post(webhook_client, None, raw=raw)

    assert response.status_code == 400
    assert response.json() == {"error": "Malformed event payload"}
    assert fake_repo.jobs == {}


def test_event_without_user_fields_is_still_enqueued(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
) -> None:
    response = _signed_post(webhook_client, {"type": "user.updated", "data": {}})

    assert response.status_code == 202
    job = fake_repo.jobs[response.json()["jobId"]]
    assert job.payload["clerk_id"] is None
    assert job.payload["retry_count"] == 0


def test_enqueue_failure_returns_server_error(
    webhook_client: TestClient,
    fake_repo: FakeUserSyncRepository,
) -> None:
    fake_repo.fail_enqueue = True

    response = _signed_post(webhook_client, _user_created_event())

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to enqueue job"}
