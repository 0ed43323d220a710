from fastapi.testclient import TestClient

from usersync.main import app
from usersync.services.repository import RepositoryUnavailableError, get_repository


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "a1c-user-sync-api"}


def test_readyz_reports_unavailable_database() -> None:
    class DownRepository:
        async def ping(self) -> None:
            raise RepositoryUnavailableError("database unavailable")

    app.dependency_overrides[get_repository] = lambda: DownRepository()
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json() == {"detail": "database unavailable"}
