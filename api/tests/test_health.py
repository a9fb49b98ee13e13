from fastapi.testclient import TestClient

from ledger_api.main import app
from ledger_api.services.repository import RepositoryUnavailableError, get_repository
from ledger_api.services.store import InMemoryStore


class UnavailableRepository:
    async def ping(self) -> bool:
        raise RepositoryUnavailableError("database unavailable")


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "violation-ledger-api"}


def test_readyz_pings_repository() -> None:
    app.dependency_overrides[get_repository] = lambda: InMemoryStore()
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_readyz_reports_unavailable_database() -> None:
    app.dependency_overrides[get_repository] = lambda: UnavailableRepository()
    try:
        response = TestClient(app).get("/readyz")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
    assert response.json()["detail"] == "database unavailable"
