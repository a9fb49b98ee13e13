from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ledger_api.main import app
from ledger_api.services.creation import ViolationCreationService
from ledger_api.services.processing import ReportProcessor, get_report_processor
from ledger_api.services.repository import get_repository
from ledger_api.services.similarity import DedupeConfig


@pytest.fixture
def extraction(fake_extraction):
    return fake_extraction()


@pytest.fixture
def api_client(store, geocoder, extraction):
    creation = ViolationCreationService(store, geocoder, config=DedupeConfig(merge_retry_backoff_seconds=0.0))
    processor = ReportProcessor(store, extraction, creation)
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_report_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_create_report_is_idempotent(api_client: TestClient, make_report) -> None:
    first = api_client.post("/reports", json=make_report())
    second = api_client.post("/reports", json=make_report(text="Edited text of the same channel message."))

    assert first.status_code == 202
    assert first.json()["created"] is True
    assert second.status_code == 202
    assert second.json() == {"report_id": first.json()["report_id"], "created": False}


def test_create_report_validates_payload(api_client: TestClient, make_report) -> None:
    response = api_client.post("/reports", json=make_report(text="short", date="2999-01-01T00:00:00Z"))
    assert response.status_code == 422


def test_ready_and_get_report(api_client: TestClient, make_report) -> None:
    report_id = api_client.post("/reports", json=make_report()).json()["report_id"]

    ready = api_client.get("/reports/ready", params={"limit": 5})
    fetched = api_client.get(f"/reports/{report_id}")

    assert ready.status_code == 200
    assert [report["id"] for report in ready.json()] == [report_id]
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "unprocessed"
    assert fetched.json()["processing_metadata"]["attempts"] == 0


def test_process_report(api_client: TestClient, extraction, make_report, make_violation) -> None:
    extraction.candidates = [make_violation()]
    report_id = api_client.post("/reports", json=make_report()).json()["report_id"]

    response = api_client.post(f"/reports/{report_id}/process")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "processed"
    assert body["violations_created"] == 1

    fetched = api_client.get(f"/reports/{report_id}").json()
    assert fetched["violation_ids"] == body["violation_ids"]
    assert fetched["parsed_by_llm"] is True

    again = api_client.post(f"/reports/{report_id}/process")
    assert again.status_code == 409
    assert api_client.get("/reports/ready").json() == []


def test_process_failure_is_reported_in_body(api_client: TestClient, extraction, make_report) -> None:
    extraction.configured = False
    report_id = api_client.post("/reports", json=make_report()).json()["report_id"]

    response = api_client.post(f"/reports/{report_id}/process")

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["status"] == "failed"


def test_unknown_report(api_client: TestClient) -> None:
    assert api_client.get("/reports/missing").status_code == 404
    assert api_client.post("/reports/missing/process").status_code == 404
