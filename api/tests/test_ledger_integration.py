from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

from ledger_api.core.config import get_settings
from ledger_api.main import app
from ledger_api.services.creation import get_creation_service
from ledger_api.services.extraction import get_extraction_client
from ledger_api.services.geocoding import get_geocoding_client
from ledger_api.services.processing import ReportProcessor, get_report_processor
from ledger_api.services.repository import get_repository

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
CACHED_FACTORIES = (
    get_settings,
    get_repository,
    get_geocoding_client,
    get_extraction_client,
    get_creation_service,
    get_report_processor,
)

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("VL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require VL_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_schema(database_url))


@pytest.fixture
def extraction(fake_extraction):
    return fake_extraction()


@pytest.fixture
def api_client(database_url: str, extraction):
    os.environ["VL_DATABASE_URL"] = database_url
    for factory in CACHED_FACTORIES:
        factory.cache_clear()

    app.dependency_overrides[get_report_processor] = lambda: ReportProcessor(
        get_repository(),
        extraction,
        get_creation_service(),
    )
    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    for factory in CACHED_FACTORIES:
        factory.cache_clear()


def test_violation_create_merge_and_unkeyed_insert(api_client: TestClient, database_url: str, make_violation) -> None:
    created = api_client.post("/violations", json=make_violation(), headers={"X-Actor-Id": "analyst-1"})
    assert created.status_code == 201
    violation_id = created.json()["violation"]["id"]
    assert created.json()["violation"]["dedup_key"]

    merged = api_client.post(
        "/violations",
        json=make_violation(
            casualties=6,
            tags=[{"en": "civilians"}],
            victims=[{"age": 34, "gender": "male", "status": "civilian", "death_date": "2024-03-10"}],
        ),
        headers={"X-Actor-Id": "analyst-2"},
    )
    assert merged.status_code == 201
    body = merged.json()
    assert body["was_merged"] is True
    assert body["violation"]["id"] == violation_id
    assert body["violation"]["casualties"] == 6
    assert body["violation"]["tags"] == [{"en": "civilians"}]
    assert body["violation"]["victims"][0]["death_date"] == "2024-03-10"
    assert body["violation"]["created_by"] == "analyst-1"
    assert body["violation"]["updated_by"] == "analyst-2"

    unchecked = api_client.post("/violations", params={"check_duplicates": "false"}, json=make_violation())
    assert unchecked.status_code == 201
    assert unchecked.json()["violation"]["dedup_key"] is None

    assert _run(_fetchval(database_url, "select count(*) from violations")) == 2


def test_report_flow_links_violations(api_client: TestClient, extraction, make_report, make_violation) -> None:
    extraction.candidates = [make_violation(), make_violation(type="DETENTION")]
    accepted = api_client.post("/reports", json=make_report())
    assert accepted.status_code == 202
    report_id = accepted.json()["report_id"]

    duplicate = api_client.post("/reports", json=make_report())
    assert duplicate.json() == {"report_id": report_id, "created": False}

    ready = api_client.get("/reports/ready").json()
    assert [report["id"] for report in ready] == [report_id]

    processed = api_client.post(f"/reports/{report_id}/process")
    assert processed.status_code == 200
    assert processed.json()["violations_created"] == 2

    report = api_client.get(f"/reports/{report_id}").json()
    assert report["status"] == "processed"
    assert report["parsed_by_llm"] is True
    assert report["processing_metadata"]["attempts"] == 1
    for violation_id in report["violation_ids"]:
        violation = api_client.get(f"/violations/{violation_id}").json()
        assert violation["source_report_ids"] == [report_id]
        assert violation["source"]["en"] == "Telegram: idlib_news"

    assert api_client.get("/reports/ready").json() == []


def test_failed_attempts_move_to_retry_then_failed(api_client: TestClient, extraction, make_report) -> None:
    extraction.candidates = [{"type": "AIRSTRIKE"}]
    report_id = api_client.post("/reports", json=make_report()).json()["report_id"]

    statuses = []
    for _ in range(3):
        api_client.post(f"/reports/{report_id}/process")
        statuses.append(api_client.get(f"/reports/{report_id}").json()["status"])

    assert statuses == ["retry_pending", "retry_pending", "failed"]


def test_stuck_report_with_exhausted_attempts_is_failed(api_client: TestClient, database_url: str, make_report) -> None:
    report_id = api_client.post("/reports", json=make_report()).json()["report_id"]
    _run(
        _execute(
            database_url,
            """
            update reports
            set status = 'processing', attempts = 3, started_at = now() - interval '10 minutes'
            where id = $1::uuid
            """,
            report_id,
        )
    )
    assert [report["id"] for report in api_client.get("/reports/ready").json()] == [report_id]

    response = api_client.post(f"/reports/{report_id}/process")

    assert response.status_code == 409
    report = api_client.get(f"/reports/{report_id}").json()
    assert report["status"] == "failed"
    assert report["error"] == "processing attempts exhausted"


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute("truncate table violations, reports, geocoding_cache")
    finally:
        await conn.close()


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()
