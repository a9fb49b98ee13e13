from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ledger_api.schemas.reports import ReportIn
from ledger_api.services.lifecycle import (
    TERMINAL_REPORT_STATUSES,
    can_transition,
    is_ready_for_processing,
    resolve_failure_status,
)
from ledger_api.services.repository import RepositoryConflictError


def _report(status: str, *, attempts: int = 0, **metadata) -> dict:
    return {
        "status": status,
        "parsed_by_llm": False,
        "processing_metadata": {"attempts": attempts, **metadata},
    }


def test_terminal_statuses_have_no_transitions() -> None:
    for status in TERMINAL_REPORT_STATUSES:
        assert not can_transition(status, "processing")
        assert not can_transition(status, "failed")


def test_allowed_transitions() -> None:
    assert can_transition("unprocessed", "processing")
    assert can_transition("retry_pending", "processing")
    assert can_transition("processing", "processing")
    assert can_transition("processing", "ignored")
    assert not can_transition("unprocessed", "processed")
    assert not can_transition("retry_pending", "failed")
    assert not can_transition("unknown", "processing")


@pytest.mark.parametrize(
    ("attempts", "expected"),
    [(1, "retry_pending"), (2, "retry_pending"), (3, "failed"), (4, "failed")],
)
def test_resolve_failure_status(attempts: int, expected: str) -> None:
    assert resolve_failure_status(attempts, max_attempts=3) == expected


def test_ready_rules() -> None:
    now = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)

    assert is_ready_for_processing(_report("unprocessed"), now=now)
    assert not is_ready_for_processing(_report("unprocessed", attempts=3), now=now)
    assert is_ready_for_processing(
        _report("retry_pending", attempts=1, last_attempt=now - timedelta(minutes=30)),
        now=now,
    )
    assert not is_ready_for_processing(
        _report("retry_pending", attempts=1, last_attempt=now - timedelta(minutes=29)),
        now=now,
    )
    assert is_ready_for_processing(_report("processing", attempts=1, started_at=now - timedelta(minutes=6)), now=now)
    assert not is_ready_for_processing(
        _report("processing", attempts=1, started_at=now - timedelta(minutes=1)),
        now=now,
    )
    assert not is_ready_for_processing(_report("processed", attempts=1), now=now)
    assert not is_ready_for_processing({**_report("unprocessed"), "parsed_by_llm": True}, now=now)


def test_store_lists_ready_reports_newest_first(store, make_report) -> None:
    older_id, _ = asyncio.run(
        store.create_report(
            ReportIn.model_validate(
                make_report(message_id="1", scraped_at="2024-03-10T09:00:00+00:00"),
            ).model_dump()
        )
    )
    newer_id, _ = asyncio.run(
        store.create_report(
            ReportIn.model_validate(
                make_report(message_id="2", scraped_at="2024-03-10T10:00:00+00:00"),
            ).model_dump()
        )
    )
    claimed_id, _ = asyncio.run(store.create_report(ReportIn.model_validate(make_report(message_id="3")).model_dump()))
    asyncio.run(store.mark_report_processing(claimed_id))

    ready = asyncio.run(store.list_reports_ready_for_processing(limit=10))

    assert [report["id"] for report in ready] == [newer_id, older_id]


def test_store_create_report_is_idempotent(store, make_report) -> None:
    payload = ReportIn.model_validate(make_report()).model_dump()

    first_id, first_created = asyncio.run(store.create_report(payload))
    second_id, second_created = asyncio.run(store.create_report(payload))

    assert first_created is True
    assert second_created is False
    assert first_id == second_id


def test_store_reclaims_stuck_report_and_fails_exhausted_one(store, make_report) -> None:
    report_id, _ = asyncio.run(store.create_report(ReportIn.model_validate(make_report()).model_dump()))
    for _ in range(3):
        asyncio.run(store.mark_report_processing(report_id))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(store.mark_report_processing(report_id))

    report = asyncio.run(store.get_report(report_id))
    assert report["status"] == "failed"
    assert report["processing_metadata"]["attempts"] == 3
    assert report["error"] == "processing attempts exhausted"


def test_store_rejects_processing_a_processed_report(store, make_report) -> None:
    report_id, _ = asyncio.run(store.create_report(ReportIn.model_validate(make_report()).model_dump()))
    asyncio.run(store.mark_report_processing(report_id))
    asyncio.run(store.mark_report_processed(report_id, ["violation-1"], 120))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(store.mark_report_processing(report_id))

    report = asyncio.run(store.get_report(report_id))
    assert report["status"] == "processed"
    assert report["parsed_by_llm"] is True
    assert report["processing_metadata"]["violations_created"] == 1
