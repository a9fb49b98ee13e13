from __future__ import annotations

import asyncio

import pytest

from ledger_api.schemas.reports import ReportIn
from ledger_api.services.creation import ViolationCreationService
from ledger_api.services.errors import ExtractionError
from ledger_api.services.processing import ReportProcessor
from ledger_api.services.repository import RepositoryConflictError, RepositoryNotFoundError
from ledger_api.services.similarity import DedupeConfig


def _processor(store, geocoder, extraction) -> ReportProcessor:
    creation = ViolationCreationService(store, geocoder, config=DedupeConfig(merge_retry_backoff_seconds=0.0))
    return ReportProcessor(store, extraction, creation, duplicate_threshold=0.85, languages=("en", "ar"))


def _create_report(store, make_report, **overrides) -> str:
    report_id, _ = asyncio.run(store.create_report(ReportIn.model_validate(make_report(**overrides)).model_dump()))
    return report_id


def test_extraction_failure_retries_then_fails(store, geocoder, make_report, fake_extraction) -> None:
    report_id = _create_report(store, make_report)
    processor = _processor(store, geocoder, fake_extraction(error=ExtractionError("upstream timeout")))

    statuses = []
    for _ in range(3):
        result = asyncio.run(processor.process_report(report_id))
        assert result.success is False
        assert "upstream timeout" in (result.error or "")
        report = asyncio.run(store.get_report(report_id))
        assert "upstream timeout" in report["error"]
        statuses.append(report["status"])

    assert statuses == ["retry_pending", "retry_pending", "failed"]
    assert report["processing_metadata"]["attempts"] == 3


def test_empty_extraction_ignores_report(store, geocoder, make_report, fake_extraction) -> None:
    report_id = _create_report(store, make_report)

    result = asyncio.run(_processor(store, geocoder, fake_extraction([])).process_report(report_id))

    assert result.success is True
    assert result.ignored is True
    assert result.status == "ignored"
    assert result.violations_created == 0
    assert asyncio.run(store.get_report(report_id))["status"] == "ignored"


def test_partial_creation_failure_still_processes_report(
    store,
    geocoder,
    make_report,
    make_violation,
    fake_extraction,
) -> None:
    geocoder.failures.add("Nowhere")
    candidates = [
        make_violation(),
        make_violation(type="SHELLING", location={"name": {"en": "Nowhere"}}),
        make_violation(type="DETENTION", description={"en": "Three shop owners were detained at a checkpoint"}),
    ]
    report_id = _create_report(store, make_report)

    result = asyncio.run(_processor(store, geocoder, fake_extraction(candidates)).process_report(report_id))

    assert result.success is True
    assert result.status == "processed"
    assert result.violations_created == 2
    assert result.total_parsed == 3
    assert result.valid_violations == 3
    assert [error["index"] for error in result.creation_errors] == [1]
    report = asyncio.run(store.get_report(report_id))
    assert report["status"] == "processed"
    assert report["parsed_by_llm"] is True
    assert report["violation_ids"] == result.violation_ids


def test_unexpected_item_error_does_not_abort_report(
    store,
    geocoder,
    make_report,
    make_violation,
    fake_extraction,
) -> None:
    geocoder.crashes["Boom"] = ValueError("Expecting value")
    candidates = [
        make_violation(),
        make_violation(type="SHELLING", location={"name": {"en": "Boom"}}),
        make_violation(type="DETENTION", description={"en": "Three shop owners were detained at a checkpoint"}),
    ]
    report_id = _create_report(store, make_report)

    result = asyncio.run(_processor(store, geocoder, fake_extraction(candidates)).process_report(report_id))

    assert result.success is True
    assert result.status == "processed"
    assert result.violations_created == 2
    assert result.creation_errors == [{"index": 1, "error": "unexpected error: Expecting value"}]
    assert len(store.violations) == 2
    assert asyncio.run(store.get_report(report_id))["status"] == "processed"


def test_created_violations_carry_report_provenance(
    store,
    geocoder,
    make_report,
    make_violation,
    fake_extraction,
) -> None:
    report_id = _create_report(store, make_report)
    extraction = fake_extraction([make_violation(source={"en": "Civil defence"})])

    result = asyncio.run(_processor(store, geocoder, extraction).process_report(report_id))

    violation = asyncio.run(store.get_violation(result.violation_ids[0]))
    assert violation["source"]["en"] == "Civil defence. Telegram: idlib_news"
    assert violation["source_url"] == {"en": "https://t.me/idlib_news/1042", "ar": "https://t.me/idlib_news/1042"}
    assert violation["source_report_ids"] == [report_id]
    assert violation["reported_date"].isoformat() == "2024-03-10"
    hint = extraction.calls[0]["source_hint"]
    assert hint.name == "Telegram - idlib_news"
    assert hint.report_date == "2024-03-10"


def test_report_mentioning_known_incident_merges(
    store,
    geocoder,
    make_report,
    make_violation,
    fake_extraction,
) -> None:
    first_id = _create_report(store, make_report)
    second_id = _create_report(store, make_report, message_id="1043", channel="syria_now")
    processor = _processor(store, geocoder, fake_extraction([make_violation()]))

    first = asyncio.run(processor.process_report(first_id))
    second = asyncio.run(processor.process_report(second_id))

    assert second.violation_ids == first.violation_ids
    violation = asyncio.run(store.get_violation(first.violation_ids[0]))
    assert violation["source_report_ids"] == [first_id, second_id]
    assert len(store.violations) == 1


def test_all_invalid_candidates_fail_the_attempt(store, geocoder, make_report, fake_extraction) -> None:
    report_id = _create_report(store, make_report)
    extraction = fake_extraction([{"type": "AIRSTRIKE"}, {"type": "UNKNOWN"}])

    result = asyncio.run(_processor(store, geocoder, extraction).process_report(report_id))

    assert result.success is False
    assert result.status == "retry_pending"
    assert result.invalid_violations == 2
    assert [error["index"] for error in result.validation_errors] == [0, 1]


def test_unconfigured_extraction_fails_immediately(store, geocoder, make_report, fake_extraction) -> None:
    report_id = _create_report(store, make_report)
    extraction = fake_extraction(configured=False)

    result = asyncio.run(_processor(store, geocoder, extraction).process_report(report_id))

    assert result.success is False
    assert result.status == "failed"
    assert extraction.calls == []
    report = asyncio.run(store.get_report(report_id))
    assert report["processing_metadata"]["attempts"] == 1


def test_processed_report_cannot_be_reprocessed(
    store,
    geocoder,
    make_report,
    make_violation,
    fake_extraction,
) -> None:
    report_id = _create_report(store, make_report)
    processor = _processor(store, geocoder, fake_extraction([make_violation()]))
    asyncio.run(processor.process_report(report_id))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(processor.process_report(report_id))


def test_unknown_report_is_not_found(store, geocoder, fake_extraction) -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(_processor(store, geocoder, fake_extraction()).process_report("missing"))
