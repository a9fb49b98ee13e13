from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from ledger_api.core.config import get_settings
from ledger_api.schemas.violations import ViolationIn, to_calendar_date
from ledger_api.services.creation import ViolationCreationService, get_creation_service
from ledger_api.services.errors import PipelineError, UpstreamError
from ledger_api.services.extraction import SourceHint, get_extraction_client
from ledger_api.services.repository import RepositoryError, get_repository
from ledger_api.services.validation import validate_batch

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class ReportProcessingResult:
    report_id: str
    success: bool
    status: str | None = None
    violations_created: int = 0
    violation_ids: list[str] = field(default_factory=list)
    ignored: bool = False
    reason: str | None = None
    error: str | None = None
    total_parsed: int = 0
    valid_violations: int = 0
    invalid_violations: int = 0
    validation_errors: list[dict[str, Any]] = field(default_factory=list)
    creation_errors: list[dict[str, Any]] = field(default_factory=list)
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReportProcessor:
    def __init__(
        self,
        repository: Any,
        extraction_client: Any,
        creation_service: ViolationCreationService,
        *,
        duplicate_threshold: float = 0.85,
        languages: tuple[str, ...] = ("en", "ar"),
    ) -> None:
        self.repository = repository
        self.extraction_client = extraction_client
        self.creation_service = creation_service
        self.duplicate_threshold = duplicate_threshold
        self.languages = languages or ("en",)

    async def process_report(self, report_id: str) -> ReportProcessingResult:
        """Run one report through extraction, validation and creation.

        Lookup and state-transition errors raised while claiming the report
        propagate; everything after the claim ends in a persisted report status.
        """
        started = time.monotonic()
        with tracer.start_as_current_span("report.process") as span:
            span.set_attribute("report.id", report_id)
            report = await self.repository.mark_report_processing(report_id)
            attempts = int((report.get("processing_metadata") or {}).get("attempts") or 0)
            span.set_attribute("report.attempt", attempts)
            logger.info(
                "processing report report_id=%s channel=%s attempt=%s",
                report_id,
                report.get("channel"),
                attempts,
            )

            try:
                result = await self._process_claimed(report, started)
            except Exception as exc:
                logger.exception("report processing crashed report_id=%s", report_id)
                result = await self._fail(report_id, f"unexpected processing error: {exc}", started)

            span.set_attribute("report.status", result.status or "unknown")
            span.set_attribute("report.violations_created", result.violations_created)
            return result

    async def _process_claimed(self, report: dict[str, Any], started: float) -> ReportProcessingResult:
        report_id = report["id"]

        if not self.extraction_client.configured:
            message = "extraction service is not configured"
            logger.error("report failed report_id=%s reason=%s", report_id, message)
            return await self._fail(report_id, message, started, terminal=True)

        try:
            candidates = await self.extraction_client.extract(report["text"], _source_hint(report))
        except UpstreamError as exc:
            logger.warning("extraction failed report_id=%s error=%s", report_id, exc)
            return await self._fail(report_id, f"extraction failed: {exc}", started)

        if not candidates:
            reason = "no violations found in report"
            updated = await self.repository.mark_report_ignored(report_id, reason)
            logger.info("report ignored report_id=%s", report_id)
            return ReportProcessingResult(
                report_id=report_id,
                success=True,
                status=updated.get("status", "ignored"),
                ignored=True,
                reason=reason,
                processing_time_ms=_elapsed_ms(started),
            )

        validation = validate_batch(candidates)
        validation_errors = [item.to_dict() for item in validation.invalid]
        if not validation.valid:
            message = f"all {len(candidates)} parsed violations failed validation"
            result = await self._fail(report_id, message, started)
            result.total_parsed = len(candidates)
            result.invalid_violations = len(validation.invalid)
            result.validation_errors = validation_errors
            return result

        violation_ids: list[str] = []
        creation_errors: list[dict[str, Any]] = []
        for item in validation.valid:
            prepared = self._attach_report_source(item.record, report)
            try:
                created = await self.creation_service.create_single_violation(
                    prepared,
                    None,
                    check_duplicates=True,
                    merge_duplicates=True,
                    threshold=self.duplicate_threshold,
                    report_id=report_id,
                )
                await self.repository.link_violation_to_report(created.violation.id, report_id)
            except (PipelineError, RepositoryError) as exc:
                logger.warning("violation creation failed report_id=%s index=%s error=%s", report_id, item.index, exc)
                creation_errors.append({"index": item.index, "error": str(exc)})
                continue
            except Exception as exc:
                logger.exception("violation creation crashed report_id=%s index=%s", report_id, item.index)
                creation_errors.append({"index": item.index, "error": f"unexpected error: {exc}"})
                continue

            if created.violation.id not in violation_ids:
                violation_ids.append(created.violation.id)

        if not violation_ids:
            message = f"no violations could be created ({len(creation_errors)} creation errors)"
            result = await self._fail(report_id, message, started)
        else:
            elapsed = _elapsed_ms(started)
            updated = await self.repository.mark_report_processed(report_id, violation_ids, elapsed)
            logger.info("report processed report_id=%s violations=%s", report_id, len(violation_ids))
            result = ReportProcessingResult(
                report_id=report_id,
                success=True,
                status=updated.get("status", "processed"),
                violations_created=len(violation_ids),
                violation_ids=violation_ids,
                processing_time_ms=elapsed,
            )

        result.total_parsed = len(candidates)
        result.valid_violations = len(validation.valid)
        result.invalid_violations = len(validation.invalid)
        result.validation_errors = validation_errors
        result.creation_errors = creation_errors
        return result

    async def _fail(
        self,
        report_id: str,
        message: str,
        started: float,
        *,
        terminal: bool = False,
    ) -> ReportProcessingResult:
        status = None
        try:
            updated = await self.repository.mark_report_failed(report_id, message, terminal=terminal)
            status = updated.get("status")
        except RepositoryError as exc:
            logger.error("failed to record report failure report_id=%s error=%s", report_id, exc)
        return ReportProcessingResult(
            report_id=report_id,
            success=False,
            status=status,
            error=message,
            processing_time_ms=_elapsed_ms(started),
        )

    def _attach_report_source(self, record: ViolationIn, report: dict[str, Any]) -> ViolationIn:
        primary = self.languages[0]
        channel_note = f"Telegram: {report.get('channel')}"
        source = dict(record.source)
        source[primary] = f"{source[primary]}. {channel_note}" if source.get(primary) else channel_note

        updates: dict[str, Any] = {"source": source}
        if report.get("source_url"):
            updates["source_url"] = {language: report["source_url"] for language in self.languages}
        if record.reported_date is None and report.get("date") is not None:
            updates["reported_date"] = to_calendar_date(report["date"])
        return record.model_copy(update=updates)


def _source_hint(report: dict[str, Any]) -> SourceHint:
    report_date = report.get("date")
    return SourceHint(
        name=f"Telegram - {report.get('channel')}",
        url=report.get("source_url"),
        report_date=report_date.date().isoformat() if isinstance(report_date, datetime) else None,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@lru_cache
def get_report_processor() -> ReportProcessor:
    settings = get_settings()
    return ReportProcessor(
        get_repository(),
        get_extraction_client(),
        get_creation_service(),
        duplicate_threshold=settings.dedupe_report_similarity_threshold,
        languages=tuple(settings.languages),
    )
