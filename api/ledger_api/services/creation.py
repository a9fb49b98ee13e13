from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from ledger_api.core.config import get_settings
from ledger_api.schemas.violations import LocationIn, ViolationIn, ViolationRecord
from ledger_api.services.duplicates import DuplicateReport, check_for_duplicates
from ledger_api.services.errors import (
    CandidateValidationError,
    DuplicateConflictError,
    PipelineError,
    RaceRecoveredError,
)
from ledger_api.services.geocoding import GeocodeResult, get_geocoding_client
from ledger_api.services.repository import (
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUniqueViolationError,
    get_repository,
)
from ledger_api.services.similarity import DEFAULT_CONFIG, DedupeConfig, DuplicateMatch, derive_dedup_key
from ledger_api.services.validation import validate_batch, validate_candidate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class DuplicateInfo:
    similarity: float
    exact_match: bool
    original_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "similarity": round(self.similarity, 4),
            "exact_match": self.exact_match,
            "original_id": self.original_id,
        }


@dataclass(slots=True)
class CreationResult:
    violation: ViolationRecord
    was_merged: bool
    duplicate_info: DuplicateInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation": self.violation,
            "was_merged": self.was_merged,
            "duplicate_info": self.duplicate_info.to_dict() if self.duplicate_info else None,
        }


@dataclass(slots=True)
class BatchItemError:
    index: int
    errors: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "errors": list(self.errors)}


@dataclass(slots=True)
class BatchCreationResult:
    violations: list[ViolationRecord] = field(default_factory=list)
    created: list[ViolationRecord] = field(default_factory=list)
    merged: list[CreationResult] = field(default_factory=list)
    errors: list[BatchItemError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "violations": self.violations,
            "created": self.created,
            "merged": [
                {
                    "violation": item.violation,
                    "duplicate_info": item.duplicate_info.to_dict() if item.duplicate_info else None,
                }
                for item in self.merged
            ],
            "errors": [error.to_dict() for error in self.errors],
        }


class ViolationCreationService:
    """Create-or-merge pipeline for candidate violations."""

    def __init__(self, repository: Any, geocoder: Any, *, config: DedupeConfig = DEFAULT_CONFIG) -> None:
        self.repository = repository
        self.geocoder = geocoder
        self.config = config

    async def create_single_violation(
        self,
        candidate: Any,
        actor_id: str | None = None,
        *,
        check_duplicates: bool = True,
        merge_duplicates: bool = True,
        threshold: float | None = None,
        report_id: str | None = None,
        skip_geocoding: bool = False,
    ) -> CreationResult:
        with tracer.start_as_current_span("violation.create") as span:
            validation = validate_candidate(candidate)
            if not validation.valid or validation.record is None:
                raise CandidateValidationError("violation failed validation", validation.errors)
            record = validation.record
            if report_id and report_id not in record.source_report_ids:
                record = record.model_copy(update={"source_report_ids": [*record.source_report_ids, report_id]})

            span.set_attribute("violation.type", record.type)
            span.set_attribute("violation.check_duplicates", check_duplicates)

            if check_duplicates:
                merged = await self._merge_into_duplicate(
                    record,
                    actor_id,
                    threshold=threshold,
                    merge_duplicates=merge_duplicates,
                )
                if merged is not None:
                    span.set_attribute("violation.merged", True)
                    return merged

            if not skip_geocoding and not record.location.coordinates:
                located = await self.geocoder.geocode_location(record.location, languages=self.config.languages)
                record = _with_coordinates(record, located)

            try:
                result = await self._insert(
                    record,
                    actor_id,
                    threshold=threshold,
                    check_duplicates=check_duplicates,
                    merge_duplicates=merge_duplicates,
                )
            except RaceRecoveredError as recovered:
                result = recovered.result
            span.set_attribute("violation.merged", result.was_merged)
            return result

    async def create_batch_violations(
        self,
        candidates: Any,
        actor_id: str | None = None,
        *,
        check_duplicates: bool = True,
        merge_duplicates: bool = True,
        threshold: float | None = None,
    ) -> BatchCreationResult:
        if not isinstance(candidates, list) or not candidates:
            raise CandidateValidationError("violations must be a non-empty list")

        validation = validate_batch(candidates)
        if not validation.valid:
            raise CandidateValidationError(
                "all violations in the batch failed validation",
                [item.to_dict() for item in validation.invalid],
            )

        result = BatchCreationResult(
            errors=[BatchItemError(index=item.index, errors=item.errors) for item in validation.invalid],
        )
        located = await self._geocode_unique_locations([item.record for item in validation.valid])

        for item in validation.valid:
            record = item.record
            outcome = located.get(_location_key(record.location))
            if isinstance(outcome, GeocodeResult):
                record = _with_coordinates(record, outcome)

            try:
                # Records whose location failed to geocode still get a duplicate check before
                # the single-item path retries the geocoder.
                created = await self.create_single_violation(
                    record,
                    actor_id,
                    check_duplicates=check_duplicates,
                    merge_duplicates=merge_duplicates,
                    threshold=threshold,
                    skip_geocoding=bool(record.location.coordinates),
                )
            except CandidateValidationError as exc:
                result.errors.append(BatchItemError(index=item.index, errors=[str(error) for error in exc.errors]))
                continue
            except (PipelineError, RepositoryError) as exc:
                logger.warning("batch item failed index=%s error=%s", item.index, exc)
                result.errors.append(BatchItemError(index=item.index, errors=[str(exc)]))
                continue
            except Exception as exc:
                logger.exception("batch item crashed index=%s", item.index)
                result.errors.append(BatchItemError(index=item.index, errors=[f"unexpected error: {exc}"]))
                continue

            result.violations.append(created.violation)
            if created.was_merged:
                result.merged.append(created)
            else:
                result.created.append(created.violation)

        result.errors.sort(key=lambda error: error.index)
        logger.info(
            "batch creation finished created=%s merged=%s errors=%s",
            len(result.created),
            len(result.merged),
            len(result.errors),
        )
        return result

    async def check_duplicates(
        self,
        candidate: Any,
        *,
        threshold: float | None = None,
        limit: int | None = None,
    ) -> DuplicateReport:
        validation = validate_candidate(candidate)
        if not validation.valid or validation.record is None:
            raise CandidateValidationError("violation failed validation", validation.errors)
        return await check_for_duplicates(
            self.repository,
            validation.record,
            threshold=threshold,
            limit=limit,
            config=self.config,
        )

    async def _merge_into_duplicate(
        self,
        record: ViolationIn,
        actor_id: str | None,
        *,
        threshold: float | None,
        merge_duplicates: bool,
    ) -> CreationResult | None:
        attempts = self.config.merge_retry_attempts
        for attempt in range(1, attempts + 1):
            report = await check_for_duplicates(self.repository, record, threshold=threshold, config=self.config)
            if report.best_match is None:
                return None
            if not merge_duplicates:
                raise DuplicateConflictError(
                    f"found {len(report.duplicates)} potential duplicate(s)",
                    report.duplicates,
                )

            try:
                return await self._merge(report.best_match, record, actor_id)
            except RepositoryNotFoundError:
                logger.warning(
                    "duplicate target vanished before merge violation_id=%s attempt=%s/%s",
                    report.best_match.candidate_id,
                    attempt,
                    attempts,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.config.merge_retry_backoff_seconds)

        logger.warning("duplicate target deleted on every attempt; inserting as new violation")
        return None

    async def _merge(self, match: DuplicateMatch, record: ViolationIn, actor_id: str | None) -> CreationResult:
        row = await self.repository.merge_violation(match.candidate_id, record, actor_id=actor_id)
        violation = ViolationRecord.model_validate(row)
        logger.info(
            "violation merged violation_id=%s similarity=%.3f exact_match=%s",
            violation.id,
            match.similarity,
            match.exact_match,
        )
        return CreationResult(
            violation=violation,
            was_merged=True,
            duplicate_info=DuplicateInfo(
                similarity=match.similarity,
                exact_match=match.exact_match,
                original_id=match.candidate_id,
            ),
        )

    async def _insert(
        self,
        record: ViolationIn,
        actor_id: str | None,
        *,
        threshold: float | None,
        check_duplicates: bool,
        merge_duplicates: bool,
    ) -> CreationResult:
        payload = record.model_dump()
        payload["dedup_key"] = derive_dedup_key(record, precision=self.config.key_coordinate_precision)
        payload["created_by"] = actor_id
        payload["updated_by"] = actor_id

        try:
            row = await self.repository.insert_violation(payload)
        except RepositoryUniqueViolationError as exc:
            report = None
            if check_duplicates:
                logger.warning("violation insert hit a stored dedup key dedup_key=%s", payload["dedup_key"])
                report = await check_for_duplicates(self.repository, record, threshold=threshold, config=self.config)
            if report is not None and report.best_match is not None:
                if not merge_duplicates:
                    raise DuplicateConflictError(
                        f"found {len(report.duplicates)} potential duplicate(s)",
                        report.duplicates,
                    ) from exc
                raise RaceRecoveredError(await self._merge(report.best_match, record, actor_id)) from exc

            # The key holder is a different incident in the same cell; store this one unkeyed.
            logger.info(
                "dedup key taken by a distinct violation; inserting without key dedup_key=%s",
                payload["dedup_key"],
            )
            payload["dedup_key"] = None
            row = await self.repository.insert_violation(payload)

        violation = ViolationRecord.model_validate(row)
        logger.info("violation created violation_id=%s type=%s", violation.id, violation.type)
        return CreationResult(violation=violation, was_merged=False)

    async def _geocode_unique_locations(
        self,
        records: list[ViolationIn],
    ) -> dict[str, GeocodeResult | Exception]:
        located: dict[str, GeocodeResult | Exception] = {}
        for record in records:
            if record.location.coordinates:
                continue
            key = _location_key(record.location)
            if key in located:
                continue
            try:
                located[key] = await self.geocoder.geocode_location(record.location, languages=self.config.languages)
            except PipelineError as exc:
                located[key] = exc
            except Exception as exc:
                logger.exception("batch geocoding crashed location=%s", key)
                located[key] = exc
        logger.info("batch geocoding resolved unique_locations=%s", len(located))
        return located


def _with_coordinates(record: ViolationIn, located: GeocodeResult) -> ViolationIn:
    location = record.location.model_copy(update={"coordinates": located.coordinates})
    return record.model_copy(update={"location": location})


def _location_key(location: LocationIn) -> str:
    return json.dumps(
        {"name": location.name, "administrative_division": location.administrative_division},
        sort_keys=True,
        ensure_ascii=False,
    )


@lru_cache
def get_creation_service() -> ViolationCreationService:
    return ViolationCreationService(
        get_repository(),
        get_geocoding_client(),
        config=DedupeConfig.from_settings(get_settings()),
    )
