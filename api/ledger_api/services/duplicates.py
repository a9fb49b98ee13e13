from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from ledger_api.schemas.violations import ViolationIn, ViolationRecord
from ledger_api.services.similarity import DEFAULT_CONFIG, DedupeConfig, DuplicateMatch, compare

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DuplicateReport:
    has_duplicates: bool
    duplicates: list[DuplicateMatch] = field(default_factory=list)
    best_match: DuplicateMatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_duplicates": self.has_duplicates,
            "duplicates": [match.to_dict() for match in self.duplicates],
            "best_match": self.best_match.to_dict() if self.best_match else None,
        }


async def find_candidates(
    repository: Any,
    record: ViolationIn,
    *,
    limit: int | None = None,
    config: DedupeConfig = DEFAULT_CONFIG,
) -> list[ViolationRecord]:
    """Load same-type violations dated within the candidate window of ``record``."""
    effective_limit = limit or config.candidate_limit
    window = timedelta(days=config.candidate_window_days)
    rows = await repository.find_violation_candidates(
        violation_type=record.type,
        date_from=record.date - window,
        date_to=record.date + window,
        limit=effective_limit * 2,
    )
    return [ViolationRecord.model_validate(row) for row in rows]


async def check_for_duplicates(
    repository: Any,
    record: ViolationIn,
    *,
    threshold: float | None = None,
    limit: int | None = None,
    config: DedupeConfig = DEFAULT_CONFIG,
) -> DuplicateReport:
    effective_limit = limit or config.candidate_limit
    candidates = await find_candidates(repository, record, limit=effective_limit, config=config)

    matches = [compare(record, candidate, threshold=threshold, config=config) for candidate in candidates]
    duplicates = [match for match in matches if match.is_duplicate]
    duplicates.sort(key=lambda match: (not match.exact_match, -match.similarity))
    duplicates = duplicates[:effective_limit]

    logger.debug(
        "duplicate check type=%s date=%s candidates=%s duplicates=%s",
        record.type,
        record.date.isoformat(),
        len(candidates),
        len(duplicates),
    )
    return DuplicateReport(
        has_duplicates=bool(duplicates),
        duplicates=duplicates,
        best_match=duplicates[0] if duplicates else None,
    )
