from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from rapidfuzz import fuzz, utils

from ledger_api.core.config import Settings
from ledger_api.schemas.violations import COUNT_FIELDS, ViolationIn, ViolationRecord, to_calendar_date

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(slots=True, frozen=True)
class DedupeConfig:
    similarity_threshold: float = 0.75
    max_distance_meters: float = 100.0
    # Tolerance for "flexible" count equality: max(min_slack, ratio * larger value).
    casualty_tolerance_ratio: float = 0.2
    casualty_min_slack: int = 1
    candidate_window_days: int = 1
    candidate_limit: int = 5
    merge_retry_attempts: int = 3
    merge_retry_backoff_seconds: float = 0.1
    languages: tuple[str, ...] = ("en", "ar")
    key_coordinate_precision: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> DedupeConfig:
        return cls(
            similarity_threshold=settings.dedupe_similarity_threshold,
            max_distance_meters=settings.dedupe_max_distance_meters,
            casualty_tolerance_ratio=settings.dedupe_casualty_tolerance_ratio,
            casualty_min_slack=settings.dedupe_casualty_min_slack,
            candidate_window_days=max(0, settings.dedupe_candidate_window_days),
            candidate_limit=max(1, settings.dedupe_candidate_limit),
            merge_retry_attempts=max(1, settings.dedupe_merge_retry_attempts),
            merge_retry_backoff_seconds=max(0.0, settings.dedupe_merge_retry_backoff_seconds),
            languages=tuple(settings.languages) or ("en",),
            key_coordinate_precision=settings.dedupe_key_coordinate_precision,
        )


DEFAULT_CONFIG = DedupeConfig()


@dataclass(slots=True)
class MatchDetails:
    same_type: bool
    same_date: bool
    same_perpetrator: bool
    nearby_location: bool
    distance_meters: float
    same_casualties: bool


@dataclass(slots=True)
class DuplicateMatch:
    candidate_id: str
    is_duplicate: bool
    exact_match: bool
    similarity: float
    match_details: MatchDetails
    violation: ViolationRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        distance = self.match_details.distance_meters
        return {
            "candidate_id": self.candidate_id,
            "is_duplicate": self.is_duplicate,
            "exact_match": self.exact_match,
            "similarity": round(self.similarity, 4),
            "match_details": {
                "same_type": self.match_details.same_type,
                "same_date": self.match_details.same_date,
                "same_perpetrator": self.match_details.same_perpetrator,
                "nearby_location": self.match_details.nearby_location,
                "distance_meters": round(distance, 2) if math.isfinite(distance) else None,
                "same_casualties": self.match_details.same_casualties,
            },
            "violation": self.violation,
        }


def compare(
    new: ViolationIn,
    existing: ViolationIn,
    *,
    threshold: float | None = None,
    config: DedupeConfig = DEFAULT_CONFIG,
) -> DuplicateMatch:
    effective_threshold = config.similarity_threshold if threshold is None else threshold

    same_type = new.type == existing.type
    same_date = compare_dates(new.date, existing.date)
    same_perpetrator = new.perpetrator_affiliation == existing.perpetrator_affiliation

    distance = _coordinate_distance(new.location.coordinates, existing.location.coordinates)
    nearby_location = distance <= config.max_distance_meters

    same_casualties = casualties_match(new, existing, config=config)
    similarity = text_similarity(new.description, existing.description, languages=config.languages)

    exact_match = same_type and same_date and same_perpetrator and nearby_location and same_casualties

    return DuplicateMatch(
        candidate_id=existing.id if isinstance(existing, ViolationRecord) else "",
        is_duplicate=exact_match or similarity >= effective_threshold,
        exact_match=exact_match,
        similarity=similarity,
        match_details=MatchDetails(
            same_type=same_type,
            same_date=same_date,
            same_perpetrator=same_perpetrator,
            nearby_location=nearby_location,
            distance_meters=distance,
            same_casualties=same_casualties,
        ),
        violation=existing if isinstance(existing, ViolationRecord) else None,
    )


def calculate_distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in meters between two points given as degrees."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def compare_dates(left: Any, right: Any) -> bool:
    left_day = to_calendar_date(left)
    right_day = to_calendar_date(right)
    return left_day is not None and left_day == right_day


def casualties_match(new: ViolationIn, existing: ViolationIn, *, config: DedupeConfig = DEFAULT_CONFIG) -> bool:
    for field in COUNT_FIELDS:
        left = getattr(new, field) or 0
        right = getattr(existing, field) or 0
        if left == right:
            continue
        slack = max(config.casualty_min_slack, config.casualty_tolerance_ratio * max(left, right))
        if abs(left - right) > slack:
            return False
    return True


def text_similarity(
    left: dict[str, str],
    right: dict[str, str],
    *,
    languages: Sequence[str] = DEFAULT_CONFIG.languages,
) -> float:
    for language in _comparison_languages(left, right, languages):
        left_text = (left.get(language) or "").strip()
        right_text = (right.get(language) or "").strip()
        if left_text and right_text:
            score = fuzz.token_sort_ratio(left_text, right_text, processor=utils.default_process) / 100.0
            return min(1.0, max(0.0, score))
    return 0.0


def derive_dedup_key(record: ViolationIn, *, precision: int = DEFAULT_CONFIG.key_coordinate_precision) -> str | None:
    coordinates = record.location.coordinates
    if not coordinates:
        return None
    longitude, latitude = coordinates
    seed = "|".join(
        [
            record.type,
            record.date.isoformat(),
            record.perpetrator_affiliation,
            f"{round(longitude, precision):.{precision}f}",
            f"{round(latitude, precision):.{precision}f}",
        ]
    )
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def _coordinate_distance(left: Sequence[float] | None, right: Sequence[float] | None) -> float:
    if not left or not right:
        return math.inf
    return calculate_distance(left[0], left[1], right[0], right[1])


def _comparison_languages(
    left: dict[str, str],
    right: dict[str, str],
    languages: Sequence[str],
) -> list[str]:
    ordered = list(languages)
    extra = sorted((set(left) & set(right)) - set(ordered))
    return ordered + extra
