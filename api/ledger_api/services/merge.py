from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ledger_api.schemas.violations import CERTAINTY_RANK, COUNT_FIELDS, VictimIn, ViolationIn, ViolationRecord


def merge_violation(existing: ViolationRecord, incoming: ViolationIn) -> ViolationRecord:
    """Fold ``incoming`` into ``existing`` and return the merged record.

    Identity, audit fields and ``dedup_key`` stay with ``existing``; the caller
    stamps ``updated_by`` and persists the result.
    """
    merged = existing.model_dump()

    merged["type"] = incoming.type
    merged["date"] = incoming.date
    merged["reported_date"] = incoming.reported_date or existing.reported_date
    merged["description"] = {**existing.description, **incoming.description}

    merged["location"] = {
        "name": {**existing.location.name, **incoming.location.name},
        "administrative_division": {
            **existing.location.administrative_division,
            **incoming.location.administrative_division,
        },
        "coordinates": incoming.location.coordinates or existing.location.coordinates,
    }

    if incoming.perpetrator_affiliation != "unknown":
        merged["perpetrator_affiliation"] = incoming.perpetrator_affiliation
    merged["certainty_level"] = _stronger_certainty(existing.certainty_level, incoming.certainty_level)

    for field_name in COUNT_FIELDS:
        merged[field_name] = max(getattr(existing, field_name) or 0, getattr(incoming, field_name) or 0)
    merged["verified"] = existing.verified or incoming.verified

    victims = merge_victims(existing.victims, incoming.victims)
    merged["victims"] = [victim.model_dump() for victim in victims]
    # Casualties never fall below the number of victims with a recorded death.
    merged["casualties"] = max(merged["casualties"], sum(1 for victim in victims if victim.death_date))

    # Existing provenance wins; incoming only fills languages that are missing.
    merged["source"] = {**incoming.source, **existing.source}
    merged["source_url"] = {**incoming.source_url, **existing.source_url}
    merged["verification_method"] = {**incoming.verification_method, **existing.verification_method}

    merged["media_links"] = _ordered_union(existing.media_links, incoming.media_links)
    merged["tags"] = _ordered_union(existing.tags, incoming.tags)
    merged["source_report_ids"] = _ordered_union(existing.source_report_ids, incoming.source_report_ids)

    return ViolationRecord.model_validate(merged)


def _stronger_certainty(existing: str, incoming: str) -> str:
    if CERTAINTY_RANK.get(existing, 0) > CERTAINTY_RANK.get(incoming, 0):
        return existing
    return incoming


def _ordered_union(*groups: Iterable[Any]) -> list[Any]:
    merged: list[Any] = []
    for group in groups:
        for item in group:
            if item not in merged:
                merged.append(item)
    return merged


def merge_victims(existing: list[VictimIn], incoming: list[VictimIn]) -> list[VictimIn]:
    """Append incoming victims that match no victim already on the existing record."""
    merged = list(existing)
    seen = {_victim_identity(victim) for victim in existing}
    for victim in incoming:
        if _victim_identity(victim) not in seen:
            merged.append(victim)
    return merged


def _victim_identity(victim: VictimIn) -> tuple[Any, ...]:
    return (
        victim.age,
        victim.gender,
        victim.status,
        tuple(sorted(victim.group_affiliation.items())),
        tuple(sorted(victim.sectarian_identity.items())),
    )
