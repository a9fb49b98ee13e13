from __future__ import annotations

from datetime import date

from ledger_api.schemas.violations import ViolationIn, ViolationRecord
from ledger_api.services.merge import merge_victims, merge_violation


def _existing(make_violation, **overrides) -> ViolationRecord:
    fields = {
        "description": {
            "en": "Airstrike hit a residential building in central Idlib city",
            "ar": "غارة جوية على مبنى سكني",
        },
        "source": {"en": "Local council statement"},
        "source_url": {"en": "https://example.org/council"},
        "certainty_level": "confirmed",
        "casualties": 5,
        "injured_count": 12,
        "media_links": ["https://example.org/photo-1.jpg"],
        "tags": [{"en": "civilians"}],
        "source_report_ids": ["report-1"],
    }
    payload = make_violation(**{**fields, **overrides})
    return ViolationRecord.model_validate(
        {**payload, "id": "violation-1", "dedup_key": "abc123", "created_by": "analyst-1"}
    )


def test_merge_keeps_identity_and_takes_maximum_counts(make_violation) -> None:
    existing = _existing(make_violation)
    incoming = ViolationIn.model_validate(make_violation(casualties=7, injured_count=3, verified=True))

    merged = merge_violation(existing, incoming)

    assert merged.id == "violation-1"
    assert merged.dedup_key == "abc123"
    assert merged.created_by == "analyst-1"
    assert merged.casualties == 7
    assert merged.injured_count == 12
    assert merged.verified is True


def test_merge_unions_lists_without_duplicates(make_violation) -> None:
    existing = _existing(make_violation)
    incoming = ViolationIn.model_validate(
        make_violation(
            media_links=["https://example.org/photo-1.jpg", "https://example.org/video-2.mp4"],
            tags=[{"en": "civilians"}, {"en": "residential"}],
            source_report_ids=["report-2", "report-1"],
        )
    )

    merged = merge_violation(existing, incoming)

    assert merged.media_links == ["https://example.org/photo-1.jpg", "https://example.org/video-2.mp4"]
    assert merged.tags == [{"en": "civilians"}, {"en": "residential"}]
    assert merged.source_report_ids == ["report-1", "report-2"]


def test_merge_text_fields(make_violation) -> None:
    existing = _existing(make_violation)
    incoming = ViolationIn.model_validate(
        make_violation(
            description={"en": "Updated account: the strike levelled a four storey building"},
            source={"en": "Civil defence", "ar": "الدفاع المدني"},
            source_url={"en": "https://example.org/other"},
        )
    )

    merged = merge_violation(existing, incoming)

    assert merged.description == {
        "en": "Updated account: the strike levelled a four storey building",
        "ar": "غارة جوية على مبنى سكني",
    }
    assert merged.source == {"en": "Local council statement", "ar": "الدفاع المدني"}
    assert merged.source_url == {"en": "https://example.org/council"}


def test_merge_keeps_stronger_certainty_and_known_perpetrator(make_violation) -> None:
    existing = _existing(make_violation)
    incoming = ViolationIn.model_validate(make_violation(certainty_level="possible", perpetrator_affiliation="unknown"))

    merged = merge_violation(existing, incoming)

    assert merged.certainty_level == "confirmed"
    assert merged.perpetrator_affiliation == "russia"

    upgraded = merge_violation(
        _existing(make_violation, perpetrator_affiliation="unknown", certainty_level="possible"),
        ViolationIn.model_validate(make_violation(certainty_level="probable")),
    )
    assert upgraded.certainty_level == "probable"
    assert upgraded.perpetrator_affiliation == "russia"


def test_merge_location_and_dates(make_violation) -> None:
    existing = _existing(make_violation, reported_date="2024-03-11")
    incoming = ViolationIn.model_validate(
        make_violation(
            date="2024-03-09",
            location={
                "name": {"en": "Idlib city", "fr": "Idleb"},
                "administrative_division": {"ar": "محافظة إدلب"},
            },
        )
    )

    merged = merge_violation(existing, incoming)

    assert merged.date == date(2024, 3, 9)
    assert merged.reported_date == date(2024, 3, 11)
    assert merged.location.name == {"en": "Idlib city", "ar": "إدلب", "fr": "Idleb"}
    assert merged.location.administrative_division == {"en": "Idlib Governorate", "ar": "محافظة إدلب"}
    assert merged.location.coordinates == existing.location.coordinates


def test_merge_appends_only_new_victims(make_violation) -> None:
    existing = _existing(
        make_violation,
        victims=[
            {"age": 34, "gender": "male", "status": "civilian", "group_affiliation": {"en": "Civil defence"}},
            {"age": 9, "gender": "female", "status": "civilian"},
        ],
    )
    incoming = ViolationIn.model_validate(
        make_violation(
            victims=[
                {"age": 9, "gender": "Female", "status": "civilian"},
                {"age": 34, "gender": "male", "status": "civilian"},
                {"age": 61, "status": "civilian"},
            ]
        )
    )

    merged = merge_victims(existing.victims, incoming.victims)

    # The second incoming victim lacks the group affiliation, so it is treated as a different person.
    assert [(victim.age, victim.gender) for victim in merged] == [
        (34, "male"),
        (9, "female"),
        (34, "male"),
        (61, "unknown"),
    ]
    assert merge_violation(existing, incoming).victims == merged


def test_merge_raises_casualties_to_recorded_deaths(make_violation) -> None:
    existing = _existing(make_violation, casualties=1, victims=[{"status": "civilian", "death_date": "2024-03-10"}])
    incoming = ViolationIn.model_validate(
        make_violation(
            casualties=0,
            victims=[
                {"age": 40, "status": "civilian", "death_date": "2024-03-10"},
                {"age": 12, "status": "civilian", "death_date": "2024-03-11"},
                {"age": 70, "status": "civilian"},
            ],
        )
    )

    merged = merge_violation(existing, incoming)

    assert len(merged.victims) == 4
    assert merged.casualties == 3
    assert merged.victims[1].death_date == date(2024, 3, 10)


def test_merge_keeps_reported_casualties_above_victim_count(make_violation) -> None:
    existing = _existing(make_violation, victims=[{"status": "civilian", "death_date": "2024-03-10"}])

    merged = merge_violation(existing, ViolationIn.model_validate(make_violation(casualties=2)))

    assert merged.casualties == 5
