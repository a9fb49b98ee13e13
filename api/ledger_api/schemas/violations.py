import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

ViolationType = Literal[
    "AIRSTRIKE",
    "CHEMICAL_ATTACK",
    "DETENTION",
    "DISPLACEMENT",
    "EXECUTION",
    "SHELLING",
    "SIEGE",
    "TORTURE",
    "MURDER",
    "SHOOTING",
    "HOME_INVASION",
    "EXPLOSION",
    "AMBUSH",
    "KIDNAPPING",
    "LANDMINE",
    "OTHER",
]
PerpetratorAffiliation = Literal[
    "assad_regime",
    "post_8th_december_government",
    "various_armed_groups",
    "isis",
    "sdf",
    "israel",
    "turkey",
    "druze_militias",
    "russia",
    "iran_shia_militias",
    "international_coalition",
    "unknown",
]
CertaintyLevel = Literal["confirmed", "probable", "possible"]
VictimGender = Literal["male", "female", "other", "unknown"]
VictimStatus = Literal["civilian", "combatant", "unknown"]

# Language code -> text. Empty values are dropped on validation.
LocalizedText = dict[str, str]

COUNT_FIELDS = ("casualties", "injured_count", "kidnapped_count", "detained_count", "displaced_count")
CERTAINTY_RANK = {"possible": 1, "probable": 2, "confirmed": 3}
FUTURE_DATE_GRACE = timedelta(days=1)

_URL_RE = re.compile(r"^(https?://)?[^\s/$.?#][^\s]*\.[^\s]{2,}$", re.IGNORECASE)


def to_calendar_date(value: Any) -> date | None:
    """Reduce a date, datetime or ISO string to its wall-clock calendar day."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        except ValueError:
            return date.fromisoformat(raw[:10])
    raise ValueError(f"unsupported date value: {value!r}")


def clean_localized_text(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected an object keyed by language code")
    cleaned: dict[str, str] = {}
    for language, text in value.items():
        if text is None:
            continue
        if not isinstance(text, str):
            raise ValueError(f"text for language {language!r} must be a string")
        stripped = text.strip()
        if stripped:
            cleaned[str(language).strip().lower()] = stripped
    return cleaned


def _check_not_future(value: date | None, label: str) -> date | None:
    if value is None:
        return None
    latest = datetime.now(timezone.utc).date() + FUTURE_DATE_GRACE
    if value > latest:
        raise ValueError(f"{label} cannot be in the future")
    return value


class LocationIn(BaseModel):
    name: LocalizedText
    administrative_division: LocalizedText = Field(default_factory=dict)
    coordinates: list[float] | None = None

    @field_validator("name", "administrative_division", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> dict[str, str]:
        return clean_localized_text(value)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("location name requires at least one language")
        for language, text in value.items():
            if not 2 <= len(text) <= 100:
                raise ValueError(f"location name ({language}) must be between 2 and 100 characters")
        return value

    @field_validator("coordinates")
    @classmethod
    def _check_coordinates(cls, value: list[float] | None) -> list[float] | None:
        if value is None:
            return None
        if len(value) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        longitude, latitude = value
        if not (-180 <= longitude <= 180 and -90 <= latitude <= 90):
            raise ValueError("coordinates are outside valid longitude/latitude ranges")
        return [float(longitude), float(latitude)]


class VictimIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    age: int | None = Field(default=None, ge=0, le=120)
    gender: VictimGender = "unknown"
    status: VictimStatus = "unknown"
    group_affiliation: LocalizedText = Field(default_factory=dict)
    sectarian_identity: LocalizedText = Field(default_factory=dict)
    death_date: date | None = None

    @field_validator("gender", "status", mode="before")
    @classmethod
    def _normalize_enum_text(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "unknown"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("group_affiliation", "sectarian_identity", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> dict[str, str]:
        return clean_localized_text(value)

    @field_validator("death_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date | None:
        return to_calendar_date(value)

    @field_validator("death_date")
    @classmethod
    def _check_death_date(cls, value: date | None) -> date | None:
        return _check_not_future(value, "death date")


class ViolationIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: ViolationType
    date: date
    reported_date: date | None = None
    location: LocationIn
    description: LocalizedText
    source: LocalizedText = Field(default_factory=dict)
    source_url: LocalizedText = Field(default_factory=dict)
    verification_method: LocalizedText = Field(default_factory=dict)
    verified: bool = False
    certainty_level: CertaintyLevel
    perpetrator_affiliation: PerpetratorAffiliation = "unknown"
    casualties: int = Field(default=0, ge=0)
    injured_count: int = Field(default=0, ge=0)
    kidnapped_count: int = Field(default=0, ge=0)
    detained_count: int = Field(default=0, ge=0)
    displaced_count: int = Field(default=0, ge=0)
    victims: list[VictimIn] = Field(default_factory=list)
    media_links: list[str] = Field(default_factory=list)
    tags: list[LocalizedText] = Field(default_factory=list)
    source_report_ids: list[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("date", "reported_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date | None:
        return to_calendar_date(value)

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: date) -> date:
        return _check_not_future(value, "incident date")

    @field_validator("reported_date")
    @classmethod
    def _check_reported_date(cls, value: date | None) -> date | None:
        return _check_not_future(value, "reported date")

    @field_validator("victims", mode="before")
    @classmethod
    def _default_victims(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("description", "source", "source_url", "verification_method", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> dict[str, str]:
        return clean_localized_text(value)

    @field_validator("description")
    @classmethod
    def _check_description(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("description requires at least one language")
        for language, text in value.items():
            if not 10 <= len(text) <= 2000:
                raise ValueError(f"description ({language}) must be between 10 and 2000 characters")
        return value

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: dict[str, str]) -> dict[str, str]:
        for language, text in value.items():
            if len(text) > 1500:
                raise ValueError(f"source ({language}) cannot exceed 1500 characters")
        return value

    @field_validator("source_url")
    @classmethod
    def _check_source_url(cls, value: dict[str, str]) -> dict[str, str]:
        for language, url in value.items():
            if len(url) > 500 or not _URL_RE.match(url):
                raise ValueError(f"source url ({language}) is invalid or exceeds 500 characters")
        return value

    @field_validator("perpetrator_affiliation", "certainty_level", mode="before")
    @classmethod
    def _normalize_enum_text(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "unknown" if info.field_name == "perpetrator_affiliation" else value
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator(*COUNT_FIELDS, mode="before")
    @classmethod
    def _default_count(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("media_links")
    @classmethod
    def _check_media_links(cls, value: list[str]) -> list[str]:
        links = [link.strip() for link in value if link and link.strip()]
        invalid = [link for link in links if not _URL_RE.match(link)]
        if invalid:
            raise ValueError(f"invalid media links: {invalid}")
        return links

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> list[dict[str, str]]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("tags must be a list")
        tags = [clean_localized_text(tag) for tag in value]
        for tag in tags:
            if any(len(text) > 50 for text in tag.values()):
                raise ValueError("tags cannot exceed 50 characters in any language")
        return [tag for tag in tags if tag]


class ViolationRecord(ViolationIn):
    id: str
    dedup_key: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Stored rows were validated on write; the clock may have moved since.
    @field_validator("date")
    @classmethod
    def _check_date(cls, value: date) -> date:
        return value

    @field_validator("reported_date")
    @classmethod
    def _check_reported_date(cls, value: date | None) -> date | None:
        return value


class MatchDetailsOut(BaseModel):
    same_type: bool
    same_date: bool
    same_perpetrator: bool
    nearby_location: bool
    distance_meters: float | None = None
    same_casualties: bool


class DuplicateMatchOut(BaseModel):
    candidate_id: str
    is_duplicate: bool
    exact_match: bool
    similarity: float
    match_details: MatchDetailsOut
    violation: ViolationRecord | None = None


class DuplicateCheckRequest(BaseModel):
    violation: dict[str, Any]
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    limit: int | None = Field(default=None, ge=1, le=50)


class DuplicateCheckOut(BaseModel):
    has_duplicates: bool
    duplicates: list[DuplicateMatchOut] = Field(default_factory=list)
    best_match: DuplicateMatchOut | None = None


class DuplicateInfoOut(BaseModel):
    similarity: float
    exact_match: bool
    original_id: str


class CreateViolationOut(BaseModel):
    violation: ViolationRecord
    was_merged: bool
    duplicate_info: DuplicateInfoOut | None = None


class BatchCreateRequest(BaseModel):
    violations: list[Any]
    check_duplicates: bool = True
    merge_duplicates: bool = True
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class MergedViolationOut(BaseModel):
    violation: ViolationRecord
    duplicate_info: DuplicateInfoOut | None = None


class BatchItemErrorOut(BaseModel):
    index: int
    errors: list[str]


class BatchCreateOut(BaseModel):
    violations: list[ViolationRecord] = Field(default_factory=list)
    created: list[ViolationRecord] = Field(default_factory=list)
    merged: list[MergedViolationOut] = Field(default_factory=list)
    errors: list[BatchItemErrorOut] = Field(default_factory=list)
