from __future__ import annotations

import copy
from typing import Any

import pytest

from ledger_api.schemas.violations import LocationIn
from ledger_api.services.errors import GeocodingError
from ledger_api.services.geocoding import GeocodeResult
from ledger_api.services.store import InMemoryStore

IDLIB = [36.6339, 35.9306]


class FakeGeocoder:
    def __init__(self) -> None:
        self.coordinates: dict[str, list[float]] = {}
        self.failures: set[str] = set()
        self.crashes: dict[str, Exception] = {}
        self.calls: list[str] = []

    async def geocode_location(self, location: LocationIn, *, languages: tuple[str, ...]) -> GeocodeResult:
        name = location.name.get("en") or next(iter(location.name.values()))
        self.calls.append(name)
        if name in self.crashes:
            raise self.crashes[name]
        if name in self.failures:
            raise GeocodingError(f"could not find valid coordinates for location: {name}")
        longitude, latitude = self.coordinates.get(name, IDLIB)
        return GeocodeResult(longitude=longitude, latitude=latitude, quality=0.9)


class FakeExtractionClient:
    def __init__(
        self,
        candidates: list[dict[str, Any]] | None = None,
        *,
        error: Exception | None = None,
        configured: bool = True,
    ) -> None:
        self.candidates = candidates or []
        self.error = error
        self.configured = configured
        self.calls: list[dict[str, Any]] = []

    async def extract(self, text: str, source_hint: Any = None) -> list[dict[str, Any]]:
        self.calls.append({"text": text, "source_hint": source_hint})
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.candidates)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def geocoder() -> FakeGeocoder:
    return FakeGeocoder()


@pytest.fixture
def make_violation():
    def _make(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "AIRSTRIKE",
            "date": "2024-03-10",
            "location": {
                "name": {"en": "Idlib", "ar": "إدلب"},
                "administrative_division": {"en": "Idlib Governorate"},
                "coordinates": list(IDLIB),
            },
            "description": {"en": "Airstrike hit a residential building in central Idlib city"},
            "certainty_level": "confirmed",
            "perpetrator_affiliation": "russia",
            "casualties": 5,
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def make_report():
    def _make(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "source_url": "https://t.me/idlib_news/1042",
            "text": "Warplanes struck a residential building in Idlib city this morning, killing five.",
            "date": "2024-03-10T08:30:00+00:00",
            "channel": "idlib_news",
            "message_id": "1042",
            "language": "en",
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def fake_extraction():
    return FakeExtractionClient
