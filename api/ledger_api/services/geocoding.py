from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from ledger_api.core.config import Settings, get_settings
from ledger_api.schemas.violations import LocationIn
from ledger_api.services.errors import GeocodingError
from ledger_api.services.repository import RepositoryError, get_repository

logger = logging.getLogger(__name__)

_NEIGHBORHOOD_RE = re.compile(r"\bneighborhood\b", re.IGNORECASE)
_ARABIC_NEIGHBORHOOD_RE = re.compile(r"(?:^|\s)حي(?=\s|$)")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class GeocodeResult:
    longitude: float
    latitude: float
    quality: float
    formatted_address: str = ""
    from_cache: bool = False

    @property
    def coordinates(self) -> list[float]:
        return [self.longitude, self.latitude]

    def to_cache_payload(self) -> dict[str, Any]:
        return {
            "coordinates": self.coordinates,
            "quality": self.quality,
            "formatted_address": self.formatted_address,
        }


def clean_location_name(name: str) -> str:
    cleaned = _NEIGHBORHOOD_RE.sub("", name or "")
    cleaned = _ARABIC_NEIGHBORHOOD_RE.sub(" ", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def build_cache_key(place_name: str, admin_division: str | None, language: str) -> str:
    normalized = "_".join(
        [
            clean_location_name(place_name).lower(),
            (admin_division or "").strip().lower(),
            language,
        ]
    )
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


class GeocodingClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        timeout_seconds: float,
        repository: Any = None,
        cache_ttl_days: int = 90,
        region_name: str = "Syria",
        region_code: str = "SY",
        region_bounds: Sequence[float] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self.repository = repository
        self.cache_ttl_days = max(1, cache_ttl_days)
        self.region_name = region_name
        self.region_code = region_code
        self.region_bounds = tuple(region_bounds) if region_bounds else None
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, *, repository: Any = None) -> GeocodingClient:
        return cls(
            api_key=settings.geocoding_api_key,
            base_url=settings.geocoding_base_url,
            timeout_seconds=settings.geocoding_timeout_seconds,
            repository=repository,
            cache_ttl_days=settings.geocoding_cache_ttl_days,
            region_name=settings.geocoding_region_name,
            region_code=settings.geocoding_region_code,
            region_bounds=settings.geocoding_region_bounds,
        )

    async def geocode(self, place_name: str, admin_division: str | None, language: str) -> GeocodeResult | None:
        if not place_name or not place_name.strip():
            return None

        cache_key = build_cache_key(place_name, admin_division, language)
        cached = await self._read_cache(cache_key)
        if cached is not None:
            logger.info("geocode cache hit place=%s language=%s", place_name, language)
            return cached

        result = await self._geocode_with_strategies(place_name, admin_division)
        if result is not None:
            await self._write_cache(cache_key, place_name, admin_division, language, result)
        return result

    async def geocode_location(self, location: LocationIn, *, languages: Sequence[str]) -> GeocodeResult:
        """Geocode every language variant of a location and keep the best result."""
        ordered = list(languages) + [language for language in location.name if language not in languages]
        results: list[GeocodeResult] = []
        for language in ordered:
            place_name = location.name.get(language)
            if not place_name:
                continue
            admin_division = location.administrative_division.get(language)
            result = await self.geocode(place_name, admin_division, language)
            if result is not None:
                results.append(result)

        if not results:
            names = ", ".join(location.name.values())
            raise GeocodingError(f"could not find valid coordinates for location: {names}")

        best = results[0]
        for result in results[1:]:
            if result.quality > best.quality:
                best = result
        return best

    async def _geocode_with_strategies(self, place_name: str, admin_division: str | None) -> GeocodeResult | None:
        if not self.api_key:
            logger.warning("geocoding skipped: api key is not configured")
            return None

        cleaned = clean_location_name(place_name)
        suffix = f", {self.region_name}" if self.region_name else ""
        queries = [f"{cleaned}, {admin_division}{suffix}" if admin_division else f"{cleaned}{suffix}"]
        if admin_division:
            queries.append(f"{cleaned}{suffix}")

        for query in queries:
            try:
                candidates = await self._request(query)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("geocoding request failed query=%s error=%s", query, exc)
                continue

            for candidate in candidates:
                result = self._to_result(candidate, query)
                if result is not None and self._within_region(result):
                    logger.info(
                        "geocoding succeeded query=%s lon=%s lat=%s quality=%.2f",
                        query,
                        result.longitude,
                        result.latitude,
                        result.quality,
                    )
                    return result
        return None

    async def _request(self, query: str) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.get(self.base_url, params={"address": query, "key": self.api_key})
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("geocoding response is not a JSON object")

        status = payload.get("status")
        if status != "OK":
            if status != "ZERO_RESULTS":
                logger.warning("geocoding api status=%s message=%s", status, payload.get("error_message"))
            return []

        results = [item for item in payload.get("results") or [] if isinstance(item, dict)]
        in_region = [item for item in results if self._is_region_result(item)]
        return in_region or results

    def _to_result(self, candidate: dict[str, Any], query: str) -> GeocodeResult | None:
        location = (candidate.get("geometry") or {}).get("location") or {}
        try:
            longitude = float(location["lng"])
            latitude = float(location["lat"])
        except (KeyError, TypeError, ValueError):
            return None

        formatted_address = str(candidate.get("formatted_address") or "")
        return GeocodeResult(
            longitude=longitude,
            latitude=latitude,
            quality=self._quality_score(candidate, formatted_address, query),
            formatted_address=formatted_address,
        )

    def _quality_score(self, candidate: dict[str, Any], formatted_address: str, query: str) -> float:
        score = 0.5
        if formatted_address and query in formatted_address:
            score += 0.3
        if self._is_region_result(candidate):
            score += 0.2
        component_types = {
            component_type
            for component in candidate.get("address_components") or []
            for component_type in component.get("types") or []
        }
        if {"locality", "administrative_area_level_1"} <= component_types:
            score += 0.1
        if "route" in component_types or "street_number" in component_types:
            score += 0.1
        return min(score, 1.0)

    def _is_region_result(self, candidate: dict[str, Any]) -> bool:
        for component in candidate.get("address_components") or []:
            if "country" not in (component.get("types") or []):
                continue
            if component.get("short_name") == self.region_code or component.get("long_name") == self.region_name:
                return True
        return False

    def _within_region(self, result: GeocodeResult) -> bool:
        if self.region_bounds is None:
            return True
        west, south, east, north = self.region_bounds
        return west <= result.longitude <= east and south <= result.latitude <= north

    async def _read_cache(self, cache_key: str) -> GeocodeResult | None:
        if self.repository is None:
            return None
        try:
            entry = await self.repository.get_geocode_cache(cache_key, max_age_days=self.cache_ttl_days)
        except RepositoryError as exc:
            logger.warning("geocode cache lookup failed key=%s error=%s", cache_key, exc)
            return None
        if not entry:
            return None
        longitude, latitude = entry["coordinates"]
        return GeocodeResult(
            longitude=float(longitude),
            latitude=float(latitude),
            quality=float(entry.get("quality") or 0.5),
            formatted_address=str(entry.get("formatted_address") or ""),
            from_cache=True,
        )

    async def _write_cache(
        self,
        cache_key: str,
        place_name: str,
        admin_division: str | None,
        language: str,
        result: GeocodeResult,
    ) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.put_geocode_cache(
                cache_key,
                search_terms={"place_name": place_name, "admin_division": admin_division, "language": language},
                result=result.to_cache_payload(),
            )
        except RepositoryError as exc:
            logger.warning("geocode cache write failed key=%s error=%s", cache_key, exc)


@lru_cache
def get_geocoding_client() -> GeocodingClient:
    return GeocodingClient.from_settings(get_settings(), repository=get_repository())
