from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, get_args

import httpx

from ledger_api.core.config import Settings, get_settings
from ledger_api.schemas.violations import (
    CertaintyLevel,
    PerpetratorAffiliation,
    VictimGender,
    VictimStatus,
    ViolationType,
)
from ledger_api.services.errors import ExtractionError, ExtractionNotConfiguredError

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)
_FENCED_RE = re.compile(r"```\s*\n(.*?)\n```", re.DOTALL)
_INLINE_FENCE_RE = re.compile(r"```(?:json)?(.*?)```", re.DOTALL)
_EMBEDDED_ARRAY_RE = re.compile(r"\[\s*\{.*\}\s*\]", re.DOTALL)

SYSTEM_PROMPT = f"""You extract structured records of human rights violations from news and channel reports.
Return one JSON array. Each item is a single incident with these fields:
- type: one of {", ".join(get_args(ViolationType))}
- date: incident date as YYYY-MM-DD
- reported_date: optional, YYYY-MM-DD
- location: {{"name": {{"en": ..., "ar": ...}}, "administrative_division": {{"en": ..., "ar": ...}}}}; omit coordinates
- description: {{"en": ..., "ar": ...}}; English is required
- source: optional {{"en": ..., "ar": ...}}
- verified: boolean, false unless the report states independent verification
- certainty_level: one of {", ".join(get_args(CertaintyLevel))}
- perpetrator_affiliation: one of {", ".join(get_args(PerpetratorAffiliation))}
- casualties, injured_count, kidnapped_count, detained_count, displaced_count: integers, 0 when not stated
- victims: optional list, only for people the text describes individually; each has age, gender
  (one of {", ".join(get_args(VictimGender))}), status (one of {", ".join(get_args(VictimStatus))}),
  group_affiliation and sectarian_identity as {{"en": ...}}, and death_date as YYYY-MM-DD when they were killed
- media_links: optional list of URLs
- tags: optional list of {{"en": ..., "ar": ...}}
Only use facts stated in the text. Use "unknown" when the perpetrator is not clearly named.
Return [] when the report describes no violation."""


@dataclass(slots=True)
class SourceHint:
    name: str | None = None
    url: str | None = None
    report_date: str | None = None

    def describe(self) -> str:
        if not self.name:
            return "No source information provided"
        parts = [f"Report source: {self.name}"]
        if self.url:
            parts.append(f"({self.url})")
        if self.report_date:
            parts.append(f"published on {self.report_date}")
        return " ".join(parts)


def extract_json_array(content: str) -> list[dict[str, Any]]:
    """Pull the list of candidate records out of a free-text model reply."""
    json_text = _locate_json(content)
    if json_text is None:
        raise ExtractionError("no JSON array found in extraction response")

    try:
        parsed = json.loads(json_text)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"failed to parse JSON from extraction response: {exc}") from exc

    if isinstance(parsed, dict):
        nested = [value for value in parsed.values() if isinstance(value, list)]
        if nested:
            parsed = nested[0]
        elif parsed.get("type") and parsed.get("date"):
            parsed = [parsed]
        else:
            raise ExtractionError("extraction response is not an array and holds no violation data")
    if not isinstance(parsed, list):
        raise ExtractionError("extraction response is not an array")
    if not parsed:
        return []

    candidates = [item for item in parsed if isinstance(item, dict)]
    if not candidates:
        raise ExtractionError("extraction response holds no violation objects")
    return candidates


def _locate_json(content: str) -> str | None:
    for pattern in (_FENCED_JSON_RE, _FENCED_RE, _INLINE_FENCE_RE):
        match = pattern.search(content)
        if match:
            return match.group(1).strip()

    trimmed = content.strip()
    if trimmed.startswith("[") and trimmed.endswith("]"):
        return trimmed
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed

    match = _EMBEDDED_ARRAY_RE.search(content)
    if match:
        return match.group(0)
    return None


class ExtractionClient:
    def __init__(
        self,
        *,
        api_key: str | None,
        model: str | None,
        base_url: str,
        api_version: str,
        max_tokens: int,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> ExtractionClient:
        return cls(
            api_key=settings.extraction_api_key,
            model=settings.extraction_model,
            base_url=settings.extraction_base_url,
            api_version=settings.extraction_api_version,
            max_tokens=settings.extraction_max_tokens,
            timeout_seconds=settings.extraction_timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.model)

    async def extract(self, text: str, source_hint: SourceHint | None = None) -> list[dict[str, Any]]:
        if not self.configured:
            raise ExtractionNotConfiguredError("extraction service is not configured (api key and model required)")

        hint = source_hint or SourceHint()
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [
                {
                    "role": "user",
                    "content": f"SOURCE INFO: {hint.describe()}\n\nREPORT TEXT:\n{text}",
                }
            ],
        }
        headers = {
            "x-api-key": self.api_key or "",
            "anthropic-version": self.api_version,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/v1/messages", json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExtractionError(f"extraction service returned status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ExtractionError(f"extraction service request failed: {exc}") from exc
        except ValueError as exc:
            raise ExtractionError("extraction service returned invalid JSON") from exc

        content = "".join(
            block.get("text", "")
            for block in body.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )
        if not content:
            raise ExtractionError("extraction service returned an empty reply")

        candidates = extract_json_array(content)
        logger.info("extraction completed candidates=%s text_length=%s", len(candidates), len(text))
        return candidates


@lru_cache
def get_extraction_client() -> ExtractionClient:
    return ExtractionClient.from_settings(get_settings())
