from __future__ import annotations

import copy
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from ledger_api.schemas.violations import ViolationIn, ViolationRecord
from ledger_api.services.lifecycle import (
    attempts_exhausted,
    can_transition,
    is_ready_for_processing,
    resolve_failure_status,
)
from ledger_api.services.merge import merge_violation
from ledger_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUniqueViolationError,
)


class InMemoryStore:
    """Process-local store with the same contract as ``PostgresRepository``."""

    def __init__(
        self,
        *,
        report_max_attempts: int = 3,
        report_retry_delay_minutes: int = 30,
        report_stuck_after_minutes: int = 5,
    ) -> None:
        self.report_max_attempts = max(1, report_max_attempts)
        self.report_retry_delay = timedelta(minutes=max(0, report_retry_delay_minutes))
        self.report_stuck_after = timedelta(minutes=max(0, report_stuck_after_minutes))
        self.violations: dict[str, dict[str, Any]] = {}
        self.reports: dict[str, dict[str, Any]] = {}
        self.geocode_cache: dict[str, dict[str, Any]] = {}
        self.candidate_queries = 0

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def get_violation(self, violation_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require_violation(violation_id))

    async def find_violation_candidates(
        self,
        *,
        violation_type: str,
        date_from: date,
        date_to: date,
        limit: int,
    ) -> list[dict[str, Any]]:
        self.candidate_queries += 1
        matches = [
            violation
            for violation in self.violations.values()
            if violation["type"] == violation_type and date_from <= violation["date"] <= date_to
        ]
        matches.sort(key=lambda violation: (violation["date"], violation["created_at"]), reverse=True)
        return copy.deepcopy(matches[: max(1, limit)])

    async def insert_violation(self, payload: dict[str, Any]) -> dict[str, Any]:
        dedup_key = payload.get("dedup_key")
        if dedup_key and any(item.get("dedup_key") == dedup_key for item in self.violations.values()):
            raise RepositoryUniqueViolationError("violation with the same dedup key already exists")

        now = datetime.now(timezone.utc)
        violation = copy.deepcopy(payload)
        violation.update(id=str(uuid4()), created_at=now, updated_at=now)
        stored = ViolationRecord.model_validate(violation).model_dump()
        self.violations[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def merge_violation(
        self,
        violation_id: str,
        incoming: ViolationIn,
        *,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        existing = ViolationRecord.model_validate(self._require_violation(violation_id))
        merged = merge_violation(existing, incoming).model_dump()
        if actor_id:
            merged["updated_by"] = actor_id
        merged["updated_at"] = datetime.now(timezone.utc)
        self.violations[violation_id] = merged
        return copy.deepcopy(merged)

    async def link_violation_to_report(self, violation_id: str, report_id: str) -> None:
        violation = self._require_violation(violation_id)
        if report_id not in violation["source_report_ids"]:
            violation["source_report_ids"].append(report_id)
            violation["updated_at"] = datetime.now(timezone.utc)

    async def create_report(self, payload: dict[str, Any]) -> tuple[str, bool]:
        for report in self.reports.values():
            if report["channel"] == payload["channel"] and report["message_id"] == payload["message_id"]:
                return report["id"], False

        now = datetime.now(timezone.utc)
        report_id = str(uuid4())
        self.reports[report_id] = {
            "id": report_id,
            "source_url": payload["source_url"],
            "text": payload["text"],
            "date": payload["date"],
            "channel": payload["channel"],
            "message_id": payload["message_id"],
            "status": "unprocessed",
            "error": None,
            "parsed_by_llm": False,
            "violation_ids": [],
            "processing_metadata": {
                "attempts": 0,
                "last_attempt": None,
                "started_at": None,
                "processing_time_ms": None,
                "violations_created": 0,
                "error_details": None,
            },
            "scraped_at": payload.get("scraped_at") or now,
            "matched_keywords": list(payload.get("matched_keywords") or []),
            "language": payload.get("language") or "unknown",
            "media_count": int(payload.get("media_count") or 0),
            "forwarded_from": payload.get("forwarded_from"),
            "view_count": int(payload.get("view_count") or 0),
            "created_at": now,
            "updated_at": now,
        }
        return report_id, True

    async def get_report(self, report_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require_report(report_id))

    async def list_reports_ready_for_processing(self, limit: int = 15) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        ready = [
            report
            for report in self.reports.values()
            if is_ready_for_processing(
                report,
                now=now,
                max_attempts=self.report_max_attempts,
                retry_delay=self.report_retry_delay,
                stuck_after=self.report_stuck_after,
            )
        ]
        ready.sort(key=lambda report: report["scraped_at"], reverse=True)
        return copy.deepcopy(ready[: max(1, limit)])

    async def mark_report_processing(self, report_id: str) -> dict[str, Any]:
        report = self._require_report(report_id)
        self._ensure_transition(report["status"], "processing")
        metadata = report["processing_metadata"]
        if attempts_exhausted(metadata["attempts"], max_attempts=self.report_max_attempts):
            message = "processing attempts exhausted"
            if report["status"] == "processing":
                self._set_outcome(report, status="failed", error=message)
            raise RepositoryConflictError(message)

        now = datetime.now(timezone.utc)
        report["status"] = "processing"
        metadata["attempts"] += 1
        metadata["started_at"] = now
        metadata["last_attempt"] = now
        report["updated_at"] = now
        return copy.deepcopy(report)

    async def mark_report_processed(
        self,
        report_id: str,
        violation_ids: list[str],
        processing_time_ms: int,
    ) -> dict[str, Any]:
        report = self._require_report(report_id)
        self._ensure_transition(report["status"], "processed")
        metadata = report["processing_metadata"]
        report["status"] = "processed"
        report["parsed_by_llm"] = True
        report["violation_ids"] = list(violation_ids)
        report["error"] = None
        metadata["violations_created"] = len(violation_ids)
        metadata["processing_time_ms"] = int(processing_time_ms)
        metadata["started_at"] = None
        metadata["error_details"] = None
        report["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(report)

    async def mark_report_failed(self, report_id: str, error: str, *, terminal: bool = False) -> dict[str, Any]:
        report = self._require_report(report_id)
        attempts = report["processing_metadata"]["attempts"]
        status = "failed" if terminal else resolve_failure_status(attempts, max_attempts=self.report_max_attempts)
        self._ensure_transition(report["status"], status)
        self._set_outcome(report, status=status, error=error)
        return copy.deepcopy(report)

    async def mark_report_ignored(self, report_id: str, reason: str) -> dict[str, Any]:
        report = self._require_report(report_id)
        self._ensure_transition(report["status"], "ignored")
        self._set_outcome(report, status="ignored", error=reason)
        return copy.deepcopy(report)

    async def get_geocode_cache(self, cache_key: str, *, max_age_days: int) -> dict[str, Any] | None:
        entry = self.geocode_cache.get(cache_key)
        if entry is None:
            return None
        if entry["created_at"] <= datetime.now(timezone.utc) - timedelta(days=max_age_days):
            return None
        entry["hit_count"] += 1
        entry["last_used"] = datetime.now(timezone.utc)
        return copy.deepcopy(entry["result"])

    async def put_geocode_cache(
        self,
        cache_key: str,
        *,
        search_terms: dict[str, Any],
        result: dict[str, Any],
    ) -> None:
        now = datetime.now(timezone.utc)
        previous = self.geocode_cache.get(cache_key)
        self.geocode_cache[cache_key] = {
            "search_terms": copy.deepcopy(search_terms),
            "result": copy.deepcopy(result),
            "hit_count": previous["hit_count"] + 1 if previous else 1,
            "last_used": now,
            "created_at": now,
        }

    def _require_violation(self, violation_id: str) -> dict[str, Any]:
        violation = self.violations.get(violation_id)
        if violation is None:
            raise RepositoryNotFoundError("violation not found")
        return violation

    def _require_report(self, report_id: str) -> dict[str, Any]:
        report = self.reports.get(report_id)
        if report is None:
            raise RepositoryNotFoundError("report not found")
        return report

    @staticmethod
    def _ensure_transition(from_status: str, to_status: str) -> None:
        if not can_transition(from_status, to_status):
            raise RepositoryConflictError(f"invalid report transition: {from_status} -> {to_status}")

    @staticmethod
    def _set_outcome(report: dict[str, Any], *, status: str, error: str) -> None:
        report["status"] = status
        report["error"] = error
        report["processing_metadata"]["error_details"] = error
        report["processing_metadata"]["started_at"] = None
        report["updated_at"] = datetime.now(timezone.utc)
