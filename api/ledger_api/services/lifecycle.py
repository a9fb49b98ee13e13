from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

REPORT_STATUSES = {"unprocessed", "processing", "processed", "failed", "ignored", "retry_pending"}
TERMINAL_REPORT_STATUSES = {"processed", "failed", "ignored"}

REPORT_TRANSITIONS: dict[str, set[str]] = {
    "unprocessed": {"processing"},
    "retry_pending": {"processing"},
    # A processing report that outlives the stuck threshold is reclaimed in place.
    "processing": {"processing", "processed", "failed", "retry_pending", "ignored"},
    "processed": set(),
    "failed": set(),
    "ignored": set(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in REPORT_TRANSITIONS.get(from_status, set())


def attempts_exhausted(attempts: int, *, max_attempts: int = 3) -> bool:
    return attempts >= max_attempts


def resolve_failure_status(attempts: int, *, max_attempts: int = 3) -> str:
    """Status for a failed attempt: retry while the attempt budget lasts."""
    return "failed" if attempts_exhausted(attempts, max_attempts=max_attempts) else "retry_pending"


def is_ready_for_processing(
    report: dict[str, Any],
    *,
    now: datetime,
    max_attempts: int = 3,
    retry_delay: timedelta = timedelta(minutes=30),
    stuck_after: timedelta = timedelta(minutes=5),
) -> bool:
    if report.get("parsed_by_llm"):
        return False
    status = report.get("status")
    metadata = report.get("processing_metadata") or {}
    attempts = int(metadata.get("attempts") or 0)

    if status == "unprocessed":
        return attempts < max_attempts
    if status == "retry_pending":
        last_attempt = metadata.get("last_attempt")
        return attempts < max_attempts and (last_attempt is None or last_attempt <= now - retry_delay)
    if status == "processing":
        started_at = metadata.get("started_at")
        return started_at is None or started_at <= now - stuck_after
    return False
