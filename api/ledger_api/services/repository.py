from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from ledger_api.core.config import get_settings
from ledger_api.schemas.violations import ViolationIn, ViolationRecord
from ledger_api.services.lifecycle import attempts_exhausted, can_transition, resolve_failure_status
from ledger_api.services.merge import merge_violation


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryUniqueViolationError(RepositoryConflictError):
    """Raised when an insert collides with a stored unique key."""


VIOLATION_JSON_FIELDS = (
    "location",
    "description",
    "source",
    "source_url",
    "verification_method",
    "media_links",
    "tags",
    "victims",
)

_VIOLATION_COLUMNS = """
  id::text as id,
  type,
  date,
  reported_date,
  location,
  description,
  source,
  source_url,
  verification_method,
  verified,
  certainty_level,
  perpetrator_affiliation,
  casualties,
  injured_count,
  kidnapped_count,
  detained_count,
  displaced_count,
  victims,
  media_links,
  tags,
  source_report_ids,
  dedup_key,
  created_by,
  updated_by,
  created_at,
  updated_at
"""

_REPORT_COLUMNS = """
  id::text as id,
  source_url,
  text,
  date,
  channel,
  message_id,
  status,
  error,
  parsed_by_llm,
  violation_ids,
  attempts,
  last_attempt,
  started_at,
  processing_time_ms,
  violations_created,
  error_details,
  scraped_at,
  matched_keywords,
  language,
  media_count,
  forwarded_from,
  view_count,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        report_max_attempts: int,
        report_retry_delay_minutes: int,
        report_stuck_after_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.report_max_attempts = max(1, report_max_attempts)
        self.report_retry_delay = timedelta(minutes=max(0, report_retry_delay_minutes))
        self.report_stuck_after = timedelta(minutes=max(0, report_stuck_after_minutes))
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return bool(await pool.fetchval("select 1"))

    # Violations

    async def get_violation(self, violation_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_VIOLATION_COLUMNS} from violations where id = $1::uuid",
                violation_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("violation not found") from exc
        if not row:
            raise RepositoryNotFoundError("violation not found")
        return self._violation_row_to_dict(row)

    async def find_violation_candidates(
        self,
        *,
        violation_type: str,
        date_from: date,
        date_to: date,
        limit: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_VIOLATION_COLUMNS}
            from violations
            where type = $1
              and date between $2 and $3
            order by date desc, created_at desc
            limit $4
            """,
            violation_type,
            date_from,
            date_to,
            max(1, limit),
        )
        return [self._violation_row_to_dict(row) for row in rows]

    async def insert_violation(self, payload: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into violations (
                  type,
                  date,
                  reported_date,
                  location,
                  description,
                  source,
                  source_url,
                  verification_method,
                  verified,
                  certainty_level,
                  perpetrator_affiliation,
                  casualties,
                  injured_count,
                  kidnapped_count,
                  detained_count,
                  displaced_count,
                  media_links,
                  tags,
                  source_report_ids,
                  victims,
                  dedup_key,
                  created_by,
                  updated_by
                )
                values (
                  $1, $2, $3, $4::jsonb, $5::jsonb, $6::jsonb, $7::jsonb, $8::jsonb, $9, $10, $11,
                  $12, $13, $14, $15, $16, $17::jsonb, $18::jsonb, $19::text[], $20::jsonb, $21, $22, $23
                )
                returning {_VIOLATION_COLUMNS}
                """,
                *self._violation_params(payload),
                payload.get("dedup_key"),
                payload.get("created_by"),
                payload.get("updated_by"),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryUniqueViolationError("violation with the same dedup key already exists") from exc
        if not row:
            raise RepositoryConflictError("failed to insert violation")
        return self._violation_row_to_dict(row)

    async def merge_violation(
        self,
        violation_id: str,
        incoming: ViolationIn,
        *,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"select {_VIOLATION_COLUMNS} from violations where id = $1::uuid for update",
                        violation_id,
                    )
                    if not row:
                        raise RepositoryNotFoundError("violation not found")

                    existing = ViolationRecord.model_validate(self._violation_row_to_dict(row))
                    merged = merge_violation(existing, incoming).model_dump()
                    updated = await conn.fetchrow(
                        f"""
                        update violations
                        set
                          type = $1,
                          date = $2,
                          reported_date = $3,
                          location = $4::jsonb,
                          description = $5::jsonb,
                          source = $6::jsonb,
                          source_url = $7::jsonb,
                          verification_method = $8::jsonb,
                          verified = $9,
                          certainty_level = $10,
                          perpetrator_affiliation = $11,
                          casualties = $12,
                          injured_count = $13,
                          kidnapped_count = $14,
                          detained_count = $15,
                          displaced_count = $16,
                          media_links = $17::jsonb,
                          tags = $18::jsonb,
                          source_report_ids = $19::text[],
                          victims = $20::jsonb,
                          updated_by = coalesce($22, updated_by),
                          updated_at = now()
                        where id = $21::uuid
                        returning {_VIOLATION_COLUMNS}
                        """,
                        *self._violation_params(merged),
                        violation_id,
                        actor_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("violation not found") from exc
        if not updated:
            raise RepositoryNotFoundError("violation not found")
        return self._violation_row_to_dict(updated)

    async def link_violation_to_report(self, violation_id: str, report_id: str) -> None:
        pool = await self._get_pool()
        try:
            result = await pool.execute(
                """
                update violations
                set
                  source_report_ids = case
                    when $2 = any(source_report_ids) then source_report_ids
                    else array_append(source_report_ids, $2)
                  end,
                  updated_at = now()
                where id = $1::uuid
                """,
                violation_id,
                report_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("violation not found") from exc
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("violation not found")

    # Reports

    async def create_report(self, payload: dict[str, Any]) -> tuple[str, bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    insert into reports (
                      source_url,
                      text,
                      date,
                      channel,
                      message_id,
                      scraped_at,
                      matched_keywords,
                      language,
                      media_count,
                      forwarded_from,
                      view_count
                    )
                    values ($1, $2, $3, $4, $5, coalesce($6, now()), $7::text[], $8, $9, $10, $11)
                    on conflict (channel, message_id) do nothing
                    returning id::text as id
                    """,
                    payload["source_url"],
                    payload["text"],
                    payload["date"],
                    payload["channel"],
                    payload["message_id"],
                    payload.get("scraped_at"),
                    list(payload.get("matched_keywords") or []),
                    payload.get("language") or "unknown",
                    int(payload.get("media_count") or 0),
                    payload.get("forwarded_from"),
                    int(payload.get("view_count") or 0),
                )
                if row:
                    return row["id"], True

                existing = await conn.fetchrow(
                    "select id::text as id from reports where channel = $1 and message_id = $2",
                    payload["channel"],
                    payload["message_id"],
                )
                if not existing:
                    raise RepositoryConflictError("failed to resolve existing report after conflict")
                return existing["id"], False

    async def get_report(self, report_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_REPORT_COLUMNS} from reports where id = $1::uuid", report_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("report not found") from exc
        if not row:
            raise RepositoryNotFoundError("report not found")
        return self._report_row_to_dict(row)

    async def list_reports_ready_for_processing(self, limit: int = 15) -> list[dict[str, Any]]:
        now = datetime.now(timezone.utc)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_REPORT_COLUMNS}
            from reports
            where parsed_by_llm = false
              and (
                (status = 'unprocessed' and attempts < $1)
                or (status = 'retry_pending' and attempts < $1 and (last_attempt is null or last_attempt <= $2))
                or (status = 'processing' and (started_at is null or started_at <= $3))
              )
            order by scraped_at desc nulls last, created_at desc
            limit $4
            """,
            self.report_max_attempts,
            now - self.report_retry_delay,
            now - self.report_stuck_after,
            max(1, limit),
        )
        return [self._report_row_to_dict(row) for row in rows]

    async def mark_report_processing(self, report_id: str) -> dict[str, Any]:
        exhausted_message = "processing attempts exhausted"
        row = None
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._lock_report(conn, report_id)
                    self._ensure_transition(current["status"], "processing")
                    if attempts_exhausted(current["attempts"], max_attempts=self.report_max_attempts):
                        # A reclaimed report with no attempts left is failed instead of retried.
                        if current["status"] == "processing":
                            await self._set_report_outcome(conn, report_id, status="failed", error=exhausted_message)
                    else:
                        row = await conn.fetchrow(
                            f"""
                            update reports
                            set
                              status = 'processing',
                              attempts = attempts + 1,
                              started_at = now(),
                              last_attempt = now(),
                              updated_at = now()
                            where id = $1::uuid
                            returning {_REPORT_COLUMNS}
                            """,
                            report_id,
                        )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("report not found") from exc
        if row is None:
            raise RepositoryConflictError(exhausted_message)
        return self._report_row_to_dict(row)

    async def mark_report_processed(
        self,
        report_id: str,
        violation_ids: list[str],
        processing_time_ms: int,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_report(conn, report_id)
                self._ensure_transition(current["status"], "processed")
                row = await conn.fetchrow(
                    f"""
                    update reports
                    set
                      status = 'processed',
                      parsed_by_llm = true,
                      violation_ids = $2::text[],
                      violations_created = $3,
                      processing_time_ms = $4,
                      started_at = null,
                      error = null,
                      error_details = null,
                      updated_at = now()
                    where id = $1::uuid
                    returning {_REPORT_COLUMNS}
                    """,
                    report_id,
                    list(violation_ids),
                    len(violation_ids),
                    int(processing_time_ms),
                )
        return self._report_row_to_dict(row)

    async def mark_report_failed(self, report_id: str, error: str, *, terminal: bool = False) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_report(conn, report_id)
                status = (
                    "failed"
                    if terminal
                    else resolve_failure_status(current["attempts"], max_attempts=self.report_max_attempts)
                )
                self._ensure_transition(current["status"], status)
                row = await self._set_report_outcome(conn, report_id, status=status, error=error)
        return self._report_row_to_dict(row)

    async def mark_report_ignored(self, report_id: str, reason: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._lock_report(conn, report_id)
                self._ensure_transition(current["status"], "ignored")
                row = await self._set_report_outcome(conn, report_id, status="ignored", error=reason)
        return self._report_row_to_dict(row)

    # Geocoding cache

    async def get_geocode_cache(self, cache_key: str, *, max_age_days: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update geocoding_cache
            set hit_count = hit_count + 1, last_used = now()
            where cache_key = $1
              and created_at > now() - make_interval(days => $2)
            returning result
            """,
            cache_key,
            max_age_days,
        )
        if not row:
            return None
        return self._coerce_json_dict(row["result"])

    async def put_geocode_cache(
        self,
        cache_key: str,
        *,
        search_terms: dict[str, Any],
        result: dict[str, Any],
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into geocoding_cache (cache_key, search_terms, result)
            values ($1, $2::jsonb, $3::jsonb)
            on conflict (cache_key) do update
            set
              search_terms = excluded.search_terms,
              result = excluded.result,
              hit_count = geocoding_cache.hit_count + 1,
              last_used = now(),
              created_at = now()
            """,
            cache_key,
            json.dumps(search_terms, ensure_ascii=False),
            json.dumps(result),
        )

    async def _lock_report(self, conn: asyncpg.Connection, report_id: str) -> asyncpg.Record:
        try:
            row = await conn.fetchrow(
                "select id, status, attempts from reports where id = $1::uuid for update",
                report_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("report not found") from exc
        if not row:
            raise RepositoryNotFoundError("report not found")
        return row

    @staticmethod
    async def _set_report_outcome(
        conn: asyncpg.Connection,
        report_id: str,
        *,
        status: str,
        error: str,
    ) -> asyncpg.Record:
        return await conn.fetchrow(
            f"""
            update reports
            set
              status = $2,
              error = $3,
              error_details = $3,
              started_at = null,
              updated_at = now()
            where id = $1::uuid
            returning {_REPORT_COLUMNS}
            """,
            report_id,
            status,
            error,
        )

    @staticmethod
    def _ensure_transition(from_status: str, to_status: str) -> None:
        if not can_transition(from_status, to_status):
            raise RepositoryConflictError(f"invalid report transition: {from_status} -> {to_status}")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("VL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _violation_params(payload: dict[str, Any]) -> list[Any]:
        return [
            payload["type"],
            payload["date"],
            payload.get("reported_date"),
            json.dumps(payload["location"], ensure_ascii=False),
            json.dumps(payload["description"], ensure_ascii=False),
            json.dumps(payload.get("source") or {}, ensure_ascii=False),
            json.dumps(payload.get("source_url") or {}, ensure_ascii=False),
            json.dumps(payload.get("verification_method") or {}, ensure_ascii=False),
            bool(payload.get("verified")),
            payload["certainty_level"],
            payload.get("perpetrator_affiliation") or "unknown",
            int(payload.get("casualties") or 0),
            int(payload.get("injured_count") or 0),
            int(payload.get("kidnapped_count") or 0),
            int(payload.get("detained_count") or 0),
            int(payload.get("displaced_count") or 0),
            json.dumps(payload.get("media_links") or []),
            json.dumps(payload.get("tags") or [], ensure_ascii=False),
            list(payload.get("source_report_ids") or []),
            json.dumps(payload.get("victims") or [], ensure_ascii=False, default=str),
        ]

    @classmethod
    def _violation_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        violation = dict(row)
        for field_name in VIOLATION_JSON_FIELDS:
            violation[field_name] = cls._coerce_json(violation.get(field_name))
        for field_name in ("source", "source_url", "verification_method"):
            if not isinstance(violation[field_name], dict):
                violation[field_name] = {}
        for field_name in ("media_links", "tags", "victims"):
            if not isinstance(violation[field_name], list):
                violation[field_name] = []
        violation["source_report_ids"] = list(violation.get("source_report_ids") or [])
        return violation

    @staticmethod
    def _report_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "source_url": row["source_url"],
            "text": row["text"],
            "date": row["date"],
            "channel": row["channel"],
            "message_id": row["message_id"],
            "status": row["status"],
            "error": row["error"],
            "parsed_by_llm": bool(row["parsed_by_llm"]),
            "violation_ids": list(row["violation_ids"] or []),
            "processing_metadata": {
                "attempts": int(row["attempts"] or 0),
                "last_attempt": row["last_attempt"],
                "started_at": row["started_at"],
                "processing_time_ms": row["processing_time_ms"],
                "violations_created": int(row["violations_created"] or 0),
                "error_details": row["error_details"],
            },
            "scraped_at": row["scraped_at"],
            "matched_keywords": list(row["matched_keywords"] or []),
            "language": row["language"],
            "media_count": int(row["media_count"] or 0),
            "forwarded_from": row["forwarded_from"],
            "view_count": int(row["view_count"] or 0),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @classmethod
    def _coerce_json_dict(cls, value: Any) -> dict[str, Any]:
        parsed = cls._coerce_json(value)
        return parsed if isinstance(parsed, dict) else {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        report_max_attempts=settings.report_max_attempts,
        report_retry_delay_minutes=settings.report_retry_delay_minutes,
        report_stuck_after_minutes=settings.report_stuck_after_minutes,
    )
