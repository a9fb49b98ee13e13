from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ReportStatus = Literal["unprocessed", "processing", "processed", "failed", "ignored", "retry_pending"]
ReportLanguage = Literal["ar", "en", "mixed", "unknown"]

REPORT_FUTURE_GRACE = timedelta(hours=1)


class ReportIn(BaseModel):
    source_url: str = Field(min_length=1, max_length=500)
    text: str = Field(min_length=10, max_length=10000)
    date: datetime
    channel: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    scraped_at: datetime | None = None
    matched_keywords: list[str] = Field(default_factory=list)
    language: ReportLanguage = "unknown"
    media_count: int = Field(default=0, ge=0)
    forwarded_from: str | None = None
    view_count: int = Field(default=0, ge=0)

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value > datetime.now(timezone.utc) + REPORT_FUTURE_GRACE:
            raise ValueError("report date cannot be more than 1 hour in the future")
        return value


class ReportAccepted(BaseModel):
    report_id: str
    created: bool


class ProcessingMetadataOut(BaseModel):
    attempts: int = 0
    last_attempt: datetime | None = None
    started_at: datetime | None = None
    processing_time_ms: int | None = None
    violations_created: int = 0
    error_details: str | None = None


class ReportOut(BaseModel):
    id: str
    source_url: str
    text: str
    date: datetime
    channel: str
    message_id: str
    status: ReportStatus
    error: str | None = None
    parsed_by_llm: bool = False
    violation_ids: list[str] = Field(default_factory=list)
    processing_metadata: ProcessingMetadataOut = Field(default_factory=ProcessingMetadataOut)
    scraped_at: datetime | None = None
    matched_keywords: list[str] = Field(default_factory=list)
    language: ReportLanguage = "unknown"
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ReportProcessingOut(BaseModel):
    report_id: str
    success: bool
    status: ReportStatus | None = None
    violations_created: int = 0
    violation_ids: list[str] = Field(default_factory=list)
    ignored: bool = False
    reason: str | None = None
    error: str | None = None
    total_parsed: int = 0
    valid_violations: int = 0
    invalid_violations: int = 0
    validation_errors: list[dict[str, Any]] = Field(default_factory=list)
    creation_errors: list[dict[str, Any]] = Field(default_factory=list)
    processing_time_ms: int = 0
