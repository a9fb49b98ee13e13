from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error for the ingestion pipeline."""


class CandidateValidationError(PipelineError):
    """Raised when a candidate record violates the violation schema."""

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class DuplicateConflictError(PipelineError):
    """Raised when a duplicate exists and merging was not requested."""

    def __init__(self, message: str, duplicates: list[Any]) -> None:
        super().__init__(message)
        self.duplicates = duplicates


class UpstreamError(PipelineError):
    """Raised when an external collaborator is unavailable or rejects a request."""


class ExtractionError(UpstreamError):
    """Raised when the extraction service fails or returns unusable output."""


class ExtractionNotConfiguredError(ExtractionError):
    """Raised when the extraction service has no credentials or model configured."""


class GeocodingError(UpstreamError):
    """Raised when no language variant of a location could be geocoded."""


class RaceRecoveredError(PipelineError):
    """Internal signal: an insert lost a race and was resolved by merging."""

    def __init__(self, result: Any) -> None:
        super().__init__("insert conflict resolved by merge")
        self.result = result
