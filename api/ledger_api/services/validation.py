from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ledger_api.schemas.violations import ViolationIn


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    record: ViolationIn | None = None


@dataclass(slots=True)
class ValidCandidate:
    index: int
    record: ViolationIn


@dataclass(slots=True)
class InvalidCandidate:
    index: int
    errors: list[str]
    candidate: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "errors": list(self.errors)}


@dataclass(slots=True)
class BatchValidationResult:
    valid: list[ValidCandidate] = field(default_factory=list)
    invalid: list[InvalidCandidate] = field(default_factory=list)


def format_validation_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg") or "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def validate_candidate(candidate: Any) -> ValidationResult:
    """Validate and sanitize one candidate, collecting every violated constraint."""
    if isinstance(candidate, ViolationIn):
        candidate = candidate.model_dump()
    if not isinstance(candidate, dict):
        return ValidationResult(valid=False, errors=["violation must be an object"])

    try:
        record = ViolationIn.model_validate(candidate)
    except ValidationError as exc:
        return ValidationResult(valid=False, errors=format_validation_errors(exc))
    return ValidationResult(valid=True, record=record)


def validate_batch(candidates: list[Any]) -> BatchValidationResult:
    result = BatchValidationResult()
    for index, candidate in enumerate(candidates):
        outcome = validate_candidate(candidate)
        if outcome.valid and outcome.record is not None:
            result.valid.append(ValidCandidate(index=index, record=outcome.record))
        else:
            result.invalid.append(InvalidCandidate(index=index, errors=outcome.errors, candidate=candidate))
    return result
