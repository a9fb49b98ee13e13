from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ledger_api.core.actor import get_actor_id
from ledger_api.schemas.violations import (
    BatchCreateOut,
    BatchCreateRequest,
    CreateViolationOut,
    DuplicateCheckOut,
    DuplicateCheckRequest,
    DuplicateMatchOut,
    ViolationRecord,
)
from ledger_api.services.creation import get_creation_service
from ledger_api.services.errors import CandidateValidationError, DuplicateConflictError, UpstreamError
from ledger_api.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=CreateViolationOut, status_code=status.HTTP_201_CREATED)
async def create_violation(
    payload: dict[str, Any] = Body(...),
    check_duplicates: bool = Query(default=True),
    merge_duplicates: bool = Query(default=True),
    threshold: float | None = Query(default=None, ge=0.0, le=1.0),
    actor_id: str | None = Depends(get_actor_id),
    service=Depends(get_creation_service),
) -> CreateViolationOut:
    try:
        result = await service.create_single_violation(
            payload,
            actor_id,
            check_duplicates=check_duplicates,
            merge_duplicates=merge_duplicates,
            threshold=threshold,
        )
    except (CandidateValidationError, DuplicateConflictError, UpstreamError, RepositoryError) as exc:
        raise _to_http_exception(exc) from exc
    return CreateViolationOut.model_validate(result.to_dict())


@router.post("/batch", response_model=BatchCreateOut, status_code=status.HTTP_201_CREATED)
async def create_violations_batch(
    payload: BatchCreateRequest,
    actor_id: str | None = Depends(get_actor_id),
    service=Depends(get_creation_service),
) -> BatchCreateOut:
    try:
        result = await service.create_batch_violations(
            payload.violations,
            actor_id,
            check_duplicates=payload.check_duplicates,
            merge_duplicates=payload.merge_duplicates,
            threshold=payload.threshold,
        )
    except (CandidateValidationError, UpstreamError, RepositoryError) as exc:
        raise _to_http_exception(exc) from exc
    return BatchCreateOut.model_validate(result.to_dict())


@router.post("/check-duplicates", response_model=DuplicateCheckOut)
async def check_duplicates(payload: DuplicateCheckRequest, service=Depends(get_creation_service)) -> DuplicateCheckOut:
    try:
        report = await service.check_duplicates(payload.violation, threshold=payload.threshold, limit=payload.limit)
    except (CandidateValidationError, RepositoryError) as exc:
        raise _to_http_exception(exc) from exc
    return DuplicateCheckOut.model_validate(report.to_dict())


@router.get("/{violation_id}", response_model=ViolationRecord)
async def get_violation(violation_id: str, repository=Depends(get_repository)) -> ViolationRecord:
    try:
        row = await repository.get_violation(violation_id)
    except RepositoryError as exc:
        raise _to_http_exception(exc) from exc
    return ViolationRecord.model_validate(row)


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, CandidateValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={"message": str(exc), "errors": exc.errors},
        )
    if isinstance(exc, DuplicateConflictError):
        duplicates = [
            DuplicateMatchOut.model_validate(match.to_dict()).model_dump(mode="json") for match in exc.duplicates
        ]
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "duplicates": duplicates},
        )
    if isinstance(exc, UpstreamError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
