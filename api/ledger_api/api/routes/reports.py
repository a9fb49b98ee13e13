from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledger_api.schemas.reports import ReportAccepted, ReportIn, ReportOut, ReportProcessingOut
from ledger_api.services.processing import get_report_processor
from ledger_api.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=ReportAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_report(payload: ReportIn, repository=Depends(get_repository)) -> ReportAccepted:
    try:
        report_id, created = await repository.create_report(payload.model_dump())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ReportAccepted(report_id=report_id, created=created)


@router.get("/ready", response_model=list[ReportOut])
async def list_ready_reports(
    limit: int = Query(default=15, ge=1, le=100),
    repository=Depends(get_repository),
) -> list[ReportOut]:
    try:
        rows = await repository.list_reports_ready_for_processing(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ReportOut.model_validate(row) for row in rows]


@router.get("/{report_id}", response_model=ReportOut)
async def get_report(report_id: str, repository=Depends(get_repository)) -> ReportOut:
    try:
        row = await repository.get_report(report_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ReportOut.model_validate(row)


@router.post("/{report_id}/process", response_model=ReportProcessingOut)
async def process_report(report_id: str, processor=Depends(get_report_processor)) -> ReportProcessingOut:
    try:
        result = await processor.process_report(report_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ReportProcessingOut.model_validate(result.to_dict())
