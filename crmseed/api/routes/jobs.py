from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import IntegrityError

from crmseed.api.schemas.jobs import CancelJobRequest, CreateJobRequest, JobListResponse, JobResponse
from crmseed.core.config import get_settings
from crmseed.db.models import JobKind, JobStatus
from crmseed.db.session import get_session_factory
from crmseed.jobs.service import (
    InvalidJobStateError,
    JobNotFoundError,
    JobPayloadError,
    JobService,
    snapshot_to_dict,
)
from crmseed.jobs.types import JobSnapshot

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_service() -> JobService:
    return JobService(settings=get_settings(), session_factory=get_session_factory())


def to_response(job: JobSnapshot) -> JobResponse:
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_job(request: CreateJobRequest, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.enqueue(
            request.kind,
            request.payload,
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            max_attempts=request.max_attempts,
            user_id=request.user_id,
            dataset_id=request.dataset_id,
        )
    except JobPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown dataset: {request.dataset_id}",
        ) from exc
    return to_response(job)


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    user_id: str | None = None,
    dataset_id: str | None = None,
    kind: JobKind | None = None,
    job_status: JobStatus | None = Query(default=None, alias="status"),
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    try:
        result = service.list_jobs(
            limit=limit,
            cursor=cursor,
            user_id=user_id,
            dataset_id=dataset_id,
            kind=kind,
            status=job_status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return JobListResponse(items=[to_response(item) for item in result.items], next_cursor=result.next_cursor)


@router.get("/metrics")
def get_job_metrics(service: JobService = Depends(get_job_service)) -> dict[str, int]:
    return service.get_metrics()


@router.post("/recover-stale")
def recover_stale_jobs(service: JobService = Depends(get_job_service)) -> dict[str, int]:
    recovered = service.recover_stale_jobs()
    return {"recovered": recovered}


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return to_response(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: str, request: CancelJobRequest, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.cancel(job_id, reason=request.reason)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job)


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def retry_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    try:
        job = service.retry(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidJobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job)
