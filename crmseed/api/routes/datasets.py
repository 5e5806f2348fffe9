from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from crmseed.api.routes.jobs import get_job_service, to_response
from crmseed.api.schemas.datasets import (
    CreateDatasetRequest,
    DatasetJobRequest,
    DatasetRecordResponse,
    DatasetResponse,
)
from crmseed.api.schemas.jobs import JobResponse
from crmseed.core.config import get_settings
from crmseed.datasets.service import (
    DatasetNotFoundError,
    DatasetService,
    DatasetStateError,
    dataset_to_dict,
    record_to_dict,
)
from crmseed.datasets.types import DatasetSnapshot
from crmseed.db.models import DatasetStatus, RecordStatus
from crmseed.db.session import get_session_factory
from crmseed.jobs.service import JobService
from crmseed.worker.pipeline import (
    MissingEnvironmentError,
    enqueue_cleanup_job,
    enqueue_generation_job,
    enqueue_injection_job,
)

router = APIRouter(prefix="/datasets", tags=["datasets"])


def get_dataset_service() -> DatasetService:
    return DatasetService(settings=get_settings(), session_factory=get_session_factory())


def _load(service: DatasetService, dataset_id: str) -> DatasetSnapshot:
    try:
        return service.get_dataset(dataset_id)
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


def _require_status(dataset_id: str, current: DatasetStatus, allowed: set[DatasetStatus], action: str) -> None:
    if current not in allowed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot {action} dataset {dataset_id} while it is {current.value}",
        )


@router.post("", response_model=DatasetResponse, status_code=status.HTTP_201_CREATED)
def create_dataset(
    request: CreateDatasetRequest,
    service: DatasetService = Depends(get_dataset_service),
) -> DatasetResponse:
    try:
        dataset = service.create_dataset(
            user_id=request.user_id,
            name=request.name,
            environment_id=request.environment_id,
            template_id=request.template_id,
            description=request.description,
            config=request.config,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return DatasetResponse.model_validate(dataset_to_dict(dataset))


@router.get("", response_model=list[DatasetResponse])
def list_datasets(
    user_id: str | None = None,
    service: DatasetService = Depends(get_dataset_service),
) -> list[DatasetResponse]:
    return [DatasetResponse.model_validate(dataset_to_dict(item)) for item in service.list_datasets(user_id)]


@router.get("/{dataset_id}", response_model=DatasetResponse)
def get_dataset(dataset_id: str, service: DatasetService = Depends(get_dataset_service)) -> DatasetResponse:
    return DatasetResponse.model_validate(dataset_to_dict(_load(service, dataset_id)))


@router.get("/{dataset_id}/records", response_model=list[DatasetRecordResponse])
def list_dataset_records(
    dataset_id: str,
    object_type: str | None = None,
    record_status: RecordStatus | None = Query(default=None, alias="status"),
    service: DatasetService = Depends(get_dataset_service),
) -> list[DatasetRecordResponse]:
    _load(service, dataset_id)
    records = service.list_records(dataset_id, object_type=object_type, status=record_status)
    return [DatasetRecordResponse.model_validate(record_to_dict(record)) for record in records]


@router.post("/{dataset_id}/generate", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_dataset(
    dataset_id: str,
    request: DatasetJobRequest,
    service: DatasetService = Depends(get_dataset_service),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    dataset = _load(service, dataset_id)
    _require_status(dataset_id, dataset.status, {DatasetStatus.PENDING}, "generate")
    job_id = enqueue_generation_job(dataset_id, priority=request.priority, max_attempts=request.max_attempts)
    return to_response(jobs.get_job(job_id))


@router.post("/{dataset_id}/inject", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def inject_dataset(
    dataset_id: str,
    request: DatasetJobRequest,
    service: DatasetService = Depends(get_dataset_service),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    dataset = _load(service, dataset_id)
    _require_status(dataset_id, dataset.status, {DatasetStatus.GENERATED}, "inject")
    try:
        job_id = enqueue_injection_job(
            dataset_id,
            request.environment_id,
            priority=request.priority,
            max_attempts=request.max_attempts,
        )
    except MissingEnvironmentError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return to_response(jobs.get_job(job_id))


@router.post("/{dataset_id}/cleanup", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def cleanup_dataset(
    dataset_id: str,
    request: DatasetJobRequest,
    service: DatasetService = Depends(get_dataset_service),
    jobs: JobService = Depends(get_job_service),
) -> JobResponse:
    _load(service, dataset_id)
    try:
        job_id = enqueue_cleanup_job(dataset_id, request.environment_id, priority=request.priority)
    except MissingEnvironmentError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return to_response(jobs.get_job(job_id))


@router.delete("/{dataset_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_dataset(dataset_id: str, service: DatasetService = Depends(get_dataset_service)) -> None:
    try:
        service.delete_dataset(dataset_id)
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DatasetStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
