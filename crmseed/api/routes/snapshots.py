from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from crmseed.api.routes.datasets import get_dataset_service
from crmseed.api.routes.jobs import get_job_service, to_response
from crmseed.api.schemas.jobs import JobResponse
from crmseed.api.schemas.snapshots import (
    CreateSnapshotRequest,
    RestoreSnapshotRequest,
    SnapshotDataResponse,
    SnapshotJobResponse,
    SnapshotResponse,
)
from crmseed.core.config import get_settings
from crmseed.datasets.service import DatasetService
from crmseed.db.models import SnapshotKind
from crmseed.db.session import get_session_factory
from crmseed.jobs.service import JobService
from crmseed.snapshots.service import (
    NoGoldenImageError,
    SnapshotNotFoundError,
    SnapshotService,
    SnapshotStateError,
    snapshot_to_dict,
)

router = APIRouter(prefix="/snapshots", tags=["snapshots"])


def get_snapshot_service(
    jobs: JobService = Depends(get_job_service),
    datasets: DatasetService = Depends(get_dataset_service),
) -> SnapshotService:
    return SnapshotService(get_settings(), get_session_factory(), jobs, datasets)


@router.post("", response_model=SnapshotJobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_snapshot(
    request: CreateSnapshotRequest,
    service: SnapshotService = Depends(get_snapshot_service),
) -> SnapshotJobResponse:
    snapshot, job = service.create_snapshot(
        user_id=request.user_id,
        environment_id=request.environment_id,
        name=request.name,
        description=request.description,
        record_ids=request.record_ids,
        is_golden_image=request.is_golden_image,
        priority=request.priority,
    )
    return SnapshotJobResponse(
        snapshot=SnapshotResponse.model_validate(snapshot_to_dict(snapshot)),
        job_id=job.id,
        job_status=job.status.value,
    )


@router.get("", response_model=list[SnapshotResponse])
def list_snapshots(
    user_id: str | None = None,
    environment_id: str | None = None,
    kind: SnapshotKind | None = None,
    service: SnapshotService = Depends(get_snapshot_service),
) -> list[SnapshotResponse]:
    items = service.list_snapshots(user_id=user_id, environment_id=environment_id, kind=kind)
    return [SnapshotResponse.model_validate(snapshot_to_dict(item)) for item in items]


@router.get("/golden/{environment_id}", response_model=SnapshotResponse)
def get_golden_image(environment_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> SnapshotResponse:
    golden = service.get_golden_image(environment_id)
    if golden is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(NoGoldenImageError(environment_id)))
    return SnapshotResponse.model_validate(snapshot_to_dict(golden))


@router.post("/golden/{environment_id}/reset", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def reset_to_golden(environment_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> JobResponse:
    try:
        job = service.reset_to_golden(environment_id)
    except NoGoldenImageError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SnapshotStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job)


@router.get("/{snapshot_id}", response_model=SnapshotResponse)
def get_snapshot(snapshot_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> SnapshotResponse:
    try:
        snapshot = service.get_snapshot(snapshot_id)
    except SnapshotNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SnapshotResponse.model_validate(snapshot_to_dict(snapshot))


@router.get("/{snapshot_id}/data", response_model=SnapshotDataResponse)
def get_snapshot_data(snapshot_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> SnapshotDataResponse:
    try:
        records = service.get_record_data(snapshot_id)
    except SnapshotNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SnapshotDataResponse(snapshot_id=snapshot_id, records=records)


@router.post("/{snapshot_id}/golden", response_model=SnapshotResponse)
def set_golden_image(snapshot_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> SnapshotResponse:
    try:
        snapshot = service.set_golden_image(snapshot_id)
    except SnapshotNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SnapshotStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return SnapshotResponse.model_validate(snapshot_to_dict(snapshot))


@router.post("/{snapshot_id}/restore", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def restore_snapshot(
    snapshot_id: str,
    request: RestoreSnapshotRequest,
    service: SnapshotService = Depends(get_snapshot_service),
) -> JobResponse:
    try:
        job = service.request_restore(
            snapshot_id,
            delete_existing=request.delete_existing,
            object_types=request.object_types,
            dry_run=request.dry_run,
            priority=request.priority,
        )
    except SnapshotNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SnapshotStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job)


@router.delete("/{snapshot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_snapshot(snapshot_id: str, service: SnapshotService = Depends(get_snapshot_service)) -> None:
    try:
        service.delete_snapshot(snapshot_id)
    except SnapshotNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SnapshotStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
