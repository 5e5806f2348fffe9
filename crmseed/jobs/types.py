from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from crmseed.db.models import JobKind, JobStatus


@dataclass(slots=True)
class JobSnapshot:
    id: str
    kind: JobKind
    status: JobStatus
    user_id: str | None
    dataset_id: str | None
    payload: dict[str, Any]
    result: dict[str, Any] | None
    attempts: int
    max_attempts: int
    priority: int
    scheduled_for: datetime
    progress: int
    progress_message: str | None
    worker_id: str | None
    lease_expires_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class GenerationPayload(_PayloadBase):
    type: Literal["generation"] = "generation"
    dataset_id: str = Field(min_length=1)


class InjectionPayload(_PayloadBase):
    type: Literal["injection"] = "injection"
    dataset_id: str = Field(min_length=1)
    environment_id: str = Field(min_length=1)


class CleanupPayload(_PayloadBase):
    type: Literal["cleanup"] = "cleanup"
    dataset_id: str = Field(min_length=1)
    environment_id: str = Field(min_length=1)


class SnapshotCreatePayload(_PayloadBase):
    type: Literal["snapshot-create"] = "snapshot-create"
    snapshot_id: str = Field(min_length=1)
    make_golden: bool = False


class SnapshotRestorePayload(_PayloadBase):
    type: Literal["snapshot-restore"] = "snapshot-restore"
    snapshot_id: str = Field(min_length=1)
    delete_existing: bool = True
    object_types: list[str] | None = None
    dry_run: bool = False


JobPayload = Annotated[
    Union[GenerationPayload, InjectionPayload, CleanupPayload, SnapshotCreatePayload, SnapshotRestorePayload],
    Field(discriminator="type"),
]

JOB_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobPayload)


class _ResultBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class GenerationResult(_ResultBase):
    type: Literal["generation"] = "generation"
    dataset_id: str
    records_generated: int
    record_counts: dict[str, int] = Field(default_factory=dict)


class InjectionResult(_ResultBase):
    type: Literal["injection"] = "injection"
    dataset_id: str
    injected: int
    failed: int
    skipped: int
    message: str | None = None


class CleanupResult(_ResultBase):
    type: Literal["cleanup"] = "cleanup"
    dataset_id: str
    deleted: int
    failed: int


class SnapshotCreateResult(_ResultBase):
    type: Literal["snapshot-create"] = "snapshot-create"
    snapshot_id: str
    total_records: int


class SnapshotRestoreResult(_ResultBase):
    type: Literal["snapshot-restore"] = "snapshot-restore"
    snapshot_id: str
    deleted: int
    restored: int
    failed: int
    dry_run: bool
    errors: list[str] = Field(default_factory=list)


JobResult = Annotated[
    Union[GenerationResult, InjectionResult, CleanupResult, SnapshotCreateResult, SnapshotRestoreResult],
    Field(discriminator="type"),
]

JOB_RESULT_ADAPTER: TypeAdapter[Any] = TypeAdapter(JobResult)
