from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreateSnapshotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=128)
    environment_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    record_ids: dict[str, list[str]] | None = None
    is_golden_image: bool = False
    priority: int = 0


class RestoreSnapshotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delete_existing: bool = True
    object_types: list[str] | None = None
    dry_run: bool = False
    priority: int = 0


class SnapshotResponse(BaseModel):
    id: str
    user_id: str
    environment_id: str
    name: str
    description: str | None
    kind: str
    status: str
    is_golden_image: bool
    record_ids: dict[str, list[str]]
    object_counts: dict[str, int]
    total_records: int
    size_bytes: int
    error_message: str | None
    restore_count: int
    restored_at: datetime | None
    created_at: datetime
    updated_at: datetime


class SnapshotJobResponse(BaseModel):
    snapshot: SnapshotResponse
    job_id: str
    job_status: str


class SnapshotDataResponse(BaseModel):
    snapshot_id: str
    records: dict[str, list[dict[str, Any]]]
