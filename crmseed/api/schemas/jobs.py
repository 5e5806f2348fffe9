from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crmseed.db.models import JobKind


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: JobKind
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_attempts: int | None = Field(default=None, ge=1)
    scheduled_for: datetime | None = None
    user_id: str | None = None
    dataset_id: str | None = None


class CancelJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = None


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
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


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: str | None
