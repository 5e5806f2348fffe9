from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crmseed.datasets.types import DatasetConfig


class CreateDatasetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    environment_id: str | None = None
    template_id: str | None = None
    description: str | None = None
    config: DatasetConfig = Field(default_factory=DatasetConfig)


class DatasetJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    environment_id: str | None = None
    priority: int = 0
    max_attempts: int | None = Field(default=None, ge=1)


class DatasetResponse(BaseModel):
    id: str
    user_id: str
    environment_id: str | None
    template_id: str | None
    name: str
    description: str | None
    status: str
    config: dict[str, Any]
    record_counts: dict[str, dict[str, int]]
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class DatasetRecordResponse(BaseModel):
    id: int
    dataset_id: str
    object_type: str
    local_id: str
    external_id: str | None
    parent_local_id: str | None
    data: dict[str, Any]
    status: str
    error_message: str | None
    injected_at: datetime | None
