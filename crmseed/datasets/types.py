from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator

from crmseed.core.config import SUPPORTED_DENSITY_SHAPES
from crmseed.db.models import DatasetStatus, RecordStatus
from crmseed.graph.resolver import INJECTION_ORDER


class DatasetConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    record_counts: dict[str, NonNegativeInt] = Field(
        default_factory=lambda: {"Account": 2, "Contact": 4, "Opportunity": 2}
    )
    scenario: str | None = None
    industry: str | None = None
    density_shape: str | None = None
    activities_per_opportunity: NonNegativeInt = 3
    emails_per_opportunity: NonNegativeInt = 0
    seed: int | None = None

    @field_validator("record_counts")
    @classmethod
    def _known_object_types(cls, value: dict[str, int]) -> dict[str, int]:
        unknown = sorted(set(value) - set(INJECTION_ORDER))
        if unknown:
            raise ValueError(f"Unsupported object types: {', '.join(unknown)}")
        return value

    @field_validator("density_shape")
    @classmethod
    def _known_density(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_DENSITY_SHAPES:
            raise ValueError(f"density_shape must be one of {sorted(SUPPORTED_DENSITY_SHAPES)}")
        return normalized


@dataclass(slots=True)
class DatasetSnapshot:
    id: str
    user_id: str
    environment_id: str | None
    template_id: str | None
    name: str
    description: str | None
    status: DatasetStatus
    config: dict[str, Any]
    record_counts: dict[str, dict[str, int]]
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class DatasetRecordSnapshot:
    id: int
    dataset_id: str
    object_type: str
    local_id: str
    external_id: str | None
    parent_local_id: str | None
    data: dict[str, Any]
    status: RecordStatus
    error_message: str | None
    injected_at: datetime | None


@dataclass(slots=True)
class NewRecord:
    object_type: str
    local_id: str
    data: dict[str, Any] = field(default_factory=dict)
    parent_local_id: str | None = None
