from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from crmseed.db.models import SnapshotKind, SnapshotStatus


@dataclass(slots=True)
class SnapshotSnapshot:
    id: str
    user_id: str
    environment_id: str
    name: str
    description: str | None
    kind: SnapshotKind
    status: SnapshotStatus
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


@dataclass(slots=True)
class RestoreResult:
    snapshot_id: str
    dry_run: bool
    deleted: int = 0
    restored: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    def as_result(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "deleted": self.deleted,
            "restored": self.restored,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "errors": list(self.errors),
        }
