from crmseed.snapshots.service import (
    NoGoldenImageError,
    SnapshotCaptureError,
    SnapshotNotFoundError,
    SnapshotRestoreError,
    SnapshotService,
    SnapshotStateError,
    snapshot_to_dict,
)
from crmseed.snapshots.types import RestoreResult, SnapshotSnapshot

__all__ = [
    "NoGoldenImageError",
    "SnapshotCaptureError",
    "SnapshotNotFoundError",
    "SnapshotRestoreError",
    "SnapshotStateError",
    "SnapshotService",
    "SnapshotSnapshot",
    "RestoreResult",
    "snapshot_to_dict",
]
