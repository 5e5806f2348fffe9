from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from crmseed.connectors.base import RemoteConnector, RemoteCreationError
from crmseed.datasets.service import DatasetService
from crmseed.datasets.types import DatasetRecordSnapshot
from crmseed.db.models import RecordStatus
from crmseed.graph.resolver import type_rank
from crmseed.jobs.service import JobCancelledError

logger = logging.getLogger(__name__)


class CleanupRetryableError(RuntimeError):
    retryable = True


@dataclass
class CleanupOutcome:
    dataset_id: str
    deleted: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class CleanupExecutor:
    """Delete a dataset's injected records remotely, children before parents."""

    def __init__(
        self,
        dataset_service: DatasetService,
        connector: RemoteConnector,
        *,
        on_progress: Callable[[int, str], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ):
        self._datasets = dataset_service
        self._connector = connector
        self._on_progress = on_progress
        self._should_cancel = should_cancel

    def run(self, dataset_id: str, *, allow_retry: bool = False) -> CleanupOutcome:
        self._datasets.get_dataset(dataset_id)
        records = [
            record
            for record in self._datasets.list_records(dataset_id, status=RecordStatus.INJECTED)
            if record.external_id
        ]
        outcome = CleanupOutcome(dataset_id=dataset_id)
        if not records:
            self._report(100, "Nothing to clean up")
            return outcome

        by_type: dict[str, list[DatasetRecordSnapshot]] = defaultdict(list)
        for record in records:
            by_type[record.object_type].append(record)
        ordered = sorted(by_type, key=lambda object_type: (type_rank(object_type), object_type), reverse=True)

        deleted_ids: list[str] = []
        retryable_failure = False
        processed = 0
        try:
            for object_type in ordered:
                for record in reversed(by_type[object_type]):
                    if self._should_cancel is not None and self._should_cancel():
                        raise JobCancelledError(f"Cleanup of dataset {dataset_id} cancelled")
                    try:
                        self._connector.delete(object_type, record.external_id)
                    except RemoteCreationError as exc:
                        outcome.failed += 1
                        outcome.errors.append(f"{object_type} {record.external_id}: {exc.message}")
                        retryable_failure = retryable_failure or exc.retryable
                        logger.warning("Could not delete %s %s: %s", object_type, record.external_id, exc.message)
                    else:
                        outcome.deleted += 1
                        deleted_ids.append(record.external_id)
                    processed += 1
                    self._report(min(99, processed * 100 // len(records)), f"Deleted {outcome.deleted}/{len(records)}")
        finally:
            if deleted_ids:
                self._datasets.reset_injected_records(dataset_id, deleted_ids)

        if outcome.failed and retryable_failure and allow_retry:
            raise CleanupRetryableError(f"{outcome.failed} records could not be deleted; retrying")

        self._report(100, f"Deleted {outcome.deleted} records")
        logger.info(
            "Cleanup of dataset %s finished: %s deleted, %s failed",
            dataset_id,
            outcome.deleted,
            outcome.failed,
        )
        return outcome

    def _report(self, percent: int, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(percent, message)
