from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from crmseed.connectors.base import RemoteConnector, RemoteCreationError
from crmseed.core.errors import error_message, is_retryable
from crmseed.datasets.service import DatasetService, DatasetStateError
from crmseed.datasets.types import DatasetRecordSnapshot
from crmseed.db.models import DatasetStatus, RecordStatus
from crmseed.graph.resolver import (
    DependencyGraphError,
    GraphNode,
    nodes_from_records,
    reference_fields,
    resolve_injection_order,
)
from crmseed.jobs.service import JobCancelledError

logger = logging.getLogger(__name__)


class UnresolvedReferenceError(RuntimeError):
    retryable = False

    def __init__(self, local_id: str, field_name: str, missing_local_id: str):
        super().__init__(f"Record {local_id} field {field_name} references {missing_local_id}, which has no external id")
        self.local_id = local_id
        self.field_name = field_name
        self.missing_local_id = missing_local_id


class InjectionRetryableError(RuntimeError):
    retryable = True


@dataclass(frozen=True)
class InjectionProgress:
    local_id: str
    object_type: str
    status: RecordStatus
    processed: int
    total: int
    injected_counts: dict[str, int]
    failed_counts: dict[str, int]

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return min(100, self.processed * 100 // self.total)


@dataclass
class InjectionOutcome:
    dataset_id: str
    status: DatasetStatus
    injected: int = 0
    failed: int = 0
    skipped: int = 0
    message: str | None = None
    failed_local_ids: list[str] = field(default_factory=list)


def rewrite_references(local_id: str, data: Mapping[str, Any], id_map: Mapping[str, str]) -> dict[str, Any]:
    """Swap every ``<Field>_localId`` entry for ``<Field>`` carrying the external id.

    Keys starting with an underscore are internal bookkeeping and are dropped.
    """
    references = reference_fields(data)
    fields: dict[str, Any] = {}
    for key, value in data.items():
        if key.startswith("_") or key in references:
            continue
        fields[key] = value
    for key, target_field in sorted(references.items()):
        referenced = str(data[key])
        external_id = id_map.get(referenced)
        if not external_id:
            raise UnresolvedReferenceError(local_id, key, referenced)
        fields[target_field] = external_id
    return fields


class InjectionExecutor:
    def __init__(
        self,
        dataset_service: DatasetService,
        connector: RemoteConnector,
        *,
        on_progress: Callable[[InjectionProgress], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ):
        self._datasets = dataset_service
        self._connector = connector
        self._on_progress = on_progress
        self._should_cancel = should_cancel

    def run(self, dataset_id: str, *, allow_retry: bool = False) -> InjectionOutcome:
        dataset = self._datasets.get_dataset(dataset_id)
        if dataset.status not in {DatasetStatus.GENERATED, DatasetStatus.INJECTING}:
            raise DatasetStateError(f"Dataset {dataset_id} cannot be injected from status {dataset.status.value}")
        self._datasets.transition(dataset_id, DatasetStatus.INJECTING)

        records = {record.local_id: record for record in self._datasets.list_records(dataset_id)}
        nodes = nodes_from_records(records.values())
        try:
            order = resolve_injection_order(nodes)
        except DependencyGraphError as exc:
            self._datasets.fail(dataset_id, error_message(exc))
            raise
        dependencies = {node.local_id: node for node in nodes}

        # Scoped to this run; seeded from records a previous attempt already created.
        id_map: dict[str, str] = {
            record.local_id: record.external_id
            for record in records.values()
            if record.status == RecordStatus.INJECTED and record.external_id
        }

        outcome = InjectionOutcome(dataset_id=dataset_id, status=DatasetStatus.INJECTING)
        total = len(records) - len(id_map)
        injected_counts: Counter[str] = Counter()
        failed_counts: Counter[str] = Counter()
        failed_ids: set[str] = set()
        retryable_failure = False
        processed = 0

        for local_id in order:
            record = records[local_id]
            if local_id in id_map:
                outcome.skipped += 1
                continue
            if self._should_cancel is not None and self._should_cancel():
                self._datasets.fail(dataset_id, "Injection cancelled")
                raise JobCancelledError(f"Injection of dataset {dataset_id} cancelled")

            status, retryable = self._inject_one(dataset_id, record, dependencies[local_id], id_map, failed_ids)
            processed += 1
            if status == RecordStatus.INJECTED:
                outcome.injected += 1
                injected_counts[record.object_type] += 1
            else:
                outcome.failed += 1
                outcome.failed_local_ids.append(local_id)
                failed_ids.add(local_id)
                failed_counts[record.object_type] += 1
                retryable_failure = retryable_failure or retryable

            if self._on_progress is not None:
                self._on_progress(
                    InjectionProgress(
                        local_id=local_id,
                        object_type=record.object_type,
                        status=status,
                        processed=processed,
                        total=total,
                        injected_counts=dict(injected_counts),
                        failed_counts=dict(failed_counts),
                    )
                )

        self._datasets.refresh_record_counts(dataset_id)
        return self._finish(
            outcome,
            injected_any=bool(id_map),
            retryable_failure=retryable_failure,
            allow_retry=allow_retry,
        )

    def _inject_one(
        self,
        dataset_id: str,
        record: DatasetRecordSnapshot,
        node: GraphNode,
        id_map: dict[str, str],
        failed_ids: set[str],
    ) -> tuple[RecordStatus, bool]:
        failed_dependency = next((dep for dep in sorted(node.dependencies()) if dep in failed_ids), None)
        if failed_dependency is not None:
            self._datasets.mark_record_failed(dataset_id, record.local_id, f"Dependency failed: {failed_dependency}")
            return RecordStatus.FAILED, False

        try:
            fields = rewrite_references(record.local_id, record.data, id_map)
        except UnresolvedReferenceError as exc:
            self._datasets.mark_record_failed(dataset_id, record.local_id, str(exc))
            return RecordStatus.FAILED, False

        self._datasets.mark_record_injecting(dataset_id, record.local_id)
        try:
            external_id = self._connector.create(record.object_type, fields)
        except RemoteCreationError as exc:
            logger.warning("Failed to inject %s %s: %s", record.object_type, record.local_id, exc.message)
            self._datasets.mark_record_failed(dataset_id, record.local_id, exc.message)
            return RecordStatus.FAILED, exc.retryable
        except Exception as exc:
            logger.warning("Connector error injecting %s %s", record.object_type, record.local_id, exc_info=True)
            self._datasets.mark_record_failed(dataset_id, record.local_id, error_message(exc))
            return RecordStatus.FAILED, is_retryable(exc)

        self._datasets.mark_record_injected(dataset_id, record.local_id, external_id)
        id_map[record.local_id] = external_id
        return RecordStatus.INJECTED, False

    def _finish(
        self,
        outcome: InjectionOutcome,
        *,
        injected_any: bool,
        retryable_failure: bool,
        allow_retry: bool,
    ) -> InjectionOutcome:
        dataset_id = outcome.dataset_id
        if outcome.failed and retryable_failure and allow_retry:
            raise InjectionRetryableError(f"{outcome.failed} records failed to inject; retrying")

        if outcome.failed == 0:
            outcome.status = DatasetStatus.COMPLETED
            self._datasets.transition(dataset_id, DatasetStatus.COMPLETED)
        elif outcome.injected or injected_any:
            outcome.status = DatasetStatus.COMPLETED
            outcome.message = f"{outcome.failed} records failed to inject"
            self._datasets.transition(dataset_id, DatasetStatus.COMPLETED, outcome.message)
        else:
            outcome.status = DatasetStatus.FAILED
            outcome.message = "All records failed to inject"
            self._datasets.transition(dataset_id, DatasetStatus.FAILED, outcome.message)

        logger.info(
            "Injection of dataset %s finished: %s injected, %s failed, %s skipped",
            dataset_id,
            outcome.injected,
            outcome.failed,
            outcome.skipped,
        )
        return outcome
