from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.orm import Session, sessionmaker

from crmseed.connectors.base import ConnectorFactory, ContentGenerator, RemoteConnector
from crmseed.core.config import Settings
from crmseed.datasets.service import DatasetBusyError, DatasetService
from crmseed.db.models import DatasetStatus, JobKind
from crmseed.generation.executor import GenerationExecutor
from crmseed.injection.cleanup import CleanupExecutor
from crmseed.injection.executor import InjectionExecutor, InjectionProgress
from crmseed.jobs.lock_service import JobLockService, LockUnavailableError, dataset_lock_key
from crmseed.jobs.service import JobService
from crmseed.jobs.types import (
    CleanupResult,
    GenerationResult,
    InjectionResult,
    SnapshotCreateResult,
    SnapshotRestoreResult,
)
from crmseed.snapshots.service import SnapshotService
from crmseed.temporal.engine import TemporalConfig
from crmseed.worker.runner import Handler, JobContext

logger = logging.getLogger(__name__)

RngFactory = Callable[[int | None], random.Random]


def _default_rng(seed: int | None) -> random.Random:
    return random.Random(seed)


class JobHandlers:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        connector_factory: ConnectorFactory,
        generator: ContentGenerator,
        *,
        rng_factory: RngFactory = _default_rng,
    ):
        self._settings = settings
        self._connectors = connector_factory
        self._generator = generator
        self._rng_factory = rng_factory
        self._jobs = JobService(settings, session_factory)
        self._datasets = DatasetService(settings, session_factory)
        self._snapshots = SnapshotService(settings, session_factory, self._jobs, self._datasets)
        self._locks = JobLockService(settings, session_factory)

    @contextmanager
    def _dataset_lock(self, context: JobContext, dataset_id: str) -> Iterator[Callable[[int, str | None], None]]:
        lock_key = dataset_lock_key(dataset_id)
        try:
            with self._locks.held(lock_key, context.job.id):

                def progress(percent: int, message: str | None = None) -> None:
                    # A cancelled job no longer owns its lease; executors stop at their next check.
                    if context.is_cancelled():
                        return
                    self._locks.refresh(lock_key, context.job.id)
                    context.report_progress(percent, message)

                yield progress
        except LockUnavailableError as exc:
            raise DatasetBusyError(f"Dataset {dataset_id} is busy with another job") from exc

    def generation(self, context: JobContext) -> GenerationResult:
        payload = context.payload
        config = self._datasets.get_config(payload.dataset_id)
        with self._dataset_lock(context, payload.dataset_id) as progress:
            executor = GenerationExecutor(
                self._datasets,
                self._generator,
                TemporalConfig.from_settings(self._settings),
                self._rng_factory(config.seed),
                batch_size=self._settings.generation_batch_size,
                on_progress=progress,
                should_cancel=context.is_cancelled,
            )
            outcome = executor.run(payload.dataset_id, allow_retry=context.allow_retry)
        return GenerationResult(
            dataset_id=outcome.dataset_id,
            records_generated=outcome.records_generated,
            record_counts=outcome.record_counts,
        )

    def injection(self, context: JobContext) -> InjectionResult:
        payload = context.payload
        connector = self._connectors(payload.environment_id)
        with self._dataset_lock(context, payload.dataset_id) as progress:
            dataset = self._datasets.get_dataset(payload.dataset_id)
            if self._settings.snapshot_before_injection and dataset.status == DatasetStatus.GENERATED:
                self._take_pre_injection_snapshot(dataset.user_id, payload.environment_id, dataset.name, connector)

            def on_record(event: InjectionProgress) -> None:
                progress(event.percent, f"Injected {sum(event.injected_counts.values())}/{event.total} records")

            executor = InjectionExecutor(
                self._datasets,
                connector,
                on_progress=on_record,
                should_cancel=context.is_cancelled,
            )
            outcome = executor.run(payload.dataset_id, allow_retry=context.allow_retry)
        return InjectionResult(
            dataset_id=outcome.dataset_id,
            injected=outcome.injected,
            failed=outcome.failed,
            skipped=outcome.skipped,
            message=outcome.message,
        )

    def _take_pre_injection_snapshot(
        self, user_id: str, environment_id: str, name: str, connector: RemoteConnector
    ) -> None:
        try:
            self._snapshots.create_pre_injection_snapshot(
                user_id=user_id,
                environment_id=environment_id,
                dataset_name=name,
                connector=connector,
            )
        except Exception:
            # The snapshot row already carries the failure; injection goes ahead.
            logger.warning("Pre-injection snapshot for %s failed", environment_id, exc_info=True)

    def cleanup(self, context: JobContext) -> CleanupResult:
        payload = context.payload
        connector = self._connectors(payload.environment_id)
        with self._dataset_lock(context, payload.dataset_id) as progress:
            executor = CleanupExecutor(
                self._datasets,
                connector,
                on_progress=progress,
                should_cancel=context.is_cancelled,
            )
            outcome = executor.run(payload.dataset_id, allow_retry=context.allow_retry)
        return CleanupResult(dataset_id=outcome.dataset_id, deleted=outcome.deleted, failed=outcome.failed)

    def snapshot_create(self, context: JobContext) -> SnapshotCreateResult:
        payload = context.payload
        snapshot = self._snapshots.get_snapshot(payload.snapshot_id)
        captured = self._snapshots.capture(snapshot.id, self._connectors(snapshot.environment_id))
        if payload.make_golden:
            captured = self._snapshots.set_golden_image(captured.id)
        return SnapshotCreateResult(snapshot_id=captured.id, total_records=captured.total_records)

    def snapshot_restore(self, context: JobContext) -> SnapshotRestoreResult:
        payload = context.payload
        snapshot = self._snapshots.get_snapshot(payload.snapshot_id)
        result = self._snapshots.restore(
            snapshot.id,
            self._connectors(snapshot.environment_id),
            delete_existing=payload.delete_existing,
            object_types=payload.object_types,
            dry_run=payload.dry_run,
            # A retried attempt picks up a restore its predecessor left half done.
            resume=context.job.attempts > 1,
        )
        return SnapshotRestoreResult(**result.as_result())

    def as_mapping(self) -> dict[JobKind, Handler]:
        return {
            JobKind.GENERATION: self.generation,
            JobKind.INJECTION: self.injection,
            JobKind.CLEANUP: self.cleanup,
            JobKind.SNAPSHOT_CREATE: self.snapshot_create,
            JobKind.SNAPSHOT_RESTORE: self.snapshot_restore,
        }


def build_handlers(
    settings: Settings,
    session_factory: sessionmaker[Session],
    connector_factory: ConnectorFactory,
    generator: ContentGenerator,
    *,
    rng_factory: RngFactory = _default_rng,
) -> dict[JobKind, Handler]:
    return JobHandlers(
        settings,
        session_factory,
        connector_factory,
        generator,
        rng_factory=rng_factory,
    ).as_mapping()
