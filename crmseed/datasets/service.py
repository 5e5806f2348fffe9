from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from crmseed.core.config import Settings
from crmseed.datasets.types import DatasetConfig, DatasetRecordSnapshot, DatasetSnapshot, NewRecord
from crmseed.db.models import Dataset, DatasetRecord, DatasetStatus, RecordStatus

logger = logging.getLogger(__name__)


class DatasetNotFoundError(RuntimeError):
    retryable = False


class DatasetStateError(RuntimeError):
    retryable = False


class DatasetBusyError(RuntimeError):
    """Another job currently owns the dataset."""

    retryable = True


ALLOWED_TRANSITIONS: dict[DatasetStatus, set[DatasetStatus]] = {
    DatasetStatus.PENDING: {DatasetStatus.GENERATING, DatasetStatus.FAILED},
    DatasetStatus.GENERATING: {DatasetStatus.GENERATING, DatasetStatus.GENERATED, DatasetStatus.FAILED},
    DatasetStatus.GENERATED: {DatasetStatus.INJECTING, DatasetStatus.FAILED},
    DatasetStatus.INJECTING: {DatasetStatus.INJECTING, DatasetStatus.COMPLETED, DatasetStatus.FAILED},
    DatasetStatus.COMPLETED: set(),
    DatasetStatus.FAILED: set(),
}

TERMINAL_DATASET_STATUSES = frozenset({DatasetStatus.COMPLETED, DatasetStatus.FAILED})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatasetService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _load(self, session: Session, dataset_id: str) -> Dataset:
        dataset = session.get(Dataset, dataset_id)
        if dataset is None:
            raise DatasetNotFoundError(f"Dataset not found: {dataset_id}")
        return dataset

    def _load_record(self, session: Session, dataset_id: str, local_id: str) -> DatasetRecord:
        record = session.scalar(
            select(DatasetRecord).where(
                DatasetRecord.dataset_id == dataset_id,
                DatasetRecord.local_id == local_id,
            )
        )
        if record is None:
            raise DatasetNotFoundError(f"Record {local_id} not found in dataset {dataset_id}")
        return record

    def create_dataset(
        self,
        *,
        user_id: str,
        name: str,
        environment_id: str | None = None,
        template_id: str | None = None,
        description: str | None = None,
        config: DatasetConfig | dict[str, Any] | None = None,
    ) -> DatasetSnapshot:
        if not name.strip():
            raise ValueError("Dataset name cannot be blank")
        try:
            parsed = config if isinstance(config, DatasetConfig) else DatasetConfig.model_validate(config or {})
        except ValidationError as exc:
            raise ValueError(f"Invalid dataset config: {exc}") from exc

        now = self._now()
        dataset = Dataset(
            id=str(uuid4()),
            user_id=user_id,
            environment_id=environment_id,
            template_id=template_id,
            name=name.strip(),
            description=description,
            status=DatasetStatus.PENDING,
            config=parsed.model_dump(mode="json"),
            record_counts={},
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(dataset)
            session.commit()
            session.refresh(dataset)
            logger.info("Created dataset %s (%s) for user %s", dataset.id, dataset.name, user_id)
            return self._to_snapshot(dataset)

    def get_dataset(self, dataset_id: str) -> DatasetSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load(session, dataset_id))

    def get_config(self, dataset_id: str) -> DatasetConfig:
        return DatasetConfig.model_validate(self.get_dataset(dataset_id).config)

    def list_datasets(self, user_id: str | None = None) -> list[DatasetSnapshot]:
        with self._session_factory() as session:
            stmt = select(Dataset).order_by(Dataset.created_at.desc(), Dataset.id.desc())
            if user_id is not None:
                stmt = stmt.where(Dataset.user_id == user_id)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def delete_dataset(self, dataset_id: str) -> None:
        with self._session_factory() as session:
            dataset = self._load(session, dataset_id)
            if dataset.status in {DatasetStatus.GENERATING, DatasetStatus.INJECTING}:
                raise DatasetStateError(f"Dataset {dataset_id} is {dataset.status.value} and cannot be deleted")
            session.execute(delete(DatasetRecord).where(DatasetRecord.dataset_id == dataset_id))
            session.delete(dataset)
            session.commit()
            logger.info("Deleted dataset %s", dataset_id)

    def transition(self, dataset_id: str, status: DatasetStatus, error_message: str | None = None) -> DatasetSnapshot:
        with self._session_factory() as session:
            dataset = self._load(session, dataset_id)
            if status not in ALLOWED_TRANSITIONS[dataset.status]:
                raise DatasetStateError(
                    f"Illegal dataset transition: {dataset.status.value} -> {status.value}"
                )
            now = self._now()
            previous = dataset.status
            dataset.status = status
            dataset.updated_at = now
            if status == DatasetStatus.GENERATING and dataset.started_at is None:
                dataset.started_at = now
            if status in TERMINAL_DATASET_STATUSES:
                dataset.completed_at = now
            if error_message is not None or status == DatasetStatus.COMPLETED:
                dataset.error_message = error_message
            session.commit()
            session.refresh(dataset)
            if status == DatasetStatus.FAILED:
                logger.error("Dataset %s failed: %s", dataset_id, error_message)
            elif previous != status:
                logger.info("Dataset %s %s -> %s", dataset_id, previous.value, status.value)
            return self._to_snapshot(dataset)

    def fail(self, dataset_id: str, error_message: str) -> DatasetSnapshot | None:
        """Move a non-terminal dataset to ``failed``; terminal datasets are left alone."""
        with self._session_factory() as session:
            dataset = self._load(session, dataset_id)
            if dataset.status in TERMINAL_DATASET_STATUSES:
                return None
        return self.transition(dataset_id, DatasetStatus.FAILED, error_message)

    def add_records(self, dataset_id: str, records: Iterable[NewRecord]) -> int:
        rows = list(records)
        if not rows:
            return 0
        with self._session_factory() as session:
            self._load(session, dataset_id)
            now = self._now()
            session.add_all(
                DatasetRecord(
                    dataset_id=dataset_id,
                    object_type=row.object_type,
                    local_id=row.local_id,
                    parent_local_id=row.parent_local_id,
                    data=dict(row.data),
                    status=RecordStatus.GENERATED,
                    created_at=now,
                )
                for row in rows
            )
            session.commit()
        return len(rows)

    def clear_records(self, dataset_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(DatasetRecord).where(DatasetRecord.dataset_id == dataset_id))
            dataset = self._load(session, dataset_id)
            dataset.record_counts = {}
            session.commit()
            return int(result.rowcount or 0)

    def list_records(
        self,
        dataset_id: str,
        object_type: str | None = None,
        status: RecordStatus | None = None,
    ) -> list[DatasetRecordSnapshot]:
        with self._session_factory() as session:
            stmt = select(DatasetRecord).where(DatasetRecord.dataset_id == dataset_id).order_by(DatasetRecord.id)
            if object_type is not None:
                stmt = stmt.where(DatasetRecord.object_type == object_type)
            if status is not None:
                stmt = stmt.where(DatasetRecord.status == status)
            return [self._record_to_snapshot(row) for row in session.scalars(stmt).all()]

    def mark_record_injecting(self, dataset_id: str, local_id: str) -> None:
        with self._session_factory() as session:
            record = self._load_record(session, dataset_id, local_id)
            if record.status == RecordStatus.INJECTED:
                raise DatasetStateError(f"Record {local_id} is already injected")
            record.status = RecordStatus.INJECTING
            record.error_message = None
            session.commit()

    def mark_record_injected(self, dataset_id: str, local_id: str, external_id: str) -> None:
        with self._session_factory() as session:
            record = self._load_record(session, dataset_id, local_id)
            record.status = RecordStatus.INJECTED
            record.external_id = external_id
            record.error_message = None
            record.injected_at = self._now()
            self._recount(session, dataset_id)
            session.commit()

    def mark_record_failed(self, dataset_id: str, local_id: str, error_message: str) -> None:
        with self._session_factory() as session:
            record = self._load_record(session, dataset_id, local_id)
            record.status = RecordStatus.FAILED
            record.error_message = error_message
            self._recount(session, dataset_id)
            session.commit()

    def reset_injected_records(self, dataset_id: str, external_ids: Iterable[str] | None = None) -> int:
        with self._session_factory() as session:
            stmt = (
                update(DatasetRecord)
                .where(
                    DatasetRecord.dataset_id == dataset_id,
                    DatasetRecord.status == RecordStatus.INJECTED,
                )
                .values(status=RecordStatus.GENERATED, external_id=None, injected_at=None, error_message=None)
                .execution_options(synchronize_session=False)
            )
            if external_ids is not None:
                stmt = stmt.where(DatasetRecord.external_id.in_(list(external_ids)))
            result = session.execute(stmt)
            self._recount(session, dataset_id)
            session.commit()
            return int(result.rowcount or 0)

    def injected_records_for_environment(self, environment_id: str) -> list[DatasetRecordSnapshot]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(DatasetRecord)
                .join(Dataset, Dataset.id == DatasetRecord.dataset_id)
                .where(
                    Dataset.environment_id == environment_id,
                    DatasetRecord.status == RecordStatus.INJECTED,
                    DatasetRecord.external_id.is_not(None),
                )
                .order_by(DatasetRecord.id)
            ).all()
            return [self._record_to_snapshot(row) for row in rows]

    def refresh_record_counts(self, dataset_id: str) -> dict[str, dict[str, int]]:
        with self._session_factory() as session:
            counts = self._recount(session, dataset_id)
            session.commit()
            return counts

    def _recount(self, session: Session, dataset_id: str) -> dict[str, dict[str, int]]:
        session.flush()
        rows = session.execute(
            select(DatasetRecord.object_type, DatasetRecord.status, func.count())
            .where(DatasetRecord.dataset_id == dataset_id)
            .group_by(DatasetRecord.object_type, DatasetRecord.status)
        ).all()
        counts: dict[str, dict[str, int]] = {}
        for object_type, status, count in rows:
            bucket = counts.setdefault(object_type, {"generated": 0, "injected": 0, "failed": 0})
            bucket["generated"] += int(count)
            if status == RecordStatus.INJECTED:
                bucket["injected"] += int(count)
            elif status == RecordStatus.FAILED:
                bucket["failed"] += int(count)
        dataset = self._load(session, dataset_id)
        dataset.record_counts = counts
        dataset.updated_at = self._now()
        return counts

    def _to_snapshot(self, dataset: Dataset) -> DatasetSnapshot:
        return DatasetSnapshot(
            id=dataset.id,
            user_id=dataset.user_id,
            environment_id=dataset.environment_id,
            template_id=dataset.template_id,
            name=dataset.name,
            description=dataset.description,
            status=dataset.status,
            config=dict(dataset.config or {}),
            record_counts={key: dict(value) for key, value in (dataset.record_counts or {}).items()},
            error_message=dataset.error_message,
            created_at=_as_utc(dataset.created_at),
            updated_at=_as_utc(dataset.updated_at),
            started_at=_as_utc(dataset.started_at),
            completed_at=_as_utc(dataset.completed_at),
        )

    def _record_to_snapshot(self, record: DatasetRecord) -> DatasetRecordSnapshot:
        return DatasetRecordSnapshot(
            id=record.id,
            dataset_id=record.dataset_id,
            object_type=record.object_type,
            local_id=record.local_id,
            external_id=record.external_id,
            parent_local_id=record.parent_local_id,
            data=dict(record.data or {}),
            status=record.status,
            error_message=record.error_message,
            injected_at=_as_utc(record.injected_at),
        )


def dataset_to_dict(snapshot: DatasetSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "user_id": snapshot.user_id,
        "environment_id": snapshot.environment_id,
        "template_id": snapshot.template_id,
        "name": snapshot.name,
        "description": snapshot.description,
        "status": snapshot.status.value,
        "config": snapshot.config,
        "record_counts": snapshot.record_counts,
        "error_message": snapshot.error_message,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }


def record_to_dict(snapshot: DatasetRecordSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "dataset_id": snapshot.dataset_id,
        "object_type": snapshot.object_type,
        "local_id": snapshot.local_id,
        "external_id": snapshot.external_id,
        "parent_local_id": snapshot.parent_local_id,
        "data": snapshot.data,
        "status": snapshot.status.value,
        "error_message": snapshot.error_message,
        "injected_at": snapshot.injected_at,
    }
