from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from crmseed.connectors.base import RemoteConnector, RemoteCreationError
from crmseed.core.config import Settings
from crmseed.core.errors import error_message
from crmseed.datasets.service import DatasetService
from crmseed.db.models import JobKind, Snapshot, SnapshotKind, SnapshotStatus
from crmseed.graph.resolver import type_rank
from crmseed.jobs.service import JobService
from crmseed.jobs.types import JobSnapshot, SnapshotCreatePayload, SnapshotRestorePayload
from crmseed.snapshots.types import RestoreResult, SnapshotSnapshot

logger = logging.getLogger(__name__)

SYSTEM_FIELDS = frozenset(
    {
        "Id",
        "IsDeleted",
        "CreatedDate",
        "CreatedById",
        "LastModifiedDate",
        "LastModifiedById",
        "SystemModstamp",
        "LastActivityDate",
        "LastViewedDate",
        "LastReferencedDate",
        "attributes",
    }
)


class SnapshotNotFoundError(RuntimeError):
    retryable = False


class SnapshotStateError(RuntimeError):
    retryable = False


class SnapshotCaptureError(RuntimeError):
    retryable = False


class SnapshotRestoreError(RuntimeError):
    retryable = False


class NoGoldenImageError(RuntimeError):
    retryable = False

    def __init__(self, environment_id: str):
        super().__init__(f"No golden image found for environment {environment_id}")
        self.environment_id = environment_id


ALLOWED_TRANSITIONS: dict[SnapshotStatus, set[SnapshotStatus]] = {
    SnapshotStatus.CREATING: {SnapshotStatus.READY, SnapshotStatus.FAILED},
    SnapshotStatus.READY: {SnapshotStatus.RESTORING, SnapshotStatus.FAILED},
    SnapshotStatus.RESTORING: {SnapshotStatus.READY, SnapshotStatus.FAILED},
    SnapshotStatus.FAILED: set(),
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def ordered_types(object_types: Iterable[str], *, reverse: bool = False) -> list[str]:
    ordered = sorted(set(object_types), key=lambda object_type: (type_rank(object_type), object_type))
    return list(reversed(ordered)) if reverse else ordered


def prepare_for_restore(record: Mapping[str, Any], id_map: Mapping[str, str]) -> dict[str, Any]:
    prepared: dict[str, Any] = {}
    for key, value in record.items():
        if key in SYSTEM_FIELDS or value is None:
            continue
        if key.endswith("Id") and isinstance(value, str) and value in id_map:
            prepared[key] = id_map[value]
        else:
            prepared[key] = value
    return prepared


class SnapshotService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        job_service: JobService,
        dataset_service: DatasetService,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._jobs = job_service
        self._datasets = dataset_service

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _load(self, session: Session, snapshot_id: str) -> Snapshot:
        snapshot = session.get(Snapshot, snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
        return snapshot

    def _enforce_transition(self, from_status: SnapshotStatus, to_status: SnapshotStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise SnapshotStateError(f"Illegal snapshot transition: {from_status.value} -> {to_status.value}")

    def _insert(
        self,
        *,
        user_id: str,
        environment_id: str,
        name: str,
        description: str | None,
        kind: SnapshotKind,
        record_ids: Mapping[str, list[str]] | None,
    ) -> SnapshotSnapshot:
        if not name.strip():
            raise ValueError("Snapshot name cannot be blank")
        now = self._now()
        snapshot = Snapshot(
            id=str(uuid4()),
            user_id=user_id,
            environment_id=environment_id,
            name=name.strip(),
            description=description,
            kind=kind,
            status=SnapshotStatus.CREATING,
            is_golden_image=False,
            record_ids={key: list(value) for key, value in (record_ids or {}).items()},
            record_data={},
            object_counts={},
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(snapshot)
            session.commit()
            session.refresh(snapshot)
            return self._to_snapshot(snapshot)

    def create_snapshot(
        self,
        *,
        user_id: str,
        environment_id: str,
        name: str,
        description: str | None = None,
        record_ids: Mapping[str, list[str]] | None = None,
        is_golden_image: bool = False,
        priority: int = 0,
    ) -> tuple[SnapshotSnapshot, JobSnapshot]:
        snapshot = self._insert(
            user_id=user_id,
            environment_id=environment_id,
            name=name,
            description=description,
            kind=SnapshotKind.MANUAL,
            record_ids=record_ids,
        )
        job = self._jobs.enqueue(
            JobKind.SNAPSHOT_CREATE,
            SnapshotCreatePayload(snapshot_id=snapshot.id, make_golden=is_golden_image),
            priority=priority,
            user_id=user_id,
        )
        logger.info("Snapshot %s queued for capture by job %s", snapshot.id, job.id)
        return snapshot, job

    def create_pre_injection_snapshot(
        self,
        *,
        user_id: str,
        environment_id: str,
        dataset_name: str,
        connector: RemoteConnector,
    ) -> SnapshotSnapshot:
        snapshot = self._insert(
            user_id=user_id,
            environment_id=environment_id,
            name=f"Pre-injection: {dataset_name}",
            description=f"Automatic snapshot before injecting dataset: {dataset_name}",
            kind=SnapshotKind.PRE_INJECTION,
            record_ids=None,
        )
        return self.capture(snapshot.id, connector)

    def _environment_record_ids(self, environment_id: str) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = defaultdict(list)
        for record in self._datasets.injected_records_for_environment(environment_id):
            if record.external_id:
                grouped[record.object_type].append(record.external_id)
        return dict(grouped)

    def capture(self, snapshot_id: str, connector: RemoteConnector) -> SnapshotSnapshot:
        current = self.get_snapshot(snapshot_id)
        if current.status != SnapshotStatus.CREATING:
            raise SnapshotStateError(f"Snapshot {snapshot_id} is {current.status.value}, expected creating")

        try:
            record_ids = current.record_ids or self._environment_record_ids(current.environment_id)
            record_data: dict[str, list[dict[str, Any]]] = {}
            for object_type in ordered_types(record_ids):
                ids = list(record_ids[object_type])
                if ids:
                    record_data[object_type] = connector.query(object_type, ids)
        except Exception as exc:
            message = f"Capture failed: {error_message(exc)}"
            self._mark_failed(snapshot_id, message)
            raise SnapshotCaptureError(message) from exc

        object_counts = {object_type: len(rows) for object_type, rows in record_data.items()}
        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            self._enforce_transition(snapshot.status, SnapshotStatus.READY)
            snapshot.record_ids = {
                object_type: [str(row["Id"]) for row in rows if row.get("Id")]
                for object_type, rows in record_data.items()
            }
            snapshot.record_data = record_data
            snapshot.object_counts = object_counts
            snapshot.total_records = sum(object_counts.values())
            snapshot.size_bytes = len(json.dumps(record_data, default=str).encode("utf-8"))
            snapshot.status = SnapshotStatus.READY
            snapshot.error_message = None
            snapshot.updated_at = self._now()
            session.commit()
            session.refresh(snapshot)
            logger.info("Captured snapshot %s with %s records", snapshot_id, snapshot.total_records)
            return self._to_snapshot(snapshot)

    def _mark_failed(self, snapshot_id: str, message: str) -> None:
        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            if snapshot.status == SnapshotStatus.FAILED:
                return
            snapshot.status = SnapshotStatus.FAILED
            snapshot.error_message = message
            snapshot.updated_at = self._now()
            session.commit()
        logger.error("Snapshot %s failed: %s", snapshot_id, message)

    def set_golden_image(self, snapshot_id: str) -> SnapshotSnapshot:
        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            if snapshot.status == SnapshotStatus.FAILED:
                raise SnapshotStateError(f"Failed snapshot {snapshot_id} cannot become the golden image")
            now = self._now()
            # Unset first so the partial unique index never sees two golden rows.
            session.execute(
                update(Snapshot)
                .where(
                    Snapshot.environment_id == snapshot.environment_id,
                    Snapshot.is_golden_image.is_(True),
                    Snapshot.id != snapshot_id,
                )
                .values(is_golden_image=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.flush()
            snapshot.is_golden_image = True
            snapshot.kind = SnapshotKind.GOLDEN_IMAGE
            snapshot.updated_at = now
            session.commit()
            session.refresh(snapshot)
            logger.info("Snapshot %s is now the golden image of %s", snapshot_id, snapshot.environment_id)
            return self._to_snapshot(snapshot)

    def get_golden_image(self, environment_id: str) -> SnapshotSnapshot | None:
        with self._session_factory() as session:
            snapshot = session.scalar(
                select(Snapshot).where(
                    Snapshot.environment_id == environment_id,
                    Snapshot.is_golden_image.is_(True),
                )
            )
            return self._to_snapshot(snapshot) if snapshot is not None else None

    def request_restore(
        self,
        snapshot_id: str,
        *,
        delete_existing: bool = True,
        object_types: list[str] | None = None,
        dry_run: bool = False,
        priority: int = 0,
    ) -> JobSnapshot:
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot.status != SnapshotStatus.READY:
            raise SnapshotStateError(f"Snapshot {snapshot_id} is {snapshot.status.value}, expected ready")
        return self._jobs.enqueue(
            JobKind.SNAPSHOT_RESTORE,
            SnapshotRestorePayload(
                snapshot_id=snapshot_id,
                delete_existing=delete_existing,
                object_types=object_types,
                dry_run=dry_run,
            ),
            priority=priority,
            user_id=snapshot.user_id,
        )

    def reset_to_golden(self, environment_id: str, *, priority: int = 0) -> JobSnapshot:
        golden = self.get_golden_image(environment_id)
        if golden is None:
            raise NoGoldenImageError(environment_id)
        return self.request_restore(golden.id, delete_existing=True, priority=priority)

    def restore(
        self,
        snapshot_id: str,
        connector: RemoteConnector,
        *,
        delete_existing: bool = True,
        object_types: list[str] | None = None,
        dry_run: bool = False,
        resume: bool = False,
    ) -> RestoreResult:
        """Recreate the captured records in the remote org.

        With ``resume`` a snapshot left ``restoring`` by an interrupted attempt is
        restored again; otherwise only ``ready`` snapshots are accepted.
        """
        accepted = {SnapshotStatus.READY, SnapshotStatus.RESTORING} if resume else {SnapshotStatus.READY}
        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            if snapshot.status not in accepted:
                raise SnapshotStateError(f"Snapshot {snapshot_id} is {snapshot.status.value}, expected ready")
            record_data: dict[str, list[dict[str, Any]]] = {
                key: list(value) for key, value in (snapshot.record_data or {}).items()
            }
            record_ids: dict[str, list[str]] = {key: list(value) for key, value in (snapshot.record_ids or {}).items()}
            environment_id = snapshot.environment_id

        wanted = set(object_types) if object_types else None
        if dry_run:
            planned = sum(len(rows) for object_type, rows in record_data.items() if wanted is None or object_type in wanted)
            return RestoreResult(snapshot_id=snapshot_id, dry_run=True, restored=planned)

        with self._session_factory() as session:
            claimed = session.execute(
                update(Snapshot)
                .where(Snapshot.id == snapshot_id, Snapshot.status.in_(accepted))
                .values(status=SnapshotStatus.RESTORING, updated_at=self._now())
                .execution_options(synchronize_session=False)
            )
            if not claimed.rowcount:
                session.rollback()
                raise SnapshotStateError(f"Snapshot {snapshot_id} is already being restored")
            session.commit()

        result = RestoreResult(snapshot_id=snapshot_id, dry_run=False)
        try:
            if delete_existing:
                self._delete_existing(connector, environment_id, record_ids, wanted, result)
            self._recreate(connector, record_data, wanted, result)
        except Exception as exc:
            message = f"Restore failed: {error_message(exc)}"
            self._mark_failed(snapshot_id, message)
            raise SnapshotRestoreError(message) from exc

        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            self._enforce_transition(snapshot.status, SnapshotStatus.READY)
            now = self._now()
            snapshot.status = SnapshotStatus.READY
            snapshot.restore_count += 1
            snapshot.restored_at = now
            snapshot.updated_at = now
            snapshot.error_message = "; ".join(result.errors[:20]) if result.errors else None
            session.commit()
        logger.info(
            "Restored snapshot %s: %s deleted, %s restored, %s failed",
            snapshot_id,
            result.deleted,
            result.restored,
            result.failed,
        )
        return result

    def _delete_existing(
        self,
        connector: RemoteConnector,
        environment_id: str,
        snapshot_ids: Mapping[str, list[str]],
        wanted: set[str] | None,
        result: RestoreResult,
    ) -> None:
        targets: dict[str, set[str]] = defaultdict(set)
        local_owner: dict[str, str] = {}
        for record in self._datasets.injected_records_for_environment(environment_id):
            if record.external_id:
                targets[record.object_type].add(record.external_id)
                local_owner[record.external_id] = record.dataset_id
        for object_type, ids in snapshot_ids.items():
            targets[object_type].update(ids)

        deleted_by_dataset: dict[str, list[str]] = defaultdict(list)
        for object_type in ordered_types(targets, reverse=True):
            if wanted is not None and object_type not in wanted:
                continue
            for external_id in sorted(targets[object_type]):
                try:
                    connector.delete(object_type, external_id)
                except RemoteCreationError as exc:
                    # Already-removed records are expected here.
                    logger.warning("Could not delete %s %s: %s", object_type, external_id, exc.message)
                    continue
                result.deleted += 1
                owner = local_owner.get(external_id)
                if owner is not None:
                    deleted_by_dataset[owner].append(external_id)

        for dataset_id, external_ids in deleted_by_dataset.items():
            self._datasets.reset_injected_records(dataset_id, external_ids)

    def _recreate(
        self,
        connector: RemoteConnector,
        record_data: Mapping[str, list[dict[str, Any]]],
        wanted: set[str] | None,
        result: RestoreResult,
    ) -> None:
        for object_type in ordered_types(record_data):
            if wanted is not None and object_type not in wanted:
                continue
            for record in record_data[object_type]:
                old_id = record.get("Id")
                try:
                    new_id = connector.create(object_type, prepare_for_restore(record, result.id_map))
                except RemoteCreationError as exc:
                    result.failed += 1
                    result.errors.append(f"{object_type} {old_id}: {exc.message}")
                    continue
                result.restored += 1
                if old_id:
                    result.id_map[str(old_id)] = new_id

    def get_snapshot(self, snapshot_id: str) -> SnapshotSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load(session, snapshot_id))

    def get_record_data(self, snapshot_id: str) -> dict[str, list[dict[str, Any]]]:
        with self._session_factory() as session:
            return dict(self._load(session, snapshot_id).record_data or {})

    def list_snapshots(
        self,
        *,
        user_id: str | None = None,
        environment_id: str | None = None,
        kind: SnapshotKind | None = None,
    ) -> list[SnapshotSnapshot]:
        with self._session_factory() as session:
            stmt = select(Snapshot).order_by(Snapshot.created_at.desc(), Snapshot.id.desc())
            if user_id is not None:
                stmt = stmt.where(Snapshot.user_id == user_id)
            if environment_id is not None:
                stmt = stmt.where(Snapshot.environment_id == environment_id)
            if kind is not None:
                stmt = stmt.where(Snapshot.kind == kind)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def delete_snapshot(self, snapshot_id: str) -> None:
        with self._session_factory() as session:
            snapshot = self._load(session, snapshot_id)
            if snapshot.status == SnapshotStatus.RESTORING:
                raise SnapshotStateError(f"Snapshot {snapshot_id} is being restored")
            session.delete(snapshot)
            session.commit()
            logger.info("Deleted snapshot %s", snapshot_id)

    def _to_snapshot(self, snapshot: Snapshot) -> SnapshotSnapshot:
        return SnapshotSnapshot(
            id=snapshot.id,
            user_id=snapshot.user_id,
            environment_id=snapshot.environment_id,
            name=snapshot.name,
            description=snapshot.description,
            kind=snapshot.kind,
            status=snapshot.status,
            is_golden_image=bool(snapshot.is_golden_image),
            record_ids={key: list(value) for key, value in (snapshot.record_ids or {}).items()},
            object_counts=dict(snapshot.object_counts or {}),
            total_records=snapshot.total_records,
            size_bytes=snapshot.size_bytes,
            error_message=snapshot.error_message,
            restore_count=snapshot.restore_count,
            restored_at=_as_utc(snapshot.restored_at),
            created_at=_as_utc(snapshot.created_at),
            updated_at=_as_utc(snapshot.updated_at),
        )


def snapshot_to_dict(snapshot: SnapshotSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "user_id": snapshot.user_id,
        "environment_id": snapshot.environment_id,
        "name": snapshot.name,
        "description": snapshot.description,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "is_golden_image": snapshot.is_golden_image,
        "record_ids": snapshot.record_ids,
        "object_counts": snapshot.object_counts,
        "total_records": snapshot.total_records,
        "size_bytes": snapshot.size_bytes,
        "error_message": snapshot.error_message,
        "restore_count": snapshot.restore_count,
        "restored_at": snapshot.restored_at,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
