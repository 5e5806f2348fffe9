from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from sqlalchemy import update

import crmseed.db.session as db_session_module
from crmseed.connectors.inmemory import InMemoryConnector
from crmseed.core.config import get_settings
from crmseed.datasets.service import DatasetService
from crmseed.datasets.types import NewRecord
from crmseed.db.init_db import initialize_database
from crmseed.db.models import DatasetStatus, Job, JobKind, JobStatus, RecordStatus, SnapshotKind, SnapshotStatus
from crmseed.injection.executor import InjectionExecutor
from crmseed.jobs.service import JobService
from crmseed.jobs.types import SnapshotRestorePayload
from crmseed.snapshots.service import (
    NoGoldenImageError,
    SnapshotCaptureError,
    SnapshotNotFoundError,
    SnapshotService,
    SnapshotStateError,
    prepare_for_restore,
)


def make_services(tmp_path: Path) -> tuple[SnapshotService, DatasetService, JobService]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["CRMSEED_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    settings = get_settings()
    session_factory = db_session_module.get_session_factory()
    jobs = JobService(settings, session_factory)
    datasets = DatasetService(settings, session_factory)
    return SnapshotService(settings, session_factory, jobs, datasets), datasets, jobs


def inject_basic_dataset(datasets: DatasetService, connector: InMemoryConnector, environment_id: str = "org-1") -> str:
    dataset = datasets.create_dataset(user_id="u1", name="Baseline", environment_id=environment_id)
    datasets.transition(dataset.id, DatasetStatus.GENERATING)
    datasets.add_records(
        dataset.id,
        [
            NewRecord("Account", "a1", {"Name": "Acme"}),
            NewRecord("Contact", "c1", {"LastName": "Hopper", "AccountId_localId": "a1"}, "a1"),
            NewRecord(
                "Opportunity",
                "o1",
                {"Name": "Renewal", "StageName": "Closed Won", "CloseDate": "2024-06-30", "AccountId_localId": "a1"},
                "a1",
            ),
        ],
    )
    datasets.transition(dataset.id, DatasetStatus.GENERATED)
    InjectionExecutor(datasets, connector).run(dataset.id)
    return dataset.id


def captured_snapshot(snapshots: SnapshotService, connector: InMemoryConnector, name: str = "Baseline") -> str:
    snapshot, _job = snapshots.create_snapshot(user_id="u1", environment_id="org-1", name=name)
    return snapshots.capture(snapshot.id, connector).id


def test_create_snapshot_queues_capture_job(tmp_path: Path) -> None:
    snapshots, _datasets, jobs = make_services(tmp_path)
    snapshot, job = snapshots.create_snapshot(
        user_id="u1",
        environment_id="org-1",
        name="Before demo",
        is_golden_image=True,
    )
    assert snapshot.status == SnapshotStatus.CREATING
    assert snapshot.kind == SnapshotKind.MANUAL
    assert job.kind == JobKind.SNAPSHOT_CREATE
    assert job.payload == {"type": "snapshot-create", "snapshot_id": snapshot.id, "make_golden": True}
    assert jobs.get_job(job.id).status == JobStatus.PENDING


def test_capture_reads_injected_records_of_the_environment(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)

    snapshot = snapshots.get_snapshot(captured_snapshot(snapshots, connector))

    assert snapshot.status == SnapshotStatus.READY
    assert snapshot.total_records == 3
    assert snapshot.object_counts == {"Account": 1, "Contact": 1, "Opportunity": 1}
    assert snapshot.record_ids["Account"] == list(connector.records("Account"))
    assert snapshot.size_bytes > 0
    data = snapshots.get_record_data(snapshot.id)
    assert data["Contact"][0]["LastName"] == "Hopper"
    described = connector.describe("Contact")
    assert described["createable"] is True
    assert "AccountId" in described["fields"]

    try:
        snapshots.capture(snapshot.id, connector)
    except SnapshotStateError:
        pass
    else:
        raise AssertionError("expected SnapshotStateError")


class BrokenConnector(InMemoryConnector):
    def query(self, object_type: str, external_ids: Sequence[str]) -> list[dict[str, Any]]:
        raise RuntimeError("query timed out")


def test_capture_failure_marks_snapshot_failed(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)
    snapshot, _job = snapshots.create_snapshot(user_id="u1", environment_id="org-1", name="Doomed")

    try:
        snapshots.capture(snapshot.id, BrokenConnector("org-1"))
    except SnapshotCaptureError as exc:
        assert "query timed out" in str(exc)
    else:
        raise AssertionError("expected SnapshotCaptureError")

    failed = snapshots.get_snapshot(snapshot.id)
    assert failed.status == SnapshotStatus.FAILED
    try:
        snapshots.set_golden_image(snapshot.id)
    except SnapshotStateError:
        pass
    else:
        raise AssertionError("expected SnapshotStateError")


def test_only_one_golden_image_per_environment(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)
    first = captured_snapshot(snapshots, connector, "First")
    second = captured_snapshot(snapshots, connector, "Second")

    snapshots.set_golden_image(first)
    golden = snapshots.set_golden_image(second)

    assert golden.is_golden_image is True
    assert golden.kind == SnapshotKind.GOLDEN_IMAGE
    assert snapshots.get_snapshot(first).is_golden_image is False
    current = snapshots.get_golden_image("org-1")
    assert current is not None and current.id == second
    assert snapshots.get_golden_image("org-2") is None


def test_reset_to_golden_requires_a_golden_image(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    try:
        snapshots.reset_to_golden("org-1")
    except NoGoldenImageError as exc:
        assert exc.environment_id == "org-1"
    else:
        raise AssertionError("expected NoGoldenImageError")

    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)
    snapshot_id = captured_snapshot(snapshots, connector)
    snapshots.set_golden_image(snapshot_id)
    job = snapshots.reset_to_golden("org-1")
    assert job.kind == JobKind.SNAPSHOT_RESTORE
    assert job.payload["snapshot_id"] == snapshot_id
    assert job.payload["delete_existing"] is True


def test_restore_recreates_records_with_remapped_references(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    dataset_id = inject_basic_dataset(datasets, connector)
    snapshot_id = captured_snapshot(snapshots, connector)
    old_account_id = next(iter(connector.records("Account")))

    result = snapshots.restore(snapshot_id, connector)

    assert result.success
    assert (result.deleted, result.restored, result.failed) == (3, 3, 0)
    assert [object_type for object_type, _ in connector.deleted] == ["Opportunity", "Contact", "Account"]
    new_account_id = result.id_map[old_account_id]
    assert new_account_id != old_account_id
    assert list(connector.records("Account")) == [new_account_id]
    contact = next(iter(connector.records("Contact").values()))
    assert contact["AccountId"] == new_account_id

    for item in datasets.list_records(dataset_id):
        assert item.status == RecordStatus.GENERATED

    restored = snapshots.get_snapshot(snapshot_id)
    assert restored.status == SnapshotStatus.READY
    assert restored.restore_count == 1
    assert restored.restored_at is not None


class WorkerKilled(BaseException):
    pass


class KillableConnector(InMemoryConnector):
    def __init__(self, environment_id: str | None = None):
        super().__init__(environment_id)
        self.killed = False

    def create(self, object_type: str, fields: Mapping[str, Any]) -> str:
        if self.killed:
            raise WorkerKilled()
        return super().create(object_type, fields)


def interrupted_restore(snapshots: SnapshotService, connector: KillableConnector, snapshot_id: str) -> None:
    connector.killed = True
    try:
        snapshots.restore(snapshot_id, connector)
    except WorkerKilled:
        pass
    else:
        raise AssertionError("expected WorkerKilled")
    connector.killed = False


def test_interrupted_restore_can_be_resumed(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = KillableConnector("org-1")
    inject_basic_dataset(datasets, connector)
    snapshot_id = captured_snapshot(snapshots, connector)

    interrupted_restore(snapshots, connector, snapshot_id)
    assert snapshots.get_snapshot(snapshot_id).status == SnapshotStatus.RESTORING
    assert connector.count() == 0

    try:
        snapshots.restore(snapshot_id, connector)
    except SnapshotStateError:
        pass
    else:
        raise AssertionError("expected SnapshotStateError")

    result = snapshots.restore(snapshot_id, connector, resume=True)

    assert result.success
    assert (result.deleted, result.restored) == (0, 3)
    assert connector.count() == 3
    restored = snapshots.get_snapshot(snapshot_id)
    assert restored.status == SnapshotStatus.READY
    assert restored.restore_count == 1


def test_abandoned_restore_job_gives_the_snapshot_back(tmp_path: Path) -> None:
    snapshots, datasets, jobs = make_services(tmp_path)
    connector = KillableConnector("org-1")
    inject_basic_dataset(datasets, connector)
    snapshot_id = captured_snapshot(snapshots, connector)
    job = jobs.enqueue(JobKind.SNAPSHOT_RESTORE, SnapshotRestorePayload(snapshot_id=snapshot_id), max_attempts=1)
    claimed = jobs.claim_next("worker-a", [JobKind.SNAPSHOT_RESTORE])
    assert claimed is not None and claimed.id == job.id

    interrupted_restore(snapshots, connector, snapshot_id)
    session_factory = db_session_module.get_session_factory()
    with session_factory() as session:
        session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(lease_expires_at=datetime.now(tz=timezone.utc) - timedelta(seconds=1))
        )
        session.commit()

    assert jobs.recover_stale_jobs() == 1

    assert jobs.get_job(job.id).status == JobStatus.FAILED
    snapshot = snapshots.get_snapshot(snapshot_id)
    assert snapshot.status == SnapshotStatus.READY
    assert (snapshot.error_message or "").startswith("Restore interrupted:")
    assert snapshots.restore(snapshot_id, connector).restored == 3


def test_abandoned_capture_job_fails_the_snapshot(tmp_path: Path) -> None:
    snapshots, _datasets, jobs = make_services(tmp_path)
    snapshot, job = snapshots.create_snapshot(user_id="u1", environment_id="org-1", name="Never captured")

    jobs.cancel(job.id, "No longer needed")

    cancelled = snapshots.get_snapshot(snapshot.id)
    assert cancelled.status == SnapshotStatus.FAILED
    assert cancelled.error_message == f"snapshot-create job {job.id} cancelled: No longer needed"


def test_dry_run_restore_touches_nothing(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)
    snapshot_id = captured_snapshot(snapshots, connector)
    calls_before = len(connector.create_calls)

    result = snapshots.restore(snapshot_id, connector, dry_run=True, object_types=["Account", "Contact"])

    assert result.dry_run is True
    assert result.restored == 2
    assert len(connector.create_calls) == calls_before
    assert connector.deleted == []
    assert snapshots.get_snapshot(snapshot_id).restore_count == 0


def test_pre_injection_snapshot_is_captured_synchronously(tmp_path: Path) -> None:
    snapshots, datasets, _jobs = make_services(tmp_path)
    connector = InMemoryConnector("org-1")
    inject_basic_dataset(datasets, connector)

    snapshot = snapshots.create_pre_injection_snapshot(
        user_id="u1",
        environment_id="org-1",
        dataset_name="Next wave",
        connector=connector,
    )
    assert snapshot.kind == SnapshotKind.PRE_INJECTION
    assert snapshot.status == SnapshotStatus.READY
    assert snapshot.name == "Pre-injection: Next wave"
    assert snapshot.total_records == 3


def test_delete_snapshot(tmp_path: Path) -> None:
    snapshots, _datasets, _jobs = make_services(tmp_path)
    snapshot, _job = snapshots.create_snapshot(user_id="u1", environment_id="org-1", name="Temp")
    snapshots.delete_snapshot(snapshot.id)
    try:
        snapshots.get_snapshot(snapshot.id)
    except SnapshotNotFoundError:
        pass
    else:
        raise AssertionError("expected SnapshotNotFoundError")
    assert snapshots.list_snapshots(environment_id="org-1") == []


def test_prepare_for_restore_strips_system_fields() -> None:
    prepared = prepare_for_restore(
        {"Id": "003x", "CreatedDate": "2024-01-01", "LastName": "Hopper", "AccountId": "001old", "Title": None},
        {"001old": "001new"},
    )
    assert prepared == {"LastName": "Hopper", "AccountId": "001new"}
