from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

import crmseed.db.session as db_session_module
from crmseed.connectors.inmemory import InMemoryConnectorRegistry, SequentialContentGenerator
from crmseed.core.config import Settings, get_settings
from crmseed.datasets.service import DatasetService
from crmseed.db.init_db import initialize_database
from crmseed.db.models import (
    DatasetStatus,
    Job,
    JobKind,
    JobLock,
    JobStatus,
    Snapshot,
    SnapshotKind,
    SnapshotStatus,
)
from crmseed.jobs.lock_service import JobLockService, dataset_lock_key
from crmseed.jobs.service import JobService
from crmseed.notifications.notifier import JobEvent, RecordingNotifier, notify_safely
from crmseed.snapshots.service import SnapshotService
from crmseed.worker import build_worker, enqueue_cleanup_job, enqueue_generation_job, enqueue_injection_job
from crmseed.worker.handlers import build_handlers
from crmseed.worker.runner import Worker, run_worker_pool

SMALL_CONFIG = {
    "record_counts": {"Account": 1, "Contact": 2, "Opportunity": 1},
    "activities_per_opportunity": 2,
    "seed": 7,
}
SMALL_TOTAL = 6


def setup_state(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, **env: str
) -> tuple[Settings, sessionmaker[Session]]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("CRMSEED_STATE_ROOT", state_root.as_posix())
    for key, value in env.items():
        monkeypatch.setenv(f"CRMSEED_{key.upper()}", value)

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return get_settings(), db_session_module.get_session_factory()


def create_dataset(session_factory: sessionmaker[Session], name: str = "Pipeline") -> str:
    datasets = DatasetService(get_settings(), session_factory)
    return datasets.create_dataset(user_id="u1", name=name, environment_id="org-1", config=SMALL_CONFIG).id


def expire_lease(session_factory: sessionmaker[Session], job_id: str) -> None:
    """Make a claimed job look abandoned by a crashed worker."""
    past = datetime.now(tz=timezone.utc) - timedelta(seconds=1)
    with session_factory() as session:
        session.execute(update(Job).where(Job.id == job_id).values(lease_expires_at=past))
        session.execute(update(JobLock).where(JobLock.owner_job_id == job_id).values(expires_at=past))
        session.commit()


def test_generation_then_injection_end_to_end(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    connectors = InMemoryConnectorRegistry()
    notifier = RecordingNotifier()
    worker = build_worker("worker-a", connector_factory=connectors, notifier=notifier)
    dataset_id = create_dataset(session_factory)

    generation_job_id = enqueue_generation_job(dataset_id)
    generated = worker.run_once()
    assert generated is not None and generated.id == generation_job_id
    assert generated.status == JobStatus.COMPLETED
    assert generated.result is not None
    assert generated.result["records_generated"] == SMALL_TOTAL
    assert generated.result["record_counts"] == {"Account": 1, "Contact": 2, "Opportunity": 1, "Task": 2}

    events = notifier.for_job(generation_job_id)
    assert events[0].message == "Started attempt 1/3"
    assert events[-1].status == JobStatus.COMPLETED.value
    assert any(event.status == JobStatus.PROCESSING.value and event.progress > 0 for event in events)

    injection_job_id = enqueue_injection_job(dataset_id)
    injected = worker.run_once()
    assert injected is not None and injected.id == injection_job_id
    assert injected.status == JobStatus.COMPLETED
    assert injected.result is not None
    assert (injected.result["injected"], injected.result["failed"]) == (SMALL_TOTAL, 0)
    assert connectors("org-1").count() == SMALL_TOTAL

    datasets = DatasetService(settings, session_factory)
    assert datasets.get_dataset(dataset_id).status == DatasetStatus.COMPLETED
    assert worker.run_once() is None

    enqueue_cleanup_job(dataset_id)
    cleaned = worker.run_once()
    assert cleaned is not None and cleaned.status == JobStatus.COMPLETED
    assert cleaned.result is not None and cleaned.result["deleted"] == SMALL_TOTAL
    assert connectors("org-1").count() == 0

    # The dataset lock is released after every job.
    locks = JobLockService(settings, session_factory)
    assert locks.acquire(dataset_lock_key(dataset_id), generation_job_id) is True


def test_busy_dataset_sends_job_back_to_queue(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    dataset_id = create_dataset(session_factory)
    holder_job_id = enqueue_cleanup_job(dataset_id)
    locks = JobLockService(settings, session_factory)
    assert locks.acquire(dataset_lock_key(dataset_id), holder_job_id) is True

    job_service = JobService(settings, session_factory)
    handlers = build_handlers(settings, session_factory, InMemoryConnectorRegistry(), SequentialContentGenerator())
    worker = Worker("worker-a", job_service, {JobKind.GENERATION: handlers[JobKind.GENERATION]})
    job_id = enqueue_generation_job(dataset_id)

    result = worker.run_once()

    assert result is not None and result.id == job_id
    assert result.status == JobStatus.PENDING
    assert result.attempts == 1
    assert result.error_message == f"Dataset {dataset_id} is busy with another job"
    assert DatasetService(settings, session_factory).get_dataset(dataset_id).status == DatasetStatus.PENDING


def test_permanent_failure_is_not_retried(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _settings, session_factory = setup_state(tmp_path, monkeypatch)
    worker = build_worker("worker-a", connector_factory=InMemoryConnectorRegistry(), notifier=RecordingNotifier())
    dataset_id = create_dataset(session_factory)

    enqueue_generation_job(dataset_id)
    assert worker.run_once().status == JobStatus.COMPLETED

    enqueue_generation_job(dataset_id)
    repeat = worker.run_once()
    assert repeat is not None
    assert repeat.status == JobStatus.FAILED
    assert repeat.attempts == 1
    assert "cannot be generated from status generated" in (repeat.error_message or "")


class CancellingGenerator(SequentialContentGenerator):
    def __init__(self, job_service: JobService):
        super().__init__()
        self.job_service = job_service
        self.job_id: str | None = None

    def generate(self, object_type: str, context: Mapping[str, Any]) -> dict[str, Any]:
        if self.job_id is not None:
            self.job_service.cancel(self.job_id, "Stopped by user")
            self.job_id = None
        return super().generate(object_type, context)


def test_cancelled_generation_stops_between_batches(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch, generation_batch_size="1")
    job_service = JobService(settings, session_factory)
    generator = CancellingGenerator(job_service)
    notifier = RecordingNotifier()
    worker = build_worker("worker-a", connector_factory=InMemoryConnectorRegistry(), generator=generator, notifier=notifier)
    dataset_id = create_dataset(session_factory)
    generator.job_id = enqueue_generation_job(dataset_id)
    job_id = generator.job_id

    result = worker.run_once()

    assert result is not None and result.id == job_id
    assert result.status == JobStatus.CANCELLED
    assert result.error_message == "Stopped by user"
    dataset = DatasetService(settings, session_factory).get_dataset(dataset_id)
    assert dataset.status == DatasetStatus.FAILED
    assert notifier.for_job(job_id)[-1].status == JobStatus.CANCELLED.value


def test_injection_takes_pre_injection_snapshot(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch, snapshot_before_injection="true")
    worker = build_worker("worker-a", connector_factory=InMemoryConnectorRegistry(), notifier=RecordingNotifier())
    first = create_dataset(session_factory, "First wave")
    second = create_dataset(session_factory, "Second wave")

    for dataset_id in (first, second):
        enqueue_generation_job(dataset_id)
        assert worker.run_once().status == JobStatus.COMPLETED
        enqueue_injection_job(dataset_id)
        assert worker.run_once().status == JobStatus.COMPLETED

    jobs = JobService(settings, session_factory)
    snapshots = SnapshotService(settings, session_factory, jobs, DatasetService(settings, session_factory))
    taken = snapshots.list_snapshots(environment_id="org-1", kind=SnapshotKind.PRE_INJECTION)
    assert sorted(snapshot.name for snapshot in taken) == ["Pre-injection: First wave", "Pre-injection: Second wave"]
    totals = {snapshot.name: snapshot.total_records for snapshot in taken}
    assert totals == {"Pre-injection: First wave": 0, "Pre-injection: Second wave": SMALL_TOTAL}


def test_snapshot_jobs_capture_golden_image_and_restore(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    connectors = InMemoryConnectorRegistry()
    worker = build_worker("worker-a", connector_factory=connectors, notifier=RecordingNotifier())
    dataset_id = create_dataset(session_factory)
    enqueue_generation_job(dataset_id)
    worker.run_once()
    enqueue_injection_job(dataset_id)
    worker.run_once()

    jobs = JobService(settings, session_factory)
    snapshots = SnapshotService(settings, session_factory, jobs, DatasetService(settings, session_factory))
    snapshot, job = snapshots.create_snapshot(
        user_id="u1",
        environment_id="org-1",
        name="Demo baseline",
        is_golden_image=True,
    )
    captured = worker.run_once()
    assert captured is not None and captured.id == job.id
    assert captured.status == JobStatus.COMPLETED
    assert captured.result == {"type": "snapshot-create", "snapshot_id": snapshot.id, "total_records": SMALL_TOTAL}
    golden = snapshots.get_golden_image("org-1")
    assert golden is not None and golden.id == snapshot.id

    restore_job = snapshots.reset_to_golden("org-1")
    restored = worker.run_once()
    assert restored is not None and restored.id == restore_job.id
    assert restored.status == JobStatus.COMPLETED
    assert restored.result is not None
    assert (restored.result["deleted"], restored.result["restored"], restored.result["failed"]) == (
        SMALL_TOTAL,
        SMALL_TOTAL,
        0,
    )
    assert connectors("org-1").count() == SMALL_TOTAL
    assert snapshots.get_snapshot(snapshot.id).restore_count == 1


def test_cancel_after_retryable_failure_fails_the_dataset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    connectors = InMemoryConnectorRegistry()
    worker = build_worker("worker-a", connector_factory=connectors, notifier=RecordingNotifier())
    dataset_id = create_dataset(session_factory)
    enqueue_generation_job(dataset_id)
    assert worker.run_once().status == JobStatus.COMPLETED

    connectors("org-1").fail_when("Opportunity", message="UNABLE_TO_LOCK_ROW", retryable=True)
    job_id = enqueue_injection_job(dataset_id, max_attempts=3)
    first = worker.run_once()
    assert first is not None and first.id == job_id
    assert first.status == JobStatus.PENDING
    datasets = DatasetService(settings, session_factory)
    assert datasets.get_dataset(dataset_id).status == DatasetStatus.INJECTING

    cancelled = JobService(settings, session_factory).cancel(job_id, "Stopped by user")

    assert cancelled.status == JobStatus.CANCELLED
    dataset = datasets.get_dataset(dataset_id)
    assert dataset.status == DatasetStatus.FAILED
    assert dataset.error_message == f"injection job {job_id} cancelled: Stopped by user"
    assert dataset.completed_at is not None
    datasets.delete_dataset(dataset_id)
    assert datasets.list_datasets(user_id="u1") == []


def test_stale_lease_on_last_attempt_fails_the_dataset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    jobs = JobService(settings, session_factory)
    datasets = DatasetService(settings, session_factory)
    locks = JobLockService(settings, session_factory)
    dataset_id = create_dataset(session_factory)
    job_id = enqueue_generation_job(dataset_id, max_attempts=1)

    # The worker claims the job, starts generating and then dies.
    claimed = jobs.claim_next("worker-a", [JobKind.GENERATION])
    assert claimed is not None and claimed.id == job_id
    assert locks.acquire(dataset_lock_key(dataset_id), job_id) is True
    datasets.transition(dataset_id, DatasetStatus.GENERATING)
    expire_lease(session_factory, job_id)

    assert jobs.recover_stale_jobs() == 1

    assert jobs.get_job(job_id).status == JobStatus.FAILED
    dataset = datasets.get_dataset(dataset_id)
    assert dataset.status == DatasetStatus.FAILED
    assert "expired" in (dataset.error_message or "")
    retry_id = enqueue_generation_job(dataset_id)
    assert locks.acquire(dataset_lock_key(dataset_id), retry_id) is True


def test_busy_job_failure_leaves_the_lock_holders_dataset_alone(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    dataset_id = create_dataset(session_factory)
    datasets = DatasetService(settings, session_factory)
    holder_job_id = enqueue_cleanup_job(dataset_id)
    locks = JobLockService(settings, session_factory)
    assert locks.acquire(dataset_lock_key(dataset_id), holder_job_id) is True
    datasets.transition(dataset_id, DatasetStatus.GENERATING)

    job_service = JobService(settings, session_factory)
    handlers = build_handlers(settings, session_factory, InMemoryConnectorRegistry(), SequentialContentGenerator())
    worker = Worker("worker-a", job_service, {JobKind.GENERATION: handlers[JobKind.GENERATION]})
    job_id = enqueue_generation_job(dataset_id, max_attempts=1)

    result = worker.run_once()

    assert result is not None and result.id == job_id
    assert result.status == JobStatus.FAILED
    dataset = datasets.get_dataset(dataset_id)
    assert dataset.status == DatasetStatus.GENERATING
    assert dataset.error_message is None

    job_service.cancel(enqueue_generation_job(dataset_id))
    assert datasets.get_dataset(dataset_id).status == DatasetStatus.GENERATING


def test_retried_restore_job_resumes_an_interrupted_restore(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch, job_default_max_attempts="3")
    connectors = InMemoryConnectorRegistry()
    worker = build_worker("worker-a", connector_factory=connectors, notifier=RecordingNotifier())
    dataset_id = create_dataset(session_factory)
    enqueue_generation_job(dataset_id)
    worker.run_once()
    enqueue_injection_job(dataset_id)
    worker.run_once()

    jobs = JobService(settings, session_factory)
    snapshots = SnapshotService(settings, session_factory, jobs, DatasetService(settings, session_factory))
    snapshot, _job = snapshots.create_snapshot(user_id="u1", environment_id="org-1", name="Baseline")
    assert worker.run_once().status == JobStatus.COMPLETED

    restore_job = snapshots.request_restore(snapshot.id)
    claimed = jobs.claim_next("worker-b", [JobKind.SNAPSHOT_RESTORE])
    assert claimed is not None and claimed.id == restore_job.id
    # worker-b flips the snapshot to restoring, then dies mid-restore.
    with session_factory() as session:
        session.execute(update(Snapshot).where(Snapshot.id == snapshot.id).values(status=SnapshotStatus.RESTORING))
        session.commit()
    expire_lease(session_factory, restore_job.id)
    assert jobs.recover_stale_jobs() == 1
    with session_factory() as session:
        session.execute(
            update(Job)
            .where(Job.id == restore_job.id)
            .values(scheduled_for=datetime.now(tz=timezone.utc) - timedelta(seconds=1))
        )
        session.commit()

    resumed = worker.run_once()

    assert resumed is not None and resumed.id == restore_job.id
    assert resumed.status == JobStatus.COMPLETED
    assert resumed.attempts == 2
    restored = snapshots.get_snapshot(snapshot.id)
    assert restored.status == SnapshotStatus.READY
    assert restored.restore_count == 1
    assert connectors("org-1").count() == SMALL_TOTAL


class ExplodingNotifier:
    def notify(self, event: JobEvent) -> None:
        raise RuntimeError("dashboard offline")


def test_notifier_errors_never_fail_jobs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _settings, session_factory = setup_state(tmp_path, monkeypatch)
    worker = build_worker("worker-a", connector_factory=InMemoryConnectorRegistry(), notifier=ExplodingNotifier())
    dataset_id = create_dataset(session_factory)
    enqueue_generation_job(dataset_id)

    result = worker.run_once()

    assert result is not None and result.status == JobStatus.COMPLETED
    notify_safely(None, JobEvent(job_id="x", dataset_id=None, status="pending", progress=0))


def test_worker_pool_drains_queue(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    settings, session_factory = setup_state(tmp_path, monkeypatch)
    connectors = InMemoryConnectorRegistry()
    dataset_ids = [create_dataset(session_factory, f"Pool {index}") for index in range(3)]
    job_ids = [enqueue_generation_job(dataset_id) for dataset_id in dataset_ids]
    stop_event = threading.Event()

    threads = run_worker_pool(
        2,
        lambda index: build_worker(f"pool-{index}", connector_factory=connectors, notifier=RecordingNotifier()),
        stop_event,
        poll_seconds=0.05,
    )
    jobs = JobService(settings, session_factory)
    deadline = time.monotonic() + 20
    while time.monotonic() < deadline:
        if all(jobs.get_job(job_id).status == JobStatus.COMPLETED for job_id in job_ids):
            break
        time.sleep(0.05)
    stop_event.set()
    for thread in threads:
        thread.join(timeout=5)

    assert [jobs.get_job(job_id).status for job_id in job_ids] == [JobStatus.COMPLETED] * 3
    assert {jobs.get_job(job_id).worker_id for job_id in job_ids} <= {"pool-0", "pool-1"}
    try:
        run_worker_pool(0, lambda index: build_worker("unused"), stop_event)
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")
