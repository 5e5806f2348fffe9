from __future__ import annotations

import os
import threading
from pathlib import Path

import crmseed.db.session as db_session_module
from crmseed.core.config import get_settings
from crmseed.db.init_db import initialize_database
from crmseed.db.models import JobKind, JobStatus
from crmseed.jobs.lock_service import JobLockService, LockUnavailableError, dataset_lock_key
from crmseed.jobs.service import JobService
from crmseed.jobs.types import GenerationPayload


def setup_env(tmp_path: Path) -> JobService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["CRMSEED_STATE_ROOT"] = state_root.as_posix()
    os.environ["CRMSEED_JOB_LOCK_TTL_SECONDS"] = "30"

    get_settings.cache_clear()
    db_session_module._engine = None
    db_session_module._session_factory = None
    initialize_database()
    return JobService(get_settings(), db_session_module.get_session_factory())


def test_two_workers_claim_only_one_job(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    service.enqueue(JobKind.GENERATION, GenerationPayload(dataset_id="ds-1"))

    barrier = threading.Barrier(2)
    results: list[str] = []
    lock = threading.Lock()

    def claim(worker_id: str) -> None:
        barrier.wait(timeout=5)
        job = service.claim_next(worker_id)
        with lock:
            results.append("none" if job is None else job.worker_id or "")

    threads = [threading.Thread(target=claim, args=(f"worker-{name}",)) for name in ("a", "b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [entry for entry in results if entry in {"worker-a", "worker-b"}]
    assert len(winners) == 1
    assert results.count("none") == 1


def test_many_workers_claim_each_job_exactly_once(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    created = {
        service.enqueue(JobKind.GENERATION, GenerationPayload(dataset_id=f"ds-{index}")).id for index in range(12)
    }

    claimed: list[str] = []
    lock = threading.Lock()

    def drain(worker_id: str) -> None:
        while True:
            job = service.claim_next(worker_id)
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=drain, args=(f"worker-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(claimed) == sorted(created)
    assert service.get_metrics()[JobStatus.PROCESSING.value] == 12


def test_dataset_lock_admits_one_owner(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    locks = JobLockService(get_settings(), db_session_module.get_session_factory())
    first = service.enqueue(JobKind.GENERATION, GenerationPayload(dataset_id="ds-1"))
    second = service.enqueue(JobKind.INJECTION, {"dataset_id": "ds-1", "environment_id": "org"})
    key = dataset_lock_key("ds-1")

    with locks.held(key, first.id):
        assert locks.acquire(key, first.id) is True
        assert locks.acquire(key, second.id) is False
        try:
            with locks.held(key, second.id):
                raise AssertionError("second owner must not enter")
        except LockUnavailableError:
            pass
        assert locks.refresh(key, first.id) is True
        assert locks.refresh(key, second.id) is False

    assert locks.acquire(key, second.id) is True
    locks.release(key, second.id)
    assert locks.cleanup_expired() == 0
