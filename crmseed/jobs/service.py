from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import uuid4

from pydantic import BaseModel, ValidationError
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased, sessionmaker

from crmseed.core.config import Settings
from crmseed.db.models import (
    Dataset,
    DatasetStatus,
    Job,
    JobKind,
    JobLock,
    JobStatus,
    Snapshot,
    SnapshotStatus,
)
from crmseed.jobs.lock_service import dataset_lock_key
from crmseed.jobs.types import JOB_PAYLOAD_ADAPTER, JOB_RESULT_ADAPTER, JobSnapshot

logger = logging.getLogger(__name__)


class JobNotFoundError(RuntimeError):
    retryable = False


class InvalidJobStateError(RuntimeError):
    retryable = False


class JobNotClaimableError(RuntimeError):
    """The caller no longer holds the lease on a processing job."""


class JobPayloadError(ValueError):
    retryable = False


class JobCancelledError(RuntimeError):
    retryable = False


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

# The dataset status each kind of job holds while it works.
IN_FLIGHT_DATASET_STATUS: dict[JobKind, DatasetStatus] = {
    JobKind.GENERATION: DatasetStatus.GENERATING,
    JobKind.INJECTION: DatasetStatus.INJECTING,
}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.job_lock_ttl_seconds)

    def backoff_delay(self, attempts: int) -> timedelta:
        base = self._settings.job_retry_base_seconds
        cap = self._settings.job_retry_max_seconds
        # Cap the exponent so large attempt counts cannot overflow the float conversion.
        seconds = min(base * (2 ** min(max(attempts, 0), 32)), cap)
        return timedelta(seconds=seconds)

    def _enforce_transition(self, from_status: JobStatus, to_status: JobStatus) -> None:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")

    def _validate_payload(self, kind: JobKind, payload: BaseModel | dict[str, Any]) -> dict[str, Any]:
        raw = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        raw.setdefault("type", kind.value)
        try:
            model = JOB_PAYLOAD_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            raise JobPayloadError(f"Invalid payload for {kind.value} job: {exc}") from exc
        if model.type != kind.value:
            raise JobPayloadError(f"Payload type {model.type!r} does not match job kind {kind.value!r}")
        return model.model_dump(mode="json")

    def _validate_result(self, kind: JobKind, result: BaseModel | dict[str, Any] | None) -> dict[str, Any] | None:
        if result is None:
            return None
        raw = result.model_dump() if isinstance(result, BaseModel) else dict(result)
        raw.setdefault("type", kind.value)
        try:
            model = JOB_RESULT_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            raise JobPayloadError(f"Invalid result for {kind.value} job: {exc}") from exc
        if model.type != kind.value:
            raise JobPayloadError(f"Result type {model.type!r} does not match job kind {kind.value!r}")
        return model.model_dump(mode="json")

    def enqueue(
        self,
        kind: JobKind,
        payload: BaseModel | dict[str, Any],
        *,
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
        user_id: str | None = None,
        dataset_id: str | None = None,
    ) -> JobSnapshot:
        effective_max_attempts = self._settings.job_default_max_attempts if max_attempts is None else max_attempts
        if effective_max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        stored_payload = self._validate_payload(kind, payload)

        now = self._now()
        job = Job(
            id=str(uuid4()),
            kind=kind,
            status=JobStatus.PENDING,
            user_id=user_id,
            dataset_id=dataset_id,
            payload=stored_payload,
            attempts=0,
            max_attempts=effective_max_attempts,
            priority=priority,
            scheduled_for=_as_utc(scheduled_for) or now,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            logger.info("Enqueued %s job %s (priority=%s)", kind.value, job.id, priority)
            return self._to_snapshot(job)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return self._to_snapshot(job)

    def list_jobs(
        self,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        user_id: str | None = None,
        dataset_id: str | None = None,
        kind: JobKind | None = None,
        status: JobStatus | None = None,
    ) -> JobListResult:
        requested = self._settings.default_page_size if limit is None else limit
        bounded_limit = max(1, min(requested, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(bounded_limit + 1)
            if user_id is not None:
                stmt = stmt.where(Job.user_id == user_id)
            if dataset_id is not None:
                stmt = stmt.where(Job.dataset_id == dataset_id)
            if kind is not None:
                stmt = stmt.where(Job.kind == kind)
            if status is not None:
                stmt = stmt.where(Job.status == status)
            if cursor:
                anchor_exists = session.scalar(select(Job.id).where(Job.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(Job.created_at).where(Job.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        Job.created_at < anchor_created_at,
                        and_(Job.created_at == anchor_created_at, Job.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def claim_next(self, worker_id: str, capabilities: Iterable[JobKind] | None = None) -> JobSnapshot | None:
        normalized_worker_id = worker_id.strip()
        if not normalized_worker_id:
            raise ValueError("worker_id cannot be blank")
        kinds = list(capabilities) if capabilities is not None else None
        if kinds is not None and not kinds:
            return None

        self.recover_stale_jobs()

        with self._session_factory() as session:
            now = self._now()
            candidate = aliased(Job, name="candidate")
            candidate_stmt = select(candidate.id).where(
                candidate.status == JobStatus.PENDING,
                candidate.scheduled_for <= now,
            )
            if kinds is not None:
                candidate_stmt = candidate_stmt.where(candidate.kind.in_(kinds))
            candidate_id = (
                candidate_stmt.order_by(
                    candidate.priority.desc(),
                    candidate.scheduled_for.asc(),
                    candidate.created_at.asc(),
                    candidate.id.asc(),
                )
                .limit(1)
                .scalar_subquery()
            )

            # Single conditional update: a concurrent claimer loses the status guard.
            claim_stmt = (
                update(Job)
                .where(Job.id == candidate_id, Job.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.PROCESSING,
                    attempts=Job.attempts + 1,
                    worker_id=normalized_worker_id,
                    started_at=now,
                    lease_expires_at=now + self._lease_delta(),
                    updated_at=now,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            claimed_id = session.execute(claim_stmt).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()

            claimed_job = session.get(Job, claimed_id)
            if claimed_job is None:
                raise JobNotClaimableError("Claimed job disappeared before snapshot fetch")
            logger.info(
                "Worker %s claimed %s job %s (attempt %s/%s)",
                normalized_worker_id,
                claimed_job.kind.value,
                claimed_job.id,
                claimed_job.attempts,
                claimed_job.max_attempts,
            )
            return self._to_snapshot(claimed_job)

    def _load_owned(self, session: Session, job_id: str, worker_id: str) -> Job:
        job = session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.status != JobStatus.PROCESSING:
            raise JobNotClaimableError(f"Job {job_id} is not processing (status={job.status.value})")
        if job.worker_id != worker_id:
            raise JobNotClaimableError(f"Job {job_id} is leased by another worker")
        return job

    def report_progress(
        self,
        job_id: str,
        *,
        worker_id: str,
        percent: int,
        message: str | None = None,
    ) -> JobSnapshot:
        if percent < 0 or percent > 100:
            raise ValueError("Progress must be in [0, 100]")

        with self._session_factory() as session:
            job = self._load_owned(session, job_id, worker_id)
            now = self._now()
            lease_expires_at = _as_utc(job.lease_expires_at)
            if lease_expires_at is None or lease_expires_at <= now:
                raise JobNotClaimableError(f"Lease expired on job {job_id}")
            job.progress = percent
            if message is not None:
                job.progress_message = message
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def complete(
        self,
        job_id: str,
        *,
        worker_id: str,
        result: BaseModel | dict[str, Any] | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_owned(session, job_id, worker_id)
            self._enforce_transition(job.status, JobStatus.COMPLETED)
            stored_result = self._validate_result(job.kind, result)
            now = self._now()
            job.status = JobStatus.COMPLETED
            job.result = stored_result
            job.progress = 100
            job.error_message = None
            job.lease_expires_at = None
            job.completed_at = now
            job.updated_at = now
            session.commit()
            session.refresh(job)
            logger.info("Job %s completed", job_id)
            return self._to_snapshot(job)

    def fail(self, job_id: str, *, worker_id: str, error: str, retryable: bool) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_owned(session, job_id, worker_id)
            self._apply_failure(session, job, error=error, retryable=retryable, now=self._now())
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def _apply_failure(self, session: Session, job: Job, *, error: str, retryable: bool, now: datetime) -> None:
        job.error_message = error or "Job failed without an error message"
        job.lease_expires_at = None
        job.updated_at = now
        if retryable and job.attempts < job.max_attempts:
            self._enforce_transition(job.status, JobStatus.PENDING)
            job.status = JobStatus.PENDING
            job.worker_id = None
            job.scheduled_for = now + self.backoff_delay(job.attempts)
            logger.warning(
                "Job %s failed (attempt %s/%s), retry at %s: %s",
                job.id,
                job.attempts,
                job.max_attempts,
                job.scheduled_for.isoformat(),
                job.error_message,
            )
            return

        self._enforce_transition(job.status, JobStatus.FAILED)
        job.status = JobStatus.FAILED
        job.completed_at = now
        logger.error("Job %s failed permanently after %s attempt(s): %s", job.id, job.attempts, job.error_message)
        self._settle_abandoned_work(session, job, now)

    def cancel(self, job_id: str, reason: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            self._enforce_transition(job.status, JobStatus.CANCELLED)
            now = self._now()
            lease_expires_at = _as_utc(job.lease_expires_at)
            # A live worker stops at its next cancellation check and settles its own rows.
            running = job.status == JobStatus.PROCESSING and lease_expires_at is not None and lease_expires_at > now
            job.status = JobStatus.CANCELLED
            job.error_message = reason or "Cancelled"
            job.lease_expires_at = None
            job.completed_at = now
            job.updated_at = now
            if not running:
                self._settle_abandoned_work(session, job, now)
            session.commit()
            session.refresh(job)
            logger.info("Job %s cancelled", job_id)
            return self._to_snapshot(job)

    def settle_finished_job(self, job_id: str) -> None:
        """Fail whatever a failed or cancelled job left mid-flight."""
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if job.status not in {JobStatus.FAILED, JobStatus.CANCELLED}:
                return
            self._settle_abandoned_work(session, job, self._now())
            session.commit()

    def _settle_abandoned_work(self, session: Session, job: Job, now: datetime) -> None:
        message = f"{job.kind.value} job {job.id} {job.status.value}: {job.error_message}"
        if job.dataset_id is not None and job.kind in IN_FLIGHT_DATASET_STATUS:
            self._settle_dataset(session, job, job.dataset_id, message, now)
        snapshot_id = (job.payload or {}).get("snapshot_id")
        if snapshot_id and job.kind in {JobKind.SNAPSHOT_CREATE, JobKind.SNAPSHOT_RESTORE}:
            self._settle_snapshot(session, job, str(snapshot_id), message, now)

    def _settle_dataset(self, session: Session, job: Job, dataset_id: str, message: str, now: datetime) -> None:
        lock_key = dataset_lock_key(dataset_id)
        owner = session.scalar(
            select(JobLock.owner_job_id).where(JobLock.lock_key == lock_key, JobLock.expires_at > now)
        )
        if owner is not None and owner != job.id:
            # The dataset belongs to the job holding its lock.
            return
        session.execute(
            delete(JobLock)
            .where(JobLock.lock_key == lock_key, JobLock.owner_job_id == job.id)
            .execution_options(synchronize_session=False)
        )
        settled = session.execute(
            update(Dataset)
            .where(Dataset.id == dataset_id, Dataset.status == IN_FLIGHT_DATASET_STATUS[job.kind])
            .values(status=DatasetStatus.FAILED, error_message=message, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if settled.rowcount:
            logger.error("Dataset %s failed: %s", dataset_id, message)

    def _settle_snapshot(self, session: Session, job: Job, snapshot_id: str, message: str, now: datetime) -> None:
        if job.kind == JobKind.SNAPSHOT_CREATE:
            stuck, settled_status = SnapshotStatus.CREATING, SnapshotStatus.FAILED
        else:
            if self._restore_running(session, job, snapshot_id, now):
                return
            # The captured data is intact, so an interrupted restore leaves the snapshot usable.
            stuck, settled_status = SnapshotStatus.RESTORING, SnapshotStatus.READY
            message = f"Restore interrupted: {message}"
        settled = session.execute(
            update(Snapshot)
            .where(Snapshot.id == snapshot_id, Snapshot.status == stuck)
            .values(status=settled_status, error_message=message, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if settled.rowcount:
            logger.warning("Snapshot %s %s -> %s: %s", snapshot_id, stuck.value, settled_status.value, message)

    def _restore_running(self, session: Session, job: Job, snapshot_id: str, now: datetime) -> bool:
        payloads = session.scalars(
            select(Job.payload).where(
                Job.kind == JobKind.SNAPSHOT_RESTORE,
                Job.status == JobStatus.PROCESSING,
                Job.id != job.id,
                Job.lease_expires_at > now,
            )
        ).all()
        return any((payload or {}).get("snapshot_id") == snapshot_id for payload in payloads)

    def is_cancelled(self, job_id: str) -> bool:
        with self._session_factory() as session:
            status = session.scalar(select(Job.status).where(Job.id == job_id))
            if status is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return status == JobStatus.CANCELLED

    def retry(self, job_id: str) -> JobSnapshot:
        source = self.get_job(job_id)
        if source.status not in {JobStatus.FAILED, JobStatus.CANCELLED}:
            raise InvalidJobStateError(f"Only failed or cancelled jobs can be retried (status={source.status.value})")
        return self.enqueue(
            source.kind,
            source.payload,
            priority=source.priority,
            max_attempts=source.max_attempts,
            user_id=source.user_id,
            dataset_id=source.dataset_id,
        )

    def recover_stale_jobs(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        now = self._now()
        try:
            stale_jobs = list(
                local_session.scalars(
                    select(Job).where(
                        Job.status == JobStatus.PROCESSING,
                        or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= now),
                    )
                ).all()
            )
            for job in stale_jobs:
                self._apply_failure(
                    local_session,
                    job,
                    error=f"Lease held by {job.worker_id or 'unknown worker'} expired",
                    retryable=True,
                    now=now,
                )
            if stale_jobs and owns_session:
                local_session.commit()
            elif stale_jobs:
                local_session.flush()
        finally:
            if owns_session:
                local_session.close()
        return len(stale_jobs)

    def get_metrics(self) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(select(Job.status, func.count()).group_by(Job.status)).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status).value] = int(count)
        counts["total"] = sum(counts.values())
        return counts

    def purge_finished(self, older_than_days: int | None = None) -> int:
        days = self._settings.job_retention_days if older_than_days is None else older_than_days
        cutoff = self._now() - timedelta(days=days)
        with self._session_factory() as session:
            result = session.execute(
                delete(Job)
                .where(Job.status.in_(list(TERMINAL_STATUSES)), Job.completed_at <= cutoff)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %s finished job(s) older than %s day(s)", purged, days)
        return purged

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            kind=job.kind,
            status=job.status,
            user_id=job.user_id,
            dataset_id=job.dataset_id,
            payload=dict(job.payload or {}),
            result=dict(job.result) if job.result is not None else None,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
            scheduled_for=_as_utc(job.scheduled_for),
            progress=job.progress,
            progress_message=job.progress_message,
            worker_id=job.worker_id,
            lease_expires_at=_as_utc(job.lease_expires_at),
            error_message=job.error_message,
            created_at=_as_utc(job.created_at),
            updated_at=_as_utc(job.updated_at),
            started_at=_as_utc(job.started_at),
            completed_at=_as_utc(job.completed_at),
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "user_id": snapshot.user_id,
        "dataset_id": snapshot.dataset_id,
        "payload": snapshot.payload,
        "result": snapshot.result,
        "attempts": snapshot.attempts,
        "max_attempts": snapshot.max_attempts,
        "priority": snapshot.priority,
        "scheduled_for": snapshot.scheduled_for,
        "progress": snapshot.progress,
        "progress_message": snapshot.progress_message,
        "worker_id": snapshot.worker_id,
        "lease_expires_at": snapshot.lease_expires_at,
        "error_message": snapshot.error_message,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
    }
