from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from crmseed.core.config import Settings
from crmseed.db.models import JobLock

logger = logging.getLogger(__name__)


class LockUnavailableError(RuntimeError):
    retryable = True


def dataset_lock_key(dataset_id: str) -> str:
    return f"dataset:{dataset_id}"


class JobLockService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self._settings.job_lock_ttl_seconds)

    def acquire(self, lock_key: str, owner_job_id: str) -> bool:
        with self._session_factory() as session:
            now = self._now()
            session.execute(
                delete(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.expires_at <= now,
                )
            )
            existing = session.get(JobLock, lock_key)
            if existing is not None:
                if existing.owner_job_id != owner_job_id:
                    session.rollback()
                    return False
                existing.heartbeat_at = now
                existing.expires_at = self._expiry(now)
                session.commit()
                return True

            session.add(
                JobLock(
                    lock_key=lock_key,
                    owner_job_id=owner_job_id,
                    acquired_at=now,
                    heartbeat_at=now,
                    expires_at=self._expiry(now),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def refresh(self, lock_key: str, owner_job_id: str) -> bool:
        with self._session_factory() as session:
            lock = session.scalar(
                select(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.owner_job_id == owner_job_id,
                )
            )
            if lock is None:
                return False
            now = self._now()
            lock.heartbeat_at = now
            lock.expires_at = self._expiry(now)
            session.commit()
            return True

    def release(self, lock_key: str, owner_job_id: str) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.owner_job_id == owner_job_id,
                )
            )
            session.commit()

    def cleanup_expired(self) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(JobLock).where(JobLock.expires_at <= self._now()))
            session.commit()
            return int(result.rowcount or 0)

    @contextmanager
    def held(self, lock_key: str, owner_job_id: str) -> Iterator[None]:
        if not self.acquire(lock_key, owner_job_id):
            raise LockUnavailableError(f"Lock {lock_key} is held by another job")
        logger.debug("Job %s acquired lock %s", owner_job_id, lock_key)
        try:
            yield
        finally:
            self.release(lock_key, owner_job_id)
