from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from crmseed.core.errors import error_message, is_retryable
from crmseed.db.models import JobKind, JobStatus
from crmseed.jobs.service import JobCancelledError, JobNotClaimableError, JobService
from crmseed.jobs.types import JOB_PAYLOAD_ADAPTER, JobSnapshot
from crmseed.notifications.notifier import JobEvent, ProgressNotifier, notify_safely

logger = logging.getLogger(__name__)

__all__ = ["Handler", "JobContext", "Worker", "is_retryable", "run_worker_pool"]


@dataclass
class JobContext:
    job: JobSnapshot
    worker_id: str
    job_service: JobService
    notifier: ProgressNotifier | None = None

    @property
    def payload(self) -> Any:
        return JOB_PAYLOAD_ADAPTER.validate_python(self.job.payload)

    @property
    def allow_retry(self) -> bool:
        return self.job.attempts < self.job.max_attempts

    def report_progress(self, percent: int, message: str | None = None) -> None:
        bounded = max(0, min(100, int(percent)))
        self.job_service.report_progress(self.job.id, worker_id=self.worker_id, percent=bounded, message=message)
        notify_safely(
            self.notifier,
            JobEvent(
                job_id=self.job.id,
                dataset_id=self.job.dataset_id,
                status=JobStatus.PROCESSING.value,
                progress=bounded,
                message=message,
            ),
        )

    def is_cancelled(self) -> bool:
        return self.job_service.is_cancelled(self.job.id)


Handler = Callable[[JobContext], BaseModel | dict[str, Any] | None]


class Worker:
    def __init__(
        self,
        worker_id: str,
        job_service: JobService,
        handlers: Mapping[JobKind, Handler],
        notifier: ProgressNotifier | None = None,
    ):
        if not worker_id.strip():
            raise ValueError("worker_id cannot be blank")
        self.worker_id = worker_id.strip()
        self._jobs = job_service
        self._handlers = dict(handlers)
        self._notifier = notifier

    def _publish(self, job: JobSnapshot, message: str | None = None) -> None:
        notify_safely(
            self._notifier,
            JobEvent(
                job_id=job.id,
                dataset_id=job.dataset_id,
                status=job.status.value,
                progress=job.progress,
                message=message if message is not None else job.error_message,
            ),
        )

    def run_once(self) -> JobSnapshot | None:
        job = self._jobs.claim_next(self.worker_id, capabilities=list(self._handlers))
        if job is None:
            return None
        self._publish(job, f"Started attempt {job.attempts}/{job.max_attempts}")

        handler = self._handlers[job.kind]
        context = JobContext(job=job, worker_id=self.worker_id, job_service=self._jobs, notifier=self._notifier)
        try:
            result = handler(context)
        except JobCancelledError:
            logger.info("Worker %s stopped cancelled job %s", self.worker_id, job.id)
            self._jobs.settle_finished_job(job.id)
            final = self._jobs.get_job(job.id)
            self._publish(final)
            return final
        except JobNotClaimableError as exc:
            logger.warning("Worker %s lost job %s: %s", self.worker_id, job.id, exc)
            return self._jobs.get_job(job.id)
        except Exception as exc:
            return self._fail(job, exc)

        try:
            final = self._jobs.complete(job.id, worker_id=self.worker_id, result=result)
        except JobNotClaimableError as exc:
            logger.warning("Worker %s could not complete job %s: %s", self.worker_id, job.id, exc)
            return self._jobs.get_job(job.id)
        self._publish(final, "Completed")
        return final

    def _fail(self, job: JobSnapshot, exc: Exception) -> JobSnapshot:
        retryable = is_retryable(exc)
        message = error_message(exc)
        if not retryable:
            logger.error("Job %s failed with a permanent error", job.id, exc_info=exc)
        try:
            final = self._jobs.fail(job.id, worker_id=self.worker_id, error=message, retryable=retryable)
        except JobNotClaimableError as lost:
            logger.warning("Worker %s could not record failure of job %s: %s", self.worker_id, job.id, lost)
            return self._jobs.get_job(job.id)
        self._publish(final, message)
        return final

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 5.0) -> None:
        logger.info("Worker %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                processed = self.run_once()
            except Exception:
                logger.exception("Worker %s loop iteration failed", self.worker_id)
                processed = None
            if processed is None:
                stop_event.wait(poll_seconds)
        logger.info("Worker %s stopped", self.worker_id)


def run_worker_pool(
    concurrency: int,
    worker_factory: Callable[[int], Worker],
    stop_event: threading.Event,
    poll_seconds: float = 5.0,
) -> list[threading.Thread]:
    """Start ``concurrency`` identical workers on daemon threads."""
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    threads: list[threading.Thread] = []
    for index in range(concurrency):
        worker = worker_factory(index)
        thread = threading.Thread(
            target=worker.run_forever,
            args=(stop_event, poll_seconds),
            name=f"crmseed-{worker.worker_id}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    return threads
