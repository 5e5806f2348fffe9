from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobEvent:
    job_id: str
    dataset_id: str | None
    status: str
    progress: int
    message: str | None = None


class ProgressNotifier(Protocol):
    def notify(self, event: JobEvent) -> None: ...


class LoggingNotifier:
    def notify(self, event: JobEvent) -> None:
        logger.info(
            "Job %s [%s] %s%% %s",
            event.job_id,
            event.status,
            event.progress,
            event.message or "",
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[JobEvent] = []

    def notify(self, event: JobEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_job(self, job_id: str) -> list[JobEvent]:
        with self._lock:
            return [event for event in self.events if event.job_id == job_id]


def notify_safely(notifier: ProgressNotifier | None, event: JobEvent) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(event)
    except Exception:
        logger.warning("Progress notifier failed for job %s", event.job_id, exc_info=True)
