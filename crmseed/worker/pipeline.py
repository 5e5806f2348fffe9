from __future__ import annotations

from crmseed.connectors.base import ConnectorFactory, ContentGenerator
from crmseed.connectors.inmemory import InMemoryConnectorRegistry, SequentialContentGenerator
from crmseed.core.config import get_settings
from crmseed.datasets.service import DatasetService
from crmseed.db.models import JobKind
from crmseed.db.session import get_session_factory
from crmseed.jobs.service import JobService
from crmseed.jobs.types import CleanupPayload, GenerationPayload, InjectionPayload, JobSnapshot
from crmseed.notifications.notifier import LoggingNotifier, ProgressNotifier
from crmseed.worker.handlers import build_handlers
from crmseed.worker.runner import Worker

_default_connectors: InMemoryConnectorRegistry | None = None


class MissingEnvironmentError(ValueError):
    retryable = False


def default_connector_factory() -> InMemoryConnectorRegistry:
    global _default_connectors
    if _default_connectors is None:
        _default_connectors = InMemoryConnectorRegistry()
    return _default_connectors


def enqueue_generation_job(dataset_id: str, *, priority: int = 0, max_attempts: int | None = None) -> str:
    settings = get_settings()
    session_factory = get_session_factory()
    dataset = DatasetService(settings, session_factory).get_dataset(dataset_id)
    snapshot = JobService(settings=settings, session_factory=session_factory).enqueue(
        JobKind.GENERATION,
        GenerationPayload(dataset_id=dataset.id),
        priority=priority,
        max_attempts=max_attempts,
        user_id=dataset.user_id,
        dataset_id=dataset.id,
    )
    return snapshot.id


def enqueue_injection_job(
    dataset_id: str,
    environment_id: str | None = None,
    *,
    priority: int = 0,
    max_attempts: int | None = None,
) -> str:
    settings = get_settings()
    session_factory = get_session_factory()
    dataset = DatasetService(settings, session_factory).get_dataset(dataset_id)
    target = environment_id or dataset.environment_id
    if not target:
        raise MissingEnvironmentError(f"Dataset {dataset_id} has no target environment")
    snapshot = JobService(settings=settings, session_factory=session_factory).enqueue(
        JobKind.INJECTION,
        InjectionPayload(dataset_id=dataset.id, environment_id=target),
        priority=priority,
        max_attempts=max_attempts,
        user_id=dataset.user_id,
        dataset_id=dataset.id,
    )
    return snapshot.id


def enqueue_cleanup_job(dataset_id: str, environment_id: str | None = None, *, priority: int = 0) -> str:
    settings = get_settings()
    session_factory = get_session_factory()
    dataset = DatasetService(settings, session_factory).get_dataset(dataset_id)
    target = environment_id or dataset.environment_id
    if not target:
        raise MissingEnvironmentError(f"Dataset {dataset_id} has no target environment")
    snapshot = JobService(settings=settings, session_factory=session_factory).enqueue(
        JobKind.CLEANUP,
        CleanupPayload(dataset_id=dataset.id, environment_id=target),
        priority=priority,
        user_id=dataset.user_id,
        dataset_id=dataset.id,
    )
    return snapshot.id


def build_worker(
    worker_id: str,
    *,
    connector_factory: ConnectorFactory | None = None,
    generator: ContentGenerator | None = None,
    notifier: ProgressNotifier | None = None,
) -> Worker:
    settings = get_settings()
    session_factory = get_session_factory()
    handlers = build_handlers(
        settings,
        session_factory,
        connector_factory or default_connector_factory(),
        generator or SequentialContentGenerator(),
    )
    return Worker(
        worker_id,
        JobService(settings=settings, session_factory=session_factory),
        handlers,
        notifier=notifier if notifier is not None else LoggingNotifier(),
    )


def run_worker_once(
    *,
    worker_id: str = "local-worker",
    connector_factory: ConnectorFactory | None = None,
    generator: ContentGenerator | None = None,
    notifier: ProgressNotifier | None = None,
) -> JobSnapshot | None:
    worker = build_worker(
        worker_id,
        connector_factory=connector_factory,
        generator=generator,
        notifier=notifier,
    )
    return worker.run_once()
