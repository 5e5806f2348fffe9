from crmseed.worker.pipeline import (
    build_worker,
    enqueue_cleanup_job,
    enqueue_generation_job,
    enqueue_injection_job,
    run_worker_once,
)

__all__ = [
    "build_worker",
    "enqueue_generation_job",
    "enqueue_injection_job",
    "enqueue_cleanup_job",
    "run_worker_once",
]
