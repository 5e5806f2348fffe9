from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from crmseed.core.config import get_settings
from crmseed.core.logging import configure_logging
from crmseed.db.init_db import initialize_database
from crmseed.db.session import reset_engine
from crmseed.worker.pipeline import build_worker
from crmseed.worker.runner import run_worker_pool

logger = logging.getLogger("crmseed.worker")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run crmseed job workers until interrupted")
    parser.add_argument("--state-root", default=None, help="State root directory (defaults to CRMSEED_STATE_ROOT)")
    parser.add_argument("--concurrency", type=int, default=None, help="Number of worker threads")
    parser.add_argument("--poll-seconds", type=float, default=None, help="Idle poll interval")
    parser.add_argument("--worker-prefix", default="worker", help="Prefix for worker ids")
    return parser.parse_args()


def configure_env(state_root: Path) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["CRMSEED_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()


def main() -> None:
    args = parse_args()
    if args.state_root is not None:
        configure_env(Path(args.state_root))
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    concurrency = args.concurrency or settings.worker_concurrency
    poll_seconds = args.poll_seconds if args.poll_seconds is not None else float(settings.worker_poll_seconds)
    stop_event = threading.Event()

    def request_stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, stopping workers", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    threads = run_worker_pool(
        concurrency,
        lambda index: build_worker(f"{args.worker_prefix}-{index}"),
        stop_event,
        poll_seconds,
    )
    logger.info("Started %s worker(s) polling every %.1fs", concurrency, poll_seconds)
    while not stop_event.is_set():
        stop_event.wait(1.0)
    for thread in threads:
        thread.join(timeout=poll_seconds + 5)


if __name__ == "__main__":
    main()
