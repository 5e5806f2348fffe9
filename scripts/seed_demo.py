from __future__ import annotations

import argparse
import os
import time
from pathlib import Path

from crmseed.connectors.inmemory import InMemoryConnectorRegistry
from crmseed.core.config import get_settings
from crmseed.core.logging import configure_logging
from crmseed.datasets.service import DatasetService
from crmseed.db.init_db import initialize_database
from crmseed.db.session import get_session_factory, reset_engine
from crmseed.worker.pipeline import build_worker, enqueue_generation_job, enqueue_injection_job


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate and inject one dataset into an in-memory CRM")
    parser.add_argument("--state-root", required=True, help="State root directory")
    parser.add_argument("--accounts", type=int, default=5, help="Number of accounts")
    parser.add_argument("--contacts", type=int, default=15, help="Number of contacts")
    parser.add_argument("--opportunities", type=int, default=8, help="Number of opportunities")
    parser.add_argument("--activities", type=int, default=3, help="Activities per opportunity")
    parser.add_argument("--emails", type=int, default=2, help="Emails per opportunity")
    parser.add_argument("--density", default="bell-curve", help="Activity density shape")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    return parser.parse_args()


def configure_env(state_root: Path) -> None:
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["CRMSEED_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()


def main() -> None:
    args = parse_args()
    configure_env(Path(args.state_root))
    configure_logging("WARNING")
    initialize_database()

    datasets = DatasetService(get_settings(), get_session_factory())
    dataset = datasets.create_dataset(
        user_id="demo",
        name="Demo pipeline",
        environment_id="demo-org",
        config={
            "record_counts": {
                "Account": args.accounts,
                "Contact": args.contacts,
                "Opportunity": args.opportunities,
            },
            "activities_per_opportunity": args.activities,
            "emails_per_opportunity": args.emails,
            "density_shape": args.density,
            "seed": args.seed,
        },
    )
    connectors = InMemoryConnectorRegistry()
    worker = build_worker("demo-worker", connector_factory=connectors)

    started = time.perf_counter()
    enqueue_generation_job(dataset.id)
    worker.run_once()
    enqueue_injection_job(dataset.id)
    worker.run_once()
    elapsed = time.perf_counter() - started

    final = datasets.get_dataset(dataset.id)
    connector = connectors("demo-org")
    print("== Demo Dataset ==")
    print(f"dataset_id={final.id}")
    print(f"status={final.status.value}")
    for object_type, counts in sorted(final.record_counts.items()):
        print(f"{object_type}: generated={counts['generated']} injected={counts['injected']} failed={counts['failed']}")
    print(f"remote_records={connector.count()}")
    print(f"elapsed_seconds={elapsed:.3f}")


if __name__ == "__main__":
    main()
