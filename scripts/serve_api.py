from __future__ import annotations

import argparse

import uvicorn

from crmseed.api.app import create_app
from crmseed.core.config import get_settings


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Serve the crmseed HTTP API")
    parser.add_argument("--host", default=settings.api_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
