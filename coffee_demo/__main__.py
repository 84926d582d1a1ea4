from __future__ import annotations

import argparse

import uvicorn

from coffee_demo.config import get_settings
from coffee_demo.observability.logging import configure_logging


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Coffee order service with logs, traces and metrics")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Listen port (defaults to $PORT)")
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.log_json)
    # log_config=None keeps the structlog handlers installed above.
    uvicorn.run("coffee_demo.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
