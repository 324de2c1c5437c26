"""Command-line entrypoint for the tile worker."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from app.logging import configure_logging

from .config import get_settings
from .worker import Worker

LOGGER = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="tilecad DWG worker")
    parser.add_argument("--log-dir", type=Path, default=settings.log_dir, help="Directory for rotating log files")
    parser.add_argument("--log-level", default=settings.log_level, help="Root log level")
    args = parser.parse_args()

    configure_logging(args.log_dir, level=args.log_level, json_format=settings.log_json)
    LOGGER.info(
        "Starting tile worker",
        extra={"queue": settings.redis_queue_name, "artifacts": str(settings.artifact_root)},
    )
    try:
        Worker(settings=settings).run_forever()
    except KeyboardInterrupt:
        LOGGER.info("Worker interrupted")


if __name__ == "__main__":
    main()
