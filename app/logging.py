from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
JSON_FORMAT = "%(message)s"


def configure_logging(
    log_dir: Path | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    formatter = logging.Formatter(JSON_FORMAT if json_format else PLAIN_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "tilecad.log", maxBytes=5 * 1024 * 1024, backupCount=5
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, /, **payload: Any) -> None:
    record: Dict[str, Any] = {"event": event, **payload}
    logger.log(level, json.dumps(record, default=str))
