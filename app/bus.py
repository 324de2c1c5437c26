"""Processing-log event channel.

Every pipeline component reports its steps through :func:`emit`. The
orchestrator binds one :class:`ProcessingLog` per run with :func:`bound`, so
entries from concurrent runs never mix and no log sink has to be passed
through constructors.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, List, Literal

from pydantic import BaseModel, Field

from app.logging import log_event

LOGGER = logging.getLogger("tilecad.events")

LogStatus = Literal["started", "completed", "error", "info"]


class ProcessingLogEntry(BaseModel):
    """One step transition recorded during a tile run."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    step: str
    status: LogStatus
    details: dict[str, Any] = Field(default_factory=dict)


class ProcessingLog:
    """Append-only log owned by a single orchestration run."""

    def __init__(self) -> None:
        self._entries: List[ProcessingLogEntry] = []

    @property
    def entries(self) -> list[ProcessingLogEntry]:
        return list(self._entries)

    def record(self, step: str, status: LogStatus, /, **details: Any) -> ProcessingLogEntry:
        entry = ProcessingLogEntry(step=step, status=status, details=details)
        self._entries.append(entry)
        return entry

    def steps(self, status: LogStatus | None = None) -> list[str]:
        return [e.step for e in self._entries if status is None or e.status == status]


_current_log: ContextVar[ProcessingLog | None] = ContextVar("tilecad_processing_log", default=None)


@contextmanager
def bound(log: ProcessingLog) -> Iterator[ProcessingLog]:
    token = _current_log.set(log)
    try:
        yield log
    finally:
        _current_log.reset(token)


def emit(step: str, status: LogStatus, /, **details: Any) -> ProcessingLogEntry | None:
    """Record a step on the bound log and mirror it to the application logger."""

    level = logging.WARNING if status == "error" else logging.INFO
    log_event(LOGGER, step, level, **{**details, "status": status})
    log = _current_log.get()
    if log is None:
        return None
    return log.record(step, status, **details)
