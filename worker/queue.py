"""Worker side of the Redis job store.

The API pushes job documents onto the queue list; the worker pops them,
appends progress messages and writes the final result into the job hash.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import datetime
from uuid import UUID

import redis
from pydantic import ValidationError

from aps.schemas import ProgressUpdate

from .config import Settings, get_settings
from .schemas import ProcessResult, QueuedJob

LOGGER = logging.getLogger("tilecad.worker.queue")

RESULT_FIELDS = ("artifact_path", "dwg_url", "work_item_id", "viewer_urn")


def _now() -> str:
    return datetime.utcnow().isoformat()


class WorkerQueue:
    def __init__(self, client: redis.Redis, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    def _job_key(self, job_id: UUID) -> str:
        return f"{self._settings.redis_status_prefix}:{job_id}"

    def _write(self, job: QueuedJob, fields: dict[str, str]) -> None:
        key = self._job_key(job.job_id)
        self._client.hset(key, mapping={**fields, "updated_at": _now()})
        self._client.expire(key, self._settings.result_ttl_seconds)

    def listen(self) -> Iterator[QueuedJob]:
        """Block on the queue and yield jobs forever; undecodable documents are dropped."""
        while True:
            popped = self._client.blpop(
                self._settings.redis_queue_name, timeout=self._settings.poll_timeout
            )
            if popped is None:
                continue
            try:
                yield QueuedJob.model_validate_json(popped[1])
            except ValidationError as exc:
                LOGGER.warning("dropping malformed job document", extra={"error": str(exc)})

    def mark_status(self, job: QueuedJob, status: str, message: str | None = None) -> None:
        fields = {"status": status}
        if message:
            fields["message"] = message
        self._write(job, fields)

    def add_progress(self, job: QueuedJob, update: ProgressUpdate) -> None:
        key = f"{self._job_key(job.job_id)}:messages"
        entry = {
            "timestamp": _now(),
            "step": update.step,
            "message": update.message,
            "detail": update.detail,
            "percent": update.percent,
        }
        self._client.rpush(key, json.dumps(entry))
        self._client.expire(key, self._settings.result_ttl_seconds)

    def finish(self, job: QueuedJob, result: ProcessResult) -> None:
        fields = {
            "status": result.status,
            "message": result.message,
            "errors": json.dumps(result.errors),
        }
        # unset result fields are left absent rather than stored as ""
        fields.update({name: getattr(result, name) for name in RESULT_FIELDS if getattr(result, name)})
        self._write(job, fields)
