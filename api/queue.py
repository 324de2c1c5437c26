"""Redis storage for tile jobs.

Layout, shared with the worker:

* ``<queue name>``: list of queued job documents, popped by the worker
* ``<status prefix>:<job id>``: hash with the job's status and result fields
* ``<status prefix>:<job id>:messages``: list of progress messages
"""

from __future__ import annotations

import json
from typing import Any
from uuid import UUID

import redis

from .config import Settings, get_settings
from .schemas import JobStatus, ProgressMessage, TileJobResponse


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisQueue:
    """Job store used by the API routes."""

    def __init__(self, client: redis.Redis, settings: Settings | None = None) -> None:
        self._redis = client
        self._settings = settings or get_settings()

    def job_key(self, job_id: UUID) -> str:
        return f"{self._settings.redis_status_prefix}:{job_id}"

    def messages_key(self, job_id: UUID) -> str:
        return f"{self.job_key(job_id)}:messages"

    def enqueue(self, job: TileJobResponse, payload: dict[str, Any]) -> None:
        """Record the job as queued, then hand it to the worker."""

        key = self.job_key(job.job_id)
        submitted = job.submitted_at.isoformat()
        self._redis.hset(
            key,
            mapping={
                "status": job.status,
                "tile_name": job.tile_name,
                "submitted_at": submitted,
                "updated_at": submitted,
            },
        )
        self._redis.expire(key, self._settings.result_ttl_seconds)
        document = {
            "job_id": str(job.job_id),
            "submitted_at": submitted,
            "status": job.status,
            "payload": payload,
        }
        self._redis.rpush(self._settings.redis_queue_name, json.dumps(document))

    def get_status(self, job_id: UUID) -> JobStatus | None:
        raw = self._redis.hgetall(self.job_key(job_id))
        if not raw:
            return None
        fields: dict[str, Any] = {_text(k): _text(v) for k, v in raw.items()}
        fields["errors"] = json.loads(fields.get("errors") or "[]")
        return JobStatus.model_validate({**fields, "job_id": job_id})

    def get_messages(self, job_id: UUID, since: int = 0) -> list[ProgressMessage]:
        """Progress messages starting at offset ``since``."""

        raw = self._redis.lrange(self.messages_key(job_id), since, -1)
        return [ProgressMessage.model_validate_json(item) for item in raw]
