"""Long-running loop that feeds queued tile jobs to the processor."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import redis

from app.logging import log_event

from .config import Settings, get_settings
from .processor import TileProcessor
from .queue import WorkerQueue
from .schemas import ProcessResult, QueuedJob

LOGGER = logging.getLogger("tilecad.worker")


class Worker:
    """Processes one tile job at a time from the Redis queue."""

    def __init__(
        self,
        redis_client_factory: Callable[[], redis.Redis] | None = None,
        settings: Settings | None = None,
        processor: TileProcessor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._connect = redis_client_factory or self._default_client
        self._processor = processor or TileProcessor(self._settings)
        self._sleep = sleep

    def _default_client(self) -> redis.Redis:
        return redis.from_url(self._settings.redis_url, decode_responses=False)

    def run_forever(self) -> None:
        """Consume jobs until interrupted, reconnecting with exponential backoff."""
        log_event(LOGGER, "worker_started", service=self._settings.service_name)
        delay = 1
        try:
            while True:
                try:
                    queue = WorkerQueue(self._connect(), self._settings)
                    for job in queue.listen():
                        self._handle_job(queue, job)
                        delay = 1
                except redis.RedisError as exc:
                    log_event(LOGGER, "redis_unavailable", logging.WARNING, error=str(exc), retry_in=delay)
                    self._sleep(delay)
                    delay = min(delay * 2, self._settings.max_backoff_seconds)
        finally:
            self._processor.close()
            log_event(LOGGER, "worker_stopped", service=self._settings.service_name)

    def _handle_job(self, queue: WorkerQueue, job: QueuedJob) -> ProcessResult:
        job_id = str(job.job_id)
        log_event(LOGGER, "job_started", job_id=job_id, tile=job.payload.get("tile_name"))
        queue.mark_status(job, "processing")
        try:
            result = self._processor.process(job, on_progress=lambda update: queue.add_progress(job, update))
        except Exception as exc:
            LOGGER.exception("tile job crashed", extra={"job_id": job_id})
            result = ProcessResult(status="failed", message=str(exc), errors=[str(exc)])
        queue.finish(job, result)
        log_event(
            LOGGER,
            "job_finished",
            job_id=job_id,
            status=result.status,
            artifact=result.artifact_path,
        )
        return result
