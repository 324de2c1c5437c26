"""Runs queued tile jobs through the APS pipeline and writes their artifacts."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path

import httpx

from app.settings import ApsSettings
from app.settings import get_settings as get_aps_settings
from aps.auth import CredentialCache
from aps.orchestrator import TileOrchestrator
from aps.schemas import JobResult, ProgressUpdate

from .config import Settings, get_settings
from .schemas import ProcessResult, QueuedJob

LOGGER = logging.getLogger("tilecad.worker.processor")

OrchestratorFactory = Callable[
    [ApsSettings, httpx.AsyncClient, CredentialCache], TileOrchestrator
]
ProgressSink = Callable[[ProgressUpdate], None]


class TileProcessor:
    """Turns one queued job into a DWG plus its report and processing log.

    All jobs run on one event loop owned by the processor, so the credential
    cache and its token survive from job to job.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        aps_settings: ApsSettings | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._aps_settings = aps_settings or get_aps_settings()
        self._factory = orchestrator_factory or TileOrchestrator.from_settings
        self._credentials = CredentialCache(self._aps_settings)
        self._runner: asyncio.Runner | None = None

    def close(self) -> None:
        if self._runner is not None:
            self._runner.close()
            self._runner = None

    def process(self, job: QueuedJob, on_progress: ProgressSink | None = None) -> ProcessResult:
        tile = job.tile()
        images = tile.image_pairs()
        if self._runner is None:
            self._runner = asyncio.Runner()
        result = self._runner.run(self._run(tile.script, images, tile.tile_name, on_progress))

        artifact_dir = self._settings.artifact_root / str(job.job_id)
        artifact_path = self._write_artifacts(artifact_dir, result)
        if not result.success:
            LOGGER.error(
                "tile job failed",
                extra={
                    "service": self._settings.service_name,
                    "job_id": str(job.job_id),
                    "error": result.errors[0] if result.errors else None,
                },
            )
            return ProcessResult(
                status="failed",
                message=result.message,
                work_item_id=result.work_item_id or None,
                errors=result.errors,
            )
        return ProcessResult(
            status="completed",
            message=result.message,
            artifact_path=str(artifact_path) if artifact_path else None,
            dwg_url=result.dwg_url or None,
            work_item_id=result.work_item_id or None,
            viewer_urn=result.viewer_urn,
        )

    async def _run(
        self,
        script: str,
        images: list[tuple[str, bytes]],
        tile_name: str,
        on_progress: ProgressSink | None,
    ) -> JobResult:
        timeout = httpx.Timeout(self._aps_settings.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            orchestrator = self._factory(self._aps_settings, client, self._credentials)
            return await orchestrator.run(
                script,
                images,
                tile_name,
                on_progress,
                deadline=self._settings.job_deadline_seconds,
            )

    @staticmethod
    def _write_artifacts(artifact_dir: Path, result: JobResult) -> Path | None:
        artifact_dir.mkdir(parents=True, exist_ok=True)
        log = [entry.model_dump(mode="json") for entry in result.processing_logs]
        (artifact_dir / "processing_log.json").write_text(json.dumps(log, indent=2))
        if result.work_item_report:
            (artifact_dir / "report.txt").write_text(result.work_item_report)
        if result.dwg_bytes is None:
            return None
        dwg_path = artifact_dir / f"{result.tile_name}.dwg"
        dwg_path.write_bytes(result.dwg_bytes)
        return dwg_path
