"""Tile processing orchestrator.

Runs one script plus its images through Design Automation and always tears
down the activity and bucket it provisioned, whatever step fails.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from app import bus
from app.errors import DownloadError, TileCadError
from app.settings import ApsSettings

from .activities import ActivityManager
from .auth import CredentialCache
from .http import transient_retry
from .oss import OssStagingArea, output_object_name
from .schemas import JobResult, MonitorResult, ProgressCallback, ProgressUpdate, WorkItemHandle
from .viewer import ApsViewerPreparer, ViewerPreparer
from .workitems import WorkItemMonitor, WorkItemSubmitter, notify

LOGGER = logging.getLogger("tilecad.aps.orchestrator")


@dataclass
class _RunState:
    tile_name: str
    bucket: str | None = None
    handle: WorkItemHandle | None = None
    monitor: MonitorResult | None = None
    dwg_bytes: bytes | None = None
    viewer_urn: str | None = None
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.errors.append(message)


class TileOrchestrator:
    """Sequences authentication, provisioning, staging, execution and cleanup."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        *,
        activities: ActivityManager | None = None,
        staging: OssStagingArea | None = None,
        submitter: WorkItemSubmitter | None = None,
        monitor: WorkItemMonitor | None = None,
        viewer: ViewerPreparer | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials
        self._activities = activities or ActivityManager(settings, client, credentials)
        self._staging = staging or OssStagingArea(settings, client, credentials)
        self._submitter = submitter or WorkItemSubmitter(
            settings, client, credentials, self._staging, self._activities
        )
        self._monitor = monitor or WorkItemMonitor(settings, client, credentials)
        self._viewer = viewer

    @classmethod
    def from_settings(
        cls,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
    ) -> "TileOrchestrator":
        """Build the default component graph, with viewer prep if enabled."""

        staging = OssStagingArea(settings, client, credentials)
        viewer = (
            ApsViewerPreparer(settings, client, credentials, staging)
            if settings.enable_viewer_prep
            else None
        )
        return cls(settings, client, credentials, staging=staging, viewer=viewer)

    async def run(
        self,
        script: str,
        images: Sequence[tuple[str, bytes]],
        tile_name: str,
        on_progress: ProgressCallback | None = None,
        *,
        deadline: float | None = None,
    ) -> JobResult:
        """Process one tile. Job failures are reported in the result, never raised."""

        log = bus.ProcessingLog()
        state = _RunState(tile_name=tile_name)
        started = time.monotonic()

        with bus.bound(log):
            bus.emit(
                "tile_processing",
                "started",
                tileName=tile_name,
                scriptLength=len(script),
                imageCount=len(images),
            )
            try:
                pipeline = self._execute(state, script, images, on_progress)
                if deadline is None:
                    await pipeline
                else:
                    await asyncio.wait_for(pipeline, deadline)
            except asyncio.CancelledError:
                state.fail("Processing cancelled")
                raise
            except TileCadError as exc:
                state.fail(str(exc))
            except asyncio.TimeoutError as exc:
                if deadline is None:
                    LOGGER.warning("tile processing timed out", extra={"tile": tile_name, "error": str(exc)})
                    state.fail(f"Timed out: {exc or 'no response'}")
                else:
                    state.fail(f"Processing deadline of {deadline:g}s exceeded")
            except Exception as exc:
                LOGGER.exception("unexpected tile processing error", extra={"tile": tile_name})
                state.fail(f"Unexpected error: {exc}")
            finally:
                if state.errors:
                    bus.emit("tile_processing", "error", error=state.errors[0])
                else:
                    bus.emit("tile_processing", "completed", tileName=tile_name)
                await self._cleanup(state)
                LOGGER.info(
                    "tile processing finished",
                    extra={
                        "tile": tile_name,
                        "success": not state.errors,
                        "elapsed": round(time.monotonic() - started, 1),
                    },
                )

        return self._result(state, log)

    async def _execute(
        self,
        state: _RunState,
        script: str,
        images: Sequence[tuple[str, bytes]],
        on_progress: ProgressCallback | None,
    ) -> None:
        async def step(name: str, message: str, detail: str | None = None) -> None:
            await notify(on_progress, ProgressUpdate(step=name, message=message, detail=detail))

        await step("authentication", "Authenticating with APS...")
        bus.emit("authentication", "started")
        await self._credentials.get_token()
        bus.emit("authentication", "completed")

        await step("activity_creation", "Creating activity...", f"{len(images)} image params")
        bus.emit("activity_creation", "started", imageCount=len(images))
        version = await self._activities.ensure_activity(len(images))
        bus.emit("activity_creation", "completed", version=version)

        await step("bucket_creation", "Creating temporary bucket...")
        bus.emit("bucket_creation", "started")
        state.bucket = await self._staging.create_bucket()
        bus.emit("bucket_creation", "completed", bucketName=state.bucket)

        await step("file_upload", "Uploading files...", f"{1 + len(images)} files")
        bus.emit("file_upload", "started", totalFiles=1 + len(images))
        staged = await self._staging.upload_all(
            state.bucket, script, images, output_name=output_object_name(state.tile_name)
        )
        bus.emit("file_upload", "completed", filesUploaded=len(staged))

        await step("workitem_submission", "Submitting WorkItem...")
        bus.emit("workitem_submission", "started")
        state.handle = await self._submitter.submit(state.bucket, staged, state.tile_name)
        bus.emit("workitem_submission", "completed", workItemId=state.handle.work_item_id)

        await step("workitem_monitoring", "Waiting for AutoCAD processing...")
        bus.emit("workitem_monitoring", "started")
        state.monitor = await self._monitor.poll(state.handle.work_item_id, on_progress)
        bus.emit("workitem_monitoring", "completed", workItemStatus=state.monitor.status)

        await step("dwg_download", "Downloading DWG file...")
        bus.emit("dwg_download", "started")
        state.dwg_bytes = await self.download(state.handle.output_url)
        bus.emit("dwg_download", "completed", size=len(state.dwg_bytes))

        if self._viewer is not None:
            await step("viewer_prep", "Preparing for viewer...", f"{len(images)} images")
            bus.emit("viewer_prep", "started")
            try:
                handle = await self._viewer.prepare(state.handle.output_name, state.dwg_bytes, images)
            except Exception as exc:
                LOGGER.warning("viewer preparation failed", exc_info=exc)
                bus.emit("viewer_prep", "error", error=str(exc))
            else:
                state.viewer_urn = handle.urn
                bus.emit("viewer_prep", "completed", urn=handle.urn)

    async def download(self, url: str) -> bytes:
        try:
            response = await self._download(url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Failed to download DWG: {exc}") from exc
        if response.status_code == 403:
            raise DownloadError("DWG download URL has expired", status_code=403, body=response.text)
        if not response.is_success:
            raise DownloadError(
                f"Failed to download DWG ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        return response.content

    @transient_retry
    async def _download(self, url: str) -> httpx.Response:
        return await self._client.get(url)

    async def _cleanup(self, state: _RunState) -> None:
        bus.emit("cleanup", "started")
        if state.bucket is not None:
            try:
                await self._staging.delete_bucket(state.bucket)
            except Exception as exc:
                LOGGER.warning("bucket cleanup warning", exc_info=exc)
                bus.emit("bucket_cleanup", "error", bucketName=state.bucket, error=str(exc))
            else:
                bus.emit("bucket_cleanup", "completed", bucketName=state.bucket)

        try:
            released = await self._activities.release()
        except Exception as exc:
            LOGGER.warning("activity cleanup warning", exc_info=exc)
            released = False
        bus.emit("activity_cleanup", "completed" if released else "error")
        bus.emit("cleanup", "completed")

    @staticmethod
    def _result(state: _RunState, log: bus.ProcessingLog) -> JobResult:
        work_item_id = state.handle.work_item_id if state.handle else ""
        report = state.monitor.report if state.monitor else None
        if state.errors:
            return JobResult(
                success=False,
                tile_name=state.tile_name,
                work_item_id=work_item_id,
                processing_logs=log.entries,
                work_item_report=report,
                message=f"Processing failed: {state.errors[0]}",
                errors=list(state.errors),
            )
        return JobResult(
            success=True,
            tile_name=state.tile_name,
            work_item_id=work_item_id,
            dwg_url=state.handle.output_url if state.handle else "",
            dwg_bytes=state.dwg_bytes,
            viewer_urn=state.viewer_urn,
            processing_logs=log.entries,
            work_item_report=report,
            message="DWG generated and downloaded successfully",
            errors=[],
        )
