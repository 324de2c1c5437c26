"""Design Automation work item submission and monitoring."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
from collections.abc import Sequence
from typing import Any, Awaitable, Callable

import httpx

from app.bus import emit
from app.errors import JobError, JobFailedError, JobTimeoutError, SubmissionError
from app.settings import ApsSettings

from .activities import SCRIPT_PARAMETER, ActivityManager, image_parameter
from .auth import CredentialCache
from .http import bearer, ensure_success, path_segment, transient_retry
from .oss import OssStagingArea, output_object_name
from .schemas import (
    SUCCESS_STATUS,
    MonitorResult,
    ProgressCallback,
    ProgressUpdate,
    StagedFile,
    WorkItemHandle,
    WorkItemStatus,
)

LOGGER = logging.getLogger("tilecad.aps.workitems")

REPORT_SNIPPET_CHARS = 2000
_PERCENT_PATTERN = re.compile(r"\d+")


def map_image_arguments(
    images: Sequence[StagedFile],
    parameter_names: Sequence[str] | None,
) -> dict[str, dict[str, str]]:
    """Bind staged images to activity parameters by position.

    Without introspected names the generic ``image{index}`` scheme is used.
    Each argument keeps the caller's filename as its ``localName``.
    """

    arguments: dict[str, dict[str, str]] = {}
    if parameter_names is None:
        for position, image in enumerate(images, start=1):
            index = image.index or position
            arguments[image_parameter(index)] = {
                "url": image.download_url,
                "verb": "get",
                "localName": image.original_name or f"image{index}.png",
            }
        return arguments

    if len(images) > len(parameter_names):
        raise SubmissionError(
            f"Activity declares {len(parameter_names)} image parameters "
            f"but {len(images)} images were staged"
        )
    for position, (name, image) in enumerate(zip(parameter_names, images), start=1):
        arguments[name] = {
            "url": image.download_url,
            "verb": "get",
            "localName": image.original_name or f"image{position}.png",
        }
    return arguments


def parse_progress(progress: str | None) -> int | None:
    """Return the first integer in ``progress``, or ``None`` if there is none."""

    if not progress:
        return None
    match = _PERCENT_PATTERN.search(progress)
    return int(match.group()) if match else None


async def notify(callback: ProgressCallback | None, update: ProgressUpdate) -> None:
    if callback is None:
        return
    try:
        result = callback(update)
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.exception("progress callback failed", extra={"step": update.step})


class WorkItemSubmitter:
    """Builds and submits the work item document."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        staging: OssStagingArea,
        activities: ActivityManager,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials
        self._staging = staging
        self._activities = activities

    async def submit(
        self,
        bucket: str,
        staged_files: Sequence[StagedFile],
        tile_name: str,
    ) -> WorkItemHandle:
        script = next((f for f in staged_files if f.role == "script"), None)
        if script is None:
            raise SubmissionError("No script file was staged")
        images = sorted(
            (f for f in staged_files if f.role == "image"),
            key=lambda f: f.index or 0,
        )

        output_name = output_object_name(tile_name)
        output_url = await self._staging.output_url(bucket, output_name)

        arguments: dict[str, Any] = {
            SCRIPT_PARAMETER: {"url": script.download_url, "verb": "get"},
            self._settings.output_parameter: {
                "url": output_url,
                "verb": "put",
                "localName": output_name,
            },
        }
        parameter_names = await self._activities.get_parameter_names()
        if parameter_names is None:
            emit("activity_introspection", "info", fallback=True)
        arguments.update(map_image_arguments(images, parameter_names))

        body = {"activityId": self._activities.activity_id, "arguments": arguments}
        token = await self._credentials.access_token()
        try:
            response = await self._client.post(
                f"{self._settings.da_base_url}/workitems",
                json=body,
                headers=bearer(token, json_body=True),
            )
        except httpx.HTTPError as exc:
            raise SubmissionError(f"WorkItem submission failed: {exc}") from exc
        ensure_success(response, SubmissionError, "WorkItem submission failed")

        try:
            data = response.json()
            work_item_id = data["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SubmissionError(
                "WorkItem submission returned no id",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        return WorkItemHandle(
            work_item_id=work_item_id,
            status=data.get("status", "pending"),
            output_name=output_name,
            output_url=output_url,
        )


class WorkItemMonitor:
    """Polls a work item to a terminal status."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials
        self._sleep = sleep
        self._clock = clock

    async def poll(
        self,
        work_item_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> MonitorResult:
        max_attempts = self._settings.max_polling_attempts
        started = self._clock()

        for attempt in range(1, max_attempts + 1):
            status = await self.fetch_status(work_item_id)
            elapsed = self._clock() - started
            emit(
                "workitem_status",
                "info",
                attempt=attempt,
                workItemStatus=status.status,
                progress=status.progress or "N/A",
            )

            if status.is_pending:
                percent = parse_progress(status.progress) if status.status == "inprogress" else None
                await notify(
                    on_progress,
                    ProgressUpdate(
                        step="workitem_monitoring",
                        message="AutoCAD processing...",
                        detail=f"{round(elapsed)}s elapsed",
                        percent=percent or None,
                        elapsed_seconds=elapsed,
                    ),
                )
                if attempt < max_attempts:
                    await self._sleep(self._settings.poll_interval_seconds)
                continue

            report = await self.fetch_report(status.report_url)
            if status.status == SUCCESS_STATUS:
                await notify(
                    on_progress,
                    ProgressUpdate(
                        step="workitem_monitoring",
                        message="AutoCAD processing complete",
                        percent=100,
                        elapsed_seconds=elapsed,
                    ),
                )
                return MonitorResult(work_item_id=work_item_id, status=status.status, report=report)

            snippet = report[:REPORT_SNIPPET_CHARS] if report else "No report available"
            LOGGER.error(
                "work item failed",
                extra={"work_item_id": work_item_id, "status": status.status},
            )
            raise JobFailedError(
                f"WorkItem failed with status: {status.status}. Report: {snippet}",
                work_item_id=work_item_id,
                status=status.status,
                report=report[:REPORT_SNIPPET_CHARS] if report else None,
            )

        raise JobTimeoutError(
            f"WorkItem processing timeout ({self._settings.processing_timeout_minutes:g} minutes)",
            work_item_id=work_item_id,
            attempts=max_attempts,
        )

    async def fetch_status(self, work_item_id: str) -> WorkItemStatus:
        token = await self._credentials.access_token()
        url = f"{self._settings.da_base_url}/workitems/{path_segment(work_item_id)}"
        try:
            response = await self._get(url, headers=bearer(token))
        except httpx.HTTPError as exc:
            raise JobError(
                f"Failed to get WorkItem status: {exc}", work_item_id=work_item_id
            ) from exc
        ensure_success(
            response, JobError, "Failed to get WorkItem status", work_item_id=work_item_id
        )
        try:
            return WorkItemStatus.model_validate(response.json())
        except ValueError as exc:
            raise JobError(
                "Malformed WorkItem status response",
                work_item_id=work_item_id,
                body=response.text,
            ) from exc

    async def fetch_report(self, report_url: str | None) -> str | None:
        """Fetch the execution report; unavailability is not an error."""

        if not report_url:
            return None
        try:
            response = await self._get(report_url)
        except httpx.HTTPError as exc:
            LOGGER.warning("report fetch failed", exc_info=exc)
            return None
        if not response.is_success:
            LOGGER.warning("report unavailable", extra={"status_code": response.status_code})
            return None
        return response.text

    @transient_retry
    async def _get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        return await self._client.get(url, headers=headers)
