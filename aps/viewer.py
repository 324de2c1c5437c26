"""Viewer preparation: stage the DWG for the web viewer and start translation."""

from __future__ import annotations

import base64
import io
import logging
import time
import zipfile
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import httpx

from app.errors import StagingError, UploadError, ViewerError
from app.settings import ApsSettings

from .auth import CredentialCache
from .http import bearer
from .oss import OssStagingArea
from .schemas import ViewerHandle

LOGGER = logging.getLogger("tilecad.aps.viewer")

TRANSIENT_RETENTION = timedelta(hours=24)


class ViewerPreparer(Protocol):
    async def prepare(
        self,
        file_name: str,
        data: bytes,
        images: Sequence[tuple[str, bytes]] = (),
    ) -> ViewerHandle:
        ...


def create_urn(object_id: str) -> str:
    """Unpadded base64 of the OSS object id."""

    return base64.b64encode(object_id.encode("utf-8")).decode("ascii").rstrip("=")


def bundle_with_images(file_name: str, data: bytes, images: Sequence[tuple[str, bytes]]) -> bytes:
    """Zip the drawing with its images so image references resolve in the viewer."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=5) as archive:
        archive.writestr(file_name, data)
        for image_name, image_data in images:
            archive.writestr(image_name, image_data)
    return buffer.getvalue()


class ApsViewerPreparer:
    """Uploads to a transient viewer bucket and requests an SVF2 derivative."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
        staging: OssStagingArea,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials
        self._staging = staging
        self._clock = clock

    async def prepare(
        self,
        file_name: str,
        data: bytes,
        images: Sequence[tuple[str, bytes]] = (),
    ) -> ViewerHandle:
        root_filename: str | None = None
        upload_name = file_name
        payload = data
        if images:
            payload = bundle_with_images(file_name, data, images)
            stem = file_name[:-4] if file_name.lower().endswith(".dwg") else file_name
            upload_name = f"{stem}.zip"
            root_filename = file_name
            LOGGER.info(
                "created viewer bundle",
                extra={"bundle": upload_name, "size": len(payload), "images": len(images)},
            )

        bucket = self._settings.viewer_bucket
        unique_name = f"{int(self._clock() * 1000)}-{upload_name}"
        try:
            if not await self._staging.bucket_exists(bucket):
                await self._staging.create_transient_bucket(bucket)
            object_id, _ = await self._staging.put_object(bucket, unique_name, payload)
        except (StagingError, UploadError) as exc:
            raise ViewerError(f"Viewer upload failed: {exc}") from exc

        urn = create_urn(object_id)
        await self.translate(urn, root_filename)
        expires_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc) + TRANSIENT_RETENTION
        return ViewerHandle(urn=urn, expires_at=expires_at)

    async def translate(self, urn: str, root_filename: str | None = None) -> None:
        job_input: dict[str, object] = {"urn": urn}
        if root_filename:
            job_input.update({"compressedUrn": True, "rootFilename": root_filename})
        body = {
            "input": job_input,
            "output": {"formats": [{"type": "svf2", "views": ["2d", "3d"]}]},
        }
        token = await self._credentials.access_token()
        headers = bearer(token, json_body=True)
        headers["x-ads-force"] = "true"
        try:
            response = await self._client.post(
                f"{self._settings.derivative_base_url}/designdata/job",
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ViewerError(f"Translation request failed: {exc}") from exc
        # 409: a translation for this URN is already running
        if response.is_success or response.status_code == 409:
            return
        raise ViewerError(
            f"Translation request failed ({response.status_code}): {response.text}",
            status_code=response.status_code,
            body=response.text,
        )
