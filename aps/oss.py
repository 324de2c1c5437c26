"""APS Object Storage Service staging area.

Handles temporary buckets, the three-step direct-to-S3 upload protocol and
signed URLs for Design Automation.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Sequence
from typing import Any

import httpx

from app.bus import emit
from app.errors import StagingError, UploadError
from app.settings import ApsSettings

from .auth import CredentialCache
from .http import bearer, ensure_success, path_segment
from .schemas import FileRole, StagedFile

LOGGER = logging.getLogger("tilecad.aps.oss")

SCRIPT_OBJECT_NAME = "script.scr"
_NAME_ALPHABET = string.ascii_lowercase + string.digits


def output_object_name(tile_name: str) -> str:
    return f"{tile_name}.dwg"


def generate_bucket_name(prefix: str) -> str:
    """Return ``<prefix>-<epoch millis>-<8 random chars>``."""

    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(8))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class OssStagingArea:
    """Temporary storage for one run's inputs and output."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials

    def _bucket_url(self, bucket: str) -> str:
        return f"{self._settings.oss_base_url}/buckets/{path_segment(bucket)}"

    def _object_url(self, bucket: str, name: str) -> str:
        return f"{self._bucket_url(bucket)}/objects/{path_segment(name)}"

    async def create_bucket(self, *, bucket_key: str | None = None) -> str:
        """Create a uniquely named transient bucket.

        Name collisions are retried with a fresh name. An explicit
        ``bucket_key`` is attempted once.
        """

        attempts = 1 if bucket_key else self._settings.bucket_create_attempts
        for _ in range(attempts):
            name = bucket_key or generate_bucket_name(self._settings.bucket_prefix)
            response = await self._post_bucket(name)
            if response.status_code == 409:
                LOGGER.info("bucket name collision", extra={"bucket": name})
                emit("bucket_collision", "info", bucketName=name)
                continue
            ensure_success(response, StagingError, "Bucket creation failed")
            return name
        raise StagingError(f"Bucket creation failed after {attempts} name collisions", status_code=409)

    async def bucket_exists(self, bucket: str) -> bool:
        token = await self._credentials.access_token()
        try:
            response = await self._client.get(
                f"{self._bucket_url(bucket)}/details", headers=bearer(token)
            )
        except httpx.HTTPError as exc:
            raise StagingError(f"Bucket lookup failed: {exc}") from exc
        if response.status_code == 404:
            return False
        ensure_success(response, StagingError, "Bucket lookup failed")
        return True

    async def upload(
        self,
        bucket: str,
        name: str,
        data: bytes,
        *,
        role: FileRole,
        index: int | None = None,
        original_name: str | None = None,
    ) -> StagedFile:
        """Upload ``data`` and return the finalized file with a signed read URL."""

        try:
            object_id, size = await self.put_object(bucket, name, data)
            download_url = await self._signed_url(bucket, name, access=None)
        except UploadError:
            raise
        except (StagingError, httpx.HTTPError) as exc:
            raise UploadError(f"Upload of {name} failed: {exc}", file_name=name) from exc

        LOGGER.debug("object staged", extra={"bucket": bucket, "object": name, "id": object_id})
        return StagedFile(
            local_name=name,
            bucket_key=bucket,
            size=size,
            download_url=download_url,
            role=role,
            index=index,
            original_name=original_name,
        )

    async def put_object(self, bucket: str, name: str, data: bytes) -> tuple[str, int]:
        """Run the signed S3 upload protocol; returns ``(object_id, size)``."""

        token = await self._credentials.access_token()
        upload_endpoint = f"{self._object_url(bucket, name)}/signeds3upload"
        try:
            slot = await self._client.get(
                upload_endpoint, params={"parts": 1}, headers=bearer(token)
            )
            ensure_success(slot, UploadError, f"Failed to get signed upload URL for {name}", file_name=name)
            slot_data = slot.json()
            upload_key = slot_data["uploadKey"]
            urls = slot_data.get("urls") or []
            if not urls:
                raise UploadError(f"No upload URL returned for {name}", file_name=name)

            transfer = await self._client.put(
                urls[0],
                content=data,
                headers={"Content-Type": "application/octet-stream"},
            )
            ensure_success(transfer, UploadError, f"S3 upload of {name} failed", file_name=name)
            etag = transfer.headers.get("etag", "")

            complete = await self._client.post(
                upload_endpoint,
                json={"uploadKey": upload_key, "parts": [{"partNumber": 1, "etag": etag}]},
                headers=bearer(token, json_body=True),
            )
            ensure_success(complete, UploadError, f"Failed to complete upload of {name}", file_name=name)
            completed = complete.json()
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload of {name} failed: {exc}", file_name=name) from exc
        except (KeyError, ValueError, TypeError) as exc:
            raise UploadError(f"Malformed upload response for {name}", file_name=name) from exc

        return completed.get("objectId", f"{bucket}/{name}"), int(completed.get("size", len(data)))

    async def upload_all(
        self,
        bucket: str,
        script: str | bytes,
        images: Sequence[tuple[str, bytes]],
        *,
        output_name: str | None = None,
    ) -> list[StagedFile]:
        """Upload the script and every image; any failure fails the batch.

        Image names may not reuse the script key or ``output_name``.
        """

        reserved = {SCRIPT_OBJECT_NAME, output_name}
        for filename, _ in images:
            if filename in reserved:
                raise UploadError(f"Image name {filename} is reserved for a staged object", file_name=filename)

        script_bytes = script.encode("utf-8") if isinstance(script, str) else script
        staged_script = await self.upload(bucket, SCRIPT_OBJECT_NAME, script_bytes, role="script")

        semaphore = asyncio.Semaphore(self._settings.upload_concurrency)

        async def upload_image(position: int, filename: str, data: bytes) -> StagedFile:
            async with semaphore:
                return await self.upload(
                    bucket,
                    filename,
                    data,
                    role="image",
                    index=position,
                    original_name=filename,
                )

        tasks = [
            asyncio.ensure_future(upload_image(position, filename, data))
            for position, (filename, data) in enumerate(images, start=1)
        ]
        try:
            staged_images = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [staged_script, *staged_images]

    async def output_url(self, bucket: str, name: str, minutes: int | None = None) -> str:
        """Signed URL the executor can PUT to and we can later GET from."""

        return await self._signed_url(bucket, name, access="readwrite", minutes=minutes)

    async def delete_bucket(self, bucket: str) -> None:
        """Delete every object in ``bucket`` and then the bucket itself."""

        token = await self._credentials.access_token()
        try:
            listing = await self._client.get(f"{self._bucket_url(bucket)}/objects", headers=bearer(token))
            if listing.status_code == 404:
                return
            ensure_success(listing, StagingError, "Failed to list bucket objects")
            for item in self._items(listing.json()):
                key = item.get("objectKey")
                if not key:
                    continue
                deleted = await self._client.delete(self._object_url(bucket, key), headers=bearer(token))
                if not deleted.is_success and deleted.status_code != 404:
                    LOGGER.warning(
                        "object deletion warning",
                        extra={"bucket": bucket, "object": key, "status_code": deleted.status_code},
                    )
            response = await self._client.delete(self._bucket_url(bucket), headers=bearer(token))
        except httpx.HTTPError as exc:
            raise StagingError(f"Bucket deletion failed: {exc}") from exc
        if response.status_code == 404:
            return
        ensure_success(response, StagingError, "Bucket deletion failed")

    async def create_transient_bucket(self, bucket: str) -> None:
        response = await self._post_bucket(bucket)
        if response.status_code == 409:
            return
        ensure_success(response, StagingError, "Bucket creation failed")

    async def _post_bucket(self, name: str) -> httpx.Response:
        token = await self._credentials.access_token()
        headers = bearer(token, json_body=True)
        headers["x-ads-region"] = self._settings.region
        try:
            return await self._client.post(
                f"{self._settings.oss_base_url}/buckets",
                json={"bucketKey": name, "policyKey": self._settings.bucket_policy},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise StagingError(f"Bucket creation failed: {exc}") from exc

    async def _signed_url(
        self,
        bucket: str,
        name: str,
        *,
        access: str | None,
        minutes: int | None = None,
    ) -> str:
        token = await self._credentials.access_token()
        params = {"access": access} if access else None
        try:
            response = await self._client.post(
                f"{self._object_url(bucket, name)}/signed",
                params=params,
                json={"minutesExpiration": minutes or self._settings.signed_url_minutes},
                headers=bearer(token, json_body=True),
            )
            ensure_success(response, StagingError, "Failed to generate signed URL")
            return response.json()["signedUrl"]
        except httpx.HTTPError as exc:
            raise StagingError(f"Failed to generate signed URL: {exc}") from exc
        except (KeyError, ValueError, TypeError) as exc:
            raise StagingError(f"Malformed signed URL response for {name}") from exc

    @staticmethod
    def _items(payload: Any) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []
