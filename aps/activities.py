"""Design Automation activity management.

Activities define the contract for work items: engine, command line and the
declared input/output parameters. One activity is created per run with
exactly as many image parameters as the run has images.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.bus import emit
from app.errors import ProvisionError
from app.settings import ApsSettings

from .auth import CredentialCache
from .http import bearer, ensure_success, path_segment, transient_retry

LOGGER = logging.getLogger("tilecad.aps.activities")

SCRIPT_PARAMETER = "script"
COMMAND_LINE = r'$(engine.path)\accoreconsole.exe /s "$(args[script].path)"'


def image_parameter(index: int) -> str:
    return f"image{index}"


def build_activity_spec(settings: ApsSettings, image_count: int) -> dict[str, Any]:
    """Return the activity document with ``image_count`` image slots."""

    if image_count < 0:
        raise ValueError("image_count must not be negative")

    parameters: dict[str, Any] = {
        SCRIPT_PARAMETER: {
            "verb": "get",
            "description": "AutoCAD script file to execute",
            "required": True,
            "localName": "script.scr",
        },
        settings.output_parameter: {
            "verb": "put",
            "description": "Output DWG file",
            "required": True,
            "localName": "Tile.dwg",
        },
    }
    for index in range(1, image_count + 1):
        parameters[image_parameter(index)] = {
            "verb": "get",
            "description": f"Image {index}",
            "required": False,
            "localName": f"image{index}.png",
        }

    return {
        "id": settings.activity_name,
        "engine": settings.engine_version,
        "commandLine": [COMMAND_LINE],
        "parameters": parameters,
        "description": f"Dynamic tile activity with {image_count} images",
    }


class ActivityManager:
    """Creates, introspects and releases the per-run activity."""

    def __init__(
        self,
        settings: ApsSettings,
        client: httpx.AsyncClient,
        credentials: CredentialCache,
    ) -> None:
        self._settings = settings
        self._client = client
        self._credentials = credentials

    @property
    def activity_id(self) -> str:
        return self._settings.activity_id

    @property
    def _activities_url(self) -> str:
        return f"{self._settings.da_base_url}/activities"

    @property
    def _activity_url(self) -> str:
        return f"{self._activities_url}/{path_segment(self._settings.activity_name)}"

    async def ensure_activity(self, image_count: int) -> int:
        """Create the activity sized to ``image_count`` and alias it.

        A name conflict deletes the existing activity with all its aliases and
        versions, then retries creation once.
        """

        spec = build_activity_spec(self._settings, image_count)
        response = await self._create(spec)

        if response.status_code == 409:
            emit("activity_conflict", "info", activity=self._settings.activity_name)
            LOGGER.info(
                "activity exists, recreating",
                extra={"activity": self._settings.activity_name},
            )
            await self.release()
            response = await self._create(spec)
            if response.status_code == 409:
                raise ProvisionError(
                    f"Activity {self._settings.activity_name} still exists after delete",
                    status_code=409,
                    body=response.text,
                )
            ensure_success(response, ProvisionError, "Failed to recreate activity")
        else:
            ensure_success(response, ProvisionError, "Failed to create activity")

        version = self._version_of(response)
        await self._create_alias(version)
        return version

    async def get_parameter_names(self) -> list[str] | None:
        """Return the declared image parameter names, or ``None`` if unavailable."""

        url = f"{self._activities_url}/{path_segment(self.activity_id)}"
        try:
            token = await self._credentials.access_token()
            response = await self._get(url, token)
        except Exception as exc:
            LOGGER.warning("activity introspection failed", exc_info=exc)
            return None
        if not response.is_success:
            LOGGER.warning(
                "activity introspection rejected",
                extra={"status_code": response.status_code},
            )
            return None
        try:
            parameters = response.json().get("parameters")
        except (ValueError, AttributeError):
            return None
        if not isinstance(parameters, dict):
            return None
        fixed = {SCRIPT_PARAMETER, self._settings.output_parameter}
        return [name for name in parameters if name not in fixed]

    async def release(self) -> bool:
        """Delete the activity; failures are logged and never raised."""

        try:
            return await self._delete()
        except Exception as exc:
            LOGGER.warning("activity cleanup error", exc_info=exc)
            return False

    async def _create(self, spec: dict[str, Any]) -> httpx.Response:
        token = await self._credentials.access_token()
        try:
            return await self._client.post(
                self._activities_url, json=spec, headers=bearer(token, json_body=True)
            )
        except httpx.HTTPError as exc:
            raise ProvisionError(f"Activity request failed: {exc}") from exc

    async def _create_alias(self, version: int) -> None:
        token = await self._credentials.access_token()
        try:
            response = await self._client.post(
                f"{self._activity_url}/aliases",
                json={"id": self._settings.activity_alias, "version": version},
                headers=bearer(token, json_body=True),
            )
        except httpx.HTTPError as exc:
            raise ProvisionError(f"Alias request failed: {exc}") from exc
        if response.status_code == 409:
            return
        ensure_success(response, ProvisionError, "Failed to create activity alias")

    async def _delete(self) -> bool:
        token = await self._credentials.access_token()
        response = await self._client.delete(self._activity_url, headers=bearer(token))
        if response.is_success or response.status_code == 404:
            return True
        LOGGER.warning(
            "activity deletion warning",
            extra={"status_code": response.status_code},
        )
        return False

    @transient_retry
    async def _get(self, url: str, token: str) -> httpx.Response:
        return await self._client.get(url, headers=bearer(token))

    @staticmethod
    def _version_of(response: httpx.Response) -> int:
        try:
            return int(response.json().get("version", 1))
        except (ValueError, AttributeError, TypeError):
            return 1
