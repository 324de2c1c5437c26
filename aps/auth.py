"""Two-legged OAuth credential cache for APS."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from app.errors import AuthError, AuthNotConfiguredError, AuthProviderRejectedError
from app.settings import ApsSettings

from .schemas import Credential

LOGGER = logging.getLogger("tilecad.aps.auth")


class CredentialCache:
    """Obtains and caches an APS bearer token.

    One instance is shared by every run in the process. Tokens are refreshed
    ``token_refresh_margin_seconds`` before the provider's expiry, and the
    refresh branch is serialised so concurrent callers trigger one request.
    """

    def __init__(
        self,
        settings: ApsSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._clock = clock
        self._credential: Credential | None = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> Credential:
        cached = self._credential
        if cached is not None and cached.is_valid(self._clock()):
            return cached
        async with self._lock:
            cached = self._credential
            if cached is not None and cached.is_valid(self._clock()):
                return cached
            self._credential = await self._fetch()
            return self._credential

    async def access_token(self) -> str:
        credential = await self.get_token()
        return credential.token

    def clear(self) -> None:
        """Discard the cached token, forcing the next call to re-authenticate."""
        self._credential = None

    async def check(self) -> tuple[bool, str]:
        try:
            await self.get_token()
        except AuthError as exc:
            return False, str(exc)
        return True, "Authentication successful"

    async def _fetch(self) -> Credential:
        settings = self._settings
        if not settings.client_id or not settings.client_secret:
            raise AuthNotConfiguredError(
                "APS credentials not configured. Check APS_CLIENT_ID and APS_CLIENT_SECRET"
            )

        requested_at = self._clock()
        try:
            async with httpx.AsyncClient(
                timeout=settings.request_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    settings.auth_url,
                    data={
                        "grant_type": "client_credentials",
                        "scope": " ".join(settings.scopes),
                    },
                    auth=(settings.client_id, settings.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            LOGGER.error("token request failed", exc_info=exc)
            raise AuthError(f"Identity provider unreachable: {exc}") from exc

        if not response.is_success:
            LOGGER.error(
                "token request rejected",
                extra={"status_code": response.status_code},
            )
            raise AuthProviderRejectedError(
                f"Identity provider rejected credentials ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = int(payload["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthProviderRejectedError(
                "Identity provider returned malformed token response",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        expires_at = requested_at + expires_in - settings.token_refresh_margin_seconds
        LOGGER.info("token refreshed", extra={"expires_in": expires_in})
        return Credential(token=token, expires_at=expires_at)
