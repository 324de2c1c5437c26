"""Small helpers shared by the APS REST clients."""

from __future__ import annotations

from urllib.parse import quote

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.errors import TileCadError

# Only idempotent reads are retried; writes surface the first failure.
transient_retry = retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def bearer(token: str, *, json_body: bool = False) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if json_body:
        headers["Content-Type"] = "application/json"
    return headers


def path_segment(value: str) -> str:
    return quote(value, safe="")


def ensure_success(
    response: httpx.Response,
    error_cls: type[TileCadError],
    message: str,
    **extra: object,
) -> httpx.Response:
    """Raise ``error_cls`` carrying the status and raw body for non-2xx responses."""

    if response.is_success:
        return response
    body = response.text
    raise error_cls(
        f"{message} ({response.status_code}): {body}",
        status_code=response.status_code,
        body=body,
        **extra,
    )
