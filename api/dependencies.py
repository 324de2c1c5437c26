"""Request-scoped dependencies for the tile API."""

from typing import Annotated

import redis
from fastapi import Depends, Request

from app.settings import get_settings as get_aps_settings
from aps.auth import CredentialCache

from .config import Settings
from .queue import RedisQueue


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was created with."""
    return request.app.state.settings


def get_redis(request: Request) -> redis.Redis:
    client = getattr(request.app.state, "redis_client", None)
    if client is None:
        raise RuntimeError("redis connection is opened by the app lifespan; it has not started")
    return client


def get_credentials(request: Request) -> CredentialCache:
    credentials = getattr(request.app.state, "credentials", None)
    if credentials is None:
        credentials = CredentialCache(get_aps_settings())
        request.app.state.credentials = credentials
    return credentials


def get_queue(
    redis_client: Annotated[redis.Redis, Depends(get_redis)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> RedisQueue:
    return RedisQueue(redis_client, settings)


QueueDep = Annotated[RedisQueue, Depends(get_queue)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
CredentialsDep = Annotated[CredentialCache, Depends(get_credentials)]
