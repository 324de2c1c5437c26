"""ASGI application for the tile job API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.error_handlers import install_error_handlers
from app.logging import configure_logging, log_event
from aps.auth import CredentialCache

from .config import Settings, get_settings
from .routes import router

LOGGER = logging.getLogger("tilecad.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    configure_logging(settings.log_dir, json_format=settings.log_json)
    app.state.redis_client = redis.from_url(settings.redis_url, decode_responses=False)
    log_event(LOGGER, "api_started", service=settings.service_name, prefix=settings.api_prefix)
    try:
        yield
    finally:
        app.state.redis_client.close()
        log_event(LOGGER, "api_stopped", service=settings.service_name)


def create_app(settings: Settings | None = None, credentials: CredentialCache | None = None) -> FastAPI:
    settings = settings or get_settings()
    application = FastAPI(title="tilecad", version="0.1.0", lifespan=lifespan)
    application.state.settings = settings
    application.state.credentials = credentials

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    install_error_handlers(application)
    application.include_router(router, prefix=settings.api_prefix)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_settings()
    uvicorn.run("api.main:app", host=config.host, port=config.port, log_level="info")
