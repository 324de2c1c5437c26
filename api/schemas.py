"""Pydantic models shared by API components."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

JobState = Literal["queued", "processing", "completed", "failed"]


class TileImage(BaseModel):
    """One image referenced by the tile script."""

    filename: str = Field(..., description="Name the script refers to")
    content: str = Field(..., description="Base64-encoded image bytes")

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("filename must not be empty")
        if "/" in trimmed or "\\" in trimmed:
            raise ValueError("filename must not contain path separators")
        return trimmed

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("content must be valid base64") from exc
        return value

    def decode(self) -> bytes:
        return base64.b64decode(self.content)

    model_config = {"extra": "forbid"}


class TileJobRequest(BaseModel):
    """Request to render one tile drawing."""

    tile_name: str = Field(..., description="Tile name, used as the DWG file name")
    script: str = Field(..., description="AutoCAD script text")
    images: list[TileImage] = Field(default_factory=list)

    @field_validator("tile_name", "script")
    @classmethod
    def require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("tile_name")
    @classmethod
    def validate_tile_name(cls, value: str) -> str:
        trimmed = value.strip()
        if "/" in trimmed or "\\" in trimmed:
            raise ValueError("tile_name must not contain path separators")
        return trimmed

    model_config = {"extra": "forbid"}


class TileJobResponse(BaseModel):
    """Response returned after a job is enqueued."""

    job_id: UUID = Field(default_factory=uuid4)
    status: JobState = "queued"
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    tile_name: str


class ProgressMessage(BaseModel):
    """A progress line pushed by the worker."""

    timestamp: datetime
    step: str
    message: str
    detail: str | None = None
    percent: int | None = None


class JobStatus(BaseModel):
    """Describes the runtime state of a job."""

    job_id: UUID
    status: JobState
    tile_name: str
    submitted_at: datetime
    updated_at: datetime
    message: str | None = None
    artifact_path: str | None = None
    dwg_url: str | None = None
    work_item_id: str | None = None
    viewer_urn: str | None = None
    errors: list[str] = Field(default_factory=list)


class JobEvents(BaseModel):
    job_id: UUID
    status: JobState
    messages: list[ProgressMessage]
    next_offset: int


class HealthResponse(BaseModel):
    """Simple health status payload."""

    status: Literal["ok"] = "ok"
    service: str
    time: datetime = Field(default_factory=datetime.utcnow)


class ApsHealthResponse(BaseModel):
    """Outcome of an APS authentication round trip."""

    authenticated: bool
    message: str
    time: datetime = Field(default_factory=datetime.utcnow)
