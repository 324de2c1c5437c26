"""Schemas for worker job processing."""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field


class TileImagePayload(BaseModel):
    filename: str
    content: str

    def decode(self) -> bytes:
        return base64.b64decode(self.content)


class TilePayload(BaseModel):
    tile_name: str
    script: str
    images: list[TileImagePayload] = Field(default_factory=list)

    def image_pairs(self) -> list[tuple[str, bytes]]:
        return [(image.filename, image.decode()) for image in self.images]


class QueuedJob(BaseModel):
    job_id: UUID
    submitted_at: datetime
    status: Literal["queued", "processing", "completed", "failed"]
    payload: dict[str, Any] = Field(default_factory=dict)

    def tile(self) -> TilePayload:
        return TilePayload.model_validate(self.payload)


class ProcessResult(BaseModel):
    status: Literal["completed", "failed"]
    message: str
    artifact_path: str | None = None
    dwg_url: str | None = None
    work_item_id: str | None = None
    viewer_urn: str | None = None
    errors: list[str] = Field(default_factory=list)
