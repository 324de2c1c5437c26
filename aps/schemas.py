"""Data shapes exchanged between the pipeline components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from app.bus import ProcessingLogEntry

FileRole = Literal["script", "image", "output"]

PENDING_STATUSES = frozenset({"pending", "inprogress"})
SUCCESS_STATUS = "success"


@dataclass(slots=True, frozen=True)
class Credential:
    """Bearer token plus the instant after which it must not be handed out."""

    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(slots=True, frozen=True)
class StagedFile:
    """A file finalized in a staging bucket."""

    local_name: str
    bucket_key: str
    size: int
    download_url: str
    role: FileRole
    index: int | None = None
    original_name: str | None = None


@dataclass(slots=True, frozen=True)
class WorkItemHandle:
    """Represents the initial response after submitting a work item."""

    work_item_id: str
    status: str
    output_name: str
    output_url: str


class WorkItemStatus(BaseModel):
    """Status payload returned by the Design Automation executor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    status: str
    progress: str | None = None
    report_url: str | None = Field(default=None, alias="reportUrl")

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


@dataclass(slots=True, frozen=True)
class MonitorResult:
    work_item_id: str
    status: str
    report: str | None = None


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    """A progress notification for UI layers.

    ``percent`` is ``None`` when the executor gives no usable figure, which
    callers should render as an indeterminate indicator.
    """

    step: str
    message: str
    detail: str | None = None
    percent: int | None = None
    elapsed_seconds: float | None = None

    @property
    def indeterminate(self) -> bool:
        return self.percent is None


ProgressCallback = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]


@dataclass(slots=True, frozen=True)
class ViewerHandle:
    urn: str
    expires_at: datetime


class JobResult(BaseModel):
    """Terminal value of one orchestration run."""

    success: bool
    tile_name: str
    work_item_id: str = ""
    dwg_url: str = ""
    dwg_bytes: bytes | None = Field(default=None, exclude=True, repr=False)
    viewer_urn: str | None = None
    processing_logs: list[ProcessingLogEntry] = Field(default_factory=list)
    work_item_report: str | None = None
    message: str = ""
    errors: list[str] = Field(default_factory=list)

    @property
    def size(self) -> int | None:
        return len(self.dwg_bytes) if self.dwg_bytes is not None else None

    def summary(self) -> dict[str, Any]:
        """Return a serialisable representation without the log or payload."""

        return self.model_dump(mode="json", exclude={"processing_logs", "work_item_report"})
