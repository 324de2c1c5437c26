"""APS Design Automation pipeline for tile drawings."""

from __future__ import annotations

from .activities import ActivityManager, build_activity_spec
from .auth import CredentialCache
from .orchestrator import TileOrchestrator
from .oss import OssStagingArea
from .schemas import (
    Credential,
    JobResult,
    MonitorResult,
    ProgressUpdate,
    StagedFile,
    ViewerHandle,
    WorkItemHandle,
    WorkItemStatus,
)
from .viewer import ApsViewerPreparer, ViewerPreparer
from .workitems import WorkItemMonitor, WorkItemSubmitter, map_image_arguments, parse_progress

__all__ = [
    "ActivityManager",
    "ApsViewerPreparer",
    "Credential",
    "CredentialCache",
    "JobResult",
    "MonitorResult",
    "OssStagingArea",
    "ProgressUpdate",
    "StagedFile",
    "TileOrchestrator",
    "ViewerHandle",
    "ViewerPreparer",
    "WorkItemHandle",
    "WorkItemMonitor",
    "WorkItemStatus",
    "WorkItemSubmitter",
    "build_activity_spec",
    "map_image_arguments",
    "parse_progress",
]
