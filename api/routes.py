"""Tile job routes."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response, status
from fastapi.responses import FileResponse

from app.errors import NotFoundError
from aps.oss import SCRIPT_OBJECT_NAME, output_object_name

from .dependencies import CredentialsDep, QueueDep, SettingsDep
from .queue import RedisQueue
from .schemas import (
    ApsHealthResponse,
    HealthResponse,
    JobEvents,
    JobStatus,
    TileJobRequest,
    TileJobResponse,
)

router = APIRouter()

DWG_MEDIA_TYPE = "application/acad"


def _known_job(queue: RedisQueue, job_id: UUID) -> JobStatus:
    job = queue.get_status(job_id)
    if job is None:
        raise NotFoundError(f"job {job_id} not found")
    return job


@router.get("/healthz", response_model=HealthResponse, tags=["system"])
async def healthz(settings: SettingsDep) -> HealthResponse:
    return HealthResponse(service=settings.service_name)


@router.get("/healthz/aps", response_model=ApsHealthResponse, tags=["system"])
async def aps_health(credentials: CredentialsDep) -> ApsHealthResponse:
    """Fetch a token to confirm the APS credentials are accepted."""

    ok, message = await credentials.check()
    if not ok:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)
    return ApsHealthResponse(authenticated=True, message=message)


@router.post(
    "/tiles/jobs",
    response_model=TileJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["tiles"],
)
async def submit_tile_job(
    request: TileJobRequest, queue: QueueDep, settings: SettingsDep
) -> TileJobResponse:
    """Queue a tile script and its images for DWG generation."""

    if len(request.images) > settings.max_images:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"at most {settings.max_images} images per tile",
        )
    filenames = [image.filename for image in request.images]
    if len(set(filenames)) != len(filenames):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="image filenames must be unique",
        )
    reserved = sorted({SCRIPT_OBJECT_NAME, output_object_name(request.tile_name)}.intersection(filenames))
    if reserved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"image filenames reserved for staged objects: {', '.join(reserved)}",
        )

    job = TileJobResponse(tile_name=request.tile_name)
    queue.enqueue(job, request.model_dump())
    return job


@router.get("/tiles/jobs/{job_id}", response_model=JobStatus, tags=["tiles"])
async def tile_job_status(job_id: UUID, queue: QueueDep) -> JobStatus:
    return _known_job(queue, job_id)


@router.get("/tiles/jobs/{job_id}/events", response_model=JobEvents, tags=["tiles"])
async def tile_job_events(
    job_id: UUID,
    queue: QueueDep,
    since: Annotated[int, Query(ge=0)] = 0,
) -> JobEvents:
    """Progress messages from offset ``since``; poll again with ``next_offset``."""

    job = _known_job(queue, job_id)
    messages = queue.get_messages(job_id, since)
    return JobEvents(
        job_id=job_id,
        status=job.status,
        messages=messages,
        next_offset=since + len(messages),
    )


@router.get("/tiles/jobs/{job_id}/artifact", tags=["tiles"])
async def tile_job_artifact(job_id: UUID, queue: QueueDep) -> Response:
    job = _known_job(queue, job_id)
    if job.status != "completed" or not job.artifact_path:
        raise HTTPException(status_code=404, detail=f"no DWG for job in state {job.status}")
    dwg = Path(job.artifact_path)
    if not dwg.is_file():
        raise HTTPException(status_code=404, detail="DWG file is no longer on disk")
    return FileResponse(
        dwg,
        filename=dwg.name,
        media_type=DWG_MEDIA_TYPE,
        headers={
            "x-job-id": str(job_id),
            "x-work-item-id": job.work_item_id or "",
            "x-finished-at": job.updated_at.isoformat(),
        },
    )
