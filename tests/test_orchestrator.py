import asyncio

import pytest

from aps.orchestrator import TileOrchestrator
from aps.oss import OssStagingArea
from aps.schemas import ProgressUpdate
from aps.viewer import ApsViewerPreparer
from aps.workitems import WorkItemMonitor

STEPS = [
    "authentication",
    "activity_creation",
    "bucket_creation",
    "file_upload",
    "workitem_submission",
    "workitem_monitoring",
    "dwg_download",
]
IMAGES = [("logo.png", b"PNG-1"), ("photo.jpg", b"JPG-2")]


async def _no_sleep(delay: float) -> None:
    return None


def build(fake_aps, settings, client, *, sleep=_no_sleep, submitter=None) -> TileOrchestrator:
    credentials = fake_aps.credentials(settings)
    staging = OssStagingArea(settings, client, credentials)
    viewer = (
        ApsViewerPreparer(settings, client, credentials, staging)
        if settings.enable_viewer_prep
        else None
    )
    return TileOrchestrator(
        settings,
        client,
        credentials,
        staging=staging,
        monitor=WorkItemMonitor(settings, client, credentials, sleep=sleep),
        submitter=submitter,
        viewer=viewer,
    )


@pytest.mark.asyncio
async def test_successful_run_produces_dwg_and_cleans_up(fake_aps, settings) -> None:
    fake_aps.statuses = [{"status": "inprogress", "progress": "50%"}, {"status": "success"}]
    updates: list[ProgressUpdate] = []

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("ZOOM E\n", IMAGES, "T-01", updates.append)

    assert result.success
    assert result.message == "DWG generated and downloaded successfully"
    assert result.dwg_bytes == fake_aps.output_bytes
    assert result.size == len(fake_aps.output_bytes)
    assert result.work_item_id == "wi-1"
    assert result.dwg_url.endswith("/T-01.dwg?access=readwrite")
    assert result.work_item_report == "execution report"
    assert result.errors == []
    assert result.viewer_urn is None

    started = [e.step for e in result.processing_logs if e.status == "started"]
    assert started == ["tile_processing", *STEPS, "cleanup"]
    completed = [e.step for e in result.processing_logs if e.status == "completed"]
    assert completed[-4:] == ["tile_processing", "bucket_cleanup", "activity_cleanup", "cleanup"]
    monitored = next(e for e in result.processing_logs if e.step == "workitem_monitoring" and e.status == "completed")
    assert monitored.details == {"workItemStatus": "success"}

    assert list(dict.fromkeys(u.step for u in updates)) == STEPS
    assert 50 in [u.percent for u in updates]
    assert fake_aps.buckets == {}
    assert len(fake_aps.deleted_buckets) == 1
    assert fake_aps.count("activity_delete") == 1
    assert fake_aps.count("workitem_create") == 1
    assert "dwg_bytes" not in result.summary()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("route", "status", "failed_step", "bucket_created"),
    [
        ("token", 401, "authentication", False),
        ("activity_create", 500, "activity_creation", False),
        ("bucket_create", 500, "bucket_creation", False),
        ("upload_start", 500, "file_upload", True),
        ("workitem_create", 400, "workitem_submission", True),
        ("workitem_get", 500, "workitem_monitoring", True),
        ("download", 500, "dwg_download", True),
    ],
)
async def test_failure_at_each_step_still_cleans_up_once(
    fake_aps, settings, route, status, failed_step, bucket_created
) -> None:
    fake_aps.failures[route] = status

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", IMAGES, "T-02")

    assert not result.success
    assert result.message.startswith("Processing failed: ")
    assert len(result.errors) == 1

    steps = [(e.step, e.status) for e in result.processing_logs]
    assert (failed_step, "started") in steps
    assert (failed_step, "completed") not in steps
    assert ("tile_processing", "error") in steps
    assert steps.count(("cleanup", "started")) == 1
    assert steps.count(("cleanup", "completed")) == 1
    assert len(fake_aps.deleted_buckets) == (1 if bucket_created else 0)
    assert fake_aps.buckets == {}


@pytest.mark.asyncio
async def test_expired_download_url_is_reported(fake_aps, settings) -> None:
    fake_aps.failures["download"] = 403

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", [], "T-03")

    assert not result.success
    assert "DWG download URL has expired" in result.errors[0]
    assert result.work_item_id == "wi-1"


@pytest.mark.asyncio
async def test_upload_failure_never_submits(fake_aps, settings) -> None:
    fake_aps.fail_uploads.add("photo.jpg")

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", IMAGES, "T-04")

    assert not result.success
    assert "photo.jpg" in result.errors[0]
    assert fake_aps.count("workitem_create") == 0
    assert len(fake_aps.deleted_buckets) == 1


@pytest.mark.asyncio
async def test_failed_work_item_keeps_report(fake_aps, settings) -> None:
    fake_aps.statuses = [{"status": "failedInstructions"}]
    fake_aps.report_text = "error: unknown command"

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("BOGUS\n", [], "T-05")

    assert not result.success
    assert "failedInstructions" in result.errors[0]
    assert "unknown command" in result.errors[0]
    assert fake_aps.count("download") == 0


@pytest.mark.asyncio
async def test_viewer_failure_does_not_fail_the_run(fake_aps, settings_factory) -> None:
    settings = settings_factory(enable_viewer_prep=True)
    fake_aps.failures["translate"] = 500

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", IMAGES, "T-06")

    assert result.success
    assert result.viewer_urn is None
    steps = [(e.step, e.status) for e in result.processing_logs]
    assert ("viewer_prep", "error") in steps
    assert ("tile_processing", "completed") in steps


@pytest.mark.asyncio
async def test_viewer_prep_sets_urn(fake_aps, settings_factory) -> None:
    settings = settings_factory(enable_viewer_prep=True)

    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", IMAGES, "T-07")

    assert result.success
    assert result.viewer_urn
    body, _ = fake_aps.translations[0]
    assert body["input"]["rootFilename"] == "T-07.dwg"
    assert "fossapp-viewer-transient" in fake_aps.buckets


@pytest.mark.asyncio
async def test_deadline_fails_the_run_and_cleans_up(fake_aps, settings) -> None:
    fake_aps.statuses = [{"status": "pending"}]

    async def slow_sleep(delay: float) -> None:
        await asyncio.sleep(0.05)

    async with fake_aps.client() as client:
        orchestrator = build(fake_aps, settings, client, sleep=slow_sleep)
        result = await orchestrator.run("LINE\n", [], "T-08", deadline=0.2)

    assert not result.success
    assert "deadline" in result.errors[0]
    assert len(fake_aps.deleted_buckets) == 1
    assert fake_aps.count("activity_delete") == 1


@pytest.mark.asyncio
async def test_cancellation_cleans_up_then_propagates(fake_aps, settings) -> None:
    fake_aps.statuses = [{"status": "pending"}]
    polling = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        polling.set()
        await asyncio.Event().wait()

    async with fake_aps.client() as client:
        orchestrator = build(fake_aps, settings, client, sleep=blocking_sleep)
        task = asyncio.create_task(orchestrator.run("LINE\n", [], "T-09"))
        await asyncio.wait_for(polling.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert len(fake_aps.deleted_buckets) == 1
    assert fake_aps.count("activity_delete") == 1


@pytest.mark.asyncio
async def test_image_named_like_the_output_is_rejected(fake_aps, settings) -> None:
    async with fake_aps.client() as client:
        result = await build(fake_aps, settings, client).run("LINE\n", [("T-10.dwg", b"PNG")], "T-10")

    assert not result.success
    assert "T-10.dwg" in result.errors[0]
    assert fake_aps.count("workitem_create") == 0
    assert len(fake_aps.deleted_buckets) == 1


@pytest.mark.asyncio
async def test_plain_timeout_without_deadline_is_a_failure(fake_aps, settings) -> None:
    class StalledSubmitter:
        async def submit(self, bucket, staged_files, tile_name):
            raise TimeoutError("executor did not answer")

    async with fake_aps.client() as client:
        orchestrator = build(fake_aps, settings, client, submitter=StalledSubmitter())
        result = await orchestrator.run("LINE\n", [], "T-11")

    assert not result.success
    assert "executor did not answer" in result.errors[0]
    assert len(fake_aps.deleted_buckets) == 1
    assert fake_aps.count("activity_delete") == 1
