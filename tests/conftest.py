import json
import sys
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.settings import ApsSettings  # noqa: E402
from aps.auth import CredentialCache  # noqa: E402

API_HOST = "developer.api.autodesk.com"
S3_HOST = "s3.fake"
REPORT_HOST = "reports.fake"
DA_PREFIX = "/da/us-east/v3/"
OSS_PREFIX = "/oss/v2/"
DERIVATIVE_PATH = "/modelderivative/v2/regions/eu/designdata/job"


def make_settings(**overrides: Any) -> ApsSettings:
    values: dict[str, Any] = {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "enable_viewer_prep": False,
    }
    values.update(overrides)
    return ApsSettings(**values)


class FakeAps:
    """In-memory stand-in for the identity, DA, OSS and derivative services.

    ``failures`` maps a route name to the status code that route should
    return. Every handled request is appended to ``calls`` as
    ``(route, detail)``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, int] = {}
        self.fail_uploads: set[str] = set()
        self.token_requests = 0
        self.expires_in = 3600
        self.activity_conflicts = 0
        self.activity: dict[str, Any] | None = None
        self.activity_version = 0
        self.bucket_collisions = 0
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.deleted_buckets: list[str] = []
        self.signed_requests: list[tuple[str, str, str | None]] = []
        self.submitted: list[dict[str, Any]] = []
        self.statuses: list[dict[str, Any]] = [{"status": "success"}]
        self.status_polls = 0
        self.report_text = "execution report"
        self.output_bytes = b"AC1032-fake-dwg"
        self.translations: list[tuple[dict[str, Any], httpx.Headers]] = []

    # helpers

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def credentials(self, settings: ApsSettings) -> CredentialCache:
        return CredentialCache(settings, transport=self.transport)

    def count(self, route: str) -> int:
        return sum(1 for name, _ in self.calls if name == route)

    def routes(self) -> list[str]:
        return [name for name, _ in self.calls]

    # dispatch

    def handler(self, request: httpx.Request) -> httpx.Response:
        route, args = self._resolve(request)
        self.calls.append((route, "/".join(args)))
        failure = self.failures.get(route)
        if failure is not None:
            return httpx.Response(failure, text=f"{route} failed")
        return getattr(self, f"_{route}")(request, *args)

    def _resolve(self, request: httpx.Request) -> tuple[str, list[str]]:
        host = request.url.host
        path = request.url.path
        method = request.method
        if host == S3_HOST:
            parts = path.strip("/").split("/")
            if parts[0] == "upload":
                if parts[2] in self.fail_uploads:
                    return "s3_put_rejected", parts[1:]
                return "s3_put", parts[1:]
            return "download", parts[1:]
        if host == REPORT_HOST:
            return "report", []
        if path == "/authentication/v2/token":
            return "token", []
        if path == DERIVATIVE_PATH:
            return "translate", []
        if path.startswith(DA_PREFIX):
            parts = path[len(DA_PREFIX):].split("/")
            if parts == ["activities"]:
                return "activity_create", []
            if parts[0] == "activities" and len(parts) == 3:
                return "alias", [parts[1]]
            if parts[0] == "activities":
                return ("activity_delete" if method == "DELETE" else "activity_get"), [parts[1]]
            if parts == ["workitems"]:
                return "workitem_create", []
            return "workitem_get", [parts[1]]
        if path.startswith(OSS_PREFIX):
            parts = path[len(OSS_PREFIX):].split("/")
            if parts == ["buckets"]:
                return "bucket_create", []
            bucket = parts[1]
            if len(parts) == 2:
                return "bucket_delete", [bucket]
            if parts[2] == "details":
                return "bucket_details", [bucket]
            if len(parts) == 3:
                return "objects_list", [bucket]
            key = parts[3]
            if len(parts) == 4:
                return "object_delete", [bucket, key]
            if parts[4] == "signeds3upload":
                name = "upload_start" if method == "GET" else "upload_complete"
                return name, [bucket, key]
            return "signed", [bucket, key]
        raise AssertionError(f"unexpected request {method} {request.url}")

    # identity

    def _token(self, request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"].startswith("Basic ")
        form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
        assert form["grant_type"] == "client_credentials"
        self.token_requests += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"token-{self.token_requests}",
                "token_type": "Bearer",
                "expires_in": self.expires_in,
            },
        )

    # design automation

    def _activity_create(self, request: httpx.Request) -> httpx.Response:
        if self.activity_conflicts:
            self.activity_conflicts -= 1
            return httpx.Response(409, json={"diagnostic": "activity already exists"})
        self.activity = json.loads(request.content)
        self.activity_version += 1
        return httpx.Response(200, json={"id": self.activity["id"], "version": self.activity_version})

    def _alias(self, request: httpx.Request, activity: str) -> httpx.Response:
        return httpx.Response(200, json=json.loads(request.content))

    def _activity_get(self, request: httpx.Request, activity_id: str) -> httpx.Response:
        if self.activity is None:
            return httpx.Response(404, text="no such activity")
        return httpx.Response(200, json={"id": activity_id, "parameters": self.activity["parameters"]})

    def _activity_delete(self, request: httpx.Request, activity: str) -> httpx.Response:
        self.activity = None
        return httpx.Response(204)

    def _workitem_create(self, request: httpx.Request) -> httpx.Response:
        self.submitted.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "wi-1", "status": "pending"})

    def _workitem_get(self, request: httpx.Request, work_item_id: str) -> httpx.Response:
        self.status_polls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        payload = {"id": work_item_id, **status}
        if status["status"] not in ("pending", "inprogress"):
            payload.setdefault("reportUrl", f"https://{REPORT_HOST}/{work_item_id}.txt")
        return httpx.Response(200, json=payload)

    def _report(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=self.report_text)

    # object storage

    def _bucket_create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.headers["x-ads-region"]
        if self.bucket_collisions:
            self.bucket_collisions -= 1
            return httpx.Response(409, json={"reason": "Bucket already exists"})
        if body["bucketKey"] in self.buckets:
            return httpx.Response(409, json={"reason": "Bucket already exists"})
        self.buckets[body["bucketKey"]] = {}
        return httpx.Response(200, json={"bucketKey": body["bucketKey"], "policyKey": body["policyKey"]})

    def _bucket_details(self, request: httpx.Request, bucket: str) -> httpx.Response:
        if bucket not in self.buckets:
            return httpx.Response(404, json={"reason": "Bucket not found"})
        return httpx.Response(200, json={"bucketKey": bucket})

    def _objects_list(self, request: httpx.Request, bucket: str) -> httpx.Response:
        if bucket not in self.buckets:
            return httpx.Response(404, json={"reason": "Bucket not found"})
        return httpx.Response(200, json={"items": [{"objectKey": key} for key in self.buckets[bucket]]})

    def _object_delete(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        self.buckets.get(bucket, {}).pop(key, None)
        return httpx.Response(200)

    def _bucket_delete(self, request: httpx.Request, bucket: str) -> httpx.Response:
        if self.buckets.pop(bucket, None) is None:
            return httpx.Response(404, json={"reason": "Bucket not found"})
        self.deleted_buckets.append(bucket)
        return httpx.Response(200)

    def _upload_start(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        assert request.url.params["parts"] == "1"
        return httpx.Response(
            200,
            json={"uploadKey": f"uk-{key}", "urls": [f"https://{S3_HOST}/upload/{bucket}/{key}"]},
        )

    def _s3_put(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        self.buckets.setdefault(bucket, {})[key] = request.content
        return httpx.Response(200, headers={"etag": f'"etag-{key}"'})

    def _s3_put_rejected(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        return httpx.Response(500, text="slow down")

    def _upload_complete(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        body = json.loads(request.content)
        assert body["uploadKey"] == f"uk-{key}"
        assert body["parts"] == [{"partNumber": 1, "etag": f'"etag-{key}"'}]
        data = self.buckets.get(bucket, {}).get(key, b"")
        return httpx.Response(
            200,
            json={
                "bucketKey": bucket,
                "objectKey": key,
                "objectId": f"urn:adsk.objects:os.object:{bucket}/{key}",
                "size": len(data),
            },
        )

    def _signed(self, request: httpx.Request, bucket: str, key: str) -> httpx.Response:
        access = request.url.params.get("access")
        self.signed_requests.append((bucket, key, access))
        suffix = f"?access={access}" if access else ""
        return httpx.Response(200, json={"signedUrl": f"https://{S3_HOST}/signed/{bucket}/{key}{suffix}"})

    def _download(self, request: httpx.Request, *parts: str) -> httpx.Response:
        return httpx.Response(200, content=self.output_bytes)

    # model derivative

    def _translate(self, request: httpx.Request) -> httpx.Response:
        self.translations.append((json.loads(request.content), request.headers))
        return httpx.Response(201, json={"result": "created"})


@pytest.fixture
def fake_aps() -> FakeAps:
    return FakeAps()


@pytest.fixture
def settings() -> ApsSettings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., ApsSettings]:
    return make_settings
