import xml.etree.ElementTree as ET
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import unquote

import httpx
import pytest
import structlog

from s3relay.core.builder import UploadSetup, create_upload_config
from s3relay.core.task_manager import TaskManager
from s3relay.factories.storage_factory import create_storage
from s3relay.models.provider import ProviderConfig, create_provider_config
from s3relay.storage.s3_storage import S3Storage

S3_NS = "http://s3.amazonaws.com/doc/2006-03-01/"
BUCKET = "test-bucket"
ENDPOINT = "http://localhost:9000"


class RecordingSigner:
    """Deterministic signer that records every call."""

    def __init__(self) -> None:
        self.presign_calls: list[dict[str, Any]] = []
        self.sign_calls: list[dict[str, Any]] = []

    def presign_url(self, method, url, credentials, region, expires_in, headers=None) -> str:
        self.presign_calls.append(
            {"method": method, "url": url, "region": region, "expires_in": expires_in, "headers": dict(headers or {})}
        )
        return f"{url}?X-Amz-Expires={expires_in}&X-Amz-Signature=test-{method.lower()}"

    def sign_request(self, method, url, credentials, region, headers=None, body=b"") -> dict[str, str]:
        self.sign_calls.append({"method": method, "url": url, "region": region, "headers": dict(headers or {})})
        signed = dict(headers or {})
        signed["Authorization"] = f"AWS4-HMAC-SHA256 Credential={credentials.access_key_id}/test"
        return signed


class FakeS3:
    """In-memory path-style bucket served through ``httpx.MockTransport``."""

    def __init__(self, bucket: str = BUCKET) -> None:
        self.bucket = bucket
        self.objects: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_delete_keys: set[str] = set()
        self.reject_put_suffixes: tuple[str, ...] = ()
        self.list_status: int = 200

    def put_object(
        self,
        key: str,
        body: bytes = b"data",
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
        last_modified: datetime | None = None,
    ) -> None:
        self.objects[key] = {
            "body": body,
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "last_modified": last_modified or datetime(2024, 1, 1, tzinfo=timezone.utc),
        }

    def requests_for(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = unquote(request.url.path)
        bucket_path = f"/{self.bucket}"
        key = path[len(bucket_path) + 1 :] if path.startswith(bucket_path + "/") else ""
        params = request.url.params

        if request.method == "GET" and params.get("list-type") == "2":
            return self._list(params)
        if request.method == "POST" and "delete" in params:
            return self._delete(request)
        if request.method == "HEAD":
            return self._head(key)
        if request.method == "PUT":
            return self._put(request, key)
        if request.method == "DELETE":
            if key not in self.objects:
                return httpx.Response(404)
            del self.objects[key]
            return httpx.Response(204)
        if request.method == "GET" and key in self.objects:
            return httpx.Response(200, content=self.objects[key]["body"])
        return self._error(404, "NoSuchKey", "The specified key does not exist.")

    def _error(self, status: int, code: str, message: str) -> httpx.Response:
        body = f"<Error><Code>{code}</Code><Message>{message}</Message></Error>"
        return httpx.Response(status, content=body.encode(), headers={"content-type": "application/xml"})

    def _head(self, key: str) -> httpx.Response:
        if not key:
            return httpx.Response(200)
        obj = self.objects.get(key)
        if obj is None:
            return httpx.Response(404)
        headers = {
            "content-length": str(len(obj["body"])),
            "content-type": obj["content_type"],
            "last-modified": format_datetime(obj["last_modified"], usegmt=True),
            "etag": '"etag-value"',
        }
        for name, value in obj["metadata"].items():
            headers[f"x-amz-meta-{name}"] = value
        return httpx.Response(200, headers=headers)

    def _put(self, request: httpx.Request, key: str) -> httpx.Response:
        copy_source = request.headers.get("x-amz-copy-source")
        if copy_source:
            source_key = unquote(copy_source).split("/", 2)[2]
            source = self.objects.get(source_key)
            if source is None:
                return self._error(404, "NoSuchKey", "The specified key does not exist.")
            metadata = {
                name[len("x-amz-meta-") :]: value
                for name, value in request.headers.items()
                if name.lower().startswith("x-amz-meta-")
            }
            self.put_object(
                key,
                body=source["body"],
                content_type=request.headers.get("content-type", source["content_type"]),
                metadata=metadata,
            )
            return httpx.Response(200, content=b"<CopyObjectResult><ETag>x</ETag></CopyObjectResult>")

        if self.reject_put_suffixes and key.endswith(self.reject_put_suffixes):
            return self._error(403, "AccessDenied", "Access Denied")
        self.put_object(key, body=request.content, content_type=request.headers.get("content-type", ""))
        return httpx.Response(200, headers={"etag": '"uploaded"'})

    def _list(self, params: httpx.QueryParams) -> httpx.Response:
        if self.list_status != 200:
            return self._error(self.list_status, "AccessDenied", "Access Denied")

        prefix = params.get("prefix", "")
        max_keys = int(params.get("max-keys", "1000"))
        start = int(params.get("continuation-token", "0"))
        delimiter = params.get("delimiter")

        keys = sorted(key for key in self.objects if key.startswith(prefix))
        contents: list[str] = []
        common_prefixes: list[str] = []
        for key in keys:
            rest = key[len(prefix) :]
            if delimiter and delimiter in rest:
                common = prefix + rest.split(delimiter, 1)[0] + delimiter
                if common not in common_prefixes:
                    common_prefixes.append(common)
            else:
                contents.append(key)

        page = contents[start : start + max_keys]
        truncated = start + max_keys < len(contents)

        root = ET.Element("ListBucketResult", xmlns=S3_NS)
        ET.SubElement(root, "Name").text = self.bucket
        ET.SubElement(root, "KeyCount").text = str(len(page))
        ET.SubElement(root, "IsTruncated").text = "true" if truncated else "false"
        if truncated:
            ET.SubElement(root, "NextContinuationToken").text = str(start + max_keys)
        for key in page:
            obj = self.objects[key]
            item = ET.SubElement(root, "Contents")
            ET.SubElement(item, "Key").text = key
            ET.SubElement(item, "LastModified").text = obj["last_modified"].strftime("%Y-%m-%dT%H:%M:%S.000Z")
            ET.SubElement(item, "ETag").text = '"etag-value"'
            ET.SubElement(item, "Size").text = str(len(obj["body"]))
        for common in common_prefixes:
            ET.SubElement(ET.SubElement(root, "CommonPrefixes"), "Prefix").text = common
        return httpx.Response(200, content=ET.tostring(root))

    def _delete(self, request: httpx.Request) -> httpx.Response:
        payload = ET.fromstring(request.content)
        keys = [
            element.text or ""
            for element in payload.iter()
            if element.tag.rsplit("}", 1)[-1] == "Key"
        ]
        root = ET.Element("DeleteResult", xmlns=S3_NS)
        for key in keys:
            if key in self.fail_delete_keys:
                error = ET.SubElement(root, "Error")
                ET.SubElement(error, "Key").text = key
                ET.SubElement(error, "Code").text = "AccessDenied"
                ET.SubElement(error, "Message").text = "Access Denied"
            else:
                self.objects.pop(key, None)
                ET.SubElement(ET.SubElement(root, "Deleted"), "Key").text = key
        return httpx.Response(200, content=ET.tostring(root))


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def signer() -> RecordingSigner:
    return RecordingSigner()


@pytest.fixture
async def http_client(fake_s3: FakeS3) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_s3.handler))
    yield client
    await client.aclose()


@pytest.fixture
def provider_config() -> ProviderConfig:
    return create_provider_config(
        "minio",
        endpoint=ENDPOINT,
        bucket=BUCKET,
        access_key_id="minioadmin",
        secret_access_key="minioadmin-secret",
    )


@pytest.fixture
def storage(provider_config: ProviderConfig, signer: RecordingSigner, http_client: httpx.AsyncClient) -> S3Storage:
    return create_storage(provider_config, signer=signer, http_client=http_client)


@pytest.fixture
def upload_setup(
    provider_config: ProviderConfig, signer: RecordingSigner, http_client: httpx.AsyncClient
) -> UploadSetup:
    return create_upload_config().provider(provider_config).signer(signer).client(http_client).build()


@pytest.fixture
def task_manager() -> TaskManager:
    return TaskManager()


@pytest.fixture(autouse=True)
def mock_logger(mocker: Any) -> MagicMock:
    return mocker.patch.object(structlog, "get_logger", return_value=MagicMock())


@pytest.fixture
def async_mock(mocker: Any) -> type[AsyncMock]:
    return AsyncMock


# Ensure async cleanup for task manager
@pytest.fixture(autouse=True)
async def cleanup_tasks(task_manager: TaskManager) -> AsyncGenerator[None, None]:
    yield
    await task_manager.shutdown()
