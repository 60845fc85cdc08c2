import asyncio
import json
from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest

from s3relay.client.orchestrator import LocalFile, MemoryFile, UploadOrchestrator
from s3relay.client.progress import ProgressSnapshot, ProgressTracker, UploadStatus
from s3relay.core.builder import UploadSetup, create_upload_config
from s3relay.core.handler import UploadHandler
from s3relay.core.schema import s3

from conftest import FakeS3

ENDPOINT_URL = "http://app.test/api/upload"


class Backend:
    """Routes endpoint calls to an ``UploadHandler`` and everything else to the fake bucket."""

    def __init__(self, handler: UploadHandler, fake_s3: FakeS3) -> None:
        self.handler = handler
        self.fake_s3 = fake_s3
        self.endpoint_calls: list[str] = []
        self.hang_suffix: str | None = None
        self.put_started = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "app.test":
            query = dict(request.url.params)
            self.endpoint_calls.append(query.get("action", ""))
            body = json.loads(request.content) if request.content else None
            response = await self.handler.handle(request.method, query, body, headers=dict(request.headers))
            return httpx.Response(response.status, json=response.body, headers=response.headers)

        if request.method == "PUT" and self.hang_suffix and request.url.path.endswith(self.hang_suffix):
            self.put_started.set()
            await asyncio.Event().wait()
        return self.fake_s3.handler(request)


@pytest.fixture
def backend(upload_setup: UploadSetup, fake_s3: FakeS3) -> Backend:
    router = upload_setup.create_router({"files": s3.file().max("1MB")})
    return Backend(UploadHandler(router), fake_s3)


@pytest.fixture
async def client(backend: Backend) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        yield client


def orchestrator(client: httpx.AsyncClient, route: str = "files", **kwargs) -> UploadOrchestrator:
    return UploadOrchestrator(ENDPOINT_URL, route, http_client=client, **kwargs)


class TestUploadOrchestrator:
    """Test suite for the client upload flow."""

    @pytest.mark.asyncio
    async def test_successful_batch(self, client: httpx.AsyncClient, backend: Backend, fake_s3: FakeS3) -> None:
        files = [MemoryFile("a.txt", b"hello", "text/plain"), MemoryFile("b.txt", b"x" * 200_000, "text/plain")]
        states = await orchestrator(client, chunk_size=65536).upload(files)

        assert [s.name for s in states] == ["a.txt", "b.txt"], "States keep input order"
        assert all(s.status is UploadStatus.SUCCESS for s in states)
        for state, source in zip(states, files):
            assert state.key.startswith("uploads/anonymous/")
            assert state.url == f"http://localhost:9000/test-bucket/{state.key}"
            assert "X-Amz-Expires=3600" in state.presigned_url
            assert fake_s3.objects[state.key]["body"] == source.data
            assert fake_s3.objects[state.key]["content_type"] == "text/plain"
        assert backend.endpoint_calls == ["presign", "complete"]

    @pytest.mark.asyncio
    async def test_partial_failures(self, client: httpx.AsyncClient, backend: Backend, fake_s3: FakeS3) -> None:
        fake_s3.reject_put_suffixes = ("blocked.txt",)
        files = [
            MemoryFile("ok.txt", b"fine"),
            MemoryFile("blocked.txt", b"nope"),
            MemoryFile("huge.bin", b"x" * (2 * 1024 * 1024)),
        ]
        states = await orchestrator(client).upload(files)

        assert [s.status for s in states] == [UploadStatus.SUCCESS, UploadStatus.ERROR, UploadStatus.ERROR]
        assert states[1].error == "Upload failed with status: 403"
        assert states[2].error == "File size must be less than 1MB"
        assert states[2].loaded == 0
        puts = [r for r in fake_s3.requests_for("PUT") if "huge" in r.url.path]
        assert puts == [], "Files rejected at presign must never be sent"

    @pytest.mark.asyncio
    async def test_presign_endpoint_failure_fails_every_file(self, client: httpx.AsyncClient) -> None:
        states = await orchestrator(client, route="missing").upload([MemoryFile("a.txt", b"1"), MemoryFile("b.txt", b"2")])
        assert [s.status for s in states] == [UploadStatus.ERROR, UploadStatus.ERROR]
        assert states[0].error == 'Route "missing" not found'

    @pytest.mark.asyncio
    async def test_progress_snapshots_are_published(self, client: httpx.AsyncClient) -> None:
        tracker = ProgressTracker()
        snapshots: list[ProgressSnapshot] = []
        tracker.subscribe(snapshots.append)

        await orchestrator(client, tracker=tracker, chunk_size=4).upload([MemoryFile("a.txt", b"0123456789")])

        loaded = [s.files[0].loaded for s in snapshots]
        assert loaded == sorted(loaded), "Loaded bytes only grow"
        assert snapshots[-1].aggregate.progress == 100.0
        assert snapshots[-1].aggregate.is_complete

    @pytest.mark.asyncio
    async def test_cancellation_marks_unfinished_files(self, client: httpx.AsyncClient, backend: Backend) -> None:
        backend.hang_suffix = "slow.txt"
        cancel = asyncio.Event()
        upload = asyncio.create_task(
            orchestrator(client, concurrency=1).upload(
                [MemoryFile("slow.txt", b"data"), MemoryFile("later.txt", b"more")], cancel_event=cancel
            )
        )

        await asyncio.wait_for(backend.put_started.wait(), timeout=2)
        cancel.set()
        states = await asyncio.wait_for(upload, timeout=2)

        assert [s.status for s in states] == [UploadStatus.ERROR, UploadStatus.ERROR]
        assert {s.error for s in states} == {"Upload cancelled"}
        assert "complete" not in backend.endpoint_calls

    @pytest.mark.asyncio
    async def test_unreadable_source_ends_in_error(
        self, tmp_path: Path, client: httpx.AsyncClient, backend: Backend, fake_s3: FakeS3
    ) -> None:
        path = tmp_path / "gone.txt"
        path.write_bytes(b"soon deleted")
        local = await LocalFile.from_path(path)
        path.unlink()

        tracker = ProgressTracker()
        snapshots: list[ProgressSnapshot] = []
        tracker.subscribe(snapshots.append)
        states = await orchestrator(client, tracker=tracker).upload([local, MemoryFile("ok.txt", b"hi")])

        assert states[0].status is UploadStatus.ERROR
        assert states[0].error.startswith("Upload failed:")
        assert states[1].status is UploadStatus.SUCCESS
        assert fake_s3.objects[states[1].key]["body"] == b"hi"
        assert backend.endpoint_calls == ["presign", "complete"]
        assert snapshots[-1].aggregate.is_complete
        assert snapshots[-1].aggregate.failed == 1

    @pytest.mark.asyncio
    async def test_crashed_upload_task_ends_in_error(self, client: httpx.AsyncClient) -> None:
        class BrokenFile(MemoryFile):
            async def chunks(self, chunk_size: int):
                raise RuntimeError("reader exploded")
                yield b""

        [state] = await orchestrator(client).upload([BrokenFile("broken.txt", b"data")])
        assert state.status is UploadStatus.ERROR
        assert state.error == "Upload failed: reader exploded"

    @pytest.mark.asyncio
    async def test_each_batch_gets_a_fresh_tracker(self, client: httpx.AsyncClient) -> None:
        uploader = orchestrator(client)
        await uploader.upload([MemoryFile("a.txt", b"first"), MemoryFile("b.txt", b"batch")])
        first_tracker = uploader.tracker
        await uploader.upload([MemoryFile("c.txt", b"second")])

        assert uploader.tracker is not first_tracker
        assert [state.name for state in uploader.tracker.files] == ["c.txt"]
        assert uploader.tracker.aggregate().succeeded == 1

    @pytest.mark.asyncio
    async def test_injected_tracker_accumulates_batches(self, client: httpx.AsyncClient) -> None:
        tracker = ProgressTracker()
        uploader = orchestrator(client, tracker=tracker)
        await uploader.upload([MemoryFile("a.txt", b"first")])
        await uploader.upload([MemoryFile("b.txt", b"second")])

        assert uploader.tracker is tracker
        assert tracker.aggregate().succeeded == 2

    @pytest.mark.asyncio
    async def test_signed_acl_header_is_sent(self, provider_config, signer, http_client, fake_s3: FakeS3) -> None:
        setup = (
            create_upload_config()
            .provider(provider_config)
            .signer(signer)
            .client(http_client)
            .defaults(acl="public-read")
            .build()
        )
        backend = Backend(UploadHandler(setup.create_router({"files": s3.file()})), fake_s3)
        async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
            [state] = await orchestrator(client).upload([MemoryFile("a.txt", b"hello", "text/plain")])

        assert state.status is UploadStatus.SUCCESS
        [put] = fake_s3.requests_for("PUT")
        assert put.headers["x-amz-acl"] == "public-read"
        assert put.headers["content-type"] == "text/plain"

    @pytest.mark.asyncio
    async def test_empty_batch(self, client: httpx.AsyncClient, backend: Backend) -> None:
        assert await orchestrator(client).upload([]) == []
        assert backend.endpoint_calls == []

    def test_rejects_bad_settings(self) -> None:
        with pytest.raises(ValueError):
            UploadOrchestrator(ENDPOINT_URL, "files", concurrency=0)


class TestUploadSources:
    @pytest.mark.asyncio
    async def test_local_file_from_path(self, tmp_path: Path, client: httpx.AsyncClient, fake_s3: FakeS3) -> None:
        path = tmp_path / "notes.md"
        path.write_bytes(b"# title\n" * 100)

        source = await LocalFile.from_path(path)
        assert source.name == "notes.md"
        assert source.size == 800
        assert source.type == "text/markdown"
        assert b"".join([chunk async for chunk in source.chunks(128)]) == path.read_bytes()

        [state] = await orchestrator(client).upload([source])
        assert state.status is UploadStatus.SUCCESS
        assert fake_s3.objects[state.key]["body"] == path.read_bytes()

    @pytest.mark.asyncio
    async def test_memory_file_chunks(self) -> None:
        source = MemoryFile("a.bin", b"abcdefg")
        assert [chunk async for chunk in source.chunks(3)] == [b"abc", b"def", b"g"]
        assert source.size == 7
