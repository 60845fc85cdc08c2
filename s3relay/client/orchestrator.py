"""
Client side of the two-phase upload protocol.

``UploadOrchestrator.upload`` asks the upload endpoint for presigned URLs,
streams every file straight to storage with ``httpx`` and reports the
successful keys back to the endpoint. Progress flows through a
``ProgressTracker`` queue.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
import httpx
import structlog
from pydantic import ValidationError

from s3relay.client.progress import (
    BytesProgressed,
    ClientFileUploadState,
    CompletionResolved,
    FileFailed,
    FileQueued,
    FileSucceeded,
    ProgressTracker,
    UploadStarted,
)
from s3relay.core.task_manager import TaskManager
from s3relay.models.upload import CompletionResult, PresignedUrlResult
from s3relay.utils.file_utils import DEFAULT_CONTENT_TYPE, file_utils

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
CANCELLED_MESSAGE = "Upload cancelled"


@dataclass(frozen=True)
class MemoryFile:
    """Bytes already held in memory."""

    name: str
    data: bytes
    type: str = DEFAULT_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)

    async def chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        for offset in range(0, len(self.data), chunk_size):
            yield self.data[offset:offset + chunk_size]


@dataclass(frozen=True)
class LocalFile:
    """A file on disk, read lazily in chunks."""

    path: Path
    name: str
    size: int
    type: str = DEFAULT_CONTENT_TYPE

    @classmethod
    async def from_path(cls, path: Union[str, Path], content_type: Optional[str] = None) -> "LocalFile":
        path = Path(path)
        size = await file_utils.get_file_size(path)
        return cls(
            path=path,
            name=path.name,
            size=size,
            type=content_type or file_utils.get_content_type(path),
        )

    async def chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk


UploadSource = Union[LocalFile, MemoryFile]


@dataclass
class _PendingFile:
    file_id: str
    source: UploadSource
    result: Optional[PresignedUrlResult] = None

    @property
    def descriptor(self) -> Dict[str, Any]:
        return {"name": self.source.name, "size": self.source.size, "type": self.source.type}


class UploadProtocolError(Exception):
    """The upload endpoint answered with something unusable."""


class UploadOrchestrator:
    """Uploads a batch of files through an ``UploadHandler`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        route: str,
        http_client: Optional[httpx.AsyncClient] = None,
        concurrency: int = 4,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        tracker: Optional[ProgressTracker] = None,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.endpoint = endpoint
        self.route = route
        self.concurrency = concurrency
        self.chunk_size = chunk_size
        self._shared_tracker = tracker
        self.tracker = tracker or ProgressTracker()
        self.timeout = timeout
        self._clock = clock
        self._http_client = http_client
        self.tasks = TaskManager()
        self.logger = logger.bind(route=route)

    async def upload(
        self,
        files: Sequence[UploadSource],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ClientFileUploadState]:
        """
        Upload ``files`` and return their final states in input order.

        Args:
            files: ``LocalFile`` / ``MemoryFile`` sources
            cancel_event: Setting this event aborts the batch

        Individual failures never raise; they end up as ``error`` states.
        Cancelling the calling task marks unfinished files as cancelled and
        re-raises ``CancelledError``.

        Each batch gets its own ``ProgressTracker`` unless one was passed to
        the constructor; an injected tracker accumulates every batch.
        """
        pending = [_PendingFile(file_id=uuid.uuid4().hex, source=source) for source in files]
        if not pending:
            return []
        if self._shared_tracker is None:
            self.tracker = ProgressTracker()
        for item in pending:
            self.tracker.publish(
                FileQueued(file_id=item.file_id, name=item.source.name, size=item.source.size, type=item.source.type)
            )

        consumer = asyncio.create_task(self.tracker.run())
        work = asyncio.create_task(self._run(pending))
        waiters = {work}
        watcher = None
        if cancel_event is not None:
            watcher = asyncio.create_task(cancel_event.wait())
            waiters.add(watcher)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not work.done():
                self.logger.info("Upload batch cancelled", files=len(pending))
                await self._abort(work, pending)
            else:
                work.result()
        except asyncio.CancelledError:
            await self._abort(work, pending)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
            self.tracker.stop()
            await consumer

        return [self.tracker.get(item.file_id) for item in pending]

    async def _abort(self, work: asyncio.Task, pending: List[_PendingFile]) -> None:
        work.cancel()
        await self.tasks.shutdown()
        await asyncio.gather(work, return_exceptions=True)
        await self.tracker.events.join()
        for item in pending:
            if not self.tracker.get(item.file_id).is_terminal:
                self.tracker.publish(FileFailed(file_id=item.file_id, error=CANCELLED_MESSAGE))

    def _client(self) -> httpx.AsyncClient:
        return self._http_client or httpx.AsyncClient(timeout=self.timeout)

    async def _run(self, pending: List[_PendingFile]) -> None:
        client = self._client()
        try:
            try:
                results = await self._request_presign(client, pending)
            except (httpx.HTTPError, UploadProtocolError) as e:
                self.logger.error("Presign request failed", error=str(e))
                for item in pending:
                    self.tracker.publish(FileFailed(file_id=item.file_id, error=str(e)))
                return

            semaphore = asyncio.Semaphore(self.concurrency)
            for item, result in zip(pending, results):
                item.result = result
                if not result.success or not result.presigned_url:
                    self.tracker.publish(FileFailed(file_id=item.file_id, error=result.error or "Presign failed"))
                    continue
                self.tasks.create_task(self._upload_one(client, item, semaphore), task_id=item.file_id)

            outcomes = await self.tasks.wait_all()
            await self.tasks.shutdown()
            await self._fail_crashed(pending, outcomes)
            uploaded = [item for item in pending if outcomes.get(item.file_id) is True]
            if uploaded:
                await self._complete(client, uploaded)
        finally:
            if self._http_client is None:
                await client.aclose()

    async def _fail_crashed(self, pending: List[_PendingFile], outcomes: Dict[str, Any]) -> None:
        """Move files whose upload task raised into ``error``."""
        crashed = [item for item in pending if isinstance(outcomes.get(item.file_id), Exception)]
        if not crashed:
            return
        await self.tracker.events.join()
        for item in crashed:
            if not self.tracker.get(item.file_id).is_terminal:
                error = outcomes[item.file_id]
                self.logger.error("Upload task crashed", file=item.source.name, error=str(error))
                self.tracker.publish(FileFailed(file_id=item.file_id, error=f"Upload failed: {error}"))

    async def _post(self, client: httpx.AsyncClient, action: str, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = await client.post(self.endpoint, params={"route": self.route, "action": action}, json=payload)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.is_success:
            message = body.get("error") if isinstance(body, dict) else None
            raise UploadProtocolError(message or f"{action} request failed with status: {response.status_code}")
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise UploadProtocolError(f"{action} response is missing results")
        return results

    async def _request_presign(self, client: httpx.AsyncClient, pending: List[_PendingFile]) -> List[PresignedUrlResult]:
        raw = await self._post(client, "presign", {"files": [item.descriptor for item in pending]})
        if len(raw) != len(pending):
            raise UploadProtocolError(f"Expected {len(pending)} presign results, got {len(raw)}")
        try:
            return [PresignedUrlResult.model_validate(item) for item in raw]
        except ValidationError as e:
            raise UploadProtocolError(f"Malformed presign response: {e}") from e

    async def _upload_one(self, client: httpx.AsyncClient, item: _PendingFile, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            source = item.source
            self.tracker.publish(UploadStarted(file_id=item.file_id, timestamp=self._clock(), key=item.result.key))

            async def body() -> AsyncIterator[bytes]:
                loaded = 0
                async for chunk in source.chunks(self.chunk_size):
                    yield chunk
                    loaded += len(chunk)
                    self.tracker.publish(BytesProgressed(file_id=item.file_id, loaded=loaded, timestamp=self._clock()))

            headers = dict(item.result.headers or {})
            headers.update({"Content-Type": source.type, "Content-Length": str(source.size)})
            try:
                response = await client.put(item.result.presigned_url, content=body(), headers=headers)
            except httpx.HTTPError as e:
                self.logger.error("Upload failed", file=source.name, error=str(e))
                self.tracker.publish(FileFailed(file_id=item.file_id, error=f"Upload failed: {e}"))
                return False
            except OSError as e:
                self.logger.error("Reading upload source failed", file=source.name, error=str(e))
                self.tracker.publish(FileFailed(file_id=item.file_id, error=f"Upload failed: {e}"))
                return False

            if not response.is_success:
                self.logger.warning("Upload rejected by storage", file=source.name, status_code=response.status_code)
                self.tracker.publish(
                    FileFailed(file_id=item.file_id, error=f"Upload failed with status: {response.status_code}")
                )
                return False

            self.tracker.publish(FileSucceeded(file_id=item.file_id, key=item.result.key))
            return True

    async def _complete(self, client: httpx.AsyncClient, uploaded: List[_PendingFile]) -> None:
        completions = [
            {"key": item.result.key, "file": item.descriptor, "metadata": item.result.metadata or {}}
            for item in uploaded
        ]
        try:
            raw = await self._post(client, "complete", {"completions": completions})
            results = [CompletionResult.model_validate(entry) for entry in raw]
        except (httpx.HTTPError, UploadProtocolError, ValidationError) as e:
            self.logger.error("Completion request failed", files=len(uploaded), error=str(e))
            return

        by_key = {item.result.key: item for item in uploaded}
        for result in results:
            item = by_key.get(result.key)
            if item is None:
                continue
            if not result.success:
                self.logger.warning("Completion reported failure", key=result.key, error=result.error)
                continue
            self.tracker.publish(
                CompletionResolved(file_id=item.file_id, url=result.url, presigned_url=result.presigned_url)
            )
