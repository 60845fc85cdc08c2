"""
UI-agnostic upload progress tracking.

The network layer publishes discrete events onto ``ProgressTracker.events``;
a single consumer (``ProgressTracker.run``) applies them in order, so per-file
state and the batch aggregate are never updated concurrently. Consumers call
``subscribe`` to receive an immutable ``ProgressSnapshot`` after every event.

Per-file state only moves forward::

    pending -> uploading -> success | error
    pending -> error                      (presign failed)

Events that would move a file backwards are logged and dropped.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.UPLOADING, UploadStatus.ERROR},
    UploadStatus.UPLOADING: {UploadStatus.SUCCESS, UploadStatus.ERROR},
    UploadStatus.SUCCESS: set(),
    UploadStatus.ERROR: set(),
}


@dataclass(frozen=True)
class ClientFileUploadState:
    id: str
    name: str
    size: int
    type: str = "application/octet-stream"
    status: UploadStatus = UploadStatus.PENDING
    progress: float = 0.0
    loaded: int = 0
    speed: float = 0.0
    eta: Optional[float] = None
    key: Optional[str] = None
    url: Optional[str] = None
    presigned_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (UploadStatus.SUCCESS, UploadStatus.ERROR)


# Events


@dataclass(frozen=True)
class FileQueued:
    file_id: str
    name: str
    size: int
    type: str = "application/octet-stream"


@dataclass(frozen=True)
class UploadStarted:
    file_id: str
    timestamp: float
    key: Optional[str] = None


@dataclass(frozen=True)
class BytesProgressed:
    file_id: str
    loaded: int
    timestamp: float


@dataclass(frozen=True)
class FileSucceeded:
    file_id: str
    key: Optional[str] = None
    url: Optional[str] = None
    presigned_url: Optional[str] = None


@dataclass(frozen=True)
class FileFailed:
    file_id: str
    error: str


@dataclass(frozen=True)
class CompletionResolved:
    """Server confirmed the upload and returned its URLs."""

    file_id: str
    url: Optional[str] = None
    presigned_url: Optional[str] = None


ProgressEvent = Union[FileQueued, UploadStarted, BytesProgressed, FileSucceeded, FileFailed, CompletionResolved]


@dataclass(frozen=True)
class AggregateProgress:
    progress: float = 0.0
    loaded: int = 0
    total: int = 0
    speed: float = 0.0
    eta: Optional[float] = None
    pending: int = 0
    uploading: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def is_complete(self) -> bool:
        return self.pending == 0 and self.uploading == 0


@dataclass(frozen=True)
class ProgressSnapshot:
    files: tuple[ClientFileUploadState, ...]
    aggregate: AggregateProgress


Subscriber = Callable[[ProgressSnapshot], None]

_STOP = object()


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


class ProgressTracker:
    """Owns every file's upload state and the derived batch aggregate."""

    def __init__(self, smoothing: float = 0.3, clock: Callable[[], float] = time.monotonic):
        if not 0 < smoothing <= 1:
            raise ValueError("smoothing must be in (0, 1]")
        self.smoothing = smoothing
        self.clock = clock
        self.events: asyncio.Queue = asyncio.Queue()
        self._states: dict[str, ClientFileUploadState] = {}
        self._samples: dict[str, tuple[float, int]] = {}
        self._subscribers: list[Subscriber] = []

    # Queue plumbing

    def publish(self, event: ProgressEvent) -> None:
        self.events.put_nowait(event)

    async def run(self) -> None:
        """Apply queued events until ``stop`` is called."""
        while True:
            event = await self.events.get()
            try:
                if event is _STOP:
                    return
                self.apply(event)
            finally:
                self.events.task_done()

    def stop(self) -> None:
        self.events.put_nowait(_STOP)

    # Subscriptions

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error("Progress subscriber failed", error=str(e))

    # State

    def get(self, file_id: str) -> ClientFileUploadState:
        return self._states[file_id]

    @property
    def files(self) -> tuple[ClientFileUploadState, ...]:
        return tuple(self._states.values())

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(files=self.files, aggregate=self.aggregate())

    def aggregate(self) -> AggregateProgress:
        states = list(self._states.values())
        total = sum(state.size for state in states)
        loaded = sum(state.loaded for state in states)
        speed = sum(state.speed for state in states if state.status is UploadStatus.UPLOADING)

        if total > 0:
            progress = _clamp(loaded / total * 100)
        elif states and all(state.status is UploadStatus.SUCCESS for state in states):
            progress = 100.0
        else:
            progress = 0.0

        return AggregateProgress(
            progress=progress,
            loaded=loaded,
            total=total,
            speed=speed,
            eta=(total - loaded) / speed if speed > 0 else None,
            pending=sum(1 for s in states if s.status is UploadStatus.PENDING),
            uploading=sum(1 for s in states if s.status is UploadStatus.UPLOADING),
            succeeded=sum(1 for s in states if s.status is UploadStatus.SUCCESS),
            failed=sum(1 for s in states if s.status is UploadStatus.ERROR),
        )

    def _transition(self, state: ClientFileUploadState, target: UploadStatus) -> bool:
        if target not in _TRANSITIONS[state.status]:
            logger.warning(
                "Ignoring backward status transition",
                file_id=state.id,
                current=state.status.value,
                requested=target.value,
            )
            return False
        return True

    def apply(self, event: ProgressEvent) -> bool:
        """Apply one event synchronously; returns False when it was ignored."""
        if isinstance(event, FileQueued):
            if event.file_id in self._states:
                logger.warning("File already queued", file_id=event.file_id)
                return False
            self._states[event.file_id] = ClientFileUploadState(
                id=event.file_id,
                name=event.name,
                size=max(0, event.size),
                type=event.type,
            )
            self._notify()
            return True

        state = self._states.get(event.file_id)
        if state is None:
            logger.warning("Event for unknown file", file_id=event.file_id, event_type=type(event).__name__)
            return False

        if isinstance(event, UploadStarted):
            if not self._transition(state, UploadStatus.UPLOADING):
                return False
            self._samples[state.id] = (event.timestamp, 0)
            state = replace(state, status=UploadStatus.UPLOADING, key=event.key or state.key)

        elif isinstance(event, BytesProgressed):
            if state.status is not UploadStatus.UPLOADING:
                return False
            state = self._apply_bytes(state, event)

        elif isinstance(event, FileSucceeded):
            if not self._transition(state, UploadStatus.SUCCESS):
                return False
            state = replace(
                state,
                status=UploadStatus.SUCCESS,
                loaded=state.size,
                progress=100.0,
                speed=0.0,
                eta=None,
                key=event.key or state.key,
                url=event.url or state.url,
                presigned_url=event.presigned_url or state.presigned_url,
            )
            self._samples.pop(state.id, None)

        elif isinstance(event, FileFailed):
            if not self._transition(state, UploadStatus.ERROR):
                return False
            state = replace(state, status=UploadStatus.ERROR, speed=0.0, eta=None, error=event.error)
            self._samples.pop(state.id, None)

        elif isinstance(event, CompletionResolved):
            if state.status is not UploadStatus.SUCCESS:
                return False
            state = replace(state, url=event.url, presigned_url=event.presigned_url)

        else:
            raise TypeError(f"Unknown progress event: {event!r}")

        self._states[state.id] = state
        self._notify()
        return True

    def _apply_bytes(self, state: ClientFileUploadState, event: BytesProgressed) -> ClientFileUploadState:
        loaded = min(max(event.loaded, state.loaded), state.size) if state.size else max(event.loaded, state.loaded)
        speed = state.speed

        last_time, last_loaded = self._samples.get(state.id, (event.timestamp, state.loaded))
        elapsed = event.timestamp - last_time
        if elapsed > 0:
            instant = (loaded - last_loaded) / elapsed
            speed = instant if state.speed == 0 else self.smoothing * instant + (1 - self.smoothing) * state.speed
            self._samples[state.id] = (event.timestamp, loaded)

        remaining = state.size - loaded
        return replace(
            state,
            loaded=loaded,
            progress=_clamp(loaded / state.size * 100) if state.size else 0.0,
            speed=speed,
            eta=remaining / speed if speed > 0 else None,
        )


def format_eta(seconds: Optional[float]) -> str:
    """``45s``, ``3m 20s`` or ``1h 5m``; ``--`` when unknown."""
    if seconds is None or seconds < 0:
        return "--"
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{minutes}m {secs}s"
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60}m"


def format_upload_speed(bytes_per_second: float) -> str:
    """Human readable transfer rate with one decimal."""
    for unit in ("B/s", "KB/s", "MB/s"):
        if bytes_per_second < 1024:
            return f"{bytes_per_second:.1f} {unit}"
        bytes_per_second /= 1024
    return f"{bytes_per_second:.1f} GB/s"
