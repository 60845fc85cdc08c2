"""
Client-side upload orchestration and progress tracking.
"""

from .orchestrator import LocalFile, MemoryFile, UploadOrchestrator, UploadProtocolError
from .progress import (
    AggregateProgress,
    BytesProgressed,
    ClientFileUploadState,
    CompletionResolved,
    FileFailed,
    FileQueued,
    FileSucceeded,
    ProgressSnapshot,
    ProgressTracker,
    UploadStarted,
    UploadStatus,
    format_eta,
    format_upload_speed,
)

__all__ = [
    # Orchestration
    "UploadOrchestrator",
    "UploadProtocolError",
    "LocalFile",
    "MemoryFile",
    # Progress state
    "ProgressTracker",
    "ProgressSnapshot",
    "AggregateProgress",
    "ClientFileUploadState",
    "UploadStatus",
    # Progress events
    "FileQueued",
    "UploadStarted",
    "BytesProgressed",
    "FileSucceeded",
    "FileFailed",
    "CompletionResolved",
    # Formatting
    "format_eta",
    "format_upload_speed",
]
