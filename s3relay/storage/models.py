"""
Data models returned by the storage operations facade.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


@dataclass
class FileInfo:
    """Information about a stored object."""

    key: str
    url: str
    size: int
    content_type: str
    last_modified: datetime | None
    etag: str
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "url": self.url,
            "size": self.size,
            "contentType": self.content_type,
            "lastModified": self.last_modified.isoformat() if self.last_modified else None,
            "etag": self.etag,
            "metadata": dict(self.metadata),
        }


@dataclass
class ListFilesResult:
    """One page of a bucket listing."""

    files: list[FileInfo]
    is_truncated: bool
    continuation_token: str | None = None
    next_continuation_token: str | None = None
    common_prefixes: list[str] = field(default_factory=list)

    @property
    def total_count(self) -> int:
        return len(self.files)


@dataclass
class FileInfoResult:
    """Per-key outcome of a batch metadata read."""

    key: str
    info: FileInfo | None = None
    error: str | None = None


@dataclass
class DeleteError:
    key: str
    code: str
    message: str


@dataclass
class DeleteFilesResult:
    """Merged outcome of a batch delete."""

    deleted: list[str] = field(default_factory=list)
    errors: list[DeleteError] = field(default_factory=list)

    def merge(self, other: "DeleteFilesResult") -> None:
        self.deleted.extend(other.deleted)
        self.errors.extend(other.errors)


@dataclass
class DeleteByPrefixResult:
    """Keys matched by a prefix and, unless ``dry_run``, what happened to them."""

    files_found: int
    keys: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[DeleteError] = field(default_factory=list)
    dry_run: bool = False


# A custom validator returns True (pass), False (fail) or an error message
CustomValidator = Callable[[FileInfo], Union[bool, str]]


@dataclass
class FileValidationRules:
    """Rules evaluated by ``S3Storage.validate_file``."""

    max_size: int | None = None
    min_size: int | None = None
    allowed_types: list[str] | None = None
    required_extensions: list[str] | None = None
    custom_validators: list[CustomValidator] = field(default_factory=list)


@dataclass
class FileValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    info: FileInfo | None = None


@dataclass
class PresignedUpload:
    """A presigned PUT target."""

    url: str
    key: str
    fields: dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectionCheck:
    success: bool
    error: str | None = None

