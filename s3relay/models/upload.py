"""
Wire models for the two-phase upload protocol.

JSON payloads use camelCase keys (``presignedUrl``); Python code uses the
snake_case field names. Both spellings are accepted on input.
"""

from typing import Any

from pydantic import BaseModel, Field


class FileDescriptor(BaseModel):
    """Metadata about a file the client intends to upload. Never the bytes."""

    name: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    type: str = Field(default="application/octet-stream")

    class Config:
        frozen = True

    @property
    def extension(self) -> str:
        if "." not in self.name:
            return ""
        return "." + self.name.rsplit(".", 1)[-1].lower()


class _WireModel(BaseModel):
    class Config:
        populate_by_name = True

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PresignedUrlResult(_WireModel):
    """Per-file outcome of the presign phase."""

    success: bool
    file: FileDescriptor
    presigned_url: str | None = Field(default=None, alias="presignedUrl")
    key: str | None = None
    metadata: dict[str, Any] | None = None
    headers: dict[str, str] | None = None
    error: str | None = None


class UploadCompletion(_WireModel):
    """Sent by the client once the direct upload to storage succeeded."""

    key: str = Field(..., min_length=1)
    file: FileDescriptor
    metadata: dict[str, Any] = Field(default_factory=dict)


class CompletionResult(_WireModel):
    """Per-item outcome of the completion phase."""

    success: bool
    key: str
    file: FileDescriptor | None = None
    url: str | None = None
    presigned_url: str | None = Field(default=None, alias="presignedUrl")
    error: str | None = None
