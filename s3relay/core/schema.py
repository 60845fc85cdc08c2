"""
File validation schemas.

Schemas validate a ``FileDescriptor`` (name, declared size, MIME type) before
any URL is signed; the bytes do not exist on the server. Every schema has a
``kind`` from the closed ``SchemaKind`` enum and every builder method returns
a new schema, leaving the original untouched.
"""

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Union

from s3relay.core.errors import ConfigurationError
from s3relay.models.upload import FileDescriptor

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)?$", re.IGNORECASE)
_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}

IMAGE_FORMATS = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "avif": "image/avif",
    "heic": "image/heic",
}


class SchemaKind(str, Enum):
    """Closed set of schema kinds a route can be built from."""

    FILE = "file"
    IMAGE = "image"
    OBJECT = "object"


class IssueCode(str, Enum):
    FILE_REQUIRED = "FILE_REQUIRED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_TOO_SMALL = "FILE_TOO_SMALL"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    INVALID_FILE_EXTENSION = "INVALID_FILE_EXTENSION"
    REFINEMENT_FAILED = "REFINEMENT_FAILED"
    TOO_FEW_FILES = "TOO_FEW_FILES"
    TOO_MANY_FILES = "TOO_MANY_FILES"


@dataclass(frozen=True)
class SchemaIssue:
    code: IssueCode
    message: str
    path: tuple[str, ...] = ()


@dataclass(frozen=True)
class SchemaResult:
    success: bool
    issues: tuple[SchemaIssue, ...] = ()

    @property
    def error_message(self) -> str:
        return "; ".join(issue.message for issue in self.issues) or "Validation failed"


SizeValue = Union[int, str]
Refinement = tuple[Callable[[FileDescriptor], bool], str]


def parse_size(value: SizeValue) -> int:
    """
    Convert ``5MB``/``1.5 GB``/``2048`` into bytes (1024-based).

    Raises:
        ConfigurationError: for strings that are not a size.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(value.strip())
    if not match:
        raise ConfigurationError(f"Invalid size format: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "B").upper()])


def format_size(size: float) -> str:
    """Human-readable size, e.g. ``5MB`` or ``1.5GB``."""
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f}".rstrip("0").rstrip(".") + unit
        size /= 1024
    return f"{size:.1f}".rstrip("0").rstrip(".") + "TB"


def type_matches(mime_type: str, pattern: str) -> bool:
    """``image/*`` matches any image type; anything else must match exactly."""
    mime_type = mime_type.lower()
    pattern = pattern.lower()
    if pattern.endswith("/*"):
        return mime_type.startswith(pattern[:-1])
    return mime_type == pattern


@dataclass(frozen=True)
class FileConstraints:
    max_size: Optional[int] = None
    min_size: Optional[int] = None
    allowed_types: tuple[str, ...] = ()
    allowed_extensions: tuple[str, ...] = ()
    required: bool = True
    refinements: tuple[Refinement, ...] = ()


@dataclass(frozen=True)
class FileSchema:
    """Constraints for one file; covers both the ``file`` and ``image`` kinds."""

    kind: SchemaKind = SchemaKind.FILE
    constraints: FileConstraints = field(default_factory=FileConstraints)

    def _with(self, **changes) -> "FileSchema":
        return replace(self, constraints=replace(self.constraints, **changes))

    def max(self, size: SizeValue) -> "FileSchema":
        return self._with(max_size=parse_size(size))

    def min(self, size: SizeValue) -> "FileSchema":
        return self._with(min_size=parse_size(size))

    def types(self, mime_types: Sequence[str]) -> "FileSchema":
        return self._with(allowed_types=tuple(mime_types))

    def extensions(self, extensions: Sequence[str]) -> "FileSchema":
        normalized = tuple(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions)
        return self._with(allowed_extensions=normalized)

    def formats(self, formats: Sequence[str]) -> "FileSchema":
        """Restrict an image schema to named formats such as ``jpg`` or ``png``."""
        if self.kind is not SchemaKind.IMAGE:
            raise ConfigurationError("formats() is only available on image schemas")
        mime_types = []
        for fmt in formats:
            mime_type = IMAGE_FORMATS.get(fmt.lower(), f"image/{fmt.lower()}")
            if mime_type not in mime_types:
                mime_types.append(mime_type)
        return self.types(mime_types)

    def optional(self) -> "FileSchema":
        return self._with(required=False)

    def refine(self, predicate: Callable[[FileDescriptor], bool], message: str) -> "FileSchema":
        return self._with(refinements=self.constraints.refinements + ((predicate, message),))

    def array(self, min_count: Optional[int] = None, max_count: Optional[int] = None) -> "ArraySchema":
        return ArraySchema(element=self, min_count=min_count, max_count=max_count)

    def validate(self, file: Optional[FileDescriptor]) -> SchemaResult:
        """Evaluate every constraint and report all violations."""
        c = self.constraints
        if file is None:
            if c.required:
                return SchemaResult(False, (SchemaIssue(IssueCode.FILE_REQUIRED, "File is required"),))
            return SchemaResult(True)

        issues = []
        if c.max_size is not None and file.size > c.max_size:
            issues.append(
                SchemaIssue(
                    IssueCode.FILE_TOO_LARGE,
                    f"File size must be less than {format_size(c.max_size)}",
                )
            )
        if c.min_size is not None and file.size < c.min_size:
            issues.append(
                SchemaIssue(
                    IssueCode.FILE_TOO_SMALL,
                    f"File size must be at least {format_size(c.min_size)}",
                )
            )
        if c.allowed_types and not any(type_matches(file.type, pattern) for pattern in c.allowed_types):
            issues.append(
                SchemaIssue(
                    IssueCode.INVALID_FILE_TYPE,
                    f"File type {file.type} is not allowed. Allowed types: {', '.join(c.allowed_types)}",
                )
            )
        if c.allowed_extensions and file.extension not in c.allowed_extensions:
            issues.append(
                SchemaIssue(
                    IssueCode.INVALID_FILE_EXTENSION,
                    f"File extension {file.extension or '(none)'} is not allowed. "
                    f"Allowed extensions: {', '.join(c.allowed_extensions)}",
                )
            )
        for predicate, message in c.refinements:
            if not predicate(file):
                issues.append(SchemaIssue(IssueCode.REFINEMENT_FAILED, message))

        return SchemaResult(not issues, tuple(issues))


@dataclass(frozen=True)
class ArraySchema:
    """A list of files sharing one element schema."""

    element: FileSchema
    min_count: Optional[int] = None
    max_count: Optional[int] = None

    @property
    def kind(self) -> SchemaKind:
        return self.element.kind

    def min(self, count: int) -> "ArraySchema":
        return replace(self, min_count=count)

    def max(self, count: int) -> "ArraySchema":
        return replace(self, max_count=count)

    def length(self, count: int) -> "ArraySchema":
        return replace(self, min_count=count, max_count=count)

    def validate(self, file: Optional[FileDescriptor]) -> SchemaResult:
        """A single file is checked against the element schema."""
        return self.element.validate(file)

    def validate_many(self, files: Sequence[FileDescriptor]) -> SchemaResult:
        issues = []
        if self.min_count is not None and len(files) < self.min_count:
            issues.append(SchemaIssue(IssueCode.TOO_FEW_FILES, f"At least {self.min_count} files required"))
        if self.max_count is not None and len(files) > self.max_count:
            issues.append(SchemaIssue(IssueCode.TOO_MANY_FILES, f"At most {self.max_count} files allowed"))
        for index, file in enumerate(files):
            for issue in self.element.validate(file).issues:
                issues.append(replace(issue, path=(str(index),) + issue.path))
        return SchemaResult(not issues, tuple(issues))


FieldSchema = Union[FileSchema, ArraySchema]


@dataclass(frozen=True)
class ObjectSchema:
    """Named file fields, e.g. ``{"avatar": image(), "resume": file()}``."""

    fields: Mapping[str, FieldSchema]
    kind: SchemaKind = SchemaKind.OBJECT

    def validate(self, file: Optional[FileDescriptor]) -> SchemaResult:
        """A single file is accepted when at least one field accepts it."""
        all_issues = []
        for name, schema in self.fields.items():
            result = schema.validate(file)
            if result.success:
                return result
            all_issues.extend(replace(issue, path=(name,) + issue.path) for issue in result.issues)
        return SchemaResult(False, tuple(all_issues))

    def validate_mapping(
        self, files: Mapping[str, Union[FileDescriptor, Sequence[FileDescriptor], None]]
    ) -> SchemaResult:
        issues = []
        for name, schema in self.fields.items():
            value = files.get(name)
            if isinstance(schema, ArraySchema):
                if value is None:
                    value = []
                elif isinstance(value, FileDescriptor):
                    value = [value]
                result = schema.validate_many(value)
            else:
                if isinstance(value, (list, tuple)):
                    value = value[0] if value else None
                result = schema.validate(value)
            issues.extend(replace(issue, path=(name,) + issue.path) for issue in result.issues)
        return SchemaResult(not issues, tuple(issues))


Schema = Union[FileSchema, ArraySchema, ObjectSchema]


class SchemaFactory:
    """Entry point for building schemas: ``s3.file().max("5MB")``."""

    def file(self) -> FileSchema:
        return FileSchema(kind=SchemaKind.FILE)

    def image(self) -> FileSchema:
        """A file schema that only accepts ``image/*`` types by default."""
        return FileSchema(kind=SchemaKind.IMAGE, constraints=FileConstraints(allowed_types=("image/*",)))

    def object(self, fields: Mapping[str, FieldSchema]) -> ObjectSchema:
        return ObjectSchema(fields=dict(fields))


s3 = SchemaFactory()
