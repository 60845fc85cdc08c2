"""
Storage key derivation.

Keys are composed from the global path policy, the route's path policy and a
per-file part. Time and randomness are parameters so that the same inputs
always produce the same key; ``default_timestamp`` and ``default_random_id``
supply real values at the router boundary.
"""

import re
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional

from s3relay.models.upload import FileDescriptor

DEFAULT_PREFIX = "uploads"
RANDOM_ID_LENGTH = 13

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_REPEATED_SEPARATORS = re.compile(r"/{2,}")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class GlobalPaths:
    """Upload-wide key policy."""

    prefix: str = DEFAULT_PREFIX
    # generate_key(file, metadata) -> str
    generate_key: Optional[Callable[[FileDescriptor, Mapping[str, Any]], str]] = None


@dataclass(frozen=True)
class PathContext:
    """Everything a route-level key function may look at."""

    file: FileDescriptor
    metadata: Mapping[str, Any]
    global_paths: GlobalPaths
    route_name: str


@dataclass(frozen=True)
class RoutePaths:
    """Per-route key policy."""

    prefix: Optional[str] = None
    suffix: Optional[str] = None
    # Full override: generate_key(PathContext) -> str
    generate_key: Optional[Callable[[PathContext], str]] = None


def default_timestamp() -> int:
    """Current time in milliseconds."""
    return int(time.time() * 1000)


def default_random_id(length: int = RANDOM_ID_LENGTH) -> str:
    """Random lowercase base36 token."""
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def sanitize_filename(filename: str) -> str:
    """Replace every character outside ``[a-zA-Z0-9.-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", filename)


def collapse_separators(path: str) -> str:
    return _REPEATED_SEPARATORS.sub("/", path)


def resolve_user_id(metadata: Mapping[str, Any]) -> str:
    """Pick the uploading user's id out of middleware metadata."""
    user_id = metadata.get("userId")
    if not user_id:
        user = metadata.get("user")
        if isinstance(user, Mapping):
            user_id = user.get("id")
    return str(user_id) if user_id else "anonymous"


def generate_file_key(
    file_name: str,
    *,
    timestamp: int,
    random_id: str,
    prefix: str = DEFAULT_PREFIX,
    user_id: str = "anonymous",
    add_timestamp: bool = True,
    add_random_id: bool = True,
    preserve_extension: bool = True,
) -> str:
    """
    Build a collision-resistant key for a single file.

    The key is ``prefix/user_id/timestamp/random_id/sanitized_name``; empty
    parts are skipped.
    """
    name = sanitize_filename(file_name)
    if not preserve_extension and "." in name:
        name = name.rsplit(".", 1)[0]

    parts = [prefix, user_id]
    if add_timestamp:
        parts.append(str(timestamp))
    if add_random_id:
        parts.append(random_id)
    parts.append(name)
    return "/".join(part for part in parts if part)


def generate_hierarchical_path(
    file: FileDescriptor,
    metadata: Mapping[str, Any],
    route_name: str,
    route_paths: Optional[RoutePaths],
    global_paths: Optional[GlobalPaths],
    *,
    timestamp: int,
    random_id: str,
) -> str:
    """
    Derive the storage key for ``file`` uploaded through ``route_name``.

    Priority:
        1. Route ``generate_key`` - returned verbatim.
        2. ``[global prefix, route prefix, file part, route suffix]`` joined
           with ``/`` and with repeated separators collapsed.

    The file part comes from the global ``generate_key`` (minus any leading
    copy of the global prefix) or from ``generate_file_key``.
    """
    route_paths = route_paths or RoutePaths()
    global_paths = global_paths or GlobalPaths()

    if route_paths.generate_key is not None:
        context = PathContext(
            file=file,
            metadata=metadata,
            global_paths=global_paths,
            route_name=route_name,
        )
        return route_paths.generate_key(context)

    global_prefix = global_paths.prefix or DEFAULT_PREFIX

    if global_paths.generate_key is not None:
        file_part = global_paths.generate_key(file, metadata)
        if file_part.startswith(f"{global_prefix}/"):
            file_part = file_part[len(global_prefix) + 1 :]
    else:
        file_part = generate_file_key(
            file.name,
            prefix="",
            user_id=resolve_user_id(metadata),
            timestamp=timestamp,
            random_id=random_id,
        )

    parts = [global_prefix, route_paths.prefix, file_part, route_paths.suffix]
    return collapse_separators("/".join(part for part in parts if part))
