"""
XML helpers for the S3 REST API.

Responses are parsed with ElementTree and matched on local tag names, so
documents with or without the ``http://s3.amazonaws.com/doc/2006-03-01/``
namespace parse the same way.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

from s3relay.core.errors import StorageRequestError
from s3relay.storage.models import DeleteError

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


@dataclass
class ListObjectsPage:
    """Raw contents of a ListObjectsV2 response."""

    contents: list[dict[str, Any]] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)
    is_truncated: bool = False
    next_continuation_token: str | None = None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local(child.tag) == name]


def _text(element: ET.Element, name: str, default: str | None = None) -> str | None:
    for child in element:
        if _local(child.tag) == name:
            return child.text if child.text is not None else ""
    return default


def _parse(payload: bytes | str, operation: str) -> ET.Element:
    try:
        return ET.fromstring(payload)
    except ET.ParseError as e:
        raise StorageRequestError(f"Malformed XML response during {operation}: {e}", operation=operation, cause=e)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse either an ISO-8601 (XML bodies) or RFC 1123 (headers) timestamp."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def strip_etag(value: str | None) -> str:
    return (value or "").strip('"')


def parse_list_objects(payload: bytes | str) -> ListObjectsPage:
    """Parse a ``GET ?list-type=2`` response body."""
    root = _parse(payload, "list")
    page = ListObjectsPage()

    for item in _children(root, "Contents"):
        key = _text(item, "Key")
        if key is None:
            continue
        page.contents.append(
            {
                "key": key,
                "size": int(_text(item, "Size", "0") or 0),
                "last_modified": parse_timestamp(_text(item, "LastModified")),
                "etag": strip_etag(_text(item, "ETag")),
            }
        )

    for prefix in _children(root, "CommonPrefixes"):
        value = _text(prefix, "Prefix")
        if value:
            page.common_prefixes.append(value)

    page.is_truncated = (_text(root, "IsTruncated", "false") or "").strip().lower() == "true"
    page.next_continuation_token = _text(root, "NextContinuationToken") or None
    return page


def build_delete_payload(keys: list[str], quiet: bool = False) -> bytes:
    """Build the ``POST ?delete`` request body for ``keys``."""
    root = ET.Element("Delete", xmlns=S3_NAMESPACE)
    ET.SubElement(root, "Quiet").text = "true" if quiet else "false"
    for key in keys:
        obj = ET.SubElement(root, "Object")
        ET.SubElement(obj, "Key").text = key
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def parse_delete_result(payload: bytes | str) -> tuple[list[str], list[DeleteError]]:
    """Parse a ``DeleteResult`` document into deleted keys and per-key errors."""
    root = _parse(payload, "delete")
    deleted = []
    for item in _children(root, "Deleted"):
        key = _text(item, "Key")
        if key:
            deleted.append(key)
    errors = [
        DeleteError(
            key=_text(item, "Key", "") or "",
            code=_text(item, "Code", "Unknown") or "Unknown",
            message=_text(item, "Message", "") or "",
        )
        for item in _children(root, "Error")
    ]
    return deleted, errors


def parse_error(payload: bytes | str) -> tuple[str | None, str | None]:
    """Extract ``(Code, Message)`` from an S3 error document, if any."""
    if not payload:
        return None, None
    try:
        root = ET.fromstring(payload)
    except ET.ParseError:
        return None, None
    if _local(root.tag) != "Error":
        return None, None
    return _text(root, "Code"), _text(root, "Message")
