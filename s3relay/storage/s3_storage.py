"""
S3-compatible storage operations.

Every operation is a signed HTTP call against the provider's native REST
surface; responses are parsed from XML or headers. Works with any provider
``normalize_provider`` understands (AWS S3, Cloudflare R2, DigitalOcean
Spaces, MinIO and generic S3-compatible stores).
"""

import base64
import hashlib
from collections.abc import AsyncIterator
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode, urlsplit

import httpx
import structlog

from s3relay.core.errors import (
    ErrorCode,
    ObjectNotFoundError,
    SigningError,
    StorageNetworkError,
    StorageRequestError,
    UploadError,
    error_from_response,
)
from s3relay.core.schema import type_matches
from s3relay.storage.models import (
    ConnectionCheck,
    DeleteByPrefixResult,
    DeleteError,
    DeleteFilesResult,
    FileInfo,
    FileInfoResult,
    FileValidationResult,
    FileValidationRules,
    ListFilesResult,
    PresignedUpload,
)
from s3relay.storage.providers import (
    ConnectionParams,
    build_bucket_url,
    build_object_url,
    get_file_url,
)
from s3relay.storage.signer import BotocoreSigner, Signer, validate_expiry
from s3relay.storage.xml_parsing import (
    build_delete_payload,
    parse_delete_result,
    parse_error,
    parse_list_objects,
    parse_timestamp,
    strip_etag,
)
from s3relay.utils.concurrency import gather_bounded
from s3relay.utils.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

MAX_DELETE_BATCH = 1000
DEFAULT_PAGE_SIZE = 1000
DEFAULT_EXPIRES_IN = 3600
METADATA_HEADER_PREFIX = "x-amz-meta-"
SORT_FIELDS = ("key", "size", "last_modified")


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class S3Storage:
    """
    Storage operations facade for one bucket.

    Usable as an async context manager; an ``httpx.AsyncClient`` is created on
    first use unless one is injected.
    """

    def __init__(
        self,
        connection: ConnectionParams,
        signer: Optional[Signer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.connection = connection
        self.signer: Signer = signer or BotocoreSigner()
        self.timeout = timeout
        self.metrics = metrics
        self._client = http_client
        self._owns_client = http_client is None
        self.logger = logger.bind(bucket=connection.bucket, provider=connection.provider.value)

    async def __aenter__(self) -> "S3Storage":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    # URLs

    @property
    def bucket_url(self) -> str:
        url = build_bucket_url(self.connection)
        return url if urlsplit(url).path else f"{url}/"

    def object_url(self, key: str) -> str:
        return build_object_url(self.connection, key)

    def get_file_url(self, key: str) -> str:
        """Public URL for ``key`` (custom domain when configured)."""
        return get_file_url(self.connection, key)

    # Low-level request plumbing

    def _track(self, operation: str):
        return self.metrics.track(operation) if self.metrics else nullcontext()

    def _context(self, key: Optional[str] = None) -> Dict[str, Any]:
        return {
            "bucket": self.connection.bucket,
            "provider": self.connection.provider.value,
            "key": key,
        }

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        allowed_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        """Sign and send one request; non-2xx responses raise mapped errors."""
        try:
            signed_headers = self.signer.sign_request(
                method,
                url,
                self.connection.credentials,
                self.connection.signing_region,
                headers=headers,
                body=body,
            )
        except UploadError:
            raise
        except Exception as e:
            raise SigningError(f"Failed to sign {operation} request: {e}", operation=operation, cause=e, **self._context(key))

        try:
            response = await self.client.request(method, url, headers=signed_headers, content=body or None)
        except httpx.TimeoutException as e:
            raise StorageNetworkError(
                f"Request timed out during {operation}",
                code=ErrorCode.TIMEOUT_ERROR,
                operation=operation,
                cause=e,
                **self._context(key),
            )
        except httpx.HTTPError as e:
            raise StorageNetworkError(
                f"Network error during {operation}: {e}",
                operation=operation,
                cause=e,
                **self._context(key),
            )

        if response.is_success or response.status_code in allowed_statuses:
            return response

        s3_code, message = parse_error(response.content)
        raise error_from_response(
            response.status_code,
            s3_code,
            message,
            operation,
            **self._context(key),
        )

    # Presigned URLs

    def _presign(
        self,
        method: str,
        key: str,
        expires_in: int,
        operation: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        validate_expiry(expires_in)
        try:
            return self.signer.presign_url(
                method,
                self.object_url(key),
                self.connection.credentials,
                self.connection.signing_region,
                expires_in,
                headers=headers,
            )
        except UploadError:
            raise
        except Exception as e:
            raise SigningError(f"Failed to presign {operation}: {e}", operation=operation, cause=e, **self._context(key))

    async def generate_presigned_upload_url(
        self,
        key: str,
        content_type: Optional[str] = None,
        expires_in: int = DEFAULT_EXPIRES_IN,
        metadata: Optional[Dict[str, str]] = None,
        acl: Optional[str] = None,
    ) -> PresignedUpload:
        """
        Presign a PUT for ``key``.

        Args:
            key: Storage key the client will upload to
            content_type: Content-Type the client should send
            expires_in: URL lifetime in seconds
            metadata: Upload context, logged with the presign
            acl: Canned ACL; signed into the URL, so the client must send it

        Returns:
            PresignedUpload with the URL and the headers the client should send
        """
        signed_headers = {"x-amz-acl": acl} if acl else None
        with self._track("presign_upload"):
            url = self._presign("PUT", key, expires_in, "presign_upload", headers=signed_headers)
        self.logger.debug("Presigned upload URL", key=key, expires_in=expires_in, metadata=metadata or {})
        fields = {"Content-Type": content_type} if content_type else {}
        if acl:
            fields["x-amz-acl"] = acl
        return PresignedUpload(url=url, key=key, fields=fields)

    async def generate_presigned_download_url(self, key: str, expires_in: int = DEFAULT_EXPIRES_IN) -> str:
        """Presign a GET for ``key``."""
        with self._track("presign_download"):
            return self._presign("GET", key, expires_in, "presign_download")

    # Listing

    async def list_files_paginated(
        self,
        prefix: Optional[str] = None,
        max_files: Optional[int] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation_token: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
        delimiter: Optional[str] = None,
    ) -> ListFilesResult:
        """Fetch a single page of ``ListObjectsV2``."""
        max_keys = min(page_size, max_files) if max_files else page_size
        params = {"list-type": "2", "max-keys": str(max(1, max_keys))}
        if prefix:
            params["prefix"] = prefix
        if continuation_token:
            params["continuation-token"] = continuation_token
        if delimiter:
            params["delimiter"] = delimiter

        url = f"{self.bucket_url}?{urlencode(params, quote_via=quote)}"
        with self._track("list"):
            response = await self._request("GET", url, "list files")
        page = parse_list_objects(response.content)

        files = [
            FileInfo(
                key=item["key"],
                url=self.get_file_url(item["key"]),
                size=item["size"],
                content_type="application/octet-stream",
                last_modified=item["last_modified"],
                etag=item["etag"],
            )
            for item in page.contents
        ]
        if sort_by:
            files = self._sort(files, sort_by, sort_order)

        self.logger.debug(
            "Listed page",
            prefix=prefix,
            count=len(files),
            is_truncated=page.is_truncated,
        )
        return ListFilesResult(
            files=files,
            is_truncated=page.is_truncated,
            continuation_token=continuation_token,
            next_continuation_token=page.next_continuation_token,
            common_prefixes=page.common_prefixes,
        )

    @staticmethod
    def _sort(files: List[FileInfo], sort_by: str, sort_order: str) -> List[FileInfo]:
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        epoch = datetime.min.replace(tzinfo=timezone.utc)

        def sort_key(info: FileInfo):
            if sort_by == "last_modified":
                return _as_utc(info.last_modified) if info.last_modified else epoch
            return getattr(info, sort_by)

        return sorted(files, key=sort_key, reverse=sort_order == "desc")

    async def iter_pages(
        self,
        prefix: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_files: Optional[int] = None,
        delimiter: Optional[str] = None,
    ) -> AsyncIterator[ListFilesResult]:
        """Yield pages, following continuation tokens until the listing ends."""
        token = None
        fetched = 0
        while True:
            remaining = max_files - fetched if max_files else None
            page = await self.list_files_paginated(
                prefix=prefix,
                max_files=remaining,
                page_size=page_size,
                continuation_token=token,
                delimiter=delimiter,
            )
            fetched += len(page.files)
            yield page

            if not page.is_truncated or not page.next_continuation_token:
                break
            if max_files and fetched >= max_files:
                break
            token = page.next_continuation_token

    async def list_files(
        self,
        prefix: Optional[str] = None,
        max_files: Optional[int] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> List[FileInfo]:
        """List every object under ``prefix`` (up to ``max_files``)."""
        files: List[FileInfo] = []
        async for page in self.iter_pages(prefix=prefix, page_size=page_size, max_files=max_files):
            files.extend(page.files)
        if max_files:
            files = files[:max_files]
        if sort_by:
            files = self._sort(files, sort_by, sort_order)
        return files

    async def list_files_by_extension(self, extension: str, prefix: Optional[str] = None) -> List[FileInfo]:
        suffix = extension.lower() if extension.startswith(".") else f".{extension.lower()}"
        return [info for info in await self.list_files(prefix=prefix) if info.key.lower().endswith(suffix)]

    async def list_files_by_size(
        self,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        prefix: Optional[str] = None,
    ) -> List[FileInfo]:
        return [
            info
            for info in await self.list_files(prefix=prefix)
            if (min_size is None or info.size >= min_size) and (max_size is None or info.size <= max_size)
        ]

    async def list_files_by_date(
        self,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        prefix: Optional[str] = None,
    ) -> List[FileInfo]:
        start = _as_utc(from_date) if from_date else None
        end = _as_utc(to_date) if to_date else None
        matched = []
        for info in await self.list_files(prefix=prefix):
            if info.last_modified is None:
                continue
            modified = _as_utc(info.last_modified)
            if (start is None or modified >= start) and (end is None or modified <= end):
                matched.append(info)
        return matched

    async def list_directories(self, prefix: Optional[str] = None) -> List[str]:
        """Common prefixes one level below ``prefix``."""
        if prefix and not prefix.endswith("/"):
            prefix = f"{prefix}/"
        directories: List[str] = []
        async for page in self.iter_pages(prefix=prefix, delimiter="/"):
            directories.extend(page.common_prefixes)
        return directories

    # Metadata

    async def get_file_info(self, key: str) -> FileInfo:
        """
        Read an object's metadata with a HEAD request.

        Raises:
            ObjectNotFoundError: if the object does not exist
        """
        with self._track("head"):
            response = await self._request("HEAD", self.object_url(key), f"get info for file {key}", key=key)

        metadata = {
            name.lower()[len(METADATA_HEADER_PREFIX) :]: value
            for name, value in response.headers.items()
            if name.lower().startswith(METADATA_HEADER_PREFIX)
        }
        return FileInfo(
            key=key,
            url=self.get_file_url(key),
            size=int(response.headers.get("content-length", "0") or 0),
            content_type=response.headers.get("content-type", "application/octet-stream"),
            last_modified=parse_timestamp(response.headers.get("last-modified")),
            etag=strip_etag(response.headers.get("etag")),
            metadata=metadata,
        )

    async def get_files_info(self, keys: List[str], concurrency: int = 8) -> List[FileInfoResult]:
        """Metadata for many keys; failures are reported per key."""

        async def fetch(key: str) -> FileInfoResult:
            try:
                return FileInfoResult(key=key, info=await self.get_file_info(key))
            except UploadError as e:
                return FileInfoResult(key=key, error=e.message)

        return await gather_bounded(keys, fetch, concurrency)

    async def get_file_size(self, key: str) -> int:
        return (await self.get_file_info(key)).size

    async def get_file_content_type(self, key: str) -> str:
        return (await self.get_file_info(key)).content_type

    async def get_file_last_modified(self, key: str) -> Optional[datetime]:
        return (await self.get_file_info(key)).last_modified

    async def get_file_metadata(self, key: str) -> Dict[str, str]:
        return (await self.get_file_info(key)).metadata

    async def set_file_metadata(
        self,
        key: str,
        metadata: Dict[str, str],
        content_type: Optional[str] = None,
    ) -> None:
        """
        Replace an object's custom metadata via a self-copy.

        The existing content type is preserved unless ``content_type`` is given.
        """
        if content_type is None:
            content_type = (await self.get_file_info(key)).content_type

        headers = {
            "x-amz-copy-source": f"/{self.connection.bucket}/{quote(key, safe='/-_.~')}",
            "x-amz-metadata-directive": "REPLACE",
            "Content-Type": content_type,
        }
        for name, value in metadata.items():
            headers[f"{METADATA_HEADER_PREFIX}{name.lower()}"] = str(value)

        with self._track("set_metadata"):
            await self._request("PUT", self.object_url(key), f"set metadata for file {key}", key=key, headers=headers)
        self.logger.info("Updated file metadata", key=key, fields=sorted(metadata))

    async def file_exists(self, key: str) -> bool:
        return await self.file_exists_with_info(key) is not None

    async def file_exists_with_info(self, key: str) -> Optional[FileInfo]:
        try:
            return await self.get_file_info(key)
        except ObjectNotFoundError:
            return None

    # Validation

    async def validate_file(self, key: str, rules: FileValidationRules) -> FileValidationResult:
        """Check a stored object against ``rules``, collecting every violation."""
        info = await self.file_exists_with_info(key)
        if info is None:
            return FileValidationResult(valid=False, errors=[f"File not found: {key}"])

        errors: List[str] = []
        warnings: List[str] = []

        if rules.max_size is not None and info.size > rules.max_size:
            errors.append(f"File size {info.size} exceeds maximum {rules.max_size}")
        if rules.min_size is not None and info.size < rules.min_size:
            errors.append(f"File size {info.size} is below minimum {rules.min_size}")
        if rules.allowed_types and not any(type_matches(info.content_type, t) for t in rules.allowed_types):
            errors.append(f"Content type {info.content_type} is not allowed")
        if rules.required_extensions:
            extensions = [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in rules.required_extensions]
            if not any(key.lower().endswith(ext) for ext in extensions):
                errors.append(f"File extension must be one of: {', '.join(extensions)}")

        for validator in rules.custom_validators:
            try:
                outcome = validator(info)
            except Exception as e:
                errors.append(f"Custom validator failed: {e}")
                continue
            if outcome is False:
                errors.append("Custom validation failed")
            elif isinstance(outcome, str):
                errors.append(outcome)

        if info.size == 0:
            warnings.append("File is empty")

        return FileValidationResult(valid=not errors, errors=errors, warnings=warnings, info=info)

    async def validate_files(self, keys: List[str], rules: FileValidationRules) -> Dict[str, FileValidationResult]:
        results = await gather_bounded(keys, lambda key: self.validate_file(key, rules), 8)
        return dict(zip(keys, results))

    # Deletion

    async def delete_file(self, key: str) -> None:
        """Delete one object; an already-absent object is not an error."""
        with self._track("delete"):
            response = await self._request(
                "DELETE",
                self.object_url(key),
                f"delete file {key}",
                key=key,
                allowed_statuses=(404,),
            )
        if response.status_code == 404:
            self.logger.warning("File already absent on delete", key=key)
        else:
            self.logger.info("Deleted file", key=key)

    async def _delete_chunk(self, keys: List[str]) -> DeleteFilesResult:
        body = build_delete_payload(keys)
        headers = {
            "Content-Type": "application/xml",
            "Content-MD5": base64.b64encode(hashlib.md5(body).digest()).decode("ascii"),
        }
        try:
            with self._track("delete_batch"):
                response = await self._request(
                    "POST",
                    f"{self.bucket_url}?delete",
                    "delete multiple files",
                    headers=headers,
                    body=body,
                )
            deleted, errors = parse_delete_result(response.content)
        except StorageRequestError as e:
            self.logger.error("Batch delete request failed", count=len(keys), error=e.message)
            return DeleteFilesResult(
                errors=[DeleteError(key=key, code=e.code.value, message=e.message) for key in keys]
            )

        # Quiet responses only list failures; anything unreported was deleted
        reported = set(deleted) | {error.key for error in errors}
        deleted.extend(key for key in keys if key not in reported)
        for error in errors:
            self.logger.error("Failed to delete file", key=error.key, code=error.code, message=error.message)
        return DeleteFilesResult(deleted=deleted, errors=errors)

    async def delete_files(self, keys: List[str]) -> DeleteFilesResult:
        """Delete many objects, ``MAX_DELETE_BATCH`` keys per request."""
        result = DeleteFilesResult()
        for start in range(0, len(keys), MAX_DELETE_BATCH):
            result.merge(await self._delete_chunk(keys[start : start + MAX_DELETE_BATCH]))
        self.logger.info("Batch delete finished", deleted=len(result.deleted), errors=len(result.errors))
        return result

    async def delete_files_by_prefix(
        self,
        prefix: str,
        dry_run: bool = False,
        max_files: int = 10000,
    ) -> DeleteByPrefixResult:
        """Delete everything under ``prefix``; ``dry_run`` only reports the matches."""
        keys = [info.key for info in await self.list_files(prefix=prefix, max_files=max_files)]
        if dry_run or not keys:
            return DeleteByPrefixResult(files_found=len(keys), keys=keys, dry_run=dry_run)

        result = await self.delete_files(keys)
        return DeleteByPrefixResult(
            files_found=len(keys),
            keys=keys,
            deleted=result.deleted,
            errors=result.errors,
            dry_run=False,
        )

    # Connectivity

    async def validate_connection(self) -> ConnectionCheck:
        """HEAD the bucket to confirm credentials and reachability."""
        try:
            await self._request("HEAD", self.bucket_url, "validate connection")
        except UploadError as e:
            self.logger.warning("Connection check failed", error=e.debug_info())
            return ConnectionCheck(success=False, error=e.message)
        return ConnectionCheck(success=True)
