"""
Error taxonomy for the upload protocol engine.

Every error carries a machine-readable code plus the context needed to build
both a technical log line and a user-facing message. Process-wide problems
(configuration, unsupported providers) are raised immediately; per-file
problems are captured by the router and returned as structured results.
"""

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # Configuration
    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_MISSING = "CONFIG_MISSING"
    PROVIDER_UNSUPPORTED = "PROVIDER_UNSUPPORTED"
    PROVIDER_CONFIG_INVALID = "PROVIDER_CONFIG_INVALID"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"

    # Object store
    S3_CONNECTION_FAILED = "S3_CONNECTION_FAILED"
    S3_BUCKET_NOT_FOUND = "S3_BUCKET_NOT_FOUND"
    S3_ACCESS_DENIED = "S3_ACCESS_DENIED"
    S3_INVALID_CREDENTIALS = "S3_INVALID_CREDENTIALS"

    # Files
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_TYPE_NOT_ALLOWED = "FILE_TYPE_NOT_ALLOWED"
    FILE_VALIDATION_FAILED = "FILE_VALIDATION_FAILED"

    # Operations
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    PRESIGNED_URL_FAILED = "PRESIGNED_URL_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CONFIG_INVALID: "Upload service is misconfigured. Please contact support.",
    ErrorCode.CONFIG_MISSING: "Upload service is not configured. Please contact support.",
    ErrorCode.PROVIDER_UNSUPPORTED: "The configured storage provider is not supported.",
    ErrorCode.PROVIDER_CONFIG_INVALID: "Storage provider configuration is invalid.",
    ErrorCode.ROUTE_NOT_FOUND: "The requested upload route does not exist.",
    ErrorCode.S3_CONNECTION_FAILED: "Could not connect to storage. Please try again later.",
    ErrorCode.S3_BUCKET_NOT_FOUND: "Storage bucket not found.",
    ErrorCode.S3_ACCESS_DENIED: "Access to storage was denied.",
    ErrorCode.S3_INVALID_CREDENTIALS: "Storage credentials are invalid.",
    ErrorCode.FILE_NOT_FOUND: "The requested file was not found.",
    ErrorCode.FILE_TOO_LARGE: "The file is too large.",
    ErrorCode.FILE_TYPE_NOT_ALLOWED: "This file type is not allowed.",
    ErrorCode.FILE_VALIDATION_FAILED: "The file did not pass validation.",
    ErrorCode.UPLOAD_FAILED: "Upload failed. Please try again.",
    ErrorCode.DOWNLOAD_FAILED: "Download failed. Please try again.",
    ErrorCode.PRESIGNED_URL_FAILED: "Could not prepare the upload. Please try again.",
    ErrorCode.NETWORK_ERROR: "Network error. Please check your connection and try again.",
    ErrorCode.TIMEOUT_ERROR: "The request timed out. Please try again.",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred.",
}


class UploadError(Exception):
    """Base exception for upload and storage operations."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        operation: str | None = None,
        provider: str | None = None,
        bucket: str | None = None,
        key: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.operation = operation
        self.provider = provider
        self.bucket = bucket
        self.key = key
        self.status_code = status_code
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now()

    def user_message(self) -> str:
        """Message suitable for showing to an end user."""
        return _USER_MESSAGES.get(self.code, _USER_MESSAGES[ErrorCode.UNKNOWN_ERROR])

    def debug_info(self) -> str:
        """Single technical line with all known context."""
        parts = [f"[{self.code.value}] {self.message}"]
        for name in ("operation", "provider", "bucket", "key", "status_code"):
            value = getattr(self, name)
            if value is not None:
                parts.append(f"{name}={value}")
        if self.cause is not None:
            parts.append(f"cause={type(self.cause).__name__}: {self.cause}")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "operation": self.operation,
            "provider": self.provider,
            "bucket": self.bucket,
            "key": self.key,
            "status_code": self.status_code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ConfigurationError(UploadError):
    """Application is misconfigured; fatal, raised at startup."""

    default_code = ErrorCode.CONFIG_INVALID


class ProviderUnsupportedError(ConfigurationError):
    """Requested storage provider kind is not supported."""

    default_code = ErrorCode.PROVIDER_UNSUPPORTED


class RouteNotFoundError(UploadError):
    """No route registered under the requested name."""

    default_code = ErrorCode.ROUTE_NOT_FOUND


class ValidationFailedError(UploadError):
    """File descriptor did not satisfy the route schema."""

    default_code = ErrorCode.FILE_VALIDATION_FAILED


class SigningError(UploadError):
    """Signer failed to produce a presigned URL or signed request."""

    default_code = ErrorCode.PRESIGNED_URL_FAILED


class StorageRequestError(UploadError):
    """An HTTP call against the object store failed."""

    default_code = ErrorCode.UPLOAD_FAILED


class ObjectNotFoundError(StorageRequestError):
    """Object does not exist in the bucket."""

    default_code = ErrorCode.FILE_NOT_FOUND


class BucketNotFoundError(StorageRequestError):
    default_code = ErrorCode.S3_BUCKET_NOT_FOUND


class AccessDeniedError(StorageRequestError):
    default_code = ErrorCode.S3_ACCESS_DENIED


class InvalidCredentialsError(StorageRequestError):
    default_code = ErrorCode.S3_INVALID_CREDENTIALS


class StorageNetworkError(StorageRequestError):
    """Transport-level failure talking to the object store."""

    default_code = ErrorCode.NETWORK_ERROR


_S3_CODE_MAPPING: dict[str, type[StorageRequestError]] = {
    "NoSuchKey": ObjectNotFoundError,
    "NotFound": ObjectNotFoundError,
    "NoSuchBucket": BucketNotFoundError,
    "AccessDenied": AccessDeniedError,
    "Forbidden": AccessDeniedError,
    "InvalidAccessKeyId": InvalidCredentialsError,
    "SignatureDoesNotMatch": InvalidCredentialsError,
    "ExpiredToken": InvalidCredentialsError,
}


def error_from_response(
    status_code: int,
    s3_code: str | None,
    message: str | None,
    operation: str,
    **context: Any,
) -> StorageRequestError:
    """Map an object-store error response to the matching exception."""
    error_class = _S3_CODE_MAPPING.get(s3_code or "")
    if error_class is None:
        if status_code == 404:
            error_class = ObjectNotFoundError
        elif status_code == 403:
            error_class = AccessDeniedError
        else:
            error_class = StorageRequestError

    detail = message or s3_code or f"HTTP {status_code}"
    return error_class(
        f"S3 error during {operation}: {detail}",
        operation=operation,
        status_code=status_code,
        details={"s3_code": s3_code} if s3_code else None,
        **context,
    )
