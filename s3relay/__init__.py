"""
s3relay: presigned direct-to-storage uploads for S3-compatible providers.

The server side issues presigned ``PUT`` URLs per file through named,
schema-validated routes; the client side streams bytes straight to storage
and reports completion back.
"""

from s3relay.client import LocalFile, MemoryFile, ProgressTracker, UploadOrchestrator
from s3relay.core.builder import UploadConfigBuilder, UploadSetup, create_upload_config
from s3relay.core.config import UploadConfig
from s3relay.core.errors import (
    ConfigurationError,
    ErrorCode,
    ProviderUnsupportedError,
    RouteNotFoundError,
    SigningError,
    StorageRequestError,
    UploadError,
    ValidationFailedError,
)
from s3relay.core.handler import HandlerResponse, UploadHandler
from s3relay.core.router import Route, Router, create_router
from s3relay.core.schema import SchemaFactory, s3
from s3relay.models.provider import ProviderKind, create_provider_config
from s3relay.models.upload import CompletionResult, FileDescriptor, PresignedUrlResult, UploadCompletion
from s3relay.storage import S3Storage, StorageInstance

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "create_upload_config",
    "UploadConfigBuilder",
    "UploadConfig",
    "UploadSetup",
    "ProviderKind",
    "create_provider_config",
    # Routing
    "Router",
    "Route",
    "create_router",
    "UploadHandler",
    "HandlerResponse",
    "SchemaFactory",
    "s3",
    # Storage
    "S3Storage",
    "StorageInstance",
    # Wire models
    "FileDescriptor",
    "PresignedUrlResult",
    "UploadCompletion",
    "CompletionResult",
    # Client
    "UploadOrchestrator",
    "ProgressTracker",
    "LocalFile",
    "MemoryFile",
    # Errors
    "ErrorCode",
    "UploadError",
    "ConfigurationError",
    "ProviderUnsupportedError",
    "RouteNotFoundError",
    "ValidationFailedError",
    "SigningError",
    "StorageRequestError",
]
