"""
S3-compatible object storage for the upload engine.

Provider normalization, request signing and the ``S3Storage`` facade that
talks to any S3-compatible store (AWS S3, Cloudflare R2, DigitalOcean
Spaces, MinIO and generic endpoints) over plain signed HTTP.
"""

from .instance import StorageInstance
from .models import (
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
from .providers import (
    ConnectionParams,
    ProviderValidation,
    build_bucket_url,
    build_object_url,
    get_file_url,
    normalize_provider,
    validate_provider_config,
)
from .s3_storage import S3Storage
from .signer import BotocoreSigner, Signer

__all__ = [
    # Concrete implementations
    "S3Storage",
    "StorageInstance",
    # Provider normalization
    "ConnectionParams",
    "ProviderValidation",
    "normalize_provider",
    "validate_provider_config",
    "build_bucket_url",
    "build_object_url",
    "get_file_url",
    # Signing
    "Signer",
    "BotocoreSigner",
    # Data models
    "FileInfo",
    "FileInfoResult",
    "ListFilesResult",
    "DeleteError",
    "DeleteFilesResult",
    "DeleteByPrefixResult",
    "FileValidationRules",
    "FileValidationResult",
    "PresignedUpload",
    "ConnectionCheck",
]
