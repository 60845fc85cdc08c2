"""
Upload configuration.

``UploadConfig`` is the read-only aggregate every other component receives
explicitly: connection parameters, default constraints, the global path
policy, security policy and global lifecycle hooks. Build it with
``s3relay.core.builder.UploadConfigBuilder``.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Optional

from s3relay.core.errors import ConfigurationError
from s3relay.core.paths import GlobalPaths
from s3relay.models.provider import ProviderConfig
from s3relay.storage.providers import ConnectionParams
from s3relay.storage.signer import validate_expiry

DEFAULT_EXPIRES_IN = 3600


def frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class UploadDefaults:
    """Constraints applied to every route before its own schema."""

    max_file_size: Optional[int] = None
    allowed_file_types: tuple[str, ...] = ()
    acl: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class RateLimit:
    max_uploads: int
    window_ms: int

    def __post_init__(self):
        if self.max_uploads < 1 or self.window_ms < 1:
            raise ConfigurationError("Rate limit values must be positive")


@dataclass(frozen=True)
class SecurityPolicy:
    require_auth: bool = False
    allowed_origins: tuple[str, ...] = ()
    rate_limiting: Optional[RateLimit] = None


@dataclass(frozen=True)
class GlobalHooks:
    """Hooks fired for every route, after the route's own hook."""

    on_upload_start: Optional[Callable[[Any], Any]] = None
    on_upload_complete: Optional[Callable[[Any], Any]] = None
    on_upload_error: Optional[Callable[[Any], Any]] = None


@dataclass(frozen=True)
class UploadConfig:
    """Immutable upload configuration."""

    connection: ConnectionParams
    provider_config: ProviderConfig
    defaults: UploadDefaults = field(default_factory=UploadDefaults)
    paths: GlobalPaths = field(default_factory=GlobalPaths)
    security: SecurityPolicy = field(default_factory=SecurityPolicy)
    hooks: GlobalHooks = field(default_factory=GlobalHooks)
    debug: bool = False
    enable_metrics: bool = False
    expires_in: int = DEFAULT_EXPIRES_IN
    batch_concurrency: int = 1

    def __post_init__(self):
        validate_expiry(self.expires_in)
        if self.batch_concurrency < 1:
            raise ConfigurationError("batch_concurrency must be at least 1")
