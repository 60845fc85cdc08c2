"""
Immutable builder for the upload configuration.

Usage::

    setup = (
        create_upload_config()
        .provider("cloudflare-r2", account_id="...", bucket="media", ...)
        .defaults(max_file_size="10MB")
        .paths(prefix="uploads")
        .build()
    )
    router = setup.create_router({"avatar": setup.s3.image().max("2MB")})

Every builder method returns a new builder; the original is never modified.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional, Union

import httpx
import structlog

from s3relay.core.config import (
    DEFAULT_EXPIRES_IN,
    GlobalHooks,
    RateLimit,
    SecurityPolicy,
    UploadConfig,
    UploadDefaults,
    frozen_mapping,
)
from s3relay.core.errors import ConfigurationError, ErrorCode
from s3relay.core.paths import DEFAULT_PREFIX, GlobalPaths
from s3relay.core.router import RouteDefinitions, Router, create_router
from s3relay.core.schema import SchemaFactory, SizeValue, parse_size, s3
from s3relay.factories.storage_factory import create_storage
from s3relay.models.provider import ProviderConfig, ProviderKind, create_provider_config
from s3relay.storage.instance import StorageInstance
from s3relay.storage.signer import Signer
from s3relay.utils.env_config import provider_config_from_env
from s3relay.utils.metrics import MetricsCollector
from s3relay.utils.settings import RelaySettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UploadSetup:
    """Everything produced by ``UploadConfigBuilder.build``."""

    config: UploadConfig
    storage: StorageInstance
    s3: SchemaFactory
    metrics: Optional[MetricsCollector] = None

    def create_router(self, routes: RouteDefinitions) -> Router:
        return create_router(self.config, routes, storage=self.storage.storage)


@dataclass(frozen=True)
class UploadConfigBuilder:
    provider_config: Optional[ProviderConfig] = None
    upload_defaults: UploadDefaults = UploadDefaults()
    global_paths: GlobalPaths = GlobalPaths()
    security_policy: SecurityPolicy = SecurityPolicy()
    global_hooks: GlobalHooks = GlobalHooks()
    debug_enabled: bool = False
    metrics_enabled: bool = False
    url_expires_in: int = DEFAULT_EXPIRES_IN
    concurrency: int = 1
    request_signer: Optional[Signer] = None
    http_client: Optional[httpx.AsyncClient] = None
    request_timeout: float = 30.0

    def provider(self, config: Union[ProviderConfig, str, ProviderKind], **fields: Any) -> "UploadConfigBuilder":
        """Set the provider from a config object or a kind tag plus fields."""
        if isinstance(config, (str, ProviderKind)):
            config = create_provider_config(config, **fields)
        return replace(self, provider_config=config)

    def provider_from_env(
        self,
        kind: Union[str, ProviderKind],
        env_file: Optional[Union[str, Path]] = None,
    ) -> "UploadConfigBuilder":
        return replace(self, provider_config=provider_config_from_env(kind, env_file=env_file))

    def defaults(
        self,
        max_file_size: Optional[SizeValue] = None,
        allowed_file_types: Optional[Sequence[str]] = None,
        acl: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> "UploadConfigBuilder":
        current = self.upload_defaults
        return replace(
            self,
            upload_defaults=UploadDefaults(
                max_file_size=parse_size(max_file_size) if max_file_size is not None else current.max_file_size,
                allowed_file_types=tuple(allowed_file_types) if allowed_file_types is not None else current.allowed_file_types,
                acl=acl or current.acl,
                metadata=frozen_mapping(metadata) if metadata is not None else current.metadata,
            ),
        )

    def paths(
        self,
        prefix: str = DEFAULT_PREFIX,
        generate_key: Optional[Callable[..., str]] = None,
    ) -> "UploadConfigBuilder":
        return replace(self, global_paths=GlobalPaths(prefix=prefix, generate_key=generate_key))

    def security(
        self,
        require_auth: bool = False,
        allowed_origins: Sequence[str] = (),
        max_uploads: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> "UploadConfigBuilder":
        rate_limiting = None
        if max_uploads is not None or window_ms is not None:
            rate_limiting = RateLimit(max_uploads=max_uploads or 0, window_ms=window_ms or 0)
        return replace(
            self,
            security_policy=SecurityPolicy(
                require_auth=require_auth,
                allowed_origins=tuple(allowed_origins),
                rate_limiting=rate_limiting,
            ),
        )

    def hooks(
        self,
        on_upload_start: Optional[Callable[[Any], Any]] = None,
        on_upload_complete: Optional[Callable[[Any], Any]] = None,
        on_upload_error: Optional[Callable[[Any], Any]] = None,
    ) -> "UploadConfigBuilder":
        return replace(
            self,
            global_hooks=GlobalHooks(
                on_upload_start=on_upload_start,
                on_upload_complete=on_upload_complete,
                on_upload_error=on_upload_error,
            ),
        )

    def debug(self, enabled: bool = True) -> "UploadConfigBuilder":
        return replace(self, debug_enabled=enabled)

    def metrics(self, enabled: bool = True) -> "UploadConfigBuilder":
        return replace(self, metrics_enabled=enabled)

    def expires_in(self, seconds: int) -> "UploadConfigBuilder":
        return replace(self, url_expires_in=seconds)

    def batch_concurrency(self, limit: int) -> "UploadConfigBuilder":
        return replace(self, concurrency=limit)

    def settings(self, settings: RelaySettings) -> "UploadConfigBuilder":
        """Apply expiry, batch concurrency and request timeout from ``RelaySettings``."""
        return replace(
            self,
            url_expires_in=settings.default_expires_in,
            concurrency=settings.batch_concurrency,
            request_timeout=settings.request_timeout,
        )

    def signer(self, signer: Signer) -> "UploadConfigBuilder":
        return replace(self, request_signer=signer)

    def client(self, http_client: httpx.AsyncClient, timeout: Optional[float] = None) -> "UploadConfigBuilder":
        return replace(self, http_client=http_client, request_timeout=timeout or self.request_timeout)

    def build(self) -> UploadSetup:
        """
        Validate and freeze the configuration.

        Raises:
            ConfigurationError: missing or invalid provider configuration
            ProviderUnsupportedError: provider kind cannot be normalized
        """
        if self.provider_config is None:
            raise ConfigurationError("Provider configuration is required", code=ErrorCode.CONFIG_MISSING)

        metrics = MetricsCollector() if self.metrics_enabled else None
        storage = create_storage(
            self.provider_config,
            signer=self.request_signer,
            http_client=self.http_client,
            timeout=self.request_timeout,
            metrics=metrics,
        )
        connection = storage.connection
        config = UploadConfig(
            connection=connection,
            provider_config=self.provider_config,
            defaults=self.upload_defaults,
            paths=self.global_paths,
            security=self.security_policy,
            hooks=self.global_hooks,
            debug=self.debug_enabled,
            enable_metrics=self.metrics_enabled,
            expires_in=self.url_expires_in,
            batch_concurrency=self.concurrency,
        )

        if self.debug_enabled:
            logger.info(
                "Upload configuration built",
                provider=connection.provider.value,
                bucket=connection.bucket,
                region=connection.region,
                endpoint=connection.endpoint,
                force_path_style=connection.force_path_style,
            )

        return UploadSetup(config=config, storage=StorageInstance(storage), s3=s3, metrics=metrics)


def create_upload_config() -> UploadConfigBuilder:
    return UploadConfigBuilder()
