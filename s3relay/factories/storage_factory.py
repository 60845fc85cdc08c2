"""
Factory for creating storage instances.
"""

from pathlib import Path
from typing import Optional, Union

import httpx

from s3relay.core.errors import ConfigurationError, ErrorCode
from s3relay.models.provider import ProviderConfig, ProviderKind
from s3relay.storage.providers import normalize_provider, validate_provider_config
from s3relay.storage.s3_storage import S3Storage
from s3relay.storage.signer import Signer
from s3relay.utils.env_config import provider_config_from_env
from s3relay.utils.metrics import MetricsCollector
from s3relay.utils.settings import RelaySettings


def create_storage(
    provider_config: ProviderConfig,
    signer: Optional[Signer] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
    metrics: Optional[MetricsCollector] = None,
) -> S3Storage:
    """Validate a provider config and create storage for its bucket."""
    validation = validate_provider_config(provider_config)
    if not validation.valid:
        raise ConfigurationError(
            f"Invalid provider configuration: {', '.join(validation.errors)}",
            code=ErrorCode.PROVIDER_CONFIG_INVALID,
            provider=provider_config.provider,
            details={"errors": validation.errors},
        )

    connection = normalize_provider(provider_config)
    return S3Storage(connection, signer=signer, http_client=http_client, timeout=timeout, metrics=metrics)


def create_storage_from_env(
    kind: Union[str, ProviderKind],
    env_file: Optional[Union[str, Path]] = None,
    settings: Optional[RelaySettings] = None,
) -> S3Storage:
    """Create storage from provider environment variables."""
    timeout = settings.request_timeout if settings is not None else 30.0
    return create_storage(provider_config_from_env(kind, env_file=env_file), timeout=timeout)
