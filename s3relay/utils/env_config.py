"""
Environment-based provider configuration.

Each provider has a fixed set of environment variable names; where several
names exist for the same setting the first non-empty one wins. Nothing is
read at import time: call ``provider_config_from_env`` explicitly.
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import structlog
from dotenv import dotenv_values

from s3relay.models.provider import (
    ProviderConfig,
    ProviderKind,
    create_provider_config,
    supported_providers,
    unsupported_provider_error,
)

logger = structlog.get_logger(__name__)


# field name -> candidate environment variables, in priority order
PROVIDER_ENV_VARS: dict[ProviderKind, dict[str, tuple[str, ...]]] = {
    ProviderKind.AWS: {
        "region": ("AWS_REGION", "S3_REGION"),
        "bucket": ("AWS_S3_BUCKET", "S3_BUCKET", "S3_BUCKET_NAME"),
        "access_key_id": ("AWS_ACCESS_KEY_ID", "S3_ACCESS_KEY_ID"),
        "secret_access_key": ("AWS_SECRET_ACCESS_KEY", "S3_SECRET_ACCESS_KEY"),
        "session_token": ("AWS_SESSION_TOKEN",),
        "acl": ("S3_ACL",),
        "custom_domain": ("S3_CUSTOM_DOMAIN",),
        "force_path_style": ("S3_FORCE_PATH_STYLE",),
    },
    ProviderKind.CLOUDFLARE_R2: {
        "account_id": ("CLOUDFLARE_ACCOUNT_ID", "R2_ACCOUNT_ID"),
        "bucket": ("R2_BUCKET", "CLOUDFLARE_R2_BUCKET"),
        "access_key_id": ("R2_ACCESS_KEY_ID", "CLOUDFLARE_R2_ACCESS_KEY_ID"),
        "secret_access_key": ("R2_SECRET_ACCESS_KEY", "CLOUDFLARE_R2_SECRET_ACCESS_KEY"),
        "endpoint": ("R2_ENDPOINT",),
        "acl": ("R2_ACL",),
        "custom_domain": ("R2_CUSTOM_DOMAIN",),
    },
    ProviderKind.DIGITALOCEAN_SPACES: {
        "region": ("DO_SPACES_REGION",),
        "bucket": ("DO_SPACES_BUCKET",),
        "access_key_id": ("DO_SPACES_ACCESS_KEY_ID", "DO_SPACES_KEY"),
        "secret_access_key": ("DO_SPACES_SECRET_ACCESS_KEY", "DO_SPACES_SECRET"),
        "endpoint": ("DO_SPACES_ENDPOINT",),
        "acl": ("DO_SPACES_ACL",),
        "custom_domain": ("DO_SPACES_CUSTOM_DOMAIN",),
    },
    ProviderKind.MINIO: {
        "endpoint": ("MINIO_ENDPOINT",),
        "bucket": ("MINIO_BUCKET",),
        "access_key_id": ("MINIO_ACCESS_KEY_ID", "MINIO_ACCESS_KEY"),
        "secret_access_key": ("MINIO_SECRET_ACCESS_KEY", "MINIO_SECRET_KEY"),
        "region": ("MINIO_REGION",),
        "use_ssl": ("MINIO_USE_SSL",),
        "port": ("MINIO_PORT",),
        "acl": ("MINIO_ACL",),
        "custom_domain": ("MINIO_CUSTOM_DOMAIN",),
    },
    ProviderKind.S3_COMPATIBLE: {
        "endpoint": ("S3_ENDPOINT", "S3_COMPATIBLE_ENDPOINT"),
        "bucket": ("S3_BUCKET", "S3_BUCKET_NAME"),
        "access_key_id": ("S3_ACCESS_KEY_ID", "AWS_ACCESS_KEY_ID"),
        "secret_access_key": ("S3_SECRET_ACCESS_KEY", "AWS_SECRET_ACCESS_KEY"),
        "region": ("S3_REGION", "AWS_REGION"),
        "force_path_style": ("S3_FORCE_PATH_STYLE",),
        "acl": ("S3_ACL",),
        "custom_domain": ("S3_CUSTOM_DOMAIN",),
    },
}


def get_env_bool(value: str) -> bool:
    """Interpret an environment string as a boolean."""
    return value.strip().lower() in ("true", "1", "yes", "on")


def first_env(environ: Mapping[str, str], names: tuple[str, ...]) -> Optional[str]:
    """Return the first non-empty value among ``names``."""
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def provider_config_from_env(
    kind: str | ProviderKind,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[str | Path] = None,
) -> ProviderConfig:
    """
    Build a provider config from environment variables.

    Args:
        kind: Provider kind tag
        environ: Mapping to read from (defaults to ``os.environ``)
        env_file: Optional ``.env`` file whose values fill gaps in ``environ``

    Raises:
        ProviderUnsupportedError: if ``kind`` is not a supported provider
    """
    tag = kind.value if isinstance(kind, ProviderKind) else str(kind)
    if tag not in supported_providers():
        raise unsupported_provider_error(tag)
    provider = ProviderKind(tag)

    source: dict[str, str] = {}
    if env_file is not None:
        env_path = Path(env_file)
        if env_path.exists():
            source.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
            logger.info("Loaded environment file", path=str(env_path))
        else:
            logger.warning("Environment file not found", path=str(env_path))
    source.update(os.environ if environ is None else environ)

    fields: dict[str, Any] = {}
    for field_name, names in PROVIDER_ENV_VARS[provider].items():
        value = first_env(source, names)
        if value is None:
            continue
        if field_name in ("use_ssl", "force_path_style"):
            fields[field_name] = get_env_bool(value)
        else:
            fields[field_name] = value

    logger.debug("Provider config loaded from environment", provider=provider.value, fields=sorted(fields))
    return create_provider_config(provider, **fields)
