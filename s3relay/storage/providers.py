"""
Provider normalization and URL building.

``normalize_provider`` maps any supported provider config onto one canonical
``ConnectionParams`` value. Everything that builds a URL or signs a request
goes through that value, so provider quirks live in this module only.
"""

from dataclasses import dataclass, field
from urllib.parse import quote, urlsplit

from pydantic import BaseModel

from s3relay.core.errors import ConfigurationError
from s3relay.models.provider import (
    AWSProviderConfig,
    MinioProviderConfig,
    ProviderConfig,
    ProviderCredentials,
    ProviderKind,
    R2ProviderConfig,
    S3CompatibleProviderConfig,
    SpacesProviderConfig,
    unsupported_provider_error,
)

FALLBACK_SIGNING_REGION = "us-east-1"


class ConnectionParams(BaseModel):
    """Canonical connection parameters for one bucket."""

    provider: ProviderKind
    bucket: str
    region: str
    signing_region: str
    endpoint: str | None = None
    force_path_style: bool = False
    acl: str = "private"
    custom_domain: str | None = None
    credentials: ProviderCredentials = ProviderCredentials()

    class Config:
        frozen = True


@dataclass
class ProviderValidation:
    """Outcome of ``validate_provider_config``."""

    valid: bool
    errors: list[str] = field(default_factory=list)


def _signing_region(region: str) -> str:
    return FALLBACK_SIGNING_REGION if region == "auto" else region


def _minio_endpoint(config: MinioProviderConfig) -> str:
    endpoint = config.endpoint.rstrip("/")
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    scheme = "https" if config.use_ssl else "http"
    port = f":{config.port}" if config.port else ""
    return f"{scheme}://{endpoint}{port}"


def normalize_provider(config: ProviderConfig) -> ConnectionParams:
    """
    Resolve a provider config into canonical connection parameters.

    Pure function: no I/O, no environment access.

    Raises:
        ConfigurationError: generic S3-compatible config without an endpoint.
        ProviderUnsupportedError: unrecognised provider variant.
    """
    common = {
        "bucket": config.bucket,
        "acl": config.acl,
        "custom_domain": config.custom_domain,
        "credentials": config.credentials,
    }

    if isinstance(config, AWSProviderConfig):
        return ConnectionParams(
            provider=ProviderKind.AWS,
            region=config.region,
            signing_region=config.region,
            endpoint=None,
            force_path_style=config.force_path_style,
            **common,
        )

    if isinstance(config, R2ProviderConfig):
        endpoint = config.endpoint or f"https://{config.account_id}.r2.cloudflarestorage.com"
        # R2 signs with its literal region token
        return ConnectionParams(
            provider=ProviderKind.CLOUDFLARE_R2,
            region=config.region,
            signing_region=config.region,
            endpoint=endpoint.rstrip("/"),
            force_path_style=True,
            **common,
        )

    if isinstance(config, SpacesProviderConfig):
        endpoint = config.endpoint or f"https://{config.region}.digitaloceanspaces.com"
        return ConnectionParams(
            provider=ProviderKind.DIGITALOCEAN_SPACES,
            region=config.region,
            signing_region=FALLBACK_SIGNING_REGION,
            endpoint=endpoint.rstrip("/"),
            force_path_style=False,
            **common,
        )

    if isinstance(config, MinioProviderConfig):
        return ConnectionParams(
            provider=ProviderKind.MINIO,
            region=config.region,
            signing_region=_signing_region(config.region),
            endpoint=_minio_endpoint(config),
            force_path_style=True,
            **common,
        )

    if isinstance(config, S3CompatibleProviderConfig):
        if not config.endpoint:
            raise ConfigurationError(
                "Generic S3-compatible provider requires an endpoint URL.",
                provider=ProviderKind.S3_COMPATIBLE.value,
            )
        return ConnectionParams(
            provider=ProviderKind.S3_COMPATIBLE,
            region=config.region,
            signing_region=_signing_region(config.region),
            endpoint=config.endpoint.rstrip("/"),
            force_path_style=config.force_path_style,
            **common,
        )

    raise unsupported_provider_error(str(getattr(config, "provider", type(config).__name__)))


def validate_provider_config(config: ProviderConfig) -> ProviderValidation:
    """Report every missing field a provider config needs to be usable."""
    errors = []

    if not config.bucket:
        errors.append("Bucket name is required")
    if not config.access_key_id:
        errors.append("Access key ID is required")
    if not config.secret_access_key:
        errors.append("Secret access key is required")

    if isinstance(config, R2ProviderConfig) and not (config.account_id or config.endpoint):
        errors.append("Cloudflare account ID or endpoint is required")
    if isinstance(config, S3CompatibleProviderConfig) and not config.endpoint:
        errors.append("Endpoint URL is required for S3-compatible providers")
    if isinstance(config, MinioProviderConfig) and not config.endpoint:
        errors.append("MinIO endpoint is required")

    return ProviderValidation(valid=not errors, errors=errors)


def encode_key(key: str) -> str:
    """Percent-encode an object key, keeping path separators."""
    return quote(key, safe="/-_.~")


def build_bucket_url(params: ConnectionParams) -> str:
    """Base URL addressing the bucket itself."""
    if params.endpoint:
        if params.force_path_style:
            return f"{params.endpoint}/{params.bucket}"
        parts = urlsplit(params.endpoint)
        return f"{parts.scheme}://{params.bucket}.{parts.netloc}{parts.path}"

    if params.force_path_style:
        return f"https://s3.{params.region}.amazonaws.com/{params.bucket}"
    return f"https://{params.bucket}.s3.{params.region}.amazonaws.com"


def build_object_url(params: ConnectionParams, key: str) -> str:
    """Direct object-store URL for ``key``."""
    return f"{build_bucket_url(params)}/{encode_key(key.lstrip('/'))}"


def get_file_url(params: ConnectionParams, key: str) -> str:
    """Public URL for ``key``, honouring a custom domain when configured."""
    if params.custom_domain:
        return f"{params.custom_domain}/{encode_key(key.lstrip('/'))}"
    return build_object_url(params, key)
