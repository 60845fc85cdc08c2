"""
Provider configuration models.

Each supported object store is a tagged variant keyed on ``provider``. The
variants only describe what the caller supplied; turning them into canonical
connection parameters is the job of ``s3relay.storage.providers``.
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, validator

from s3relay.core.errors import ProviderUnsupportedError


class ProviderKind(str, Enum):
    """Supported S3-compatible providers."""

    AWS = "aws"
    CLOUDFLARE_R2 = "cloudflare-r2"
    DIGITALOCEAN_SPACES = "digitalocean-spaces"
    MINIO = "minio"
    S3_COMPATIBLE = "s3-compatible"


class StoragePermission(str, Enum):
    """Canned ACLs applied to uploaded objects."""

    PRIVATE = "private"
    PUBLIC_READ = "public-read"
    PUBLIC_READ_WRITE = "public-read-write"
    AUTHENTICATED_READ = "authenticated-read"


# Known provider names that are recognised but not implemented yet
PLANNED_PROVIDERS = (
    "gcs",
    "azure-blob",
    "ibm-cloud",
    "oracle-oci",
    "wasabi",
    "backblaze-b2",
    "storj-dcs",
    "telnyx-storage",
    "tigris-data",
    "cloudian-hyperstore",
)


class ProviderCredentials(BaseModel):
    """Access credentials handed to the signer."""

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str | None = None

    class Config:
        frozen = True

    def __repr__(self) -> str:
        return f"ProviderCredentials(access_key_id={self.access_key_id!r}, secret_access_key='***')"


class _BaseProviderConfig(BaseModel):
    bucket: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str | None = None
    acl: StoragePermission = StoragePermission.PRIVATE
    custom_domain: str | None = None

    class Config:
        frozen = True
        use_enum_values = True

    @validator("custom_domain")
    def strip_custom_domain(cls, v):
        if v:
            return v.rstrip("/")
        return v

    @property
    def credentials(self) -> ProviderCredentials:
        return ProviderCredentials(
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            session_token=self.session_token,
        )


class AWSProviderConfig(_BaseProviderConfig):
    """Amazon S3."""

    provider: Literal["aws"] = "aws"
    region: str = "us-east-1"
    force_path_style: bool = False


class R2ProviderConfig(_BaseProviderConfig):
    """Cloudflare R2."""

    provider: Literal["cloudflare-r2"] = "cloudflare-r2"
    account_id: str = ""
    region: str = "auto"
    endpoint: str | None = None


class SpacesProviderConfig(_BaseProviderConfig):
    """DigitalOcean Spaces."""

    provider: Literal["digitalocean-spaces"] = "digitalocean-spaces"
    region: str = "nyc3"
    endpoint: str | None = None


class MinioProviderConfig(_BaseProviderConfig):
    """Self-hosted MinIO."""

    provider: Literal["minio"] = "minio"
    endpoint: str = "localhost:9000"
    region: str = "us-east-1"
    use_ssl: bool = False
    port: int | None = Field(default=None, ge=1, le=65535)


class S3CompatibleProviderConfig(_BaseProviderConfig):
    """Any other store speaking the S3 REST dialect."""

    provider: Literal["s3-compatible"] = "s3-compatible"
    endpoint: str | None = None
    region: str = "us-east-1"
    force_path_style: bool = True

    @validator("endpoint")
    def validate_endpoint(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Endpoint URL must start with http:// or https://")
        return v


ProviderConfig = Annotated[
    Union[
        AWSProviderConfig,
        R2ProviderConfig,
        SpacesProviderConfig,
        MinioProviderConfig,
        S3CompatibleProviderConfig,
    ],
    Field(discriminator="provider"),
]

_provider_adapter: TypeAdapter = TypeAdapter(ProviderConfig)


def supported_providers() -> list[str]:
    return [kind.value for kind in ProviderKind]


def unsupported_provider_error(kind: str) -> ProviderUnsupportedError:
    supported = ", ".join(supported_providers())
    if kind in PLANNED_PROVIDERS:
        message = f"Provider '{kind}' is not supported yet. Supported providers: {supported}."
    else:
        message = (
            f"Unknown provider '{kind}'. Supported providers: {supported} "
            "(use 's3-compatible' with a custom endpoint for other stores)."
        )
    return ProviderUnsupportedError(message, provider=kind, details={"supported": supported_providers()})


def create_provider_config(kind: str | ProviderKind, **fields) -> ProviderConfig:
    """
    Build a validated provider config for ``kind``.

    Raises:
        ProviderUnsupportedError: if ``kind`` is not one of ``ProviderKind``.
    """
    tag = kind.value if isinstance(kind, ProviderKind) else str(kind)
    if tag not in supported_providers():
        raise unsupported_provider_error(tag)
    return _provider_adapter.validate_python({**fields, "provider": tag})
