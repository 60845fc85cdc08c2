"""
Process-level settings for s3relay.

Settings are read from ``S3RELAY_*`` environment variables (and an optional
``.env`` file) when ``RelaySettings`` is instantiated. There is no global
instance: callers build one at startup and pass values down explicitly.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class RelaySettings(BaseSettings):
    """Runtime knobs for the upload engine."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_json: bool = Field(default=True, description="Render logs as JSON")

    default_expires_in: int = Field(default=3600, gt=0, description="Presigned URL lifetime in seconds")
    batch_concurrency: int = Field(default=1, ge=1, le=64, description="Files processed at once per batch")
    client_concurrency: int = Field(default=4, ge=1, le=64, description="Concurrent client uploads")
    request_timeout: float = Field(default=30.0, gt=0, description="Object-store request timeout in seconds")

    class Config:
        env_prefix = "S3RELAY_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def load_settings(**overrides) -> RelaySettings:
    """Build a fresh settings object; keyword overrides win over the environment."""
    return RelaySettings(**overrides)
