"""
Request signing.

The engine never implements signing itself; it talks to a ``Signer``. The
default ``BotocoreSigner`` delegates to botocore's SigV4 implementations so
presigned URLs and signed requests match what the AWS SDKs produce.
"""

from typing import Protocol

from botocore.auth import S3SigV4Auth, S3SigV4QueryAuth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from botocore.exceptions import BotoCoreError

from s3relay.core.errors import ConfigurationError, SigningError
from s3relay.models.provider import ProviderCredentials

SERVICE_NAME = "s3"


class Signer(Protocol):
    """Produces presigned URLs and signed request headers."""

    def presign_url(
        self,
        method: str,
        url: str,
        credentials: ProviderCredentials,
        region: str,
        expires_in: int,
        headers: dict[str, str] | None = None,
    ) -> str:
        ...

    def sign_request(
        self,
        method: str,
        url: str,
        credentials: ProviderCredentials,
        region: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
    ) -> dict[str, str]:
        ...


def validate_expiry(expires_in: int) -> int:
    """Presigned URL lifetimes are positive whole seconds."""
    if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
        raise ConfigurationError(
            f"Presigned URL expiry must be a positive integer number of seconds, got {expires_in!r}"
        )
    return expires_in


class BotocoreSigner:
    """SigV4 signer backed by botocore."""

    def _credentials(self, credentials: ProviderCredentials) -> Credentials:
        return Credentials(
            access_key=credentials.access_key_id,
            secret_key=credentials.secret_access_key,
            token=credentials.session_token,
        )

    def presign_url(
        self,
        method: str,
        url: str,
        credentials: ProviderCredentials,
        region: str,
        expires_in: int,
        headers: dict[str, str] | None = None,
    ) -> str:
        validate_expiry(expires_in)
        request = AWSRequest(method=method.upper(), url=url, headers=headers or {})
        try:
            S3SigV4QueryAuth(self._credentials(credentials), SERVICE_NAME, region, expires=expires_in).add_auth(
                request
            )
        except (BotoCoreError, ValueError, TypeError) as e:
            raise SigningError(f"Failed to presign {method} {url}: {e}", operation="presign", cause=e)
        return request.url

    def sign_request(
        self,
        method: str,
        url: str,
        credentials: ProviderCredentials,
        region: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
    ) -> dict[str, str]:
        request = AWSRequest(method=method.upper(), url=url, headers=headers or {}, data=body)
        try:
            S3SigV4Auth(self._credentials(credentials), SERVICE_NAME, region).add_auth(request)
        except (BotoCoreError, ValueError, TypeError) as e:
            raise SigningError(f"Failed to sign {method} {url}: {e}", operation="sign", cause=e)
        return {name: str(value) for name, value in request.headers.items()}
