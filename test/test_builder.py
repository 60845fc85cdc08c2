import asyncio

import pytest

from s3relay.core.builder import create_upload_config
from s3relay.core.errors import (
    AccessDeniedError,
    BucketNotFoundError,
    ConfigurationError,
    ErrorCode,
    InvalidCredentialsError,
    ObjectNotFoundError,
    StorageRequestError,
    UploadError,
    error_from_response,
)
from s3relay.factories.storage_factory import create_storage, create_storage_from_env
from s3relay.models.provider import create_provider_config
from s3relay.storage.s3_storage import S3Storage
from s3relay.utils.concurrency import gather_bounded
from s3relay.utils.health import check_health
from s3relay.utils.logging_config import configure_logging
from s3relay.utils.settings import RelaySettings

from conftest import FakeS3


class TestUploadConfigBuilder:
    """Test suite for the configuration builder."""

    def test_build_requires_provider(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            create_upload_config().build()
        assert exc_info.value.code == ErrorCode.CONFIG_MISSING

    def test_build_rejects_incomplete_provider(self) -> None:
        builder = create_upload_config().provider("aws", region="us-east-1", bucket="b")
        with pytest.raises(ConfigurationError) as exc_info:
            builder.build()
        assert exc_info.value.code == ErrorCode.PROVIDER_CONFIG_INVALID
        assert exc_info.value.details["errors"] == ["Access key ID is required", "Secret access key is required"]

    def test_builder_methods_do_not_mutate(self) -> None:
        base = create_upload_config()
        configured = base.defaults(max_file_size="2MB").paths(prefix="media").debug().expires_in(600)
        assert base.upload_defaults.max_file_size is None
        assert base.global_paths.prefix == "uploads"
        assert configured.upload_defaults.max_file_size == 2 * 1024 * 1024
        assert configured.global_paths.prefix == "media"
        assert configured.url_expires_in == 600

    def test_build_freezes_connection(self, provider_config, signer, http_client) -> None:
        setup = (
            create_upload_config()
            .provider(provider_config)
            .signer(signer)
            .client(http_client)
            .security(max_uploads=5, window_ms=1000)
            .metrics()
            .build()
        )
        assert setup.config.connection.bucket == "test-bucket"
        assert setup.config.connection.force_path_style is True
        assert setup.config.security.rate_limiting.max_uploads == 5
        assert setup.metrics is not None
        assert setup.storage.storage.metrics is setup.metrics

    def test_provider_from_kind_tag(self) -> None:
        builder = create_upload_config().provider(
            "cloudflare-r2", account_id="acct", bucket="media", access_key_id="k", secret_access_key="s"
        )
        setup = builder.build()
        assert setup.config.connection.endpoint == "https://acct.r2.cloudflarestorage.com"

    def test_settings_are_applied(self, provider_config) -> None:
        settings = RelaySettings(_env_file=None, default_expires_in=120, batch_concurrency=8, request_timeout=5)
        builder = create_upload_config().provider(provider_config).settings(settings)
        assert builder.url_expires_in == 120
        assert builder.concurrency == 8
        setup = builder.build()
        assert setup.config.expires_in == 120
        assert setup.config.batch_concurrency == 8
        assert setup.storage.storage.timeout == 5


class TestStorageFactory:
    def test_create_storage(self, provider_config) -> None:
        storage = create_storage(provider_config)
        assert isinstance(storage, S3Storage)
        assert storage.bucket_url == "http://localhost:9000/test-bucket"

    def test_create_storage_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MINIO_ENDPOINT", "http://minio.local:9000")
        monkeypatch.setenv("MINIO_BUCKET", "env-bucket")
        monkeypatch.setenv("MINIO_ACCESS_KEY", "key")
        monkeypatch.setenv("MINIO_SECRET_KEY", "secret")

        storage = create_storage_from_env("minio", settings=RelaySettings(_env_file=None, request_timeout=12))
        assert storage.connection.bucket == "env-bucket"
        assert storage.timeout == 12

    def test_create_storage_from_env_missing_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("DO_SPACES_BUCKET", "DO_SPACES_KEY", "DO_SPACES_ACCESS_KEY_ID"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ConfigurationError):
            create_storage_from_env("digitalocean-spaces")


class TestHealth:
    """Test suite for readiness checks."""

    @pytest.mark.asyncio
    async def test_healthy(self, upload_setup) -> None:
        report = await check_health(upload_setup)
        assert report.healthy
        assert report.get("connectivity").passed
        assert report.to_dict()["checks"]["configuration"]["bucket"] == "test-bucket"

    @pytest.mark.asyncio
    async def test_unreachable_bucket(self, upload_setup, fake_s3: FakeS3, mocker) -> None:
        mocker.patch.object(fake_s3, "_head", return_value=fake_s3._error(403, "AccessDenied", "Access Denied"))
        report = await check_health(upload_setup)
        assert not report.healthy
        assert report.get("configuration").passed
        assert report.get("connectivity").message == "S3 error during validate connection: Access Denied"

    @pytest.mark.asyncio
    async def test_skip_connectivity(self, upload_setup, fake_s3: FakeS3) -> None:
        report = await check_health(upload_setup, check_connectivity=False)
        assert [check.name for check in report.checks] == ["configuration"]
        assert fake_s3.requests == []


class TestErrors:
    """Test suite for the error taxonomy."""

    @pytest.mark.parametrize(
        "status,s3_code,expected",
        [
            (404, "NoSuchKey", ObjectNotFoundError),
            (404, "NoSuchBucket", BucketNotFoundError),
            (403, "SignatureDoesNotMatch", InvalidCredentialsError),
            (403, None, AccessDeniedError),
            (404, None, ObjectNotFoundError),
            (500, "InternalError", StorageRequestError),
        ],
    )
    def test_error_from_response(self, status, s3_code, expected) -> None:
        error = error_from_response(status, s3_code, None, "head", key="a.png")
        assert type(error) is expected
        assert error.status_code == status
        assert error.key == "a.png"

    def test_serialization(self) -> None:
        error = UploadError("boom", code=ErrorCode.NETWORK_ERROR, operation="list", bucket="b", cause=OSError("x"))
        data = error.to_dict()
        assert data["code"] == "NETWORK_ERROR"
        assert data["bucket"] == "b"
        assert error.user_message().startswith("Network error")
        assert "cause=OSError: x" in error.debug_info()

    def test_default_codes(self) -> None:
        assert ConfigurationError("x").code == ErrorCode.CONFIG_INVALID
        assert ObjectNotFoundError("x").code == ErrorCode.FILE_NOT_FOUND


class TestGatherBounded:
    @pytest.mark.asyncio
    async def test_keeps_order_and_limit(self) -> None:
        running = 0
        peak = 0

        async def worker(value: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01 * (5 - value))
            running -= 1
            return value * 2

        assert await gather_bounded([1, 2, 3, 4], worker, 2) == [2, 4, 6, 8]
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_limit_one_is_sequential(self) -> None:
        order: list[str] = []

        async def worker(name: str) -> None:
            order.append(f"start {name}")
            await asyncio.sleep(0)
            order.append(f"end {name}")

        await gather_bounded(["a", "b"], worker, 1)
        assert order == ["start a", "end a", "start b", "end b"]

    @pytest.mark.asyncio
    async def test_invalid_limit(self) -> None:
        async def worker(value: int) -> int:
            return value

        with pytest.raises(ValueError):
            await gather_bounded([1], worker, 0)


def test_configure_logging(mocker) -> None:
    configure = mocker.patch("structlog.configure")
    configure_logging(level="DEBUG", json_format=False, include_timestamp=False)
    processors = configure.call_args.kwargs["processors"]
    assert type(processors[-1]).__name__ == "ConsoleRenderer"
    assert not any(type(p).__name__ == "TimeStamper" for p in processors)


def test_provider_config_repr_hides_secret() -> None:
    config = create_provider_config("minio", endpoint="http://m", bucket="b", access_key_id="k", secret_access_key="hidden-value")
    assert "hidden-value" not in repr(config.credentials)
