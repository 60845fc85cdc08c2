"""
Upload routes and the two-phase presign/complete protocol.

A ``Route`` bundles a validation schema, an ordered middleware chain, a
route-level path policy and four lifecycle hooks. Routes are immutable: each
builder method returns a new route. A ``Router`` registers routes once and
drives both protocol phases, capturing every per-file failure in the
returned results so one bad file never affects its siblings.

Hook contract:
    * Hooks may be plain functions or coroutines.
    * ``on_upload_start`` raising fails that file.
    * ``on_upload_complete`` raising fails that completion and fires
      ``on_upload_error``.
    * ``on_upload_error`` raising is logged; the item stays failed.
    * Global hooks from ``UploadConfig.hooks`` run after the route hook.
"""

import inspect
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Optional, Union

import structlog

from s3relay.core.config import UploadConfig
from s3relay.core.errors import ConfigurationError, RouteNotFoundError, UploadError, ValidationFailedError
from s3relay.core.paths import (
    PathContext,
    RoutePaths,
    default_random_id,
    default_timestamp,
    generate_hierarchical_path,
    resolve_user_id,
)
from s3relay.core.schema import ArraySchema, FileSchema, ObjectSchema, Schema, SchemaKind, type_matches
from s3relay.models.upload import CompletionResult, FileDescriptor, PresignedUrlResult, UploadCompletion
from s3relay.storage.s3_storage import S3Storage
from s3relay.storage.signer import Signer
from s3relay.utils.concurrency import gather_bounded

logger = structlog.get_logger(__name__)

DOWNLOAD_URL_EXPIRES_IN = 3600
PRIVATE_ACL = "private"


# Hook and middleware contexts


@dataclass(frozen=True)
class MiddlewareContext:
    request: Any
    file: FileDescriptor
    metadata: Mapping[str, Any]


@dataclass(frozen=True)
class HookContext:
    file: FileDescriptor
    metadata: Mapping[str, Any]


@dataclass(frozen=True)
class ProgressContext:
    file: FileDescriptor
    metadata: Mapping[str, Any]
    progress: float


@dataclass(frozen=True)
class CompletionContext:
    file: FileDescriptor
    metadata: Mapping[str, Any]
    url: str
    key: str
    presigned_url: Optional[str] = None


@dataclass(frozen=True)
class ErrorContext:
    file: Optional[FileDescriptor]
    metadata: Mapping[str, Any]
    error: Exception


Middleware = Callable[[MiddlewareContext], Any]
Hook = Callable[[Any], Any]


@dataclass(frozen=True)
class RouteHooks:
    on_upload_start: Optional[Hook] = None
    on_upload_progress: Optional[Hook] = None
    on_upload_complete: Optional[Hook] = None
    on_upload_error: Optional[Hook] = None


@dataclass(frozen=True)
class Route:
    """Immutable route definition."""

    schema: Schema
    middleware_chain: tuple[Middleware, ...] = ()
    route_paths: RoutePaths = field(default_factory=RoutePaths)
    hooks: RouteHooks = field(default_factory=RouteHooks)
    name: Optional[str] = None

    def middleware(self, fn: Middleware) -> "Route":
        """Append ``fn``; it receives the metadata of the previous middleware, and returning ``None`` keeps it."""
        return replace(self, middleware_chain=self.middleware_chain + (fn,))

    def paths(
        self,
        prefix: Optional[str] = None,
        suffix: Optional[str] = None,
        generate_key: Optional[Callable[[PathContext], str]] = None,
    ) -> "Route":
        return replace(self, route_paths=RoutePaths(prefix=prefix, suffix=suffix, generate_key=generate_key))

    def on_upload_start(self, hook: Hook) -> "Route":
        return replace(self, hooks=replace(self.hooks, on_upload_start=hook))

    def on_upload_progress(self, hook: Hook) -> "Route":
        return replace(self, hooks=replace(self.hooks, on_upload_progress=hook))

    def on_upload_complete(self, hook: Hook) -> "Route":
        return replace(self, hooks=replace(self.hooks, on_upload_complete=hook))

    def on_upload_error(self, hook: Hook) -> "Route":
        return replace(self, hooks=replace(self.hooks, on_upload_error=hook))


def to_route(schema: Union[Schema, Route]) -> Route:
    """Turn a schema into a route, dispatching on its kind."""
    if isinstance(schema, Route):
        return schema

    kind = getattr(schema, "kind", None)
    if kind is SchemaKind.FILE or kind is SchemaKind.IMAGE:
        if not isinstance(schema, (FileSchema, ArraySchema)):
            raise ConfigurationError(f"Schema of kind {kind.value} must be a file schema")
        return Route(schema=schema)
    if kind is SchemaKind.OBJECT:
        if not isinstance(schema, ObjectSchema):
            raise ConfigurationError("Schema of kind object must be an object schema")
        return Route(schema=schema)
    raise ConfigurationError(f"Unsupported schema kind: {kind!r}")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _error_message(error: Exception) -> str:
    if isinstance(error, UploadError):
        return error.message
    return str(error) or type(error).__name__


RouteDefinitions = Union[Mapping[str, Union[Route, Schema]], Iterable[tuple[str, Union[Route, Schema]]]]


class Router:
    """Registry of routes plus the presign/complete protocol."""

    def __init__(
        self,
        config: UploadConfig,
        routes: RouteDefinitions,
        storage: Optional[S3Storage] = None,
        signer: Optional[Signer] = None,
        clock: Callable[[], int] = default_timestamp,
        random_id: Callable[[], str] = default_random_id,
    ):
        self.config = config
        self.storage = storage or S3Storage(config.connection, signer=signer)
        self._clock = clock
        self._random_id = random_id

        pairs = routes.items() if isinstance(routes, Mapping) else routes
        registered: dict[str, Route] = {}
        for name, definition in pairs:
            if not name:
                raise ConfigurationError("Route names must be non-empty")
            if name in registered:
                raise ConfigurationError(f'Route "{name}" is already registered')
            registered[name] = replace(to_route(definition), name=name)
        self._routes = MappingProxyType(registered)

        logger.info("Router created", routes=sorted(registered), bucket=config.connection.bucket)

    @property
    def routes(self) -> Mapping[str, Route]:
        return self._routes

    def route_names(self) -> list[str]:
        return list(self._routes)

    def get_route(self, name: str) -> Route:
        route = self._routes.get(name)
        if route is None:
            raise RouteNotFoundError(f'Route "{name}" not found')
        return route

    # Hooks

    async def _run_hooks(self, hooks: Sequence[Optional[Hook]], context: Any) -> None:
        for hook in hooks:
            if hook is not None:
                await _maybe_await(hook(context))

    async def _fire_error(self, route: Route, context: ErrorContext) -> None:
        for hook in (route.hooks.on_upload_error, self.config.hooks.on_upload_error):
            if hook is None:
                continue
            try:
                await _maybe_await(hook(context))
            except Exception as e:
                logger.error("Error hook failed", route=route.name, error=str(e))

    # Presign phase

    def _check_defaults(self, file: FileDescriptor) -> None:
        defaults = self.config.defaults
        if defaults.max_file_size is not None and file.size > defaults.max_file_size:
            raise ValidationFailedError(
                f"File size {file.size} exceeds the maximum of {defaults.max_file_size} bytes",
                details={"code": "FILE_TOO_LARGE"},
            )
        if defaults.allowed_file_types and not any(
            type_matches(file.type, pattern) for pattern in defaults.allowed_file_types
        ):
            raise ValidationFailedError(
                f"File type {file.type} is not allowed",
                details={"code": "INVALID_FILE_TYPE"},
            )

    def _acl(self) -> Optional[str]:
        """Canned ACL to sign into upload URLs; ``private`` is the bucket default and is not sent."""
        acl = self.config.defaults.acl or self.config.connection.acl
        return None if acl == PRIVATE_ACL else acl

    async def _presign_one(self, route: Route, file: FileDescriptor, request: Any) -> PresignedUrlResult:
        log = logger.bind(route=route.name, file=file.name)
        metadata: dict[str, Any] = dict(self.config.defaults.metadata)
        try:
            for middleware in route.middleware_chain:
                produced = await _maybe_await(
                    middleware(MiddlewareContext(request=request, file=file, metadata=MappingProxyType(metadata)))
                )
                # None leaves the metadata untouched
                if produced is not None:
                    metadata = dict(produced)

            self._check_defaults(file)
            validation = route.schema.validate(file)
            if not validation.success:
                raise ValidationFailedError(
                    validation.error_message,
                    details={"issues": [issue.code.value for issue in validation.issues]},
                )

            await self._run_hooks(
                (route.hooks.on_upload_start, self.config.hooks.on_upload_start),
                HookContext(file=file, metadata=metadata),
            )

            key = generate_hierarchical_path(
                file,
                metadata,
                route.name,
                route.route_paths,
                self.config.paths,
                timestamp=self._clock(),
                random_id=self._random_id(),
            )
            upload = await self.storage.generate_presigned_upload_url(
                key,
                content_type=file.type,
                expires_in=self.config.expires_in,
                metadata={
                    "originalName": file.name,
                    "userId": resolve_user_id(metadata),
                    "routeName": route.name,
                },
                acl=self._acl(),
            )
        except Exception as e:
            log.warning("Presign failed for file", error=_error_message(e))
            await self._fire_error(route, ErrorContext(file=file, metadata=metadata, error=e))
            return PresignedUrlResult(success=False, file=file, error=_error_message(e))

        log.info("Presigned upload", key=key)
        return PresignedUrlResult(
            success=True,
            file=file,
            presigned_url=upload.url,
            key=key,
            metadata=metadata,
            headers=upload.fields,
        )

    async def generate_presigned_urls(
        self,
        route_name: str,
        files: Sequence[Union[FileDescriptor, Mapping[str, Any]]],
        request: Any = None,
        concurrency: Optional[int] = None,
    ) -> list[PresignedUrlResult]:
        """
        Presign a PUT URL for each file, in input order.

        Raises:
            RouteNotFoundError: if ``route_name`` is not registered
        """
        route = self.get_route(route_name)
        descriptors = [f if isinstance(f, FileDescriptor) else FileDescriptor.model_validate(f) for f in files]
        limit = concurrency or self.config.batch_concurrency
        return await gather_bounded(descriptors, lambda f: self._presign_one(route, f, request), limit)

    # Completion phase

    async def _complete_one(self, route: Route, completion: UploadCompletion) -> CompletionResult:
        log = logger.bind(route=route.name, key=completion.key)
        try:
            url = self.storage.get_file_url(completion.key)
            presigned_url = await self.storage.generate_presigned_download_url(
                completion.key, expires_in=DOWNLOAD_URL_EXPIRES_IN
            )
            await self._run_hooks(
                (route.hooks.on_upload_complete, self.config.hooks.on_upload_complete),
                CompletionContext(
                    file=completion.file,
                    metadata=completion.metadata,
                    url=url,
                    key=completion.key,
                    presigned_url=presigned_url,
                ),
            )
        except Exception as e:
            log.warning("Upload completion failed", error=_error_message(e))
            await self._fire_error(
                route,
                ErrorContext(file=completion.file, metadata=completion.metadata, error=e),
            )
            return CompletionResult(
                success=False,
                key=completion.key,
                file=completion.file,
                error=_error_message(e),
            )

        log.info("Upload completed")
        return CompletionResult(
            success=True,
            key=completion.key,
            file=completion.file,
            url=url,
            presigned_url=presigned_url,
        )

    async def handle_upload_complete(
        self,
        route_name: str,
        completions: Sequence[Union[UploadCompletion, Mapping[str, Any]]],
        request: Any = None,
        concurrency: Optional[int] = None,
    ) -> list[CompletionResult]:
        """Resolve URLs and fire completion hooks for each finished upload."""
        route = self.get_route(route_name)
        items = [c if isinstance(c, UploadCompletion) else UploadCompletion.model_validate(c) for c in completions]
        limit = concurrency or self.config.batch_concurrency
        return await gather_bounded(items, lambda c: self._complete_one(route, c), limit)

    async def report_progress(
        self,
        route_name: str,
        file: FileDescriptor,
        progress: float,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Forward client-reported progress to the route's progress hook."""
        route = self.get_route(route_name)
        hook = route.hooks.on_upload_progress
        if hook is None:
            return
        context = ProgressContext(file=file, metadata=metadata or {}, progress=max(0.0, min(100.0, progress)))
        try:
            await _maybe_await(hook(context))
        except Exception as e:
            logger.warning("Progress hook failed", route=route.name, error=str(e))


def create_router(
    config: UploadConfig,
    routes: RouteDefinitions,
    storage: Optional[S3Storage] = None,
    signer: Optional[Signer] = None,
) -> Router:
    return Router(config, routes, storage=storage, signer=signer)
