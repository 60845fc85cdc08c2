"""
Framework-agnostic HTTP surface for a ``Router``.

Web framework adapters translate their request into
``UploadHandler.handle(method, query, body, headers)`` and send back the
returned ``HandlerResponse``.
"""

import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

import structlog
from pydantic import ValidationError

from s3relay.core.config import RateLimit
from s3relay.core.errors import RouteNotFoundError
from s3relay.core.router import Router

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = "GET, POST"
ROUTE_TYPE = "s3-upload"


@dataclass
class HandlerResponse:
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def _error(status: int, message: str, **headers: str) -> HandlerResponse:
    return HandlerResponse(status=status, body={"success": False, "error": message}, headers=dict(headers))


class SlidingWindowLimiter:
    """Per-client request counter over a sliding time window."""

    def __init__(self, limit: RateLimit, clock=time.monotonic):
        self.max_uploads = limit.max_uploads
        self.window = limit.window_ms / 1000.0
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    @property
    def tracked_clients(self) -> int:
        return len(self._hits)

    def _sweep(self, now: float) -> None:
        """Forget clients whose newest hit has left the window."""
        stale = [client_id for client_id, hits in self._hits.items() if now - hits[-1] >= self.window]
        for client_id in stale:
            del self._hits[client_id]
        self._last_sweep = now

    def allow(self, client_id: str) -> bool:
        now = self._clock()
        if now - self._last_sweep >= self.window:
            self._sweep(now)
        hits = self._hits.get(client_id) or deque()
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        if len(hits) >= self.max_uploads:
            return False
        hits.append(now)
        self._hits[client_id] = hits
        return True


class UploadHandler:
    """Maps ``GET``/``POST`` requests onto router operations."""

    def __init__(self, router: Router):
        self.router = router
        security = router.config.security
        self._limiter = SlidingWindowLimiter(security.rate_limiting) if security.rate_limiting else None

    def _check_security(self, headers: Mapping[str, str]) -> Optional[HandlerResponse]:
        security = self.router.config.security
        normalized = {name.lower(): value for name, value in headers.items()}

        origin = normalized.get("origin")
        if origin and security.allowed_origins and "*" not in security.allowed_origins:
            if origin not in security.allowed_origins:
                return _error(403, f"Origin {origin} is not allowed")

        if security.require_auth and not normalized.get("authorization"):
            return _error(401, "Authentication required")

        if self._limiter is not None:
            client_id = normalized.get("x-forwarded-for", "").split(",")[0].strip() or origin or "anonymous"
            if not self._limiter.allow(client_id):
                return _error(429, "Too many upload requests")
        return None

    async def handle(
        self,
        method: str,
        query: Mapping[str, str],
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        request: Any = None,
    ) -> HandlerResponse:
        """
        Dispatch one request.

        Args:
            method: HTTP method
            query: Query parameters (``route``, ``action``)
            body: Parsed JSON body for ``POST``
            headers: Request headers, used for origin/auth/rate-limit checks
            request: Framework request object handed to middleware
        """
        method = method.upper()
        if method == "GET":
            return self._list_routes()
        if method != "POST":
            return _error(405, f"Method {method} not allowed", Allow=ALLOWED_METHODS)

        rejected = self._check_security(headers or {})
        if rejected is not None:
            return rejected

        route_name = query.get("route")
        action = query.get("action") or "presign"
        if not route_name:
            return _error(400, "Route parameter is required")

        try:
            self.router.get_route(route_name)
        except RouteNotFoundError as e:
            return _error(404, e.message)

        payload = body if isinstance(body, Mapping) else {}
        try:
            if action == "presign":
                files = payload.get("files")
                if not isinstance(files, list):
                    return _error(400, '"files" must be an array')
                results = await self.router.generate_presigned_urls(route_name, files, request=request)
            elif action == "complete":
                completions = payload.get("completions")
                if not isinstance(completions, list):
                    return _error(400, '"completions" must be an array')
                results = await self.router.handle_upload_complete(route_name, completions, request=request)
            else:
                return _error(400, f"Unknown action: {action}")
        except ValidationError as e:
            return _error(400, f"Invalid request body: {e.errors()[0].get('msg', 'validation error')}")
        except Exception as e:
            logger.exception("Upload handler failed", route=route_name, action=action)
            return _error(500, str(e) or "Internal server error")

        return HandlerResponse(
            status=200,
            body={"success": True, "results": [result.to_wire() for result in results]},
        )

    def _list_routes(self) -> HandlerResponse:
        return HandlerResponse(
            status=200,
            body={
                "success": True,
                "routes": [{"name": name, "type": ROUTE_TYPE} for name in self.router.route_names()],
            },
        )
