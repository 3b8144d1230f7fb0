# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import time
import uuid
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from core.config import settings
from enrichment.rate_limiter import RateLimitResult, api_rate_limit

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects:
    - request_id (reuses an incoming X-Request-ID)
    - api_latency_ms
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()

        # Attach request_id to request state
        request.state.request_id = request_id

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-client API throttle backed by the token-bucket limiter.

    Rejected requests get 429 with Retry-After (seconds); accepted ones carry
    X-RateLimit-Remaining and X-RateLimit-Reset (epoch ms).
    """

    def __init__(
        self,
        app,
        check: Callable[[str], Awaitable[RateLimitResult]] = api_rate_limit,
        exempt_paths: Iterable[str] = ("/health", "/docs", "/redoc", "/openapi.json"),
        enabled: Optional[bool] = None,
        trusted_proxies: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.check = check
        self.exempt_paths = tuple(exempt_paths)
        self.enabled = enabled
        self.trusted_proxies = None if trusted_proxies is None else frozenset(trusted_proxies)

    def _is_enabled(self) -> bool:
        return settings.RATE_LIMIT_ENABLED if self.enabled is None else self.enabled

    def _trusted_proxies(self) -> frozenset:
        return frozenset(settings.TRUSTED_PROXIES) if self.trusted_proxies is None else self.trusted_proxies

    def client_identifier(self, request: Request) -> str:
        peer = request.client.host if request.client else "unknown"
        # Only a trusted proxy may name the client
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded and peer in self._trusted_proxies():
            return forwarded.split(",")[0].strip() or peer
        return peer

    async def dispatch(self, request: Request, call_next):
        if not self._is_enabled() or request.url.path.startswith(self.exempt_paths):
            return await call_next(request)

        result = await self.check(self.client_identifier(request))
        if not result.success:
            retry_after = max(1, -(-(result.reset - int(time.time() * 1000)) // 1000))
            return JSONResponse(
                status_code=429,
                content={
                    "error": "RateLimitExceeded",
                    "message": "Too many requests",
                    "request_id": getattr(request.state, "request_id", None),
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(result.reset),
                },
            )

        response: Response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset)
        return response
