"""HTTP capability middleware, each installed only when its setting is on."""

import logging
import time
from typing import Dict, Sequence, Tuple

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add conservative security headers to every response."""

    def __init__(self, app, hsts: bool = False):
        super().__init__(app)
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if self.hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)"
        )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window request limit per client IP.

    Counters live in process memory; each window is ``window_seconds`` long.
    Exceeding the limit answers 429 with ``Retry-After``. Paths under
    ``exempt_prefixes`` are never counted.
    """

    def __init__(
        self,
        app,
        max_requests: int = 120,
        window_seconds: int = 60,
        exempt_prefixes: Sequence[str] = ()
    ):
        super().__init__(app)
        self.exempt_prefixes = tuple(exempt_prefixes)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[int, int]] = {}  # ip -> (window start, count)

    def check(self, client_ip: str, now: float) -> int:
        """Count a request; return 0 if allowed, else seconds until the window resets."""
        window_start = int(now) - int(now) % self.window_seconds
        start, count = self._windows.get(client_ip, (window_start, 0))
        if start != window_start:
            start, count = window_start, 0

        if count >= self.max_requests:
            return max(1, int(start + self.window_seconds - now))

        self._windows[client_ip] = (start, count + 1)
        if len(self._windows) > 10000:
            self._evict(window_start)
        return 0

    def _evict(self, current_window: int) -> None:
        for ip in [ip for ip, (start, _) in self._windows.items() if start != current_window]:
            del self._windows[ip]

    async def dispatch(self, request: Request, call_next):
        if self.exempt_prefixes and request.url.path.startswith(self.exempt_prefixes):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        retry_after = self.check(client_ip, time.time())
        if retry_after:
            logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": {"code": "RATE_LIMITED", "message": "Too many requests"}},
                headers={"Retry-After": str(retry_after)}
            )
        return await call_next(request)
