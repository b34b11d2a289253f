"""Request tracing, rate limiting and security headers for the BCA API."""
import collections
import os
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("bca-api.middleware")

SKIP_LOG_PATHS = {"/health"}

AUTH_PATHS = ("/api/auth/login", "/api/auth/register")
SYNC_PREFIX = "/api/v1/sync/"
WINDOW_SECONDS = 60


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Assigns a unique X-Request-ID (uuid4) to every request/response.
    - Measures end-to-end request duration in milliseconds.
    - Adds X-Process-Time header to every response.
    - Emits a structured log line for every request (except /health).
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()
        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path not in SKIP_LOG_PATHS:
            logger.info(
                "request completed",
                extra={
                    "http_method": request.method,
                    "http_path": request.url.path,
                    "http_status": response.status_code,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                },
            )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter.
    Buckets:
      - /api/auth/login, /api/auth/register : 5 req/min per IP
      - /api/v1/sync/*                      : SYNC_RATE_LIMIT (default 240) req/min per IP
      - everything else                     : 60 req/min per IP

    Sync gets the larger budget because a device coming back online drains
    its whole queue one record per request.
    """
    def __init__(self, app, sync_limit: int = None, general_limit: int = 60):
        super().__init__(app)
        self.sync_limit = sync_limit or int(os.getenv("SYNC_RATE_LIMIT", "240"))
        self.general_limit = general_limit
        self._windows: dict = collections.defaultdict(collections.deque)
        self._last_sweep = time.monotonic()

    def _sweep(self, now: float) -> None:
        """Drop windows whose newest hit has aged out; idle clients keep no state."""
        stale = [key for key, window in self._windows.items()
                 if not window or now - window[-1] > WINDOW_SECONDS]
        for key in stale:
            del self._windows[key]
        self._last_sweep = now

    def _bucket(self, path: str):
        if path in AUTH_PATHS:
            return path, 5
        if path.startswith(SYNC_PREFIX):
            return "sync", self.sync_limit
        return "general", self.general_limit

    async def dispatch(self, request: Request, call_next):
        ip = request.client.host if request.client else "unknown"
        name, limit = self._bucket(request.url.path)
        now = time.monotonic()
        if now - self._last_sweep > WINDOW_SECONDS:
            self._sweep(now)
        window = self._windows[f"{ip}:{name}"]
        while window and now - window[0] > WINDOW_SECONDS:
            window.popleft()
        if len(window) >= limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please slow down."},
                headers={"Retry-After": str(WINDOW_SECONDS)},
            )
        window.append(now)
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response
