"""Per-client request limiting for the public API."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List

from starlette.responses import JSONResponse

from apps.api.errors import _DEFAULT_MESSAGES, error_body
from apps.common.logging import get_logger
from services.errors.taxonomy import ErrorCode

logger = get_logger(__name__)


class RateLimiter:
    """Sliding-window counter held in memory, one timestamp list per key."""

    def __init__(self, *, limit: int, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window_s = window_s
        self.clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def is_allowed(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            hits = [t for t in self._hits.get(key, ()) if t > now - self.window_s]
            if len(hits) >= self.limit:
                self._hits[key] = hits
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest counted request leaves the window."""
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return 0
            return max(1, int(hits[0] + self.window_s - self.clock()) + 1)


class RateLimitMiddleware:
    """
    Plain ASGI middleware answering 429 rate_limit_exceeded once a client IP
    has used up its window. Applies to every HTTP route, /health included.
    """

    def __init__(self, app: Any, *, limiter: RateLimiter) -> None:
        self.app = app
        self.limiter = limiter

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        key = client[0] if client else "unknown"
        if self.limiter.is_allowed(key):
            await self.app(scope, receive, send)
            return

        logger.warning("rate_limit_exceeded", client=key, path=scope.get("path"))
        code = ErrorCode.RATE_LIMIT_EXCEEDED
        response = JSONResponse(
            status_code=429,
            content=error_body(code, _DEFAULT_MESSAGES[code]),
            headers={"Retry-After": str(self.limiter.retry_after(key))},
        )
        await response(scope, receive, send)
