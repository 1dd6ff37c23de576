"""
HTTP hardening: security headers, CORS and fixed-window rate limiting.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config import Settings

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'self'; object-src 'none'",
}


class RateLimiter:
    """Counts requests per client key inside a fixed time window."""

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str) -> Optional[int]:
        """Record one request; return seconds until reset when over the limit, else None."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            started, count = self._hits.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._hits[key] = (started, count)
        if count > self.max_requests:
            return max(1, math.ceil(self.window_seconds - (now - started)))
        return None

    def _sweep(self, now: float) -> None:
        # drop windows that ended; caller holds the lock
        expired = [k for k, (started, _) in self._hits.items() if now - started >= self.window_seconds]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def login_rate_limit(request: Request) -> None:
    retry_after = request.app.state.login_limiter.hit(client_key(request))
    if retry_after is not None:
        logger.warning("Login rate limit exceeded for %s", client_key(request))
        raise HTTPException(status_code=429, detail="Too many requests", headers={"Retry-After": str(retry_after)})


def configure_security(app: FastAPI, settings: Settings) -> None:
    app.state.login_limiter = RateLimiter(settings.login_rate_limit, settings.login_rate_window_seconds)
    app.state.global_limiter = RateLimiter(settings.global_rate_limit, settings.global_rate_window_seconds)

    @app.middleware("http")
    async def global_rate_limit(request: Request, call_next):
        retry_after = request.app.state.global_limiter.hit(client_key(request))
        if retry_after is not None:
            return JSONResponse(
                {"error": "Too many requests"}, status_code=429, headers={"Retry-After": str(retry_after)}
            )
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    # Preflight requests are answered before the limiter and headers run
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Outermost: rewrite the client address from X-Forwarded-For when the peer is a trusted proxy
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.forwarded_allow_ips)
