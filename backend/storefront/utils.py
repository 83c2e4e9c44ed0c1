from __future__ import annotations

import asyncio
import ipaddress
import math
import time
from contextvars import ContextVar
from datetime import UTC, datetime
from uuid import uuid4

from fastapi import Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .settings import settings

# Context variable for request ID (accessible throughout the request lifecycle)
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_cors(app):
    origins = settings.allow_origins
    if not origins:
        # Default is explicit opt-in; skip middleware when nothing configured
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        headers = {
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Cache-Control": "no-store",
        }
        if request.url.scheme in {"https", "wss"}:
            headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        for key, value in headers.items():
            response.headers.setdefault(key, value)
        return response


def add_security_headers(app):
    app.add_middleware(SecurityHeadersMiddleware)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or mint an X-Request-ID and expose it to loggers via a context var."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request_id_ctx.set(request_id)
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def add_request_id_tracing(app):
    app.add_middleware(RequestIDMiddleware)


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get("")


class RateLimiter:
    """Token bucket per client IP. Provider webhooks are exempt."""

    EXEMPT_PREFIXES = ("/webhooks/", "/health", "/metrics")

    def __init__(self, shards: int = 32) -> None:
        self._buckets: dict[str, dict[str, float]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._last_cleanup = 0.0

    async def dispatch(self, request: Request, call_next):
        limit = settings.RATE_LIMIT_REQUESTS
        window = settings.RATE_LIMIT_WINDOW_SECONDS
        if not settings.RATE_LIMIT_ENABLED or limit <= 0 or window <= 0:
            return await call_next(request)
        if request.url.path.startswith(self.EXEMPT_PREFIXES):
            return await call_next(request)

        from .metrics import rate_limit_requests_total

        identifier = self._identifier_for(request)
        allowed, remaining, reset_in = await self._consume(
            identifier, limit, window, time.monotonic()
        )
        if not allowed:
            rate_limit_requests_total.labels(result="throttle").inc()
            retry_after = max(1, math.ceil(reset_in))
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Too many requests"},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        rate_limit_requests_total.labels(result="allow").inc()
        response.headers.setdefault("X-RateLimit-Limit", str(limit))
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        return response

    async def _consume(self, identifier: str, limit: int, window: int, now: float):
        refill_rate = limit / window
        lock = self._locks[hash(identifier) % len(self._locks)]
        async with lock:
            bucket = self._buckets.get(identifier)
            if not bucket:
                self._buckets[identifier] = {"tokens": float(limit - 1), "last": now}
                self._maybe_cleanup(now, window)
                return True, limit - 1, 0

            elapsed = max(0.0, now - bucket["last"])
            tokens = min(float(limit), bucket["tokens"] + elapsed * refill_rate)
            bucket["last"] = now
            self._maybe_cleanup(now, window)
            if tokens >= 1:
                bucket["tokens"] = tokens - 1
                return True, int(tokens - 1), 0
            bucket["tokens"] = tokens
            return False, 0, (1 - tokens) / refill_rate

    def reset(self) -> None:
        self._buckets.clear()
        self._last_cleanup = 0.0

    def _maybe_cleanup(self, now: float, window: int) -> None:
        """Remove idle buckets periodically to bound memory."""
        if now - self._last_cleanup < window:
            return
        stale_cutoff = now - (window * 3)
        for key in [k for k, meta in self._buckets.items() if meta["last"] < stale_cutoff]:
            self._buckets.pop(key, None)
        self._last_cleanup = now

    def _identifier_for(self, request: Request) -> str:
        direct_client_ip = request.client.host if request.client else None
        if not direct_client_ip or not _is_trusted_proxy(direct_client_ip):
            return direct_client_ip or "anonymous"
        forwarded = request.headers.get("x-forwarded-for")
        if not forwarded:
            return direct_client_ip
        # The leftmost valid address is the original client
        for candidate in (ip.strip() for ip in forwarded.split(",")):
            try:
                ipaddress.ip_address(candidate)
            except ValueError:
                continue
            return candidate
        return direct_client_ip


def _is_trusted_proxy(ip: str) -> bool:
    trusted = settings.TRUSTED_PROXIES.strip()
    if not trusted:
        return False
    if trusted == "*":
        return True
    try:
        ip_obj = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in (part.strip() for part in trusted.split(",")):
        if not entry:
            continue
        try:
            if ip_obj in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def add_rate_limiting(app):
    limiter: RateLimiter = RateLimiter()
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def _rate_limit(request: Request, call_next):  # type: ignore[override]
        return await limiter.dispatch(request, call_next)
