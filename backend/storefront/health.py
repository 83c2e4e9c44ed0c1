"""Health check module with dependency verification."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

import httpx
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from .db.models import CheckoutAttemptRecord
from .payments.base import ProviderAdapter
from .settings import settings
from .states import Rail


def _is_configured(value: str | None) -> bool:
    """Return True when a config string is non-empty after trimming."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


class HealthChecker:
    """Health checker for the ledger database and payment collaborators."""

    def __init__(self) -> None:
        self._check_cache: dict[str, tuple[dict[str, Any], float]] = {}
        self._cache_ttl = 30.0  # Cache remote checks for 30 seconds

    async def check_all(
        self,
        engine: AsyncEngine,
        adapters: Mapping[Rail, ProviderAdapter] | None = None,
    ) -> dict[str, Any]:
        """
        Check health of all dependencies.

        Returns:
            Dict with overall status and individual component checks
        """
        checks = {
            "database": await self._check_database(engine),
            "payments": self._check_payments(adapters or {}),
            "notifications": (
                await self._check_notifier()
                if _is_configured(settings.NOTIFY_WEBHOOK_URL)
                else {"status": "disabled"}
            ),
            "sentry": self._check_sentry() if _is_configured(settings.SENTRY_DSN) else {"status": "disabled"},
        }

        # Overall health is OK if all enabled checks pass
        all_ok = all(check.get("status") in {"ok", "disabled"} for check in checks.values())

        return {
            "status": "healthy" if all_ok else "degraded",
            "timestamp": time.time(),
            "checks": checks,
        }

    async def _check_database(self, engine: AsyncEngine) -> dict[str, Any]:
        """Check the ledger database answers and the attempts table exists."""
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                attempt_count = await conn.scalar(
                    select(func.count()).select_from(CheckoutAttemptRecord.__table__)
                )
            return {
                "status": "ok",
                "attempt_count": int(attempt_count or 0),
                "backend": engine.dialect.name,
            }
        except Exception as exc:
            return {
                "status": "error",
                "error": str(exc),
                "error_type": type(exc).__name__,
            }

    def _check_payments(self, adapters: Mapping[Rail, ProviderAdapter]) -> dict[str, Any]:
        """Report configured rails and any open provider circuit."""
        rails: dict[str, str] = {}
        for rail in Rail:
            adapter = adapters.get(rail)
            if adapter is None:
                rails[rail.value] = "not_configured"
                continue
            breaker = getattr(getattr(adapter, "gateway", None), "breaker", None)
            rails[rail.value] = "circuit_open" if breaker is not None and breaker.is_open() else "ok"
        if not adapters:
            return {"status": "error", "error": "no payment rails configured", "rails": rails}
        status = "error" if "circuit_open" in rails.values() else "ok"
        return {"status": status, "mode": settings.PAYMENTS_MODE, "rails": rails}

    async def _check_notifier(self) -> dict[str, Any]:
        """Check the notification service answers at all (any HTTP status)."""
        cache_key = "notifications"
        cached = self._get_cached_check(cache_key)
        if cached is not None:
            return cached

        try:
            async with httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT_SECONDS) as client:
                response = await client.head(settings.NOTIFY_WEBHOOK_URL)
            if response.status_code >= 500:
                result = {
                    "status": "error",
                    "error": f"HTTP {response.status_code}",
                    "error_type": "HTTPStatusError",
                }
            else:
                result = {"status": "ok"}
        except httpx.TimeoutException:
            result = {
                "status": "error",
                "error": "Connection timeout",
                "error_type": "TimeoutException",
            }
        except httpx.HTTPError as exc:
            result = {
                "status": "error",
                "error": str(exc),
                "error_type": type(exc).__name__,
            }
        self._cache_check(cache_key, result)
        return result

    def _check_sentry(self) -> dict[str, Any]:
        """Check if Sentry is configured (doesn't actually test connectivity)."""
        dsn = settings.SENTRY_DSN or ""
        if "@" in dsn and "//" in dsn:
            return {
                "status": "ok",
                "environment": settings.SENTRY_ENVIRONMENT,
                "release": settings.SENTRY_RELEASE or "unset",
            }
        return {"status": "error", "error": "Invalid SENTRY_DSN format"}

    def _get_cached_check(self, key: str) -> dict[str, Any] | None:
        """Get cached health check result if still valid."""
        if key not in self._check_cache:
            return None

        result, timestamp = self._check_cache[key]
        if time.time() - timestamp > self._cache_ttl:
            return None

        return result

    def _cache_check(self, key: str, result: dict[str, Any]) -> None:
        """Cache a health check result."""
        self._check_cache[key] = (result, time.time())

    def clear_cache(self) -> None:
        """Clear cached dependency checks (useful for tests)."""
        self._check_cache.clear()


# Global health checker instance
health_checker = HealthChecker()


__all__ = ["health_checker", "HealthChecker"]
