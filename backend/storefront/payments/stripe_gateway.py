"""Thin async wrapper around the synchronous Stripe SDK.

SDK calls run on a worker thread under a per-rail circuit breaker with a
bounded timeout. SDK exceptions are mapped onto the checkout error taxonomy
here, so adapters never see a ``stripe`` exception.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import anyio
import stripe

from ..circuit_breaker import CircuitBreaker, CircuitOpenError
from ..errors import (
    InvalidSignature,
    MalformedEvent,
    ProviderRefNotFound,
    ProviderTimeout,
    ProviderUnavailable,
)
from ..logging_config import get_logger
from ..metrics import provider_calls_total

logger = get_logger(__name__)

# Stripe accepts 30 minutes .. 24 hours for Checkout Session expires_at
SESSION_TTL_MIN_MINUTES = 30
SESSION_TTL_MAX_MINUTES = 24 * 60

# Stripe rejected the request itself; the rail is healthy
CLIENT_ERRORS: tuple[type[Exception], ...] = (stripe.InvalidRequestError, stripe.CardError)


@dataclass(frozen=True)
class StripeRailConfig:
    secret_key: str
    webhook_secret: str | None
    publishable_key: str | None = None
    ttl_minutes: int = 60
    timeout_seconds: float = 10.0
    public_base_url: str = "http://localhost:3000"
    allowed_countries: tuple[str, ...] = ()
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 60.0


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a StripeObject, plain dict, or attribute bag."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def payload_digest(raw_payload: bytes) -> str:
    return hashlib.sha256(raw_payload).hexdigest()


class StripeGateway:
    def __init__(
        self,
        config: StripeRailConfig,
        *,
        name: str,
        stripe_sdk: Any | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config
        self.name = name
        self.stripe = stripe_sdk if stripe_sdk is not None else stripe
        # caller decides on retries; the SDK must not retry behind our back
        self.stripe.max_network_retries = 0
        self.breaker = breaker or CircuitBreaker(
            name=f"stripe_{name}",
            failure_threshold=config.circuit_failure_threshold,
            cooldown_seconds=config.circuit_cooldown_seconds,
            timeout_seconds=config.timeout_seconds,
            excluded_exceptions=CLIENT_ERRORS,
        )

    async def call(self, operation: str, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        request_kwargs = dict(kwargs)
        request_kwargs.setdefault("api_key", self.config.secret_key)

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        try:
            result = await self.breaker.call(anyio.to_thread.run_sync, _sync_call)
        except CircuitOpenError as exc:
            self._count(operation, "circuit_open")
            raise ProviderUnavailable(cause="circuit_open") from exc
        except asyncio.TimeoutError as exc:
            self._count(operation, "timeout")
            logger.warning("stripe_call_timeout", rail=self.name, operation=operation)
            raise ProviderTimeout("payment provider timed out", cause="timeout") from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                self._count(operation, "not_found")
                raise ProviderRefNotFound(str(getattr(exc, "param", "") or operation)) from exc
            self._count(operation, "error")
            self._log_error(operation, exc)
            raise ProviderUnavailable(cause="invalid_request") from exc
        except (
            stripe.APIConnectionError,
            stripe.RateLimitError,
            stripe.AuthenticationError,
            stripe.APIError,
        ) as exc:
            self._count(operation, "unavailable")
            self._log_error(operation, exc)
            raise ProviderUnavailable(cause=type(exc).__name__) from exc
        except stripe.StripeError as exc:
            self._count(operation, "error")
            self._log_error(operation, exc)
            raise ProviderUnavailable(cause=type(exc).__name__) from exc
        self._count(operation, "ok")
        return result

    def construct_event(self, raw_payload: bytes, signature: str | None) -> Any:
        """Verify a webhook body against the rail's signing secret."""
        if not self.config.webhook_secret:
            raise InvalidSignature(f"no webhook secret configured for {self.name}")
        if not signature:
            raise InvalidSignature("missing Stripe-Signature header")
        try:
            return self.stripe.Webhook.construct_event(
                payload=raw_payload,
                sig_header=signature,
                secret=self.config.webhook_secret,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Stripe signature verification failed") from exc
        except ValueError as exc:
            raise MalformedEvent("webhook body is not a Stripe event") from exc

    def _count(self, operation: str, result: str) -> None:
        provider_calls_total.labels(rail=self.name, operation=operation, result=result).inc()

    def _log_error(self, operation: str, exc: Exception) -> None:
        # raw messages may mention key prefixes; only codes go to the log
        logger.error(
            "stripe_call_failed",
            rail=self.name,
            operation=operation,
            error_type=type(exc).__name__,
            error_code=getattr(exc, "code", None),
            http_status=getattr(exc, "http_status", None),
            request_id=getattr(exc, "request_id", None),
        )


def clamp_session_ttl(minutes: int) -> int:
    return max(SESSION_TTL_MIN_MINUTES, min(SESSION_TTL_MAX_MINUTES, int(minutes)))


def upper_currency(value: Any) -> str | None:
    return str(value).upper() if value else None


__all__ = [
    "StripeGateway",
    "StripeRailConfig",
    "clamp_session_ttl",
    "field",
    "payload_digest",
    "upper_currency",
]
