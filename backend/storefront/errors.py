"""Error taxonomy for the checkout core.

Adapter errors propagate unchanged to the orchestrator; HTTP routes translate
them to status codes. Business mismatches during reconciliation (orphaned,
duplicate or late events) are never raised, only recorded.
"""

from __future__ import annotations


class CheckoutError(Exception):
    """Base class for every error the checkout core raises on purpose."""

    kind = "checkout_error"


class ProviderUnavailable(CheckoutError):
    """Remote provider call failed or timed out. Retry by creating a new attempt."""

    kind = "provider_unavailable"

    def __init__(self, message: str = "payment provider unavailable", *, cause: str | None = None):
        super().__init__(message)
        self.cause = cause


class ProviderTimeout(ProviderUnavailable):
    kind = "provider_timeout"


class InvalidSignature(CheckoutError):
    """Inbound callback failed authentication. Never retried; always logged."""

    kind = "invalid_signature"


class MalformedEvent(InvalidSignature):
    """Callback authenticated (or could not be) but the body is unusable."""

    kind = "malformed_event"


class UnsupportedRail(CheckoutError):
    kind = "unsupported_rail"


class UnsupportedCapability(CheckoutError):
    """Adapter does not implement an optional operation (poll, webhook, cancel)."""

    kind = "unsupported_capability"


class ProviderRefNotFound(CheckoutError):
    kind = "provider_ref_not_found"


class AttemptNotFound(CheckoutError):
    kind = "attempt_not_found"


class ProductNotFound(CheckoutError):
    kind = "product_not_found"


class ProductUnavailable(CheckoutError):
    """Product already has a succeeded attempt or is switched off in the catalog."""

    kind = "product_unavailable"


class InvalidTransition(CheckoutError):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"cannot move attempt from {current} to {target}")
        self.current = current
        self.target = target


class AlreadyTerminal(CheckoutError):
    """Benign: a transition was requested on a frozen attempt. Callers see a no-op."""

    kind = "already_terminal"


class DuplicatePurchase(CheckoutError):
    """A second attempt for the same product reported success."""

    kind = "duplicate_purchase"


def buyer_message(exc: Exception, support_email: str) -> str:
    """Sanitized text for buyers; provider details stay in the logs."""
    if isinstance(exc, ProviderUnavailable):
        return (
            "Payment processing is temporarily unavailable. "
            f"Please try again or contact support at {support_email}"
        )
    if isinstance(exc, ProductNotFound):
        return "This product could not be found."
    if isinstance(exc, ProductUnavailable):
        return "This product is no longer available."
    if isinstance(exc, UnsupportedRail):
        return f"Checkout is not available for this product right now. Please contact {support_email}"
    return f"An error occurred during payment processing. Please contact {support_email}"


__all__ = [
    "AlreadyTerminal",
    "AttemptNotFound",
    "CheckoutError",
    "DuplicatePurchase",
    "InvalidSignature",
    "InvalidTransition",
    "MalformedEvent",
    "ProductNotFound",
    "ProductUnavailable",
    "ProviderRefNotFound",
    "ProviderTimeout",
    "ProviderUnavailable",
    "UnsupportedCapability",
    "UnsupportedRail",
    "buyer_message",
]
