"""Map a product's configured rail to an adapter and a client experience."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .errors import UnsupportedRail
from .payments.base import ProviderAdapter
from .states import Rail


class ClientExperience(str, Enum):
    CARD_ELEMENT = "card_element"
    HOSTED_REDIRECT = "hosted_redirect"
    EMBEDDED_IFRAME = "embedded_iframe"
    INVOICE_CHAT = "invoice_chat"


EXPERIENCES: dict[Rail, ClientExperience] = {
    Rail.CARD_INTENT: ClientExperience.CARD_ELEMENT,
    Rail.CARD_SESSION: ClientExperience.HOSTED_REDIRECT,
    Rail.EMBEDDED_DONATION: ClientExperience.EMBEDDED_IFRAME,
    Rail.MANUAL_INVOICE: ClientExperience.INVOICE_CHAT,
}

# values the storefront admin has historically written into products
RAIL_ALIASES: dict[str, Rail] = {
    "stripe": Rail.CARD_INTENT,
    "stripe_checkout": Rail.CARD_SESSION,
    "kofi": Rail.EMBEDDED_DONATION,
    "paypal_invoice": Rail.MANUAL_INVOICE,
}


@dataclass(frozen=True)
class Flow:
    rail: Rail
    adapter: ProviderAdapter
    experience: ClientExperience


def parse_rail(configured: str | Rail | None) -> Rail:
    if isinstance(configured, Rail):
        return configured
    key = str(configured or "").strip().lower().replace("-", "_")
    if not key:
        raise UnsupportedRail("product has no checkout rail configured")
    if key in RAIL_ALIASES:
        return RAIL_ALIASES[key]
    try:
        return Rail(key)
    except ValueError:
        raise UnsupportedRail(f"unknown checkout rail {configured!r}") from None


def select_flow(configured: str | Rail | None, adapters: Mapping[Rail, ProviderAdapter]) -> Flow:
    """Fails closed: no default rail, no fallback adapter."""
    rail = parse_rail(configured)
    adapter = adapters.get(rail)
    if adapter is None:
        raise UnsupportedRail(f"rail {rail.value} has no configured adapter")
    return Flow(rail=rail, adapter=adapter, experience=EXPERIENCES[rail])
