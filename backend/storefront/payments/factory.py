from __future__ import annotations

from ..logging_config import get_logger
from ..settings import Settings
from ..states import Rail
from .base import ProviderAdapter
from .card_intent import CardIntentAdapter
from .card_session import CardSessionAdapter
from .kofi import EmbeddedDonationAdapter, KofiConfig
from .manual_invoice import ManualInvoiceAdapter, ManualInvoiceConfig
from .mock import MockCardAdapter
from .stripe_gateway import StripeGateway, StripeRailConfig

logger = get_logger(__name__)

AdapterRegistry = dict[Rail, ProviderAdapter]


def stripe_config(cfg: Settings, rail: Rail) -> StripeRailConfig | None:
    if not cfg.STRIPE_SECRET_KEY:
        return None
    is_session = rail == Rail.CARD_SESSION
    return StripeRailConfig(
        secret_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.session_webhook_secret if is_session else cfg.STRIPE_WEBHOOK_SECRET,
        publishable_key=cfg.STRIPE_PUBLISHABLE_KEY,
        ttl_minutes=cfg.CARD_SESSION_TTL_MINUTES if is_session else cfg.CARD_INTENT_TTL_MINUTES,
        timeout_seconds=cfg.PROVIDER_TIMEOUT_SECONDS,
        public_base_url=cfg.PUBLIC_BASE_URL,
        circuit_failure_threshold=cfg.PROVIDER_CIRCUIT_FAILURE_THRESHOLD,
        circuit_cooldown_seconds=cfg.PROVIDER_CIRCUIT_COOLDOWN_SECONDS,
    )


def build_adapters(cfg: Settings) -> AdapterRegistry:
    """Instantiate one adapter per configured rail.

    A rail whose credentials are missing is left out of the registry, so the
    flow selector fails closed for products configured to use it.
    """
    adapters: AdapterRegistry = {}
    mode = (cfg.PAYMENTS_MODE or "mock").lower()

    for rail, adapter_cls in ((Rail.CARD_INTENT, CardIntentAdapter), (Rail.CARD_SESSION, CardSessionAdapter)):
        if mode == "mock":
            adapters[rail] = MockCardAdapter(rail, secret=cfg.MOCK_WEBHOOK_SECRET)
            continue
        config = stripe_config(cfg, rail)
        if config is None:
            logger.warning("rail_not_configured", rail=rail.value, missing="STRIPE_SECRET_KEY")
            continue
        adapters[rail] = adapter_cls(StripeGateway(config, name=rail.value))

    if cfg.KOFI_VERIFICATION_TOKEN or mode == "mock":
        adapters[Rail.EMBEDDED_DONATION] = EmbeddedDonationAdapter(
            KofiConfig(verification_token=cfg.KOFI_VERIFICATION_TOKEN, ttl_minutes=cfg.KOFI_TTL_MINUTES)
        )
    else:
        logger.warning("rail_not_configured", rail=Rail.EMBEDDED_DONATION.value, missing="KOFI_VERIFICATION_TOKEN")

    adapters[Rail.MANUAL_INVOICE] = ManualInvoiceAdapter(
        ManualInvoiceConfig(chat_url=cfg.MANUAL_INVOICE_CHAT_URL, support_email=cfg.SUPPORT_EMAIL)
    )
    return adapters
