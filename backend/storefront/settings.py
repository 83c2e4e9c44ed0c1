from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    # whether to render console logs instead of JSON
    DEBUG: bool = False

    # persistence directory (defaults to ~/.storefront-data)
    DATA_DIR: Path | None = None
    DATABASE_URL: str | None = None

    # CORS allow origins (comma-separated). Default empty (no cross-origin).
    CORS_ALLOW_ORIGINS: str = ""

    # Public site used to build redirect URLs for hosted checkout
    PUBLIC_BASE_URL: str = "http://localhost:3000"
    SUPPORT_EMAIL: str = "support@hoodfair.com"

    # Payments
    PAYMENTS_MODE: Literal["mock", "live"] = "mock"
    DEFAULT_CURRENCY: str = "USD"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_CIRCUIT_FAILURE_THRESHOLD: int = 5
    PROVIDER_CIRCUIT_COOLDOWN_SECONDS: float = 60.0

    # Stripe (card_intent + card_session rails)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_PUBLISHABLE_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_SESSION_WEBHOOK_SECRET: str | None = None  # falls back to STRIPE_WEBHOOK_SECRET
    CARD_INTENT_TTL_MINUTES: int = 60
    CARD_SESSION_TTL_MINUTES: int = 30

    # Ko-fi (embedded_donation rail)
    KOFI_VERIFICATION_TOKEN: str | None = None
    KOFI_TTL_MINUTES: int = 120

    # PayPal invoice + live chat (manual_invoice rail)
    MANUAL_INVOICE_CHAT_URL: str | None = None
    MANUAL_INVOICE_ABANDON_AFTER_HOURS: int = 72

    # Mock rail signing secret (PAYMENTS_MODE=mock only)
    MOCK_WEBHOOK_SECRET: str = "mock-webhook-secret"

    # Housekeeping sweep; 0 disables the in-process loop
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 180
    EXPIRY_SWEEP_BATCH_SIZE: int = 200

    # Notification service (fire-and-forget)
    NOTIFY_WEBHOOK_URL: str | None = None
    NOTIFY_TIMEOUT_SECONDS: float = 5.0

    # Operator access (admin identity lives elsewhere; we only verify its tokens)
    ADMIN_JWT_SECRET: str | None = None
    ADMIN_AUTH_BYPASS: bool = False  # require explicit opt-in for bypass

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 300  # per window per client
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Trusted proxy configuration for X-Forwarded-For validation
    # Only trust X-Forwarded-For headers from these proxies (comma-separated IPs/CIDRs)
    # Leave empty to never trust X-Forwarded-For (use direct client.host only)
    TRUSTED_PROXIES: str = ""

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @property
    def allow_origins(self) -> list[str]:
        s = (self.CORS_ALLOW_ORIGINS or "").strip()
        if s == "*":
            return ["*"]
        if s == "":
            return []
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def data_dir(self) -> Path:
        # Pydantic treats an empty string in `.env` as Path('.') which would point to the
        # repository root. Blank values are considered unset.
        def _materialize(path: Path) -> Path:
            path.mkdir(parents=True, exist_ok=True)
            return path

        raw_env = os.getenv("DATA_DIR")
        if raw_env is not None:
            trimmed = raw_env.strip()
            if trimmed:
                return _materialize(Path(trimmed).expanduser().resolve())
            return _materialize(Path.home() / ".storefront-data")

        if self.DATA_DIR is not None:
            candidate = Path(self.DATA_DIR).expanduser()
            candidate_str = str(candidate).strip()
            if candidate_str and candidate_str not in {".", "./", ".\\"}:
                return _materialize(candidate.resolve())
        return _materialize(Path.home() / ".storefront-data")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        default_path = self.data_dir / "storefront.db"
        return f"sqlite:///{default_path}"

    @property
    def async_database_url(self) -> str:
        return to_async_url(self.database_url)

    @property
    def catalog_path(self) -> Path:
        return self.data_dir / "products.json"

    @property
    def session_webhook_secret(self) -> str | None:
        return self.STRIPE_SESSION_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET


def to_async_url(url: str) -> str:
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


settings = Settings()
