import asyncio
import itertools
import json
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest
import sentry_sdk
from fastapi.testclient import TestClient
from sqlalchemy.pool import NullPool

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Disable outbound Sentry calls during tests
sentry_sdk.init = lambda *args, **kwargs: None  # type: ignore[assignment]
os.environ["SENTRY_DSN"] = ""
test_data_dir = ROOT / "artifacts" / "test-data"
test_data_dir.mkdir(parents=True, exist_ok=True)
os.environ["DATA_DIR"] = str(test_data_dir)
os.environ["DATABASE_URL"] = f"sqlite:///{test_data_dir / 'storefront-test.db'}"
os.environ["PAYMENTS_MODE"] = "mock"
os.environ["EXPIRY_SWEEP_INTERVAL_SECONDS"] = "0"

from backend.storefront.catalog import Product, StaticCatalog  # noqa: E402
from backend.storefront.db.core import build_engine, build_session_factory, init_db  # noqa: E402
from backend.storefront.errors import InvalidSignature  # noqa: E402
from backend.storefront.main import create_app  # noqa: E402
from backend.storefront.payments.base import (  # noqa: E402
    BaseProviderAdapter,
    BuyerContext,
    CreatedAttempt,
    ProviderStatus,
    ShippingAddress,
    VerifiedEvent,
)
from backend.storefront.payments.kofi import EmbeddedDonationAdapter, KofiConfig  # noqa: E402
from backend.storefront.payments.manual_invoice import (  # noqa: E402
    ManualInvoiceAdapter,
    ManualInvoiceConfig,
)
from backend.storefront.services import build_services  # noqa: E402
from backend.storefront.settings import settings  # noqa: E402
from backend.storefront.states import EventOutcome, Rail  # noqa: E402
from backend.storefront.utils import utcnow  # noqa: E402

TEST_SIGNATURE = "signed-by-test-provider"
KOFI_TOKEN = "kofi-test-token"


class FakeCardAdapter(BaseProviderAdapter):
    """Scriptable card rail: tests decide what the provider says."""

    supports_webhooks = True
    supports_polling = True
    supports_cancel = True
    signature_header = "x-test-signature"

    def __init__(self, rail: Rail) -> None:
        self.rail = rail  # type: ignore[misc]
        self.create_delay = 0.0
        self.create_error: Exception | None = None
        self.poll_outcome = EventOutcome.PENDING
        self.poll_error: Exception | None = None
        self.poll_amount_override: int | None = None
        self.created: list[str] = []
        self.cancelled: list[str] = []
        self.amounts: dict[str, tuple[int, str]] = {}
        self._counter = itertools.count(1)

    async def create_attempt(self, *, attempt_id, product, amount_minor, currency, buyer):
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        provider_ref = f"{self.rail.value}_ref_{next(self._counter)}"
        self.created.append(provider_ref)
        self.amounts[provider_ref] = (amount_minor, currency)
        return CreatedAttempt(
            provider_ref=provider_ref,
            client_payload={"clientSecret": f"{provider_ref}_secret"},
            expires_at=utcnow() + timedelta(minutes=30),
        )

    async def verify_callback(self, raw_payload, signature):
        if signature != TEST_SIGNATURE:
            raise InvalidSignature("test signature mismatch")
        return VerifiedEvent(**json.loads(raw_payload))

    async def poll_status(self, provider_ref):
        if self.poll_error is not None:
            raise self.poll_error
        amount, currency = self.amounts.get(provider_ref, (None, None))
        if self.poll_amount_override is not None:
            amount = self.poll_amount_override
        succeeded = self.poll_outcome == EventOutcome.SUCCEEDED
        return ProviderStatus(
            provider_ref=provider_ref,
            outcome=self.poll_outcome,
            raw_status=self.poll_outcome.value,
            amount_minor=amount if succeeded else None,
            currency=currency,
        )

    async def cancel_attempt(self, provider_ref):
        self.cancelled.append(provider_ref)


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices = []

    async def notify(self, notice) -> None:
        self.notices.append(notice)


def event_body(
    event_id: str,
    provider_ref: str | None,
    outcome: str = "succeeded",
    *,
    amount_minor: int | None = None,
    currency: str | None = None,
    event_type: str = "payment.updated",
    buyer_email: str | None = None,
) -> bytes:
    return json.dumps(
        {
            "event_id": event_id,
            "event_type": event_type,
            "outcome": outcome,
            "provider_ref": provider_ref,
            "amount_minor": amount_minor,
            "currency": currency,
            "buyer_email": buyer_email,
        }
    ).encode("utf-8")


def buyer(email: str = "buyer@example.com") -> BuyerContext:
    return BuyerContext(
        email=email,
        name="Jamie Buyer",
        shipping=ShippingAddress(
            street_address="1 Market St", city="Portland", state="OR", zip_code="97201", country="US"
        ),
    )


def default_products() -> list[Product]:
    return [
        Product(ref="tee-25", name="Hood Tee", price_minor=2500, currency="USD", rail="card_intent"),
        Product(ref="bag-40", name="Canvas Bag", price_minor=4000, currency="USD", rail="stripe_checkout"),
        Product(
            ref="print-kofi",
            name="Risograph Print",
            price_minor=1800,
            currency="USD",
            rail="kofi",
            checkout_link="https://ko-fi.com/s/abc123",
        ),
        Product(ref="vase-invoice", name="Studio Vase", price_minor=12000, currency="USD", rail="paypal_invoice"),
        Product(ref="broken-rail", name="Mystery Box", price_minor=999, currency="USD", rail="bitcoin"),
    ]


@pytest.fixture(autouse=True)
def reset_settings():
    settings.ADMIN_AUTH_BYPASS = True
    settings.RATE_LIMIT_ENABLED = False
    settings.SENTRY_DSN = None
    settings.NOTIFY_WEBHOOK_URL = None
    yield
    settings.ADMIN_AUTH_BYPASS = True


@pytest.fixture
def engine(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool)
    asyncio.run(init_db(db_engine))
    yield db_engine
    asyncio.run(db_engine.dispose())


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def catalog():
    return StaticCatalog(default_products())


@pytest.fixture
def adapters():
    return {
        Rail.CARD_INTENT: FakeCardAdapter(Rail.CARD_INTENT),
        Rail.CARD_SESSION: FakeCardAdapter(Rail.CARD_SESSION),
        Rail.EMBEDDED_DONATION: EmbeddedDonationAdapter(KofiConfig(verification_token=KOFI_TOKEN)),
        Rail.MANUAL_INVOICE: ManualInvoiceAdapter(ManualInvoiceConfig(chat_url="https://chat.example.com")),
    }


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(session_factory, catalog, adapters, notifier):
    cfg = settings.model_copy(update={"PROVIDER_TIMEOUT_SECONDS": 0.5})
    return build_services(cfg, session_factory, catalog=catalog, adapters=adapters, notifier=notifier)


@pytest.fixture
def client(engine, services):
    app = create_app(engine=engine, services=services, sweep_interval=0)
    with TestClient(app, base_url="http://api.testserver") as test_client:
        yield test_client
