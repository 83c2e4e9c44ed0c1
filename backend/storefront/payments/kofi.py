"""Ko-fi shop checkout embedded in an iframe.

Ko-fi has no API for creating a payment, so ``create_attempt`` is local and
the buyer pays inside the product's Ko-fi checkout link. Ko-fi posts a
form-encoded webhook whose ``data`` field is a JSON document carrying the
account's verification token. Nothing in it references our attempt, so the
reconciler matches these events by buyer email.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import timedelta
from decimal import InvalidOperation
from typing import TYPE_CHECKING
from urllib.parse import parse_qs

from ..catalog import to_minor_units
from ..errors import InvalidSignature, MalformedEvent, UnsupportedRail
from ..states import EventOutcome, Rail
from ..utils import utcnow
from .base import BaseProviderAdapter, BuyerContext, CreatedAttempt, VerifiedEvent
from .stripe_gateway import payload_digest

if TYPE_CHECKING:
    from ..catalog import Product

# one-off payments only; subscriptions are recurring billing
PAYMENT_TYPES = {"Shop Order", "Donation", "Commission"}


@dataclass(frozen=True)
class KofiConfig:
    verification_token: str | None
    ttl_minutes: int = 120


class EmbeddedDonationAdapter(BaseProviderAdapter):
    rail = Rail.EMBEDDED_DONATION
    supports_webhooks = True
    signature_header = None  # token travels inside the body

    def __init__(self, config: KofiConfig) -> None:
        self.config = config

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt:
        if not product.checkout_link:
            raise UnsupportedRail(f"product {product.ref} has no Ko-fi checkout link")
        return CreatedAttempt(
            provider_ref=f"kofi_{secrets.token_hex(12)}",
            client_payload={"iframeUrl": product.checkout_link, "buyerEmail": buyer.email},
            expires_at=utcnow() + timedelta(minutes=self.config.ttl_minutes),
        )

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent:
        if not self.config.verification_token:
            raise InvalidSignature("Ko-fi verification token is not configured")
        try:
            form = parse_qs(raw_payload.decode("utf-8"), strict_parsing=True)
            data = json.loads(form["data"][0])
        except (UnicodeDecodeError, ValueError, KeyError, IndexError) as exc:
            raise MalformedEvent("Ko-fi webhook body has no JSON data field") from exc
        if not isinstance(data, dict):
            raise MalformedEvent("Ko-fi data field is not an object")

        token = str(data.get("verification_token") or "")
        if not secrets.compare_digest(
            token.encode("utf-8"), self.config.verification_token.encode("utf-8")
        ):
            raise InvalidSignature("Ko-fi verification token mismatch")

        message_id = data.get("message_id")
        if not message_id:
            raise MalformedEvent("Ko-fi event without message_id")
        event_type = str(data.get("type") or "")
        currency = str(data.get("currency") or "").upper() or None
        amount_minor = None
        if data.get("amount") is not None and currency:
            try:
                amount_minor = to_minor_units(data["amount"], currency)
            except (InvalidOperation, ValueError) as exc:
                raise MalformedEvent("Ko-fi amount is not a number") from exc

        outcome = EventOutcome.SUCCEEDED if event_type in PAYMENT_TYPES else EventOutcome.IGNORED
        email = data.get("email")
        return VerifiedEvent(
            event_id=str(message_id),
            event_type=event_type or "unknown",
            outcome=outcome,
            provider_ref=None,
            amount_minor=amount_minor,
            currency=currency,
            buyer_email=str(email).strip().lower() if email else None,
            payload_digest=payload_digest(raw_payload),
        )
