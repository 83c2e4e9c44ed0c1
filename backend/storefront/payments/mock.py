from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

from ..errors import InvalidSignature, MalformedEvent, ProviderRefNotFound
from ..states import EventOutcome, Rail
from ..utils import utcnow
from .base import BaseProviderAdapter, BuyerContext, CreatedAttempt, ProviderStatus, VerifiedEvent
from .stripe_gateway import payload_digest

if TYPE_CHECKING:
    from ..catalog import Product

MOCK_SIGNATURE_HEADER = "x-mock-signature"


def sign_mock_payload(raw_payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


class MockCardAdapter(BaseProviderAdapter):
    """Local stand-in for the card rails when PAYMENTS_MODE=mock.

    Nothing leaves the process. ``settle`` plays the provider side so that
    polls and signed webhooks can be exercised end to end in development.
    """

    supports_webhooks = True
    supports_polling = True
    supports_cancel = True
    signature_header = MOCK_SIGNATURE_HEADER

    def __init__(self, rail: Rail, *, secret: str, ttl_minutes: int = 60) -> None:
        self.rail = rail  # type: ignore[misc]
        self.secret = secret
        self.ttl_minutes = ttl_minutes
        self._outcomes: dict[str, tuple[EventOutcome, int, str]] = {}

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt:
        provider_ref = f"mock_{uuid4().hex}"
        self._outcomes[provider_ref] = (EventOutcome.PENDING, amount_minor, currency)
        payload = {"mock": True, "clientSecret": f"{provider_ref}_secret"}
        if self.rail == Rail.CARD_SESSION:
            payload["redirectUrl"] = f"/thankyou?session_id={provider_ref}"
        return CreatedAttempt(
            provider_ref=provider_ref,
            client_payload=payload,
            expires_at=utcnow() + timedelta(minutes=self.ttl_minutes),
        )

    def settle(self, provider_ref: str, outcome: EventOutcome) -> None:
        if provider_ref not in self._outcomes:
            raise ProviderRefNotFound(provider_ref)
        _, amount_minor, currency = self._outcomes[provider_ref]
        self._outcomes[provider_ref] = (outcome, amount_minor, currency)

    def signed_event(self, provider_ref: str, outcome: EventOutcome) -> tuple[bytes, str]:
        """Build a webhook body plus signature, as the provider would send it."""
        _, amount_minor, currency = self._outcomes.get(provider_ref, (outcome, None, None))
        body = json.dumps(
            {
                "id": f"evt_{uuid4().hex}",
                "type": f"mock.{outcome.value}",
                "provider_ref": provider_ref,
                "outcome": outcome.value,
                "amount_minor": amount_minor,
                "currency": currency,
            }
        ).encode("utf-8")
        return body, sign_mock_payload(body, self.secret)

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent:
        expected = sign_mock_payload(raw_payload, self.secret)
        if not signature or not hmac.compare_digest(expected, signature):
            raise InvalidSignature("mock signature mismatch")
        try:
            data = json.loads(raw_payload)
            return VerifiedEvent(
                event_id=data["id"],
                event_type=data.get("type") or "mock",
                outcome=EventOutcome(data["outcome"]),
                provider_ref=data.get("provider_ref"),
                amount_minor=data.get("amount_minor"),
                currency=data.get("currency"),
                payload_digest=payload_digest(raw_payload),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedEvent("mock event body is invalid") from exc

    async def poll_status(self, provider_ref: str) -> ProviderStatus:
        if provider_ref not in self._outcomes:
            raise ProviderRefNotFound(provider_ref)
        outcome, amount_minor, currency = self._outcomes[provider_ref]
        return ProviderStatus(
            provider_ref=provider_ref,
            outcome=outcome,
            raw_status=outcome.value,
            amount_minor=amount_minor if outcome == EventOutcome.SUCCEEDED else None,
            currency=currency,
        )

    async def cancel_attempt(self, provider_ref: str) -> None:
        if provider_ref in self._outcomes:
            self.settle(provider_ref, EventOutcome.EXPIRED)
