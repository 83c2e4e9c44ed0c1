from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from ..errors import MalformedEvent
from ..states import EventOutcome, Rail
from ..utils import utcnow
from .base import BaseProviderAdapter, BuyerContext, CreatedAttempt, ProviderStatus, VerifiedEvent
from .stripe_gateway import StripeGateway, field, payload_digest, upper_currency

if TYPE_CHECKING:
    from ..catalog import Product

INTENT_EVENT_OUTCOMES = {
    "payment_intent.succeeded": EventOutcome.SUCCEEDED,
    "payment_intent.payment_failed": EventOutcome.FAILED,
    "payment_intent.canceled": EventOutcome.FAILED,
    "payment_intent.processing": EventOutcome.PENDING,
    "payment_intent.requires_action": EventOutcome.PENDING,
}

INTENT_STATUS_OUTCOMES = {
    "succeeded": EventOutcome.SUCCEEDED,
    "canceled": EventOutcome.FAILED,
}


def _shipping_param(buyer: BuyerContext) -> dict | None:
    address = buyer.shipping
    if not address.street_address:
        return None
    return {
        "name": buyer.name or buyer.email,
        "phone": buyer.phone,
        "address": {
            "line1": address.street_address,
            "city": address.city,
            "state": address.state,
            "postal_code": address.zip_code,
            "country": address.country,
        },
    }


class CardIntentAdapter(BaseProviderAdapter):
    """Stripe PaymentIntent confirmed in-page with the card element."""

    rail = Rail.CARD_INTENT
    supports_webhooks = True
    supports_polling = True
    supports_cancel = True
    signature_header = "stripe-signature"

    def __init__(self, gateway: StripeGateway) -> None:
        self.gateway = gateway
        self.config = gateway.config

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt:
        sdk = self.gateway.stripe
        params = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "description": product.name,
            "receipt_email": buyer.email,
            "metadata": {
                "attempt_id": attempt_id,
                "product_ref": product.ref,
                "customer_email": buyer.email,
            },
        }
        shipping = _shipping_param(buyer)
        if shipping:
            params["shipping"] = shipping
        intent = await self.gateway.call(
            "create",
            sdk.PaymentIntent.create,
            idempotency_key=attempt_id,
            **params,
        )
        payload = {"clientSecret": field(intent, "client_secret")}
        if self.config.publishable_key:
            payload["publishableKey"] = self.config.publishable_key
        return CreatedAttempt(
            provider_ref=field(intent, "id"),
            client_payload=payload,
            expires_at=utcnow() + timedelta(minutes=self.config.ttl_minutes),
        )

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent:
        event = self.gateway.construct_event(raw_payload, signature)
        event_id = field(event, "id")
        event_type = field(event, "type") or ""
        intent = field(field(event, "data"), "object")
        if not event_id or intent is None:
            raise MalformedEvent("Stripe event without id or data.object")
        outcome = INTENT_EVENT_OUTCOMES.get(event_type, EventOutcome.IGNORED)
        amount = field(intent, "amount_received") or field(intent, "amount")
        return VerifiedEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            provider_ref=field(intent, "id"),
            amount_minor=amount if outcome == EventOutcome.SUCCEEDED else None,
            currency=upper_currency(field(intent, "currency")),
            buyer_email=field(intent, "receipt_email"),
            payload_digest=payload_digest(raw_payload),
        )

    async def poll_status(self, provider_ref: str) -> ProviderStatus:
        intent = await self.gateway.call(
            "retrieve", self.gateway.stripe.PaymentIntent.retrieve, provider_ref
        )
        status = field(intent, "status") or "unknown"
        outcome = INTENT_STATUS_OUTCOMES.get(status, EventOutcome.PENDING)
        return ProviderStatus(
            provider_ref=provider_ref,
            outcome=outcome,
            raw_status=status,
            amount_minor=field(intent, "amount_received") if outcome == EventOutcome.SUCCEEDED else None,
            currency=upper_currency(field(intent, "currency")),
        )

    async def cancel_attempt(self, provider_ref: str) -> None:
        await self.gateway.call(
            "cancel",
            self.gateway.stripe.PaymentIntent.cancel,
            provider_ref,
            idempotency_key=f"cancel-{provider_ref}",
        )
