from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING
from urllib.parse import quote

from ..errors import MalformedEvent
from ..states import EventOutcome, Rail
from ..utils import utcnow
from .base import BaseProviderAdapter, BuyerContext, CreatedAttempt, ProviderStatus, VerifiedEvent
from .stripe_gateway import (
    StripeGateway,
    clamp_session_ttl,
    field,
    payload_digest,
    upper_currency,
)

if TYPE_CHECKING:
    from ..catalog import Product

DEFAULT_ALLOWED_COUNTRIES = (
    "US", "CA", "GB", "AU", "DE", "FR", "IT", "ES", "NL", "BE", "AT", "CH",
    "SE", "NO", "DK", "FI", "IE", "PT", "GR", "PL", "CZ", "HU", "RO", "BG",
    "HR", "SK", "SI", "LT", "LV", "EE", "CY", "MT", "LU",
)  # fmt: skip

PAID_STATUSES = {"paid", "no_payment_required"}


def _session_outcome(event_type: str, session: object) -> EventOutcome:
    if event_type == "checkout.session.completed":
        if field(session, "payment_status") in PAID_STATUSES:
            return EventOutcome.SUCCEEDED
        # delayed methods (bank debits) settle via async_payment_* later
        return EventOutcome.PENDING
    if event_type == "checkout.session.async_payment_succeeded":
        return EventOutcome.SUCCEEDED
    if event_type == "checkout.session.async_payment_failed":
        return EventOutcome.FAILED
    if event_type == "checkout.session.expired":
        return EventOutcome.EXPIRED
    return EventOutcome.IGNORED


class CardSessionAdapter(BaseProviderAdapter):
    """Stripe Checkout Session: hosted page, buyer returns to /thankyou."""

    rail = Rail.CARD_SESSION
    supports_webhooks = True
    supports_polling = True
    supports_cancel = True
    signature_header = "stripe-signature"

    def __init__(self, gateway: StripeGateway) -> None:
        self.gateway = gateway
        self.config = gateway.config

    @property
    def ttl_minutes(self) -> int:
        return clamp_session_ttl(self.config.ttl_minutes)

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt:
        base_url = self.config.public_base_url.rstrip("/")
        expires_at = utcnow() + timedelta(minutes=self.ttl_minutes)
        product_data: dict = {"name": product.name, "description": f"Product ID: {product.ref}"}
        if product.images:
            product_data["images"] = [product.images[0]]
        metadata = {
            "attempt_id": attempt_id,
            "product_ref": product.ref,
            "customer_email": buyer.email,
            "shipping_address": buyer.shipping.street_address,
            "shipping_city": buyer.shipping.city,
            "shipping_state": buyer.shipping.state,
            "shipping_zip": buyer.shipping.zip_code,
        }
        session = await self.gateway.call(
            "create",
            self.gateway.stripe.checkout.Session.create,
            idempotency_key=attempt_id,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": product_data,
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{base_url}/thankyou?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/checkout?product={quote(product.ref)}",
            customer_email=buyer.email,
            client_reference_id=attempt_id,
            shipping_address_collection={
                "allowed_countries": list(self.config.allowed_countries or DEFAULT_ALLOWED_COUNTRIES)
            },
            expires_at=int(expires_at.timestamp()),
            metadata=metadata,
            payment_intent_data={"metadata": {"attempt_id": attempt_id, "product_ref": product.ref}},
        )
        return CreatedAttempt(
            provider_ref=field(session, "id"),
            client_payload={"sessionId": field(session, "id"), "redirectUrl": field(session, "url")},
            expires_at=expires_at,
        )

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent:
        event = self.gateway.construct_event(raw_payload, signature)
        event_id = field(event, "id")
        event_type = field(event, "type") or ""
        session = field(field(event, "data"), "object")
        if not event_id or session is None:
            raise MalformedEvent("Stripe event without id or data.object")
        outcome = _session_outcome(event_type, session)
        details = field(session, "customer_details")
        return VerifiedEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            provider_ref=field(session, "id"),
            amount_minor=field(session, "amount_total") if outcome == EventOutcome.SUCCEEDED else None,
            currency=upper_currency(field(session, "currency")),
            buyer_email=field(details, "email") or field(session, "customer_email"),
            payload_digest=payload_digest(raw_payload),
        )

    async def poll_status(self, provider_ref: str) -> ProviderStatus:
        session = await self.gateway.call(
            "retrieve", self.gateway.stripe.checkout.Session.retrieve, provider_ref
        )
        status = field(session, "status") or "unknown"
        payment_status = field(session, "payment_status") or "unknown"
        if status == "complete" and payment_status in PAID_STATUSES:
            outcome = EventOutcome.SUCCEEDED
        elif status == "expired":
            outcome = EventOutcome.EXPIRED
        else:
            outcome = EventOutcome.PENDING
        return ProviderStatus(
            provider_ref=provider_ref,
            outcome=outcome,
            raw_status=f"{status}.{payment_status}",
            amount_minor=field(session, "amount_total") if outcome == EventOutcome.SUCCEEDED else None,
            currency=upper_currency(field(session, "currency")),
        )

    async def cancel_attempt(self, provider_ref: str) -> None:
        await self.gateway.call(
            "cancel",
            self.gateway.stripe.checkout.Session.expire,
            provider_ref,
            idempotency_key=f"expire-{provider_ref}",
        )
