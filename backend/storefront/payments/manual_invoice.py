from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..states import EventOutcome, Rail
from .base import BaseProviderAdapter, BuyerContext, CreatedAttempt, VerifiedEvent

if TYPE_CHECKING:
    from ..catalog import Product

OPERATOR_OUTCOMES = {EventOutcome.SUCCEEDED, EventOutcome.FAILED}


@dataclass(frozen=True)
class ManualInvoiceConfig:
    chat_url: str | None = None
    support_email: str = "support@hoodfair.com"


class ManualInvoiceAdapter(BaseProviderAdapter):
    """
    PayPal invoice sent by hand, settled over live chat.

    No provider calls and no webhooks: payment is only ever asserted by an
    operator, which :meth:`operator_event` turns into a deterministic event.
    """

    rail = Rail.MANUAL_INVOICE

    def __init__(self, config: ManualInvoiceConfig) -> None:
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
        payload = {
            "notice": (
                f"A PayPal invoice will be sent to {buyer.email}. "
                "Please complete the payment to confirm your shipment."
            ),
            "invoiceEmail": buyer.email,
            "supportEmail": self.config.support_email,
        }
        if self.config.chat_url:
            payload["chatUrl"] = self.config.chat_url
        return CreatedAttempt(
            provider_ref=f"inv_{secrets.token_hex(12)}",
            client_payload=payload,
            expires_at=None,
        )

    def operator_event(self, provider_ref: str, outcome: EventOutcome) -> VerifiedEvent:
        if outcome not in OPERATOR_OUTCOMES:
            raise ValueError(f"operators confirm succeeded or failed, not {outcome.value}")
        return VerifiedEvent(
            event_id=f"manual:{provider_ref}:{outcome.value}",
            event_type=f"operator.{outcome.value}",
            outcome=outcome,
            provider_ref=provider_ref,
            buyer_email=None,
            payload_digest=None,
        )
