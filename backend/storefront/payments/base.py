from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from pydantic import BaseModel, Field

from ..errors import UnsupportedCapability
from ..states import EventOutcome, Rail

if TYPE_CHECKING:
    from ..catalog import Product


class ShippingAddress(BaseModel):
    street_address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str | None = None


class BuyerContext(BaseModel):
    email: str
    name: str | None = None
    phone: str | None = None
    shipping: ShippingAddress = Field(default_factory=ShippingAddress)

    def shipping_snapshot(self) -> dict[str, Any]:
        snapshot = self.shipping.model_dump()
        if self.name:
            snapshot["name"] = self.name
        if self.phone:
            snapshot["phone"] = self.phone
        return snapshot


class CreatedAttempt(BaseModel):
    provider_ref: str
    client_payload: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None


class VerifiedEvent(BaseModel):
    """An authenticated provider event, normalised across rails."""

    event_id: str
    event_type: str
    outcome: EventOutcome
    provider_ref: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    buyer_email: str | None = None
    payload_digest: str | None = None


class ProviderStatus(BaseModel):
    provider_ref: str
    outcome: EventOutcome
    raw_status: str
    amount_minor: int | None = None
    currency: str | None = None

    def as_event(self) -> VerifiedEvent:
        # stable id: a repeated poll with the same answer is a duplicate
        return VerifiedEvent(
            event_id=f"poll:{self.provider_ref}:{self.raw_status}",
            event_type=f"poll.{self.raw_status}",
            outcome=self.outcome,
            provider_ref=self.provider_ref,
            amount_minor=self.amount_minor,
            currency=self.currency,
        )


class ProviderAdapter(Protocol):
    rail: Rail
    supports_webhooks: bool
    supports_polling: bool
    supports_cancel: bool
    signature_header: str | None

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt: ...

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent: ...

    async def poll_status(self, provider_ref: str) -> ProviderStatus: ...

    async def cancel_attempt(self, provider_ref: str) -> None: ...


class BaseProviderAdapter:
    """Optional capabilities default to ``UnsupportedCapability``."""

    rail: ClassVar[Rail]
    supports_webhooks: ClassVar[bool] = False
    supports_polling: ClassVar[bool] = False
    supports_cancel: ClassVar[bool] = False
    signature_header: ClassVar[str | None] = None

    async def create_attempt(
        self,
        *,
        attempt_id: str,
        product: Product,
        amount_minor: int,
        currency: str,
        buyer: BuyerContext,
    ) -> CreatedAttempt:
        raise NotImplementedError

    async def verify_callback(self, raw_payload: bytes, signature: str | None) -> VerifiedEvent:
        raise UnsupportedCapability(f"{self.rail.value} does not receive webhooks")

    async def poll_status(self, provider_ref: str) -> ProviderStatus:
        raise UnsupportedCapability(f"{self.rail.value} cannot be polled")

    async def cancel_attempt(self, provider_ref: str) -> None:
        raise UnsupportedCapability(f"{self.rail.value} cannot cancel at the provider")
