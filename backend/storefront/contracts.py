from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .ledger import CheckoutAttempt, UnappliedEvent
from .payments.base import BuyerContext, ShippingAddress
from .validators import (
    normalize_address_line,
    normalize_display_name,
    normalize_email,
    normalize_note,
    normalize_phone,
    normalize_product_ref,
)


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Checkout start ---
class ShippingData(ApiModel):
    street_address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str | None = None

    @field_validator("street_address", "city", "state", "zip_code", mode="before")
    @classmethod
    def _address_line(cls, value: str | None) -> str:
        return normalize_address_line(value)

    @field_validator("country")
    @classmethod
    def _country(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        cleaned = value.strip().upper()
        if len(cleaned) != 2 or not cleaned.isalpha():
            raise ValueError("country must be an ISO 3166 alpha-2 code")
        return cleaned


class BuyerContextIn(ApiModel):
    email: str
    name: str | None = None
    phone: str | None = None
    shipping: ShippingData = Field(default_factory=ShippingData)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("name")
    @classmethod
    def _name(cls, value: str | None) -> str | None:
        return normalize_display_name(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        return normalize_phone(value)

    def to_domain(self) -> BuyerContext:
        return BuyerContext(
            email=self.email,
            name=self.name,
            phone=self.phone,
            shipping=ShippingAddress(**self.shipping.model_dump()),
        )


class CheckoutStartRequest(ApiModel):
    product_ref: str
    buyer_context: BuyerContextIn

    @field_validator("product_ref")
    @classmethod
    def _product_ref(cls, value: str) -> str:
        return normalize_product_ref(value)


class CheckoutStartResponse(ApiModel):
    attempt_id: str
    rail: str
    experience: str
    client_payload: dict[str, Any]
    expires_at: datetime | None = None


# --- Confirmation ---
class CheckoutConfirmRequest(ApiModel):
    attempt_id: str | None = None
    provider_ref: str | None = None

    @model_validator(mode="after")
    def _one_reference(self) -> CheckoutConfirmRequest:
        if not self.attempt_id and not self.provider_ref:
            raise ValueError("attemptId or providerRef is required")
        return self


class CheckoutConfirmResponse(ApiModel):
    attempt_id: str
    status: str
    processing: bool
    message: str


class AttemptView(ApiModel):
    """What the thank-you page may see; no provider secrets."""

    attempt_id: str
    product_ref: str
    rail: str
    status: str
    amount_minor: int
    currency: str
    created_at: datetime
    expires_at: datetime | None = None
    terminal_at: datetime | None = None

    @classmethod
    def from_attempt(cls, attempt: CheckoutAttempt) -> AttemptView:
        return cls(
            attempt_id=attempt.id,
            product_ref=attempt.product_ref,
            rail=attempt.rail.value,
            status=attempt.status.value,
            amount_minor=attempt.amount_minor,
            currency=attempt.currency,
            created_at=attempt.created_at,
            expires_at=attempt.expires_at,
            terminal_at=attempt.terminal_at,
        )


# --- Webhooks ---
class WebhookAck(ApiModel):
    received: bool = True
    result: str


# --- Operator ---
class OperatorConfirmRequest(ApiModel):
    outcome: Literal["succeeded", "failed"]
    note: str | None = None

    @field_validator("note")
    @classmethod
    def _note(cls, value: str | None) -> str | None:
        return normalize_note(value)


class OperatorConfirmResponse(ApiModel):
    attempt_id: str
    status: str
    result: str | None = None
    reconciliation_events: list[str] = Field(default_factory=list)


class UnappliedEventView(ApiModel):
    rail: str
    provider_event_id: str
    provider_ref: str | None = None
    event_type: str | None = None
    reason: str
    attempt_id: str | None = None
    received_at: datetime | None = None
    detail: dict[str, Any] | None = None

    @classmethod
    def from_event(cls, event: UnappliedEvent) -> UnappliedEventView:
        return cls(
            rail=event.rail,
            provider_event_id=event.provider_event_id,
            provider_ref=event.provider_ref,
            event_type=event.event_type,
            reason=event.reason,
            attempt_id=event.attempt_id,
            received_at=event.received_at,
            detail=event.detail,
        )
