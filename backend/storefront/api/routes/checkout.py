from __future__ import annotations

from fastapi import APIRouter

from ...contracts import (
    AttemptView,
    CheckoutConfirmRequest,
    CheckoutConfirmResponse,
    CheckoutStartRequest,
    CheckoutStartResponse,
)
from ...errors import CheckoutError
from ...states import AttemptStatus
from ..types import AttemptIdPath
from ..utils import Services, raise_checkout_http

router = APIRouter(prefix="/checkout", tags=["checkout"])

CONFIRM_MESSAGES = {
    AttemptStatus.SUCCEEDED: "Payment confirmed. Thank you for your order!",
    AttemptStatus.FAILED: "Payment was not completed. You can start a new checkout.",
    AttemptStatus.EXPIRED: "This checkout expired. You can start a new checkout.",
    AttemptStatus.ABANDONED: "This checkout is closed. You can start a new checkout.",
}
PROCESSING_MESSAGE = "Your payment is still processing. This page will update shortly."


@router.post("/start", response_model=CheckoutStartResponse, status_code=201)
async def start_checkout(payload: CheckoutStartRequest, services: Services):
    try:
        started = await services.orchestrator.start_checkout(
            payload.product_ref, payload.buyer_context.to_domain()
        )
    except CheckoutError as exc:
        raise_checkout_http(exc)
    return CheckoutStartResponse(
        attempt_id=started.attempt_id,
        rail=started.rail.value,
        experience=started.experience.value,
        client_payload=started.client_payload,
        expires_at=started.expires_at,
    )


@router.post("/confirm", response_model=CheckoutConfirmResponse)
async def confirm_checkout(payload: CheckoutConfirmRequest, services: Services):
    try:
        if payload.attempt_id:
            confirmed = await services.orchestrator.confirm_synchronously(payload.attempt_id)
        else:
            confirmed = await services.orchestrator.confirm_by_provider_ref(payload.provider_ref)
    except CheckoutError as exc:
        raise_checkout_http(exc)
    return CheckoutConfirmResponse(
        attempt_id=confirmed.attempt.id,
        status=confirmed.status.value,
        processing=confirmed.processing,
        message=PROCESSING_MESSAGE if confirmed.processing else CONFIRM_MESSAGES[confirmed.status],
    )


@router.get("/attempts/{attempt_id}", response_model=AttemptView)
async def get_attempt(attempt_id: AttemptIdPath, services: Services):
    try:
        attempt = await services.ledger.get(attempt_id)
    except CheckoutError as exc:
        raise_checkout_http(exc)
    return AttemptView.from_attempt(attempt)
