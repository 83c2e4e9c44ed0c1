from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ...contracts import WebhookAck
from ...errors import CheckoutError, InvalidSignature, UnsupportedCapability, UnsupportedRail
from ..types import RailPath
from ..utils import Services, raise_checkout_http

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{rail}", response_model=WebhookAck)
async def receive_webhook(rail: RailPath, request: Request, services: Services):
    """
    Provider callback endpoint, one path per rail.

    200 means "stop redelivering": orphaned, duplicate and late events are
    acknowledged too. 400 is a failed signature, 503 asks the provider to
    retry later.
    """
    try:
        adapter = services.reconciler.adapter_for(rail)
    except (UnsupportedRail, UnsupportedCapability) as exc:
        raise HTTPException(404, "Unknown webhook endpoint") from exc

    raw_payload = await request.body()
    header = adapter.signature_header
    signature = request.headers.get(header) if header else None
    try:
        outcome = await services.reconciler.apply_inbound_event(adapter.rail, raw_payload, signature)
    except InvalidSignature as exc:
        raise HTTPException(400, "Invalid webhook signature") from exc
    except CheckoutError as exc:
        raise_checkout_http(exc)
    return WebhookAck(received=True, result=outcome.result.value)
