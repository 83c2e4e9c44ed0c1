from __future__ import annotations

from typing import Annotated, NoReturn

from fastapi import Depends, HTTPException, Request

from ..errors import (
    AttemptNotFound,
    CheckoutError,
    InvalidSignature,
    InvalidTransition,
    ProductNotFound,
    ProductUnavailable,
    ProviderRefNotFound,
    ProviderUnavailable,
    UnsupportedCapability,
    UnsupportedRail,
    buyer_message,
)
from ..logging_config import get_logger
from ..services import CheckoutServices
from ..settings import settings

logger = get_logger(__name__)


def get_services(request: Request) -> CheckoutServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(503, "checkout services are starting")
    return services


Services = Annotated[CheckoutServices, Depends(get_services)]


def raise_checkout_http(exc: CheckoutError) -> NoReturn:
    """Translate a checkout error into the HTTPException the buyer sees."""
    support = settings.SUPPORT_EMAIL
    if isinstance(exc, ProductNotFound):
        raise HTTPException(404, buyer_message(exc, support)) from exc
    if isinstance(exc, AttemptNotFound | ProviderRefNotFound):
        raise HTTPException(404, "Checkout attempt not found") from exc
    if isinstance(exc, ProductUnavailable | UnsupportedRail):
        raise HTTPException(409, buyer_message(exc, support)) from exc
    if isinstance(exc, ProviderUnavailable):
        raise HTTPException(503, buyer_message(exc, support)) from exc
    if isinstance(exc, InvalidSignature):
        raise HTTPException(400, "Invalid webhook signature") from exc
    if isinstance(exc, UnsupportedCapability):
        raise HTTPException(404, str(exc)) from exc
    if isinstance(exc, InvalidTransition):
        raise HTTPException(409, str(exc)) from exc
    logger.error("checkout_error_unmapped", error_kind=exc.kind, error=str(exc))
    raise HTTPException(500, buyer_message(exc, support)) from exc
