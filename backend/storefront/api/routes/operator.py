from __future__ import annotations

from fastapi import APIRouter

from ...auth import OperatorClaims
from ...contracts import OperatorConfirmRequest, OperatorConfirmResponse, UnappliedEventView
from ...errors import CheckoutError
from ...states import EventOutcome
from ..types import AttemptIdPath, PageLimit, UnappliedReason
from ..utils import Services, raise_checkout_http

router = APIRouter(prefix="/operator", tags=["operator"])


@router.post("/attempts/{attempt_id}/confirm", response_model=OperatorConfirmResponse)
async def confirm_manual_payment(
    attempt_id: AttemptIdPath,
    payload: OperatorConfirmRequest,
    services: Services,
    claims: OperatorClaims,
):
    try:
        confirmed = await services.orchestrator.confirm_manual_payment(
            attempt_id,
            EventOutcome(payload.outcome),
            operator=str(claims.get("email") or claims.get("id")),
            note=payload.note,
        )
    except CheckoutError as exc:
        raise_checkout_http(exc)
    return OperatorConfirmResponse(
        attempt_id=confirmed.attempt.id,
        status=confirmed.status.value,
        result=confirmed.result.value if confirmed.result else None,
        reconciliation_events=list(confirmed.attempt.reconciliation_events),
    )


@router.get("/unapplied-events", response_model=list[UnappliedEventView])
async def list_unapplied_events(
    services: Services,
    claims: OperatorClaims,
    reason: UnappliedReason = None,
    limit: PageLimit = 100,
):
    events = await services.ledger.list_unapplied(reason=reason, limit=limit)
    return [UnappliedEventView.from_event(event) for event in events]


@router.post("/sweep")
async def run_sweep(services: Services, claims: OperatorClaims):
    report = await services.orchestrator.run_sweep()
    return report.as_dict()
