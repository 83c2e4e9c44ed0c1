"""Session Orchestrator: drives one checkout attempt to a terminal state.

``apply_outcome`` is the single path by which a provider-reported outcome
reaches the ledger. Synchronous polling, inbound webhooks, operator
confirmation and the expiry sweep all go through it, so whichever arrives
first wins and the rest are recorded as duplicates or no-ops.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .catalog import Catalog
from .errors import (
    CheckoutError,
    DuplicatePurchase,
    InvalidTransition,
    ProductNotFound,
    ProductUnavailable,
    ProviderRefNotFound,
    ProviderTimeout,
    ProviderUnavailable,
    UnsupportedCapability,
)
from .flows import ClientExperience, select_flow
from .ledger import AttemptLedger, CheckoutAttempt
from .logging_config import get_logger
from .metrics import checkout_attempts_total, sweep_runs_total
from .notifications import NotificationDispatcher, TerminalNotice
from .payments.base import BuyerContext, ProviderAdapter, VerifiedEvent
from .payments.manual_invoice import ManualInvoiceAdapter
from .states import AttemptStatus, EventOutcome, Rail, ReconcileResult, target_for
from .utils import utcnow

logger = get_logger(__name__)

NOTIFY_STATUSES = {AttemptStatus.SUCCEEDED: "attempt_succeeded", AttemptStatus.FAILED: "attempt_failed"}

# money moved but the ledger refused it; the refund record already exists
CLOSE_ON_SETTLE = frozenset({ReconcileResult.DUPLICATE_PURCHASE, ReconcileResult.AMOUNT_MISMATCH})

# grace beyond the provider timeout before a `created` row counts as stalled
STALLED_CREATE_MARGIN = timedelta(seconds=60)


@dataclass(frozen=True)
class StartedCheckout:
    attempt_id: str
    rail: Rail
    experience: ClientExperience
    client_payload: dict[str, Any]
    expires_at: datetime | None


@dataclass(frozen=True)
class ConfirmResult:
    attempt: CheckoutAttempt
    result: ReconcileResult | None = None

    @property
    def status(self) -> AttemptStatus:
        return self.attempt.status

    @property
    def processing(self) -> bool:
        return self.attempt.status in (AttemptStatus.CREATED, AttemptStatus.AWAITING_PAYMENT)


@dataclass
class SweepReport:
    scanned: int = 0
    expired: int = 0
    settled: int = 0
    deferred: int = 0
    cancel_failures: int = 0
    closed_unapplied: int = 0
    stalled: int = 0
    abandoned: int = 0
    results: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "expired": self.expired,
            "settled": self.settled,
            "deferred": self.deferred,
            "cancel_failures": self.cancel_failures,
            "closed_unapplied": self.closed_unapplied,
            "stalled": self.stalled,
            "abandoned": self.abandoned,
        }


class CheckoutOrchestrator:
    def __init__(
        self,
        *,
        ledger: AttemptLedger,
        catalog: Catalog,
        adapters: Mapping[Rail, ProviderAdapter],
        dispatcher: NotificationDispatcher,
        provider_timeout: float = 10.0,
        sweep_batch_size: int = 200,
        abandon_after: timedelta = timedelta(hours=72),
    ) -> None:
        self.ledger = ledger
        self.catalog = catalog
        self.adapters = adapters
        self.dispatcher = dispatcher
        self.provider_timeout = provider_timeout
        self.sweep_batch_size = sweep_batch_size
        self.abandon_after = abandon_after

    # ---------------------------------------------------------------- start

    async def start_checkout(self, product_ref: str, buyer: BuyerContext) -> StartedCheckout:
        product = await self.catalog.get_product(product_ref)
        if product is None:
            raise ProductNotFound(product_ref)
        if not product.available or await self.ledger.has_succeeded(product.ref):
            raise ProductUnavailable(product.ref)
        flow = select_flow(product.rail, self.adapters)

        attempt = await self.ledger.create(
            product_ref=product.ref,
            rail=flow.rail,
            amount_minor=product.price_minor,
            currency=product.currency,
            buyer_email=buyer.email,
            shipping_snapshot=buyer.shipping_snapshot(),
        )
        try:
            created = await asyncio.wait_for(
                flow.adapter.create_attempt(
                    attempt_id=attempt.id,
                    product=product,
                    amount_minor=attempt.amount_minor,
                    currency=attempt.currency,
                    buyer=buyer,
                ),
                timeout=self.provider_timeout,
            )
        except (asyncio.TimeoutError, ProviderTimeout) as exc:
            await self._fail_start(attempt, "provider_timeout", exc)
            raise ProviderTimeout("payment provider timed out", cause="timeout") from exc
        except ProviderUnavailable as exc:
            await self._fail_start(attempt, "provider_unavailable", exc)
            raise
        except asyncio.CancelledError as exc:
            # the buyer went away mid-create; the row must still reach a terminal state
            await asyncio.shield(self._fail_start(attempt, "cancelled", exc))
            raise
        except Exception as exc:
            await self._fail_start(attempt, "provider_error", exc)
            raise

        result = await self.ledger.mark_awaiting(
            attempt.id,
            provider_ref=created.provider_ref,
            client_payload=created.client_payload,
            expires_at=created.expires_at,
        )
        checkout_attempts_total.labels(rail=flow.rail.value, result="started").inc()
        logger.info(
            "checkout_started",
            attempt_id=attempt.id,
            product_ref=product.ref,
            rail=flow.rail.value,
            provider_ref=created.provider_ref,
            expires_at=created.expires_at.isoformat() if created.expires_at else None,
        )
        return StartedCheckout(
            attempt_id=attempt.id,
            rail=flow.rail,
            experience=flow.experience,
            client_payload=created.client_payload,
            expires_at=result.attempt.expires_at,
        )

    async def _fail_start(self, attempt: CheckoutAttempt, reason: str, exc: BaseException) -> None:
        checkout_attempts_total.labels(rail=attempt.rail.value, result=reason).inc()
        logger.warning(
            "checkout_start_failed",
            attempt_id=attempt.id,
            rail=attempt.rail.value,
            reason=reason,
            error_kind=getattr(exc, "kind", type(exc).__name__),
            cause=getattr(exc, "cause", None),
        )
        await self.ledger.mark_failed(attempt.id, reason)

    # -------------------------------------------------------------- confirm

    async def confirm_synchronously(self, attempt_id: str) -> ConfirmResult:
        attempt = await self.ledger.get(attempt_id)
        if attempt.is_frozen or not attempt.provider_ref:
            return ConfirmResult(attempt)
        adapter = self.adapters.get(attempt.rail)
        if adapter is None or not adapter.supports_polling:
            return ConfirmResult(attempt)
        try:
            status = await asyncio.wait_for(
                adapter.poll_status(attempt.provider_ref), timeout=self.provider_timeout
            )
        except (asyncio.TimeoutError, ProviderUnavailable) as exc:
            logger.warning(
                "confirm_poll_unavailable",
                attempt_id=attempt.id,
                rail=attempt.rail.value,
                error_kind=getattr(exc, "kind", "provider_timeout"),
            )
            return ConfirmResult(attempt)
        except ProviderRefNotFound:
            logger.warning("confirm_provider_ref_unknown", attempt_id=attempt.id, rail=attempt.rail.value)
            return ConfirmResult(attempt)

        result = await self.apply_outcome(attempt, status.as_event(), source="poll")
        return ConfirmResult(await self.ledger.get(attempt.id), result)

    async def confirm_by_provider_ref(self, provider_ref: str) -> ConfirmResult:
        attempt = await self.ledger.get_by_provider_ref(provider_ref)
        if attempt is None:
            raise ProviderRefNotFound(provider_ref)
        return await self.confirm_synchronously(attempt.id)

    async def confirm_manual_payment(
        self,
        attempt_id: str,
        outcome: EventOutcome,
        *,
        operator: str,
        note: str | None = None,
    ) -> ConfirmResult:
        attempt = await self.ledger.get(attempt_id)
        adapter = self.adapters.get(attempt.rail)
        if not isinstance(adapter, ManualInvoiceAdapter) or not attempt.provider_ref:
            raise UnsupportedCapability(f"{attempt.rail.value} attempts are not confirmed by operators")
        event = adapter.operator_event(attempt.provider_ref, outcome)
        logger.info(
            "operator_confirmation",
            attempt_id=attempt.id,
            outcome=outcome.value,
            operator=operator,
            note=note,
        )
        result = await self.apply_outcome(attempt, event, source="operator")
        return ConfirmResult(await self.ledger.get(attempt.id), result)

    # ------------------------------------------------------ shared apply path

    async def apply_outcome(
        self, attempt: CheckoutAttempt, event: VerifiedEvent, *, source: str
    ) -> ReconcileResult:
        target = target_for(event.outcome)
        log = logger.bind(
            attempt_id=attempt.id,
            rail=attempt.rail.value,
            provider_event_id=event.event_id,
            event_type=event.event_type,
            source=source,
        )
        if target is None:
            log.debug("provider_event_ignored", outcome=event.outcome.value)
            return ReconcileResult.IGNORED
        if await self.ledger.has_event(attempt.id, event.event_id):
            log.info("provider_event_duplicate")
            return ReconcileResult.DUPLICATE

        mismatch = _amount_mismatch(attempt, event)
        if mismatch:
            log.error("provider_amount_mismatch", **mismatch)
            await self._record_unapplied(attempt, event, "amount_mismatch", mismatch)
            return ReconcileResult.AMOUNT_MISMATCH

        reason = "provider_reported_failure" if source != "operator" else "operator_rejected"
        try:
            transition = await self.ledger.apply_event(attempt.id, event.event_id, target, reason=reason)
        except DuplicatePurchase as exc:
            log.error("duplicate_purchase", product_ref=attempt.product_ref, error=str(exc))
            await self._record_unapplied(attempt, event, "duplicate_purchase", {"product_ref": attempt.product_ref})
            return ReconcileResult.DUPLICATE_PURCHASE
        except InvalidTransition as exc:
            log.warning("provider_event_invalid_transition", current=exc.current, target=exc.target)
            await self._record_unapplied(
                attempt, event, "invalid_transition", {"current": exc.current, "target": exc.target}
            )
            return ReconcileResult.NO_OP_TERMINAL

        if transition.duplicate:
            log.info("provider_event_duplicate")
            return ReconcileResult.DUPLICATE
        current = transition.attempt
        if not transition.changed:
            if target == AttemptStatus.SUCCEEDED and current.status != AttemptStatus.SUCCEEDED:
                # money moved after we gave up on the attempt
                log.error("late_success_after_terminal", status=current.status.value)
                await self._record_unapplied(
                    attempt, event, "late_after_terminal", {"status": current.status.value}
                )
            else:
                log.info("provider_event_noop_terminal", status=current.status.value)
            return ReconcileResult.NO_OP_TERMINAL

        self._notify_terminal(current)
        return ReconcileResult.APPLIED

    async def _record_unapplied(
        self,
        attempt: CheckoutAttempt,
        event: VerifiedEvent,
        reason: str,
        detail: dict[str, Any],
    ) -> None:
        recorded = await self.ledger.record_unapplied(
            rail=attempt.rail,
            provider_event_id=event.event_id,
            reason=reason,
            provider_ref=event.provider_ref or attempt.provider_ref,
            event_type=event.event_type,
            attempt_id=attempt.id,
            payload_digest=event.payload_digest,
            detail=detail,
        )
        if recorded and event.outcome == EventOutcome.SUCCEEDED:
            self.dispatcher.dispatch(
                TerminalNotice(
                    kind="unapplied_payment",
                    attempt_id=attempt.id,
                    product_ref=attempt.product_ref,
                    rail=attempt.rail.value,
                    status=attempt.status.value,
                    amount_minor=event.amount_minor,
                    currency=event.currency,
                    buyer_email=event.buyer_email or attempt.buyer_email,
                    detail={"reason": reason, "provider_event_id": event.event_id, **detail},
                )
            )

    def _notify_terminal(self, attempt: CheckoutAttempt) -> None:
        kind = NOTIFY_STATUSES.get(attempt.status)
        if kind is None:
            return
        self.dispatcher.dispatch(
            TerminalNotice(
                kind=kind,
                attempt_id=attempt.id,
                product_ref=attempt.product_ref,
                rail=attempt.rail.value,
                status=attempt.status.value,
                amount_minor=attempt.amount_minor,
                currency=attempt.currency,
                buyer_email=attempt.buyer_email,
                detail={"shipping": attempt.shipping_snapshot, "failure_reason": attempt.failure_reason},
            )
        )

    # ---------------------------------------------------------- housekeeping

    async def expire_stale_attempts(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        for attempt in await self.ledger.list_expirable(now, limit=self.sweep_batch_size):
            report.scanned += 1
            adapter = self.adapters.get(attempt.rail)
            if adapter is not None and attempt.provider_ref:
                settled = await self._settle_before_expiry(adapter, attempt, report)
                if settled:
                    continue
            transition = await self.ledger.transition(attempt.id, AttemptStatus.EXPIRED)
            if not transition.changed:
                continue
            report.expired += 1
            sweep_runs_total.labels(action="expired").inc()
            # expired is written first so the provider's cancel webhook lands as a no-op
            if adapter is not None and attempt.provider_ref and adapter.supports_cancel:
                await self._cancel_expired(adapter, attempt, report)
        logger.info("expiry_sweep_finished", **report.as_dict())
        return report

    async def _settle_before_expiry(
        self, adapter: ProviderAdapter, attempt: CheckoutAttempt, report: SweepReport
    ) -> bool:
        """Poll the provider. True when the attempt must not be expired this run."""
        assert attempt.provider_ref is not None
        if not adapter.supports_polling:
            return False
        try:
            status = await asyncio.wait_for(
                adapter.poll_status(attempt.provider_ref), timeout=self.provider_timeout
            )
        except (asyncio.TimeoutError, ProviderUnavailable):
            report.deferred += 1
            sweep_runs_total.labels(action="deferred").inc()
            logger.warning("expiry_deferred_provider_unavailable", attempt_id=attempt.id)
            return True
        except ProviderRefNotFound:
            return False
        if status.outcome not in (EventOutcome.SUCCEEDED, EventOutcome.FAILED):
            return False

        result = await self.apply_outcome(attempt, status.as_event(), source="sweep")
        report.results[result.value] = report.results.get(result.value, 0) + 1
        report.settled += 1
        sweep_runs_total.labels(action="settled").inc()
        if result in CLOSE_ON_SETTLE:
            closed = await self.ledger.mark_failed(attempt.id, result.value)
            if closed.changed:
                report.closed_unapplied += 1
                sweep_runs_total.labels(action="closed_unapplied").inc()
                logger.warning("unapplied_attempt_closed", attempt_id=attempt.id, reason=result.value)
        return True

    async def _cancel_expired(
        self, adapter: ProviderAdapter, attempt: CheckoutAttempt, report: SweepReport
    ) -> None:
        assert attempt.provider_ref is not None
        try:
            await asyncio.wait_for(
                adapter.cancel_attempt(attempt.provider_ref), timeout=self.provider_timeout
            )
        except (asyncio.TimeoutError, CheckoutError) as exc:
            report.cancel_failures += 1
            logger.warning(
                "expiry_cancel_failed",
                attempt_id=attempt.id,
                rail=attempt.rail.value,
                error_kind=getattr(exc, "kind", "provider_timeout"),
            )

    async def fail_stalled_attempts(self, now: datetime | None = None) -> int:
        """Fail attempts whose provider create never finished (crash or lost task)."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.provider_timeout) - STALLED_CREATE_MARGIN
        stalled = 0
        for attempt in await self.ledger.list_stalled(cutoff, limit=self.sweep_batch_size):
            transition = await self.ledger.mark_failed(attempt.id, "stalled_at_create")
            if transition.changed:
                stalled += 1
                checkout_attempts_total.labels(rail=attempt.rail.value, result="stalled_at_create").inc()
                sweep_runs_total.labels(action="stalled").inc()
        if stalled:
            logger.warning("stalled_attempts_failed", count=stalled, cutoff=cutoff.isoformat())
        return stalled

    async def abandon_stale_invoices(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        cutoff = now - self.abandon_after
        abandoned = 0
        for attempt in await self.ledger.list_abandonable(
            Rail.MANUAL_INVOICE, cutoff, limit=self.sweep_batch_size
        ):
            transition = await self.ledger.transition(attempt.id, AttemptStatus.ABANDONED)
            if transition.changed:
                abandoned += 1
                sweep_runs_total.labels(action="abandoned").inc()
        if abandoned:
            logger.info("invoices_abandoned", count=abandoned, cutoff=cutoff.isoformat())
        return abandoned

    async def run_sweep(self, now: datetime | None = None) -> SweepReport:
        report = await self.expire_stale_attempts(now)
        report.stalled = await self.fail_stalled_attempts(now)
        report.abandoned = await self.abandon_stale_invoices(now)
        return report


def _amount_mismatch(attempt: CheckoutAttempt, event: VerifiedEvent) -> dict[str, Any] | None:
    amount_off = event.amount_minor is not None and event.amount_minor != attempt.amount_minor
    currency_off = event.currency is not None and event.currency.upper() != attempt.currency
    if not (amount_off or currency_off):
        return None
    return {
        "expected_amount_minor": attempt.amount_minor,
        "expected_currency": attempt.currency,
        "reported_amount_minor": event.amount_minor,
        "reported_currency": event.currency,
    }
