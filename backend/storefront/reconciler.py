"""Webhook Reconciler: verify inbound provider events and apply them once."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import sentry_sdk

from .errors import InvalidSignature, UnsupportedCapability
from .flows import parse_rail
from .ledger import AttemptLedger, CheckoutAttempt
from .logging_config import get_logger
from .metrics import webhook_events_total, webhook_signature_failures_total
from .orchestrator import CheckoutOrchestrator
from .payments.base import ProviderAdapter, VerifiedEvent
from .states import Rail, ReconcileResult

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    result: ReconcileResult
    event_id: str | None = None
    attempt_id: str | None = None


class WebhookReconciler:
    def __init__(
        self,
        *,
        ledger: AttemptLedger,
        orchestrator: CheckoutOrchestrator,
        adapters: Mapping[Rail, ProviderAdapter],
    ) -> None:
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.adapters = adapters

    def adapter_for(self, rail: str | Rail) -> ProviderAdapter:
        """Adapter that accepts webhooks on ``rail``; raises UnsupportedRail/UnsupportedCapability."""
        resolved = parse_rail(rail)
        adapter = self.adapters.get(resolved)
        if adapter is None or not adapter.supports_webhooks:
            raise UnsupportedCapability(f"{resolved.value} does not accept webhooks")
        return adapter

    async def apply_inbound_event(
        self, rail: str | Rail, raw_payload: bytes, signature: str | None
    ) -> ReconcileOutcome:
        adapter = self.adapter_for(rail)
        rail_value = adapter.rail.value
        try:
            event = await adapter.verify_callback(raw_payload, signature)
        except InvalidSignature as exc:
            webhook_signature_failures_total.labels(rail=rail_value, reason=exc.kind).inc()
            logger.warning(
                "webhook_rejected",
                security_event=True,
                rail=rail_value,
                error_kind=exc.kind,
                detail=str(exc),
                signature_present=bool(signature),
                body_bytes=len(raw_payload),
            )
            sentry_sdk.capture_message(f"webhook rejected on {rail_value}: {exc.kind}", level="warning")
            raise

        attempt = await self._find_attempt(adapter.rail, event)
        if attempt is None:
            await self.ledger.record_unapplied(
                rail=adapter.rail,
                provider_event_id=event.event_id,
                reason="orphaned",
                provider_ref=event.provider_ref,
                event_type=event.event_type,
                payload_digest=event.payload_digest,
                detail={"outcome": event.outcome.value, "buyer_email": event.buyer_email},
            )
            return self._done(rail_value, ReconcileResult.ORPHANED, event, None)

        result = await self.orchestrator.apply_outcome(attempt, event, source="webhook")
        return self._done(rail_value, result, event, attempt)

    async def _find_attempt(self, rail: Rail, event: VerifiedEvent) -> CheckoutAttempt | None:
        if event.provider_ref:
            attempt = await self.ledger.get_by_provider_ref(event.provider_ref)
            # a reference that belongs to another rail is as good as unknown
            if attempt is not None and attempt.rail == rail:
                return attempt
            return None
        applied = await self.ledger.find_by_event(rail, event.event_id)
        if applied is not None:
            return applied
        if event.buyer_email:
            return await self.ledger.find_open_by_buyer(rail, event.buyer_email)
        return None

    @staticmethod
    def _done(
        rail_value: str,
        result: ReconcileResult,
        event: VerifiedEvent,
        attempt: CheckoutAttempt | None,
    ) -> ReconcileOutcome:
        webhook_events_total.labels(rail=rail_value, result=result.value).inc()
        logger.info(
            "webhook_reconciled",
            rail=rail_value,
            result=result.value,
            provider_event_id=event.event_id,
            event_type=event.event_type,
            provider_ref=event.provider_ref,
            attempt_id=attempt.id if attempt else None,
        )
        return ReconcileOutcome(
            result=result, event_id=event.event_id, attempt_id=attempt.id if attempt else None
        )
