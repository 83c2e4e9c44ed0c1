from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from backend.storefront.catalog import Product
from backend.storefront.errors import (
    ProductNotFound,
    ProductUnavailable,
    ProviderTimeout,
    ProviderUnavailable,
    UnsupportedCapability,
    UnsupportedRail,
)
from backend.storefront.flows import ClientExperience
from backend.storefront.states import AttemptStatus, EventOutcome, Rail, ReconcileResult
from backend.storefront.utils import utcnow

from conftest import TEST_SIGNATURE, buyer, event_body


def _webhook(services, provider_ref, event_id="evt_1", outcome="succeeded", **kwargs):
    kwargs.setdefault("amount_minor", 2500)
    kwargs.setdefault("currency", "usd")
    body = event_body(event_id, provider_ref, outcome, **kwargs)
    return services.reconciler.apply_inbound_event("card_intent", body, TEST_SIGNATURE)


# ============================================================================
# Start checkout
# ============================================================================


def test_start_checkout_binds_provider_reference(services, adapters):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        return started, await services.ledger.get(started.attempt_id)

    started, attempt = asyncio.run(scenario())
    assert started.rail == Rail.CARD_INTENT
    assert started.experience == ClientExperience.CARD_ELEMENT
    assert started.client_payload["clientSecret"].endswith("_secret")
    assert attempt.status == AttemptStatus.AWAITING_PAYMENT
    assert attempt.provider_ref == adapters[Rail.CARD_INTENT].created[0]
    assert attempt.amount_minor == 2500
    assert attempt.currency == "USD"
    assert attempt.shipping_snapshot["name"] == "Jamie Buyer"


def test_unknown_product_is_rejected(services):
    with pytest.raises(ProductNotFound):
        asyncio.run(services.orchestrator.start_checkout("nope", buyer()))


def test_unconfigured_rail_fails_closed_without_an_attempt(services):
    async def scenario():
        with pytest.raises(UnsupportedRail):
            await services.orchestrator.start_checkout("broken-rail", buyer())
        return await services.ledger.list_for_product("broken-rail")

    assert asyncio.run(scenario()) == []


def test_provider_timeout_fails_attempt_and_retry_gets_fresh_reference(services, adapters):
    card = adapters[Rail.CARD_INTENT]
    card.create_delay = 2.0

    async def scenario():
        with pytest.raises(ProviderTimeout):
            await services.orchestrator.start_checkout("tee-25", buyer())
        card.create_delay = 0.0
        retried = await services.orchestrator.start_checkout("tee-25", buyer())
        return retried, await services.ledger.list_for_product("tee-25")

    retried, attempts = asyncio.run(scenario())
    failed, live = attempts
    assert failed.status == AttemptStatus.FAILED
    assert failed.failure_reason == "provider_timeout"
    assert failed.provider_ref is None
    assert live.id == retried.attempt_id != failed.id
    assert live.status == AttemptStatus.AWAITING_PAYMENT
    assert live.provider_ref == card.created[-1]


def test_provider_unavailable_fails_attempt(services, adapters):
    adapters[Rail.CARD_INTENT].create_error = ProviderUnavailable(cause="api_connection")

    async def scenario():
        with pytest.raises(ProviderUnavailable):
            await services.orchestrator.start_checkout("tee-25", buyer())
        return await services.ledger.list_for_product("tee-25")

    (attempt,) = asyncio.run(scenario())
    assert attempt.status == AttemptStatus.FAILED
    assert attempt.failure_reason == "provider_unavailable"


def test_sold_product_cannot_start_again(services):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        attempt = await services.ledger.get(started.attempt_id)
        await _webhook(services, attempt.provider_ref)
        await services.orchestrator.start_checkout("tee-25", buyer("second@example.com"))

    with pytest.raises(ProductUnavailable):
        asyncio.run(scenario())


# ============================================================================
# Reconciliation through the shared apply path
# ============================================================================


def test_success_event_applies_once_and_replay_is_duplicate(services, notifier):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        attempt = await services.ledger.get(started.attempt_id)
        first = await _webhook(services, attempt.provider_ref)
        second = await _webhook(services, attempt.provider_ref)
        await services.dispatcher.drain()
        return first, second, await services.ledger.get(attempt.id)

    first, second, attempt = asyncio.run(scenario())
    assert first.result == ReconcileResult.APPLIED
    assert second.result == ReconcileResult.DUPLICATE
    assert attempt.status == AttemptStatus.SUCCEEDED
    assert attempt.reconciliation_events == ("evt_1",)
    assert [n.kind for n in notifier.notices] == ["attempt_succeeded"]
    assert notifier.notices[0].detail["shipping"]["city"] == "Portland"


def test_failure_event_records_reason_and_notifies(services, notifier):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        attempt = await services.ledger.get(started.attempt_id)
        outcome = await _webhook(services, attempt.provider_ref, outcome="failed", amount_minor=None)
        await services.dispatcher.drain()
        return outcome, await services.ledger.get(attempt.id)

    outcome, attempt = asyncio.run(scenario())
    assert outcome.result == ReconcileResult.APPLIED
    assert attempt.status == AttemptStatus.FAILED
    assert attempt.failure_reason == "provider_reported_failure"
    assert [n.kind for n in notifier.notices] == ["attempt_failed"]


def test_confirm_and_webhook_race_yields_one_transition(services, adapters, notifier):
    adapters[Rail.CARD_INTENT].poll_outcome = EventOutcome.SUCCEEDED

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        attempt = await services.ledger.get(started.attempt_id)
        confirmed, webhook = await asyncio.gather(
            services.orchestrator.confirm_synchronously(attempt.id),
            _webhook(services, attempt.provider_ref, event_id="evt_race"),
        )
        await services.dispatcher.drain()
        return confirmed, webhook, await services.ledger.get(attempt.id)

    confirmed, webhook, attempt = asyncio.run(scenario())
    results = [confirmed.result, webhook.result]
    assert results.count(ReconcileResult.APPLIED) == 1
    assert attempt.status == AttemptStatus.SUCCEEDED
    assert len(notifier.notices) == 1


def test_captured_amount_survives_catalog_price_change(services, catalog):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        catalog.put(Product(ref="tee-25", name="Hood Tee", price_minor=3000, currency="USD", rail="card_intent"))
        attempt = await services.ledger.get(started.attempt_id)
        outcome = await _webhook(services, attempt.provider_ref, amount_minor=2500)
        return outcome, await services.ledger.get(attempt.id)

    outcome, attempt = asyncio.run(scenario())
    assert outcome.result == ReconcileResult.APPLIED
    assert attempt.amount_minor == 2500


def test_amount_mismatch_is_recorded_not_applied(services, notifier):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        attempt = await services.ledger.get(started.attempt_id)
        outcome = await _webhook(services, attempt.provider_ref, amount_minor=100)
        await services.dispatcher.drain()
        return outcome, await services.ledger.get(attempt.id), await services.ledger.list_unapplied()

    outcome, attempt, unapplied = asyncio.run(scenario())
    assert outcome.result == ReconcileResult.AMOUNT_MISMATCH
    assert attempt.status == AttemptStatus.AWAITING_PAYMENT
    assert unapplied[0].reason == "amount_mismatch"
    assert unapplied[0].detail["reported_amount_minor"] == 100
    assert [n.kind for n in notifier.notices] == ["unapplied_payment"]


def test_pending_poll_reports_processing(services):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        return await services.orchestrator.confirm_synchronously(started.attempt_id)

    confirmed = asyncio.run(scenario())
    assert confirmed.processing
    assert confirmed.result == ReconcileResult.IGNORED
    assert confirmed.status == AttemptStatus.AWAITING_PAYMENT


def test_confirm_survives_provider_outage(services, adapters):
    adapters[Rail.CARD_INTENT].poll_error = ProviderUnavailable(cause="circuit_open")

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        return await services.orchestrator.confirm_synchronously(started.attempt_id)

    confirmed = asyncio.run(scenario())
    assert confirmed.processing
    assert confirmed.result is None


def test_confirm_by_provider_ref(services, adapters):
    adapters[Rail.CARD_SESSION].poll_outcome = EventOutcome.SUCCEEDED

    async def scenario():
        await services.orchestrator.start_checkout("bag-40", buyer())
        ref = adapters[Rail.CARD_SESSION].created[0]
        return await services.orchestrator.confirm_by_provider_ref(ref)

    confirmed = asyncio.run(scenario())
    assert confirmed.status == AttemptStatus.SUCCEEDED
    assert confirmed.result == ReconcileResult.APPLIED


# ============================================================================
# Expiry sweep
# ============================================================================


def test_stale_attempt_expires_and_late_success_is_not_applied(services, adapters, notifier):
    card = adapters[Rail.CARD_INTENT]

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        report = await services.orchestrator.expire_stale_attempts(utcnow() + timedelta(hours=1))
        attempt = await services.ledger.get(started.attempt_id)
        late = await _webhook(services, attempt.provider_ref, event_id="evt_late")
        await services.dispatcher.drain()
        return report, late, await services.ledger.get(attempt.id), await services.ledger.list_unapplied()

    report, late, attempt, unapplied = asyncio.run(scenario())
    assert report.expired == 1
    assert card.cancelled == [attempt.provider_ref]
    assert late.result == ReconcileResult.NO_OP_TERMINAL
    assert attempt.status == AttemptStatus.EXPIRED
    assert unapplied[0].reason == "late_after_terminal"
    assert [n.kind for n in notifier.notices] == ["unapplied_payment"]


def test_sweep_settles_paid_attempt_instead_of_expiring(services, adapters):
    adapters[Rail.CARD_INTENT].poll_outcome = EventOutcome.SUCCEEDED

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        report = await services.orchestrator.expire_stale_attempts(utcnow() + timedelta(hours=1))
        await services.dispatcher.drain()
        return report, await services.ledger.get(started.attempt_id)

    report, attempt = asyncio.run(scenario())
    assert report.settled == 1
    assert report.expired == 0
    assert attempt.status == AttemptStatus.SUCCEEDED
    assert adapters[Rail.CARD_INTENT].cancelled == []


def test_sweep_defers_when_provider_unreachable(services, adapters):
    adapters[Rail.CARD_INTENT].poll_error = ProviderUnavailable(cause="timeout")

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        report = await services.orchestrator.expire_stale_attempts(utcnow() + timedelta(hours=1))
        return report, await services.ledger.get(started.attempt_id)

    report, attempt = asyncio.run(scenario())
    assert report.deferred == 1
    assert attempt.status == AttemptStatus.AWAITING_PAYMENT


def test_sweep_ignores_attempts_not_yet_due(services):
    async def scenario():
        await services.orchestrator.start_checkout("tee-25", buyer())
        return await services.orchestrator.expire_stale_attempts()

    report = asyncio.run(scenario())
    assert report.scanned == 0


def test_expiry_is_recorded_before_provider_cancel(services, adapters, notifier):
    card = adapters[Rail.CARD_INTENT]
    seen_at_cancel = []

    async def cancel_and_deliver_canceled_webhook(provider_ref):
        seen_at_cancel.append((await services.ledger.get_by_provider_ref(provider_ref)).status)
        card.cancelled.append(provider_ref)
        return await _webhook(services, provider_ref, event_id="evt_canceled", outcome="failed")

    card.cancel_attempt = cancel_and_deliver_canceled_webhook

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        await services.orchestrator.expire_stale_attempts(utcnow() + timedelta(hours=1))
        await services.dispatcher.drain()
        return await services.ledger.get(started.attempt_id)

    attempt = asyncio.run(scenario())
    assert seen_at_cancel == [AttemptStatus.EXPIRED]
    assert attempt.status == AttemptStatus.EXPIRED
    assert notifier.notices == []


def test_sweep_closes_second_paid_attempt_for_sold_product(services, adapters, notifier):
    card = adapters[Rail.CARD_INTENT]

    async def scenario():
        first = await services.orchestrator.start_checkout("tee-25", buyer())
        second = await services.orchestrator.start_checkout("tee-25", buyer("second@example.com"))
        await _webhook(services, card.created[0])
        card.poll_outcome = EventOutcome.SUCCEEDED
        later = utcnow() + timedelta(hours=1)
        reports = [await services.orchestrator.run_sweep(later) for _ in range(2)]
        await services.dispatcher.drain()
        return (
            reports,
            await services.ledger.get(first.attempt_id),
            await services.ledger.get(second.attempt_id),
            await services.ledger.list_unapplied(),
        )

    (first_run, second_run), first, second, unapplied = asyncio.run(scenario())
    assert first_run.results == {"duplicate_purchase": 1}
    assert first_run.closed_unapplied == 1
    assert second_run.scanned == 0
    assert first.status == AttemptStatus.SUCCEEDED
    assert second.status == AttemptStatus.FAILED
    assert second.failure_reason == "duplicate_purchase"
    assert [u.reason for u in unapplied] == ["duplicate_purchase"]
    assert card.cancelled == []


def test_sweep_closes_attempt_with_mismatched_amount(services, adapters):
    card = adapters[Rail.CARD_INTENT]
    card.poll_outcome = EventOutcome.SUCCEEDED
    card.poll_amount_override = 100

    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        later = utcnow() + timedelta(hours=1)
        reports = [await services.orchestrator.expire_stale_attempts(later) for _ in range(2)]
        return reports, await services.ledger.get(started.attempt_id)

    (first_run, second_run), attempt = asyncio.run(scenario())
    assert first_run.closed_unapplied == 1
    assert second_run.scanned == 0
    assert attempt.status == AttemptStatus.FAILED
    assert attempt.failure_reason == "amount_mismatch"


# ============================================================================
# Attempts stuck before the provider answered
# ============================================================================


def test_cancelled_start_marks_attempt_failed(services, adapters):
    adapters[Rail.CARD_INTENT].create_delay = 0.3

    async def scenario():
        task = asyncio.create_task(services.orchestrator.start_checkout("tee-25", buyer()))
        for _ in range(100):
            if await services.ledger.list_for_product("tee-25"):
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return await services.ledger.list_for_product("tee-25")

    (attempt,) = asyncio.run(scenario())
    assert attempt.status == AttemptStatus.FAILED
    assert attempt.failure_reason == "cancelled"
    assert adapters[Rail.CARD_INTENT].created == []


def test_sweep_fails_attempts_stalled_in_created(services):
    async def scenario():
        fields = dict(
            product_ref="tee-25",
            rail=Rail.CARD_INTENT,
            amount_minor=2500,
            currency="USD",
            buyer_email="buyer@example.com",
            shipping_snapshot={},
        )
        stalled = await services.ledger.create(**fields, now=utcnow() - timedelta(minutes=10))
        in_flight = await services.ledger.create(**fields)
        report = await services.orchestrator.run_sweep()
        return report, await services.ledger.get(stalled.id), await services.ledger.get(in_flight.id)

    report, stalled, in_flight = asyncio.run(scenario())
    assert report.stalled == 1
    assert stalled.status == AttemptStatus.FAILED
    assert stalled.failure_reason == "stalled_at_create"
    assert in_flight.status == AttemptStatus.CREATED


# ============================================================================
# Manual invoices
# ============================================================================


def test_manual_invoice_waits_for_operator_and_is_idempotent(services, notifier):
    async def scenario():
        started = await services.orchestrator.start_checkout("vase-invoice", buyer())
        first = await services.orchestrator.confirm_manual_payment(
            started.attempt_id, EventOutcome.SUCCEEDED, operator="ops@example.com"
        )
        again = await services.orchestrator.confirm_manual_payment(
            started.attempt_id, EventOutcome.SUCCEEDED, operator="ops@example.com"
        )
        await services.dispatcher.drain()
        return started, first, again

    started, first, again = asyncio.run(scenario())
    assert started.experience == ClientExperience.INVOICE_CHAT
    assert started.expires_at is None
    assert "PayPal invoice" in started.client_payload["notice"]
    assert first.result == ReconcileResult.APPLIED
    assert again.result == ReconcileResult.DUPLICATE
    assert again.status == AttemptStatus.SUCCEEDED
    assert len(notifier.notices) == 1


def test_operator_cannot_confirm_card_attempts(services):
    async def scenario():
        started = await services.orchestrator.start_checkout("tee-25", buyer())
        await services.orchestrator.confirm_manual_payment(
            started.attempt_id, EventOutcome.SUCCEEDED, operator="ops@example.com"
        )

    with pytest.raises(UnsupportedCapability):
        asyncio.run(scenario())


def test_stale_invoice_is_abandoned_and_stays_frozen(services):
    async def scenario():
        started = await services.orchestrator.start_checkout("vase-invoice", buyer())
        report = await services.orchestrator.run_sweep(utcnow() + timedelta(hours=73))
        late = await services.orchestrator.confirm_manual_payment(
            started.attempt_id, EventOutcome.SUCCEEDED, operator="ops@example.com"
        )
        await services.dispatcher.drain()
        return report, late, await services.ledger.list_unapplied(reason="late_after_terminal")

    report, late, unapplied = asyncio.run(scenario())
    assert report.abandoned == 1
    assert late.status == AttemptStatus.ABANDONED
    assert late.result == ReconcileResult.NO_OP_TERMINAL
    assert len(unapplied) == 1
