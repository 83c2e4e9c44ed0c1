from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from backend.storefront.errors import AttemptNotFound, DuplicatePurchase, InvalidTransition
from backend.storefront.ledger import AttemptLedger
from backend.storefront.states import AttemptStatus, Rail
from backend.storefront.utils import utcnow


def _create(ledger: AttemptLedger, product_ref: str = "tee-25", **overrides):
    fields = {
        "product_ref": product_ref,
        "rail": Rail.CARD_INTENT,
        "amount_minor": 2500,
        "currency": "usd",
        "buyer_email": "  Buyer@Example.com ",
        "shipping_snapshot": {"city": "Portland"},
    }
    fields.update(overrides)
    return ledger.create(**fields)


async def _awaiting(ledger: AttemptLedger, provider_ref: str, **overrides):
    attempt = await _create(ledger, **overrides)
    result = await ledger.mark_awaiting(
        attempt.id,
        provider_ref=provider_ref,
        client_payload={"clientSecret": "secret"},
        expires_at=utcnow() + timedelta(minutes=30),
    )
    return result.attempt


def test_create_snapshots_price_and_normalises_buyer(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _create(ledger)
        fetched = await ledger.get(attempt.id)
        return attempt, fetched

    attempt, fetched = asyncio.run(scenario())
    assert attempt.status == AttemptStatus.CREATED
    assert fetched.currency == "USD"
    assert fetched.amount_minor == 2500
    assert fetched.buyer_email == "buyer@example.com"
    assert fetched.shipping_snapshot == {"city": "Portland"}
    assert fetched.provider_ref is None
    assert fetched.created_at.tzinfo is not None


def test_get_unknown_attempt_raises(session_factory):
    ledger = AttemptLedger(session_factory)
    with pytest.raises(AttemptNotFound):
        asyncio.run(ledger.get("00000000-0000-0000-0000-000000000000"))


def test_mark_awaiting_binds_provider_ref_once(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_first")
        again = await ledger.mark_awaiting(
            attempt.id, provider_ref="pi_second", client_payload=None, expires_at=None
        )
        return attempt, again, await ledger.get_by_provider_ref("pi_first")

    attempt, again, by_ref = asyncio.run(scenario())
    assert attempt.status == AttemptStatus.AWAITING_PAYMENT
    assert not again.changed
    assert again.attempt.provider_ref == "pi_first"
    assert by_ref is not None and by_ref.id == attempt.id


def test_terminal_transition_stamps_terminal_at(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_1")
        return await ledger.transition(attempt.id, AttemptStatus.EXPIRED)

    result = asyncio.run(scenario())
    assert result.changed
    assert result.previous == AttemptStatus.AWAITING_PAYMENT
    assert result.attempt.status == AttemptStatus.EXPIRED
    assert result.attempt.terminal_at is not None


def test_frozen_attempt_ignores_further_transitions(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_1")
        await ledger.mark_failed(attempt.id, "provider_reported_failure")
        return await ledger.transition(attempt.id, AttemptStatus.EXPIRED)

    result = asyncio.run(scenario())
    assert not result.changed
    assert result.attempt.status == AttemptStatus.FAILED
    assert result.attempt.failure_reason == "provider_reported_failure"


def test_transition_outside_graph_raises(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _create(ledger)
        await ledger.transition(attempt.id, AttemptStatus.SUCCEEDED)

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_apply_event_is_idempotent_per_event_id(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_1")
        first = await ledger.apply_event(attempt.id, "evt_1", AttemptStatus.SUCCEEDED)
        second = await ledger.apply_event(attempt.id, "evt_1", AttemptStatus.SUCCEEDED)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.changed and not first.duplicate
    assert second.duplicate and not second.changed
    assert second.attempt.status == AttemptStatus.SUCCEEDED
    assert second.attempt.reconciliation_events == ("evt_1",)


def test_late_event_on_frozen_attempt_is_logged_but_not_applied(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_1")
        await ledger.transition(attempt.id, AttemptStatus.EXPIRED)
        late = await ledger.apply_event(attempt.id, "evt_late", AttemptStatus.SUCCEEDED)
        return late, await ledger.has_event(attempt.id, "evt_late")

    late, logged = asyncio.run(scenario())
    assert not late.changed
    assert late.attempt.status == AttemptStatus.EXPIRED
    assert logged


def test_concurrent_success_writes_change_status_once(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        attempt = await _awaiting(ledger, "pi_1")
        return await asyncio.gather(
            ledger.apply_event(attempt.id, "evt_webhook", AttemptStatus.SUCCEEDED),
            ledger.apply_event(attempt.id, "poll:pi_1:succeeded", AttemptStatus.SUCCEEDED),
        )

    results = asyncio.run(scenario())
    assert sum(1 for r in results if r.changed) == 1
    assert all(r.attempt.status == AttemptStatus.SUCCEEDED for r in results)


def test_second_success_for_same_product_is_a_duplicate_purchase(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        first = await _awaiting(ledger, "pi_1")
        second = await _awaiting(ledger, "pi_2")
        await ledger.apply_event(first.id, "evt_1", AttemptStatus.SUCCEEDED)
        await ledger.apply_event(second.id, "evt_2", AttemptStatus.SUCCEEDED)

    with pytest.raises(DuplicatePurchase):
        asyncio.run(scenario())


def test_sweep_queries_select_only_awaiting_rows(session_factory):
    ledger = AttemptLedger(session_factory)
    now = utcnow()

    async def scenario():
        stale = await _create(ledger)
        await ledger.mark_awaiting(
            stale.id, provider_ref="pi_stale", client_payload=None, expires_at=now - timedelta(minutes=1)
        )
        fresh = await _create(ledger)
        await ledger.mark_awaiting(
            fresh.id, provider_ref="pi_fresh", client_payload=None, expires_at=now + timedelta(minutes=10)
        )
        invoice = await _create(
            ledger,
            product_ref="vase-invoice",
            rail=Rail.MANUAL_INVOICE,
            now=now - timedelta(hours=80),
        )
        await ledger.mark_awaiting(invoice.id, provider_ref="inv_1", client_payload=None, expires_at=None)
        expirable = await ledger.list_expirable(now)
        abandonable = await ledger.list_abandonable(Rail.MANUAL_INVOICE, now - timedelta(hours=72))
        return stale, invoice, expirable, abandonable

    stale, invoice, expirable, abandonable = asyncio.run(scenario())
    assert [a.id for a in expirable] == [stale.id]
    assert [a.id for a in abandonable] == [invoice.id]


def test_record_unapplied_keeps_one_row_per_event(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        first = await ledger.record_unapplied(
            rail=Rail.CARD_INTENT, provider_event_id="evt_x", reason="orphaned", provider_ref="pi_x"
        )
        again = await ledger.record_unapplied(
            rail=Rail.CARD_INTENT, provider_event_id="evt_x", reason="orphaned", provider_ref="pi_x"
        )
        return first, again, await ledger.list_unapplied(reason="orphaned")

    first, again, rows = asyncio.run(scenario())
    assert first is True
    assert again is False
    assert len(rows) == 1
    assert rows[0].provider_ref == "pi_x"


def test_find_open_by_buyer_returns_newest_awaiting(session_factory):
    ledger = AttemptLedger(session_factory)

    async def scenario():
        older = await _awaiting(
            ledger, "kofi_a", rail=Rail.EMBEDDED_DONATION, product_ref="print-kofi",
            now=utcnow() - timedelta(minutes=5),
        )
        newer = await _awaiting(ledger, "kofi_b", rail=Rail.EMBEDDED_DONATION, product_ref="print-kofi")
        found = await ledger.find_open_by_buyer(Rail.EMBEDDED_DONATION, "BUYER@example.com")
        other_rail = await ledger.find_open_by_buyer(Rail.CARD_INTENT, "buyer@example.com")
        return older, newer, found, other_rail

    _, newer, found, other_rail = asyncio.run(scenario())
    assert found is not None and found.id == newer.id
    assert other_rail is None
