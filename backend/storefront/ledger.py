"""Attempt Ledger: the persisted CheckoutAttempt record and its state machine.

Every status write is a compare-and-swap on the stored status, so a late
webhook, a synchronous poll confirmation and the expiry sweep can race freely
without ever moving an attempt backwards. Requests against a frozen attempt
are no-ops that hand back the current snapshot.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db.models import AttemptEventRecord, CheckoutAttemptRecord, UnappliedEventRecord
from .errors import AttemptNotFound, DuplicatePurchase, InvalidTransition
from .logging_config import get_logger
from .metrics import ledger_transitions_total
from .states import AttemptStatus, Rail, check_transition, is_frozen, is_terminal
from .utils import ensure_utc, utcnow

logger = get_logger(__name__)

CAS_RETRIES = 3


@dataclass(frozen=True)
class CheckoutAttempt:
    id: str
    product_ref: str
    rail: Rail
    amount_minor: int
    currency: str
    buyer_email: str
    shipping_snapshot: dict[str, Any]
    provider_ref: str | None
    client_payload: dict[str, Any] | None
    status: AttemptStatus
    failure_reason: str | None
    created_at: datetime
    expires_at: datetime | None
    terminal_at: datetime | None
    reconciliation_events: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_frozen(self) -> bool:
        return is_frozen(self.status)


@dataclass(frozen=True)
class TransitionResult:
    attempt: CheckoutAttempt
    changed: bool
    previous: AttemptStatus
    duplicate: bool = False


@dataclass(frozen=True)
class UnappliedEvent:
    rail: str
    provider_event_id: str
    provider_ref: str | None
    event_type: str | None
    reason: str
    attempt_id: str | None
    received_at: datetime | None
    detail: dict[str, Any] | None


class _StaleStatus(Exception):
    """CAS lost to a concurrent writer; caller re-reads and retries."""


class AttemptLedger:
    """Sole writer of CheckoutAttempt.status."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------ reads

    async def get(self, attempt_id: str) -> CheckoutAttempt:
        async with self._session_factory() as session:
            record = await session.get(CheckoutAttemptRecord, attempt_id)
            if record is None:
                raise AttemptNotFound(attempt_id)
            return await self._snapshot(session, record)

    async def get_by_provider_ref(self, provider_ref: str) -> CheckoutAttempt | None:
        async with self._session_factory() as session:
            record = await session.scalar(
                select(CheckoutAttemptRecord).where(
                    CheckoutAttemptRecord.provider_ref == provider_ref
                )
            )
            if record is None:
                return None
            return await self._snapshot(session, record)

    async def find_open_by_buyer(self, rail: Rail, buyer_email: str) -> CheckoutAttempt | None:
        """Newest awaiting attempt on ``rail`` for this buyer (rails that echo no reference)."""
        async with self._session_factory() as session:
            record = await session.scalar(
                select(CheckoutAttemptRecord)
                .where(
                    CheckoutAttemptRecord.rail == rail.value,
                    CheckoutAttemptRecord.buyer_email == buyer_email.strip().lower(),
                    CheckoutAttemptRecord.status == AttemptStatus.AWAITING_PAYMENT.value,
                )
                .order_by(CheckoutAttemptRecord.created_at.desc())
                .limit(1)
            )
            if record is None:
                return None
            return await self._snapshot(session, record)

    async def has_event(self, attempt_id: str, provider_event_id: str) -> bool:
        async with self._session_factory() as session:
            return bool(
                await session.scalar(
                    select(
                        exists().where(
                            AttemptEventRecord.attempt_id == attempt_id,
                            AttemptEventRecord.provider_event_id == provider_event_id,
                        )
                    )
                )
            )

    async def find_by_event(self, rail: Rail, provider_event_id: str) -> CheckoutAttempt | None:
        """Attempt that already logged ``provider_event_id`` (redeliveries on email-matched rails)."""
        async with self._session_factory() as session:
            record = await session.scalar(
                select(CheckoutAttemptRecord)
                .join(AttemptEventRecord, AttemptEventRecord.attempt_id == CheckoutAttemptRecord.id)
                .where(
                    CheckoutAttemptRecord.rail == rail.value,
                    AttemptEventRecord.provider_event_id == provider_event_id,
                )
                .limit(1)
            )
            if record is None:
                return None
            return await self._snapshot(session, record)

    async def has_succeeded(self, product_ref: str, *, exclude: str | None = None) -> bool:
        async with self._session_factory() as session:
            stmt = select(CheckoutAttemptRecord.id).where(
                CheckoutAttemptRecord.product_ref == product_ref,
                CheckoutAttemptRecord.status == AttemptStatus.SUCCEEDED.value,
            )
            if exclude:
                stmt = stmt.where(CheckoutAttemptRecord.id != exclude)
            return (await session.scalar(stmt.limit(1))) is not None

    async def list_expirable(self, now: datetime, *, limit: int = 200) -> list[CheckoutAttempt]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(CheckoutAttemptRecord)
                .where(
                    CheckoutAttemptRecord.status == AttemptStatus.AWAITING_PAYMENT.value,
                    CheckoutAttemptRecord.expires_at.is_not(None),
                    CheckoutAttemptRecord.expires_at < now,
                )
                .order_by(CheckoutAttemptRecord.expires_at)
                .limit(limit)
            )
            return [await self._snapshot(session, row) for row in rows.all()]

    async def list_stalled(self, created_before: datetime, *, limit: int = 200) -> list[CheckoutAttempt]:
        """Attempts still in `created` long after the provider call should have returned."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(CheckoutAttemptRecord)
                .where(
                    CheckoutAttemptRecord.status == AttemptStatus.CREATED.value,
                    CheckoutAttemptRecord.created_at < created_before,
                )
                .order_by(CheckoutAttemptRecord.created_at)
                .limit(limit)
            )
            return [await self._snapshot(session, row) for row in rows.all()]

    async def list_abandonable(
        self, rail: Rail, created_before: datetime, *, limit: int = 200
    ) -> list[CheckoutAttempt]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(CheckoutAttemptRecord)
                .where(
                    CheckoutAttemptRecord.rail == rail.value,
                    CheckoutAttemptRecord.status == AttemptStatus.AWAITING_PAYMENT.value,
                    CheckoutAttemptRecord.created_at < created_before,
                )
                .order_by(CheckoutAttemptRecord.created_at)
                .limit(limit)
            )
            return [await self._snapshot(session, row) for row in rows.all()]

    async def list_for_product(self, product_ref: str) -> list[CheckoutAttempt]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(CheckoutAttemptRecord)
                .where(CheckoutAttemptRecord.product_ref == product_ref)
                .order_by(CheckoutAttemptRecord.created_at)
            )
            return [await self._snapshot(session, row) for row in rows.all()]

    async def list_unapplied(
        self, *, reason: str | None = None, limit: int = 100
    ) -> list[UnappliedEvent]:
        async with self._session_factory() as session:
            stmt = select(UnappliedEventRecord).order_by(UnappliedEventRecord.id.desc())
            if reason:
                stmt = stmt.where(UnappliedEventRecord.reason == reason)
            rows = await session.scalars(stmt.limit(limit))
            return [
                UnappliedEvent(
                    rail=row.rail,
                    provider_event_id=row.provider_event_id,
                    provider_ref=row.provider_ref,
                    event_type=row.event_type,
                    reason=row.reason,
                    attempt_id=row.attempt_id,
                    received_at=ensure_utc(row.received_at),
                    detail=row.detail,
                )
                for row in rows.all()
            ]

    # ----------------------------------------------------------------- writes

    async def create(
        self,
        *,
        product_ref: str,
        rail: Rail,
        amount_minor: int,
        currency: str,
        buyer_email: str,
        shipping_snapshot: dict[str, Any],
        now: datetime | None = None,
    ) -> CheckoutAttempt:
        record = CheckoutAttemptRecord(
            id=str(uuid.uuid4()),
            product_ref=product_ref,
            rail=rail.value,
            amount_minor=amount_minor,
            currency=currency.upper(),
            buyer_email=buyer_email.strip().lower(),
            shipping_snapshot=dict(shipping_snapshot),
            status=AttemptStatus.CREATED.value,
            created_at=now or utcnow(),
        )
        async with self._session_factory.begin() as session:
            session.add(record)
            await session.flush()
            snapshot = await self._snapshot(session, record)
        logger.info(
            "attempt_created",
            attempt_id=snapshot.id,
            product_ref=product_ref,
            rail=rail.value,
            amount_minor=amount_minor,
            currency=snapshot.currency,
        )
        return snapshot

    async def mark_awaiting(
        self,
        attempt_id: str,
        *,
        provider_ref: str,
        client_payload: dict[str, Any] | None,
        expires_at: datetime | None,
    ) -> TransitionResult:
        """created -> awaiting_payment, binding the provider reference exactly once."""
        return await self._transition(
            attempt_id,
            AttemptStatus.AWAITING_PAYMENT,
            values={
                "provider_ref": provider_ref,
                "client_payload": client_payload,
                "expires_at": expires_at,
            },
            guard=CheckoutAttemptRecord.provider_ref.is_(None),
        )

    async def mark_failed(self, attempt_id: str, reason: str) -> TransitionResult:
        return await self._transition(
            attempt_id, AttemptStatus.FAILED, values={"failure_reason": reason}
        )

    async def transition(
        self, attempt_id: str, target: AttemptStatus, *, reason: str | None = None
    ) -> TransitionResult:
        values = {"failure_reason": reason} if reason and target == AttemptStatus.FAILED else {}
        return await self._transition(attempt_id, target, values=values)

    async def apply_event(
        self,
        attempt_id: str,
        provider_event_id: str,
        target: AttemptStatus,
        *,
        reason: str | None = None,
    ) -> TransitionResult:
        """
        Record ``provider_event_id`` and move to ``target`` in one transaction.

        A replayed event id trips the unique constraint and comes back as
        ``duplicate=True`` without touching status. Frozen attempts still log
        the event so a later replay is recognised as a duplicate.
        """
        values = {"failure_reason": reason} if reason and target == AttemptStatus.FAILED else {}
        for _ in range(CAS_RETRIES):
            try:
                async with self._session_factory.begin() as session:
                    record = await self._load(session, attempt_id)
                    previous = AttemptStatus(record.status)
                    session.add(
                        AttemptEventRecord(
                            attempt_id=attempt_id,
                            provider_event_id=provider_event_id,
                            outcome=target.value,
                        )
                    )
                    await session.flush()
                    changed = False
                    if previous != target and not is_frozen(previous):
                        check_transition(previous, target)
                        if not await self._compare_and_set(
                            session, attempt_id, previous, target, values
                        ):
                            raise _StaleStatus()
                        changed = True
                    snapshot = await self._reload(session, attempt_id)
            except _StaleStatus:
                continue
            except IntegrityError:
                if await self.has_event(attempt_id, provider_event_id):
                    current = await self.get(attempt_id)
                    return TransitionResult(
                        current, changed=False, previous=current.status, duplicate=True
                    )
                await self._raise_if_duplicate_purchase(attempt_id, target)
                raise
            self._after_write(snapshot, previous, changed)
            return TransitionResult(snapshot, changed=changed, previous=previous)
        raise RuntimeError(f"ledger contention on attempt {attempt_id}")

    async def record_unapplied(
        self,
        *,
        rail: Rail | str,
        provider_event_id: str,
        reason: str,
        provider_ref: str | None = None,
        event_type: str | None = None,
        attempt_id: str | None = None,
        payload_digest: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> bool:
        """Keep an acknowledged-but-unapplied event. False if already recorded."""
        rail_value = rail.value if isinstance(rail, Rail) else str(rail)
        try:
            async with self._session_factory.begin() as session:
                session.add(
                    UnappliedEventRecord(
                        rail=rail_value,
                        provider_event_id=provider_event_id,
                        provider_ref=provider_ref,
                        event_type=event_type,
                        reason=reason,
                        attempt_id=attempt_id,
                        payload_digest=payload_digest,
                        detail=detail,
                    )
                )
        except IntegrityError:
            return False
        logger.warning(
            "provider_event_unapplied",
            rail=rail_value,
            provider_event_id=provider_event_id,
            provider_ref=provider_ref,
            reason=reason,
            attempt_id=attempt_id,
        )
        return True

    # -------------------------------------------------------------- internals

    async def _transition(
        self,
        attempt_id: str,
        target: AttemptStatus,
        *,
        values: dict[str, Any],
        guard: Any | None = None,
    ) -> TransitionResult:
        for _ in range(CAS_RETRIES):
            try:
                async with self._session_factory.begin() as session:
                    record = await self._load(session, attempt_id)
                    previous = AttemptStatus(record.status)
                    if previous == target or is_frozen(previous):
                        if is_frozen(previous):
                            logger.debug(
                                "transition_noop_frozen",
                                attempt_id=attempt_id,
                                status=previous.value,
                                requested=target.value,
                            )
                        snapshot = await self._snapshot(session, record)
                        return TransitionResult(snapshot, changed=False, previous=previous)
                    check_transition(previous, target)
                    if not await self._compare_and_set(
                        session, attempt_id, previous, target, values, guard=guard
                    ):
                        raise _StaleStatus()
                    snapshot = await self._reload(session, attempt_id)
            except _StaleStatus:
                continue
            except IntegrityError:
                await self._raise_if_duplicate_purchase(attempt_id, target)
                raise
            self._after_write(snapshot, previous, True)
            return TransitionResult(snapshot, changed=True, previous=previous)
        raise RuntimeError(f"ledger contention on attempt {attempt_id}")

    async def _compare_and_set(
        self,
        session: AsyncSession,
        attempt_id: str,
        expected: AttemptStatus,
        target: AttemptStatus,
        values: dict[str, Any],
        *,
        guard: Any | None = None,
    ) -> bool:
        now = utcnow()
        payload = dict(values)
        payload["status"] = target.value
        payload["updated_at"] = now
        if is_terminal(target):
            payload["terminal_at"] = now
        stmt = update(CheckoutAttemptRecord).where(
            CheckoutAttemptRecord.id == attempt_id,
            CheckoutAttemptRecord.status == expected.value,
        )
        if guard is not None:
            stmt = stmt.where(guard)
        result = await session.execute(
            stmt.values(**payload).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _raise_if_duplicate_purchase(self, attempt_id: str, target: AttemptStatus) -> None:
        if target != AttemptStatus.SUCCEEDED:
            return
        attempt = await self.get(attempt_id)
        if await self.has_succeeded(attempt.product_ref, exclude=attempt_id):
            raise DuplicatePurchase(
                f"product {attempt.product_ref} already sold; attempt {attempt_id} also paid"
            )

    @staticmethod
    async def _load(session: AsyncSession, attempt_id: str) -> CheckoutAttemptRecord:
        record = await session.get(CheckoutAttemptRecord, attempt_id, populate_existing=True)
        if record is None:
            raise AttemptNotFound(attempt_id)
        return record

    async def _reload(self, session: AsyncSession, attempt_id: str) -> CheckoutAttempt:
        return await self._snapshot(session, await self._load(session, attempt_id))

    @staticmethod
    async def _snapshot(session: AsyncSession, record: CheckoutAttemptRecord) -> CheckoutAttempt:
        events: Iterable[str] = await session.scalars(
            select(AttemptEventRecord.provider_event_id)
            .where(AttemptEventRecord.attempt_id == record.id)
            .order_by(AttemptEventRecord.id)
        )
        return CheckoutAttempt(
            id=record.id,
            product_ref=record.product_ref,
            rail=Rail(record.rail),
            amount_minor=record.amount_minor,
            currency=record.currency,
            buyer_email=record.buyer_email,
            shipping_snapshot=dict(record.shipping_snapshot or {}),
            provider_ref=record.provider_ref,
            client_payload=record.client_payload,
            status=AttemptStatus(record.status),
            failure_reason=record.failure_reason,
            created_at=ensure_utc(record.created_at),
            expires_at=ensure_utc(record.expires_at),
            terminal_at=ensure_utc(record.terminal_at),
            reconciliation_events=tuple(events),
        )

    @staticmethod
    def _after_write(snapshot: CheckoutAttempt, previous: AttemptStatus, changed: bool) -> None:
        if not changed:
            return
        ledger_transitions_total.labels(
            rail=snapshot.rail.value,
            from_status=previous.value,
            to_status=snapshot.status.value,
        ).inc()
        logger.info(
            "attempt_transitioned",
            attempt_id=snapshot.id,
            rail=snapshot.rail.value,
            from_status=previous.value,
            to_status=snapshot.status.value,
            failure_reason=snapshot.failure_reason,
        )


__all__ = [
    "AttemptLedger",
    "CheckoutAttempt",
    "InvalidTransition",
    "TransitionResult",
    "UnappliedEvent",
]
