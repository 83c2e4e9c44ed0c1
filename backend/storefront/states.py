"""Rails, attempt statuses and the transition graph."""

from __future__ import annotations

from enum import Enum

from .errors import InvalidTransition


class Rail(str, Enum):
    CARD_INTENT = "card_intent"
    CARD_SESSION = "card_session"
    EMBEDDED_DONATION = "embedded_donation"
    MANUAL_INVOICE = "manual_invoice"


class AttemptStatus(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class EventOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    PENDING = "pending"
    IGNORED = "ignored"


TERMINAL_STATUSES = frozenset(
    {AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.EXPIRED}
)
# abandoned never moves again, but does not stamp terminal_at
FROZEN_STATUSES = TERMINAL_STATUSES | {AttemptStatus.ABANDONED}

ALLOWED_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.CREATED: frozenset({AttemptStatus.AWAITING_PAYMENT, AttemptStatus.FAILED}),
    AttemptStatus.AWAITING_PAYMENT: frozenset(
        {
            AttemptStatus.SUCCEEDED,
            AttemptStatus.FAILED,
            AttemptStatus.EXPIRED,
            AttemptStatus.ABANDONED,
        }
    ),
}

OUTCOME_TARGETS: dict[EventOutcome, AttemptStatus] = {
    EventOutcome.SUCCEEDED: AttemptStatus.SUCCEEDED,
    EventOutcome.FAILED: AttemptStatus.FAILED,
    EventOutcome.EXPIRED: AttemptStatus.EXPIRED,
}


def is_terminal(status: AttemptStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_frozen(status: AttemptStatus) -> bool:
    return status in FROZEN_STATUSES


def check_transition(current: AttemptStatus, target: AttemptStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current.value, target.value)


def target_for(outcome: EventOutcome) -> AttemptStatus | None:
    """Ledger status an outcome drives to; None for pending/ignored."""
    return OUTCOME_TARGETS.get(outcome)


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORPHANED = "orphaned"
    NO_OP_TERMINAL = "no_op_terminal"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_PURCHASE = "duplicate_purchase"
    IGNORED = "ignored"
