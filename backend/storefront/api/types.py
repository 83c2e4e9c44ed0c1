from __future__ import annotations

from typing import Annotated

from fastapi import Path, Query

AttemptIdPath = Annotated[
    str,
    Path(
        min_length=36,
        max_length=36,
        description="Checkout attempt id (UUID)",
    ),
]

RailPath = Annotated[
    str,
    Path(
        min_length=1,
        max_length=32,
        pattern=r"^[a-z_\-]+$",
        description="Payment rail receiving the event (e.g., card_intent, kofi)",
    ),
]

UnappliedReason = Annotated[
    str | None,
    Query(
        max_length=32,
        description="Filter by reason (orphaned, amount_mismatch, late_after_terminal, ...)",
    ),
]

PageLimit = Annotated[int, Query(ge=1, le=500)]
