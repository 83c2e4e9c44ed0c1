from __future__ import annotations

import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)

from .core import Base


class CheckoutAttemptRecord(Base):
    __tablename__ = "checkout_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_ref = Column(String(128), nullable=False)
    rail = Column(String(32), nullable=False)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    buyer_email = Column(String(320), nullable=False)
    shipping_snapshot = Column(JSON, nullable=False, default=dict, server_default=text("'{}'"))
    provider_ref = Column(String(255), nullable=True, unique=True)
    client_payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="created", server_default=text("'created'"))
    failure_reason = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    terminal_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_checkout_attempts_product_status", "product_ref", "status"),
        Index("ix_checkout_attempts_status_expires", "status", "expires_at"),
        Index("ix_checkout_attempts_buyer_rail", "buyer_email", "rail"),
        # one sale per product
        Index(
            "uq_checkout_attempts_product_succeeded",
            "product_ref",
            unique=True,
            sqlite_where=text("status = 'succeeded'"),
            postgresql_where=text("status = 'succeeded'"),
        ),
    )


class AttemptEventRecord(Base):
    """Append-only log of provider events applied to an attempt."""

    __tablename__ = "checkout_attempt_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column(
        String(36), ForeignKey("checkout_attempts.id"), nullable=False, index=True
    )
    provider_event_id = Column(String(255), nullable=False)
    outcome = Column(String(20), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("attempt_id", "provider_event_id", name="uq_attempt_event"),
    )


class UnappliedEventRecord(Base):
    """Verified provider events that were acknowledged but not applied."""

    __tablename__ = "unapplied_provider_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rail = Column(String(32), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    provider_ref = Column(String(255), nullable=True, index=True)
    event_type = Column(String(128), nullable=True)
    reason = Column(String(32), nullable=False, index=True)
    attempt_id = Column(String(36), nullable=True)
    payload_digest = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("rail", "provider_event_id", "reason", name="uq_unapplied_event"),
    )
