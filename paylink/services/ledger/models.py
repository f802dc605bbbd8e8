"""Ledger database models.

This schema is the source of truth for transaction state, payment-link
aggregates, the transition timeline and the notification outbox.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paylink.common.db import Base, JSONType, utcnow


class PaymentLink(Base):
    """Billing intent a merchant shares; aggregates are ledger-owned."""

    __tablename__ = "payment_links"

    link_id: Mapped[str] = mapped_column(String, primary_key=True)
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    link_type: Mapped[str] = mapped_column(String, default="one_time")
    title: Mapped[str] = mapped_column(String, default="")
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="ETB")
    gateway: Mapped[str] = mapped_column(String, default="santimpay")
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_collected_cents: Mapped[int] = mapped_column(Integer, default=0)
    paid_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    transactions: Mapped[list["Transaction"]] = relationship(order_by="Transaction.created_at", viewonly=True)


class Transaction(Base):
    """One attempt to collect a link amount through one provider."""

    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("link_id", "idempotency_key", name="uq_transaction_idempotency"),)

    reference: Mapped[str] = mapped_column(String, primary_key=True)
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    link_id: Mapped[str] = mapped_column(ForeignKey("payment_links.link_id"), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    provider: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    provider_response: Mapped[dict] = mapped_column(JSONType, default=dict)
    checkout_url: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_name: Mapped[str] = mapped_column(String, default="")
    customer_phone: Mapped[str] = mapped_column(String, default="")
    customer_email: Mapped[str] = mapped_column(String, default="")
    extra: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Last sweep poll that came back without a definitive answer.
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    link: Mapped[PaymentLink] = relationship()


class TransactionEvent(Base):
    """Immutable audit trail of every status transition."""

    __tablename__ = "transaction_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    reference: Mapped[str] = mapped_column(ForeignKey("transactions.reference"), index=True)
    from_status: Mapped[str | None] = mapped_column(String, nullable=True)
    to_status: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutcomeConflict(Base):
    """Contradictory terminal claim kept for manual review."""

    __tablename__ = "outcome_conflicts"

    conflict_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    reference: Mapped[str] = mapped_column(ForeignKey("transactions.reference"), index=True)
    current_status: Mapped[str] = mapped_column(String)
    claimed_status: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    evidence: Mapped[dict] = mapped_column(JSONType, default=dict)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class OutboxEvent(Base):
    """Lifecycle notifications waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
