"""Webhook receipt records used for callback deduplication and audit."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from paylink.common.db import Base, JSONType, utcnow


class WebhookReceipt(Base):
    """One row per (provider, correlation id); updated on redelivery."""

    __tablename__ = "webhook_receipts"
    __table_args__ = (UniqueConstraint("provider", "correlation_id", name="uq_webhook_receipt"),)

    receipt_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String, index=True)
    correlation_id: Mapped[str] = mapped_column(String)
    reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    error: Mapped[str] = mapped_column(String, default="")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
