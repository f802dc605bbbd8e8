"""Merchant-side records the gateway resolver reads.

Merchant registration lives elsewhere; only the fields needed to pick and
authenticate a provider are modelled here.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from paylink.common.db import Base, JSONType, utcnow


class Merchant(Base):
    """Merchant identity plus provider preference."""

    __tablename__ = "merchants"

    merchant_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    preferred_gateway: Mapped[str] = mapped_column(String, default="santimpay")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class GatewayCredential(Base):
    """Encrypted per-merchant secret for one provider."""

    __tablename__ = "gateway_credentials"
    __table_args__ = (UniqueConstraint("merchant_id", "provider", name="uq_gateway_credential"),)

    credential_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    provider: Mapped[str] = mapped_column(String)
    # {"iv", "content", "tag"} from paylink.common.crypto.encrypt_secret
    secret_encrypted: Mapped[dict] = mapped_column(JSONType)
    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
