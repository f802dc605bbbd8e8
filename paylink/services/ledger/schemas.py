"""Request/response schemas for ledger operations."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class OpenTransactionRequest(BaseModel):
    """Checkout options; every field is optional."""

    amount_cents: int | None = Field(default=None, gt=0)
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, min_length=5)
    success_url: str | None = None
    cancel_url: str | None = None
    failure_url: str | None = None
    notify_url: str | None = None


class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    merchant_id: str
    link_id: str
    amount_cents: int
    currency: str
    provider: str
    status: str
    provider_transaction_id: str | None = None
    checkout_url: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None


class CheckoutResult(BaseModel):
    """Either a redirect URL or a terminal failure with its reason."""

    checkout_url: str | None
    transaction: TransactionView
    error: str | None = None


class OutcomeEvidence(BaseModel):
    """Why a terminal outcome is being applied, and the provider data behind it."""

    source: str = "webhook"
    reason: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)
    provider_transaction_id: str | None = None
    paid_at: datetime | None = None
