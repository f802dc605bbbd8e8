"""Normalized shapes exchanged between the ledger and provider adapters."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AnyHttpUrl, BaseModel, Field


class Outcome(str, Enum):
    """Shared provider outcome vocabulary."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"

    @property
    def is_definitive(self) -> bool:
        return self in (Outcome.SUCCESS, Outcome.FAILED)


SUCCESS_WORDS = frozenset({"success", "successful", "completed", "paid", "done"})
FAILURE_WORDS = frozenset({"failed", "error", "cancelled", "canceled", "rejected"})
PENDING_WORDS = frozenset({"pending", "processing", "initiated"})


def normalize_provider_status(status: Any) -> Outcome:
    """Translate a provider status word into the shared outcome."""

    word = str(status).strip().lower() if status is not None else ""
    if word in SUCCESS_WORDS:
        return Outcome.SUCCESS
    if word in FAILURE_WORDS:
        return Outcome.FAILED
    if word in PENDING_WORDS:
        return Outcome.PENDING
    return Outcome.UNKNOWN


class ReturnUrls(BaseModel):
    """Customer redirects plus the server-to-server notify URL."""

    success_url: AnyHttpUrl
    cancel_url: AnyHttpUrl
    failure_url: AnyHttpUrl
    notify_url: AnyHttpUrl


class ProviderCheckout(BaseModel):
    """Read-only transaction snapshot handed to `initialize`."""

    reference: str
    link_id: str
    amount_cents: int = Field(gt=0)
    currency: str = "ETB"
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""

    @property
    def amount(self) -> float:
        return round(self.amount_cents / 100, 2)

    @property
    def amount_text(self) -> str:
        return f"{self.amount_cents // 100}.{self.amount_cents % 100:02d}"


class CheckoutSession(BaseModel):
    checkout_url: str
    raw: dict[str, Any] = Field(default_factory=dict)


class ProviderStatus(BaseModel):
    """Result of one status poll; `error` is set when the outcome is unknown."""

    reference: str
    outcome: Outcome
    provider_status: str | None = None
    provider_transaction_id: str | None = None
    paid_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class PayoutRequest(BaseModel):
    reference: str = ""
    amount_cents: int = 0
    reason: str = ""
    phone_number: str = ""
    payment_method: str = ""
    notify_url: str = ""
