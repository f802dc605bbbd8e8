from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.schemas import TransactionView


class SweepSummary(BaseModel):
    success: int = 0
    failed: int = 0
    still_processing: int = 0
    timed_out: int = 0
    errors: int = 0

    @property
    def examined(self) -> int:
        return self.success + self.failed + self.still_processing + self.timed_out + self.errors


class ReconcileDiagnostic(BaseModel):
    """What the ledger holds next to what the provider currently reports."""

    reference: str
    status: str
    provider: str
    outcome: Outcome
    provider_status: str | None = None
    provider_raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    transaction: TransactionView


class BatchItem(BaseModel):
    reference: str
    outcome: Outcome | None = None
    error: str | None = None


class BatchReport(BaseModel):
    total: int
    successful: list[BatchItem]
    errors: list[BatchItem]


class StuckTransaction(BaseModel):
    reference: str
    merchant_id: str
    link_id: str
    provider: str
    status: str
    amount_cents: int
    currency: str
    created_at: datetime
    updated_at: datetime
    age_hours: float


class StuckPage(BaseModel):
    total: int
    items: list[StuckTransaction]
    by_provider: dict[str, int]
    limit: int
    offset: int
