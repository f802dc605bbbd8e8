"""Pure per-provider mappings from raw callback payloads to `WebhookNotice`."""

from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field

from paylink.common.errors import MalformedPayload
from paylink.services.gateways.schemas import Outcome, normalize_provider_status


class WebhookNotice(BaseModel):
    """Provider-neutral view of one callback."""

    provider: str
    correlation_id: str
    reference: str
    status: str
    outcome: Outcome
    provider_transaction_id: str | None = None
    amount: str | None = None
    currency: str | None = None
    occurred_at: datetime | None = None
    message: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)


def _first(payload: dict, *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _require_dict(provider: str, payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise MalformedPayload(f"{provider} callback body must be a JSON object")
    return payload


def extract_santimpay(payload: Any) -> WebhookNotice:
    payload = _require_dict("santimpay", payload)
    txn_id = _first(payload, "txnId", "refId", "id")
    reference = _first(payload, "thirdPartyId", "externalId", "clientReference", "id")
    status = _first(payload, "Status", "status")
    if not txn_id or not reference or not status:
        raise MalformedPayload("santimpay callback missing transaction id, reference or status")
    return WebhookNotice(
        provider="santimpay",
        correlation_id=txn_id,
        reference=reference,
        status=status,
        outcome=normalize_provider_status(status),
        provider_transaction_id=txn_id,
        amount=_first(payload, "amount"),
        currency=_first(payload, "currency"),
        occurred_at=_timestamp(payload.get("timestamp")),
        message=_first(payload, "message", "reason") or "",
        raw=payload,
    )


def extract_chapa(payload: Any) -> WebhookNotice:
    payload = _require_dict("chapa", payload)
    tx_ref = _first(payload, "tx_ref", "trx_ref")
    status = _first(payload, "status")
    if not tx_ref or not status:
        raise MalformedPayload("chapa callback missing tx_ref or status")
    return WebhookNotice(
        provider="chapa",
        correlation_id=tx_ref,
        reference=tx_ref,
        status=status,
        outcome=normalize_provider_status(status),
        provider_transaction_id=_first(payload, "reference", "ref_id"),
        amount=_first(payload, "amount"),
        currency=_first(payload, "currency") or "ETB",
        occurred_at=_timestamp(payload.get("created_at")),
        message=_first(payload, "message") or "",
        raw=payload,
    )


EXTRACTORS: dict[str, Callable[[Any], WebhookNotice]] = {
    "santimpay": extract_santimpay,
    "chapa": extract_chapa,
}


def extract_notice(provider: str, payload: Any) -> WebhookNotice:
    extractor = EXTRACTORS.get(provider)
    if extractor is None:
        raise MalformedPayload(f"unknown webhook provider: {provider}")
    return extractor(payload)
