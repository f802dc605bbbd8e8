"""Pure payload mapping per provider."""

import pytest

from paylink.common.errors import MalformedPayload
from paylink.services.gateways.schemas import Outcome
from paylink.services.webhooks.extractors import extract_chapa, extract_notice, extract_santimpay


def test_santimpay_prefers_txn_id_and_third_party_id():
    notice = extract_santimpay(
        {"txnId": "st-1", "refId": "st-ref", "id": "x", "thirdPartyId": "INT-1", "Status": "COMPLETED", "amount": 100}
    )

    assert notice.correlation_id == "st-1"
    assert notice.reference == "INT-1"
    assert notice.outcome is Outcome.SUCCESS
    assert notice.amount == "100"


def test_santimpay_falls_back_to_id():
    notice = extract_santimpay({"id": "INT-2", "status": "failed"})

    assert notice.correlation_id == "INT-2"
    assert notice.reference == "INT-2"
    assert notice.outcome is Outcome.FAILED


def test_santimpay_external_id_before_client_reference():
    notice = extract_santimpay({"refId": "st-9", "externalId": "INT-3", "clientReference": "other", "status": "PENDING"})

    assert notice.correlation_id == "st-9"
    assert notice.reference == "INT-3"
    assert notice.outcome is Outcome.PENDING


def test_chapa_uses_tx_ref_for_both_keys():
    notice = extract_chapa(
        {"tx_ref": "INT-4", "status": "success", "reference": "AP-7", "created_at": "2026-10-19T08:00:00Z"}
    )

    assert notice.correlation_id == notice.reference == "INT-4"
    assert notice.provider_transaction_id == "AP-7"
    assert notice.currency == "ETB"
    assert notice.occurred_at.year == 2026


@pytest.mark.parametrize(
    "provider,payload",
    [
        ("santimpay", {"thirdPartyId": "INT-1"}),
        ("santimpay", {"Status": "COMPLETED"}),
        ("chapa", {"tx_ref": "INT-1"}),
        ("chapa", "tx_ref=INT-1"),
        ("stripe", {"id": "evt_1"}),
    ],
)
def test_malformed_payloads(provider, payload):
    with pytest.raises(MalformedPayload):
        extract_notice(provider, payload)
