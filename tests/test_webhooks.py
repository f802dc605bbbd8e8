"""Callback ingestion: dedup, deferral and ledger convergence."""

import pytest
from sqlalchemy import select

from paylink.common.errors import MalformedPayload
from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.models import OutcomeConflict, PaymentLink, TransactionEvent
from paylink.services.webhooks.models import WebhookReceipt
from paylink.services.webhooks.service import WebhookService


def _receipt(session_factory, provider, correlation_id):
    with session_factory() as db:
        return db.execute(
            select(WebhookReceipt).where(
                WebhookReceipt.provider == provider, WebhookReceipt.correlation_id == correlation_id
            )
        ).scalar_one()


def test_duplicate_deliveries_apply_once(webhooks, ledger, make_link, session_factory):
    """Delivering the same callback N times gives one transition and N-1 no-ops."""

    link_id = make_link(gateway="chapa", link_type="reusable", amount_cents=2000)
    reference = ledger.open_transaction(None, link_id).transaction.reference
    payload = {"tx_ref": reference, "status": "success", "reference": "APxyz"}

    acks = [webhooks.receive("chapa", payload) for _ in range(5)]

    assert [ack.duplicate for ack in acks] == [False, True, True, True, True]
    assert all(ack.accepted for ack in acks)
    with session_factory() as db:
        link = db.get(PaymentLink, link_id)
        successes = db.execute(
            select(TransactionEvent).where(TransactionEvent.reference == reference, TransactionEvent.to_status == "success")
        ).scalars().all()
    assert (link.total_collected_cents, link.paid_count) == (2000, 1)
    assert len(successes) == 1
    receipt = _receipt(session_factory, "chapa", reference)
    assert receipt.processed is True
    assert ledger.get_transaction(reference).provider_transaction_id == "APxyz"


def test_pending_callback_does_not_block_later_success(webhooks, ledger, make_link, session_factory):
    reference = ledger.open_transaction(None, make_link()).transaction.reference
    base = {"txnId": "santim-77", "thirdPartyId": reference}

    pending = webhooks.receive("santimpay", {**base, "Status": "PENDING"})
    assert pending.detail == "pending"
    assert _receipt(session_factory, "santimpay", "santim-77").processed is False

    applied = webhooks.receive("santimpay", {**base, "Status": "COMPLETED"})

    assert applied.duplicate is False
    assert ledger.get_transaction(reference).status == "success"
    receipt = _receipt(session_factory, "santimpay", "santim-77")
    assert receipt.processed is True
    assert receipt.attempts == 2


def test_unknown_reference_is_recorded_and_acknowledged(webhooks, session_factory):
    ack = webhooks.receive("chapa", {"tx_ref": "INT-20260101-ffffffffffff", "status": "success"})

    assert ack.accepted is True
    assert ack.detail == "not_found"
    receipt = _receipt(session_factory, "chapa", "INT-20260101-ffffffffffff")
    assert receipt.processed is True
    assert "not found" in receipt.error


def test_conflicting_callback_keeps_success(webhooks, ledger, make_link, session_factory):
    reference = ledger.open_transaction(None, make_link()).transaction.reference
    webhooks.receive("santimpay", {"txnId": "t-1", "thirdPartyId": reference, "Status": "SUCCESS"})

    ack = webhooks.receive("santimpay", {"txnId": "t-2", "thirdPartyId": reference, "Status": "FAILED"})

    assert ack.detail == "conflict"
    assert ledger.get_transaction(reference).status == "success"
    assert _receipt(session_factory, "santimpay", "t-2").processed is True
    with session_factory() as db:
        assert db.execute(select(OutcomeConflict)).scalar_one().claimed_status == "failed"


def test_provider_mismatch_is_ignored(webhooks, ledger, make_link):
    reference = ledger.open_transaction(None, make_link(gateway="santimpay")).transaction.reference

    ack = webhooks.receive("chapa", {"tx_ref": reference, "status": "success"})

    assert ack.detail == "provider_mismatch"
    assert ledger.get_transaction(reference).status == "processing"


def test_malformed_payload_raises(webhooks):
    with pytest.raises(MalformedPayload):
        webhooks.receive("chapa", {"status": "success"})
    with pytest.raises(MalformedPayload):
        webhooks.receive("santimpay", ["not", "an", "object"])
    with pytest.raises(MalformedPayload):
        webhooks.receive("paypal", {"id": "x"})


class FlakyLedger:
    """Delegates to the real ledger but fails the first apply."""

    def __init__(self, ledger):
        self.ledger = ledger
        self.failures = 1

    def get_transaction(self, reference):
        return self.ledger.get_transaction(reference)

    def apply_outcome(self, reference, outcome, evidence=None):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("database unavailable")
        return self.ledger.apply_outcome(reference, outcome, evidence)


def test_ledger_error_leaves_receipt_for_replay(ledger, make_link, session_factory):
    service = WebhookService(session_factory, FlakyLedger(ledger))
    reference = ledger.open_transaction(None, make_link(gateway="chapa")).transaction.reference

    ack = service.receive("chapa", {"tx_ref": reference, "status": "success"})

    assert ack.accepted is True
    assert ack.detail == "deferred"
    receipt = _receipt(session_factory, "chapa", reference)
    assert receipt.processed is False
    assert receipt.error == "database unavailable"

    replayed = service.replay("chapa", reference)

    assert replayed.detail == Outcome.SUCCESS.value
    assert ledger.get_transaction(reference).status == "success"
    assert _receipt(session_factory, "chapa", reference).processed is True
    assert service.replay("chapa", reference).duplicate is True
