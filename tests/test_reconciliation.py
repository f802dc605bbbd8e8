"""Sweep, cleanup and manual reconciliation."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from paylink.common.db import as_utc, utcnow
from paylink.common.errors import ConflictingOutcome, InvalidRequest, StatusUnknown
from paylink.services.gateways.registry import CredentialModel, GatewayRegistration
from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.models import PaymentLink, Transaction
from paylink.services.reconciliation.scheduler import ReconciliationScheduler
from paylink.services.reconciliation.service import ReconciliationService


def _open(ledger, make_link, **link_fields):
    return ledger.open_transaction(None, make_link(**link_fields)).transaction.reference


def test_stuck_transaction_repaired_without_webhook(reconciliation, ledger, make_link, adapters, age_transaction):
    reference = _open(ledger, make_link)
    age_transaction(reference, created_hours=1)
    adapters["santimpay"].set_status(reference, Outcome.SUCCESS, "COMPLETED")

    summary = reconciliation.run_sweep()

    assert summary.success == 1
    assert ledger.get_transaction(reference).status == "success"


def test_recent_transactions_are_left_alone(reconciliation, ledger, make_link, adapters):
    reference = _open(ledger, make_link)
    adapters["santimpay"].set_status(reference, Outcome.SUCCESS)

    summary = reconciliation.run_sweep()

    assert summary.examined == 0
    assert adapters["santimpay"].polled == []
    assert ledger.get_transaction(reference).status == "processing"


def test_unreachable_provider_ages_out(reconciliation, ledger, make_link, adapters, age_transaction):
    young = _open(ledger, make_link)
    old = _open(ledger, make_link)
    age_transaction(young, created_hours=2)
    age_transaction(old, created_hours=25)
    for reference in (young, old):
        adapters["santimpay"].set_status(reference, Outcome.UNKNOWN, None, error="connection refused")

    summary = reconciliation.run_sweep()

    assert (summary.still_processing, summary.timed_out) == (1, 1)
    assert summary.examined == 2
    assert ledger.get_transaction(young).status == "processing"
    timed_out = ledger.get_transaction(old)
    assert timed_out.status == "failed"
    assert timed_out.failure_reason.startswith("timeout")


def test_inconclusive_polls_rotate_through_a_small_batch(
    session_factory, ledger, registry, make_link, adapters, age_transaction
):
    link_id = make_link(link_type="reusable")
    old = ledger.open_transaction(None, link_id).transaction.reference
    new = ledger.open_transaction(None, link_id).transaction.reference
    age_transaction(old, created_hours=2)
    age_transaction(new, created_hours=1)
    adapters["santimpay"].set_status(new, Outcome.SUCCESS)
    sweeper = ReconciliationService(session_factory, ledger, registry, batch_size=1)

    first = sweeper.run_sweep()
    second = sweeper.run_sweep()

    assert adapters["santimpay"].polled == [old, new]
    assert (first.still_processing, second.success) == (1, 1)
    assert ledger.get_transaction(new).status == "success"
    old_tx = ledger.get_transaction(old)
    assert old_tx.status == "processing"
    assert old_tx.last_reconciled_at is not None
    assert old_tx.state_version == 1
    assert as_utc(old_tx.updated_at) < utcnow() - timedelta(hours=1)


def _leave_initialized(session_factory, reference):
    """Simulate a process that died while the provider was initializing."""

    with session_factory() as db:
        db.execute(
            update(Transaction)
            .where(Transaction.reference == reference)
            .values(status="initialized", checkout_url=None, state_version=0)
        )
        db.commit()


def test_sweep_repairs_rows_left_initialized(reconciliation, session_factory, ledger, make_link, adapters, age_transaction):
    settled = _open(ledger, make_link)
    abandoned = _open(ledger, make_link)
    for reference in (settled, abandoned):
        _leave_initialized(session_factory, reference)
    age_transaction(settled, created_hours=1)
    age_transaction(abandoned, created_hours=30)
    adapters["santimpay"].set_status(settled, Outcome.SUCCESS)

    summary = reconciliation.run_sweep()

    assert (summary.success, summary.timed_out) == (1, 1)
    assert ledger.get_transaction(settled).status == "success"
    assert ledger.get_transaction(abandoned).status == "failed"


def test_recent_initialized_rows_wait_for_the_grace_window(reconciliation, session_factory, ledger, make_link, adapters):
    reference = _open(ledger, make_link)
    _leave_initialized(session_factory, reference)

    assert reconciliation.run_sweep().examined == 0
    assert adapters["santimpay"].polled == []


def test_provider_failure_is_applied(reconciliation, ledger, make_link, adapters, age_transaction):
    reference = _open(ledger, make_link)
    age_transaction(reference, created_hours=1)
    adapters["santimpay"].set_status(reference, Outcome.FAILED, "CANCELLED")

    assert reconciliation.run_sweep().failed == 1
    assert ledger.get_transaction(reference).status == "failed"


def test_link_paid_by_reference_short_circuits_provider(
    reconciliation, ledger, make_link, adapters, age_transaction, session_factory
):
    link_id = make_link()
    reference = ledger.open_transaction(None, link_id).transaction.reference
    with session_factory() as db:
        link = db.get(PaymentLink, link_id)
        link.is_paid = True
        link.paid_reference = reference
        db.commit()
    age_transaction(reference, created_hours=1)

    summary = reconciliation.run_sweep()

    assert summary.success == 1
    assert adapters["santimpay"].polled == []
    assert ledger.get_transaction(reference).status == "success"


class ExplodingAdapter:
    name = "santimpay"

    def fetch_status(self, reference):
        raise RuntimeError("boom")


def test_errors_are_isolated_per_transaction(reconciliation, ledger, make_link, adapters, age_transaction, registry):
    broken = _open(ledger, make_link, gateway="santimpay")
    healthy = _open(ledger, make_link, gateway="chapa")
    age_transaction(broken, created_hours=2)
    age_transaction(healthy, created_hours=1)
    adapters["chapa"].set_status(healthy, Outcome.SUCCESS)
    registry.register(
        GatewayRegistration("santimpay", CredentialModel.PLATFORM, factory=lambda _secret: ExplodingAdapter())
    )

    summary = reconciliation.run_sweep()

    assert (summary.errors, summary.success) == (1, 1)
    tx = ledger.get_transaction(broken)
    assert tx.status == "processing"
    assert tx.extra["reconciliation_errors"][0]["error"] == "boom"
    assert ledger.get_transaction(healthy).status == "success"


def test_cleanup_fails_transactions_outside_window(reconciliation, ledger, make_link, age_transaction):
    stale = _open(ledger, make_link)
    fresh = _open(ledger, make_link)
    age_transaction(stale, created_hours=24 * 8)

    assert reconciliation.cleanup_stale() == 1

    tx = ledger.get_transaction(stale)
    assert tx.status == "failed"
    assert tx.failure_reason == "timeout: exceeded cleanup window"
    assert ledger.get_transaction(fresh).status == "processing"


def test_reconcile_one_is_read_only(reconciliation, ledger, make_link, adapters):
    reference = _open(ledger, make_link)
    adapters["santimpay"].set_status(reference, Outcome.SUCCESS, "COMPLETED")

    diagnostic = reconciliation.reconcile_one(reference)

    assert diagnostic.status == "processing"
    assert diagnostic.outcome is Outcome.SUCCESS
    assert diagnostic.provider_status == "COMPLETED"
    assert ledger.get_transaction(reference).status == "processing"


def test_force_sync(reconciliation, ledger, make_link, adapters):
    reference = _open(ledger, make_link)

    with pytest.raises(StatusUnknown):
        reconciliation.force_sync(reference)

    adapters["santimpay"].set_status(reference, Outcome.SUCCESS)
    assert reconciliation.force_sync(reference).status == "success"

    adapters["santimpay"].set_status(reference, Outcome.FAILED)
    with pytest.raises(ConflictingOutcome):
        reconciliation.force_sync(reference)


def test_reconcile_batch_limits_and_collects_errors(reconciliation, ledger, make_link):
    reference = _open(ledger, make_link)

    report = reconciliation.reconcile_batch([reference, "INT-20260101-000000000000"])

    assert report.total == 2
    assert [item.reference for item in report.successful] == [reference]
    assert report.errors[0].reference == "INT-20260101-000000000000"
    with pytest.raises(InvalidRequest):
        reconciliation.reconcile_batch([])
    with pytest.raises(InvalidRequest):
        reconciliation.reconcile_batch([reference] * 51)


def test_find_stuck_filters(reconciliation, ledger, make_link, age_transaction):
    santim = _open(ledger, make_link, gateway="santimpay")
    chapa = _open(ledger, make_link, gateway="chapa")
    _open(ledger, make_link)
    age_transaction(santim, created_hours=3)
    age_transaction(chapa, created_hours=5)

    page = reconciliation.find_stuck(hours=2)
    assert page.total == 2
    assert [item.reference for item in page.items] == [chapa, santim]
    assert page.by_provider == {"santimpay": 1, "chapa": 1}

    only_chapa = reconciliation.find_stuck(hours=2, provider="chapa")
    assert [item.reference for item in only_chapa.items] == [chapa]
    assert only_chapa.items[0].age_hours == pytest.approx(5, abs=0.2)


def test_initialized_rows_are_listed_and_cleaned_up(reconciliation, session_factory, ledger, make_link, age_transaction):
    reference = _open(ledger, make_link)
    _leave_initialized(session_factory, reference)
    age_transaction(reference, created_hours=48)

    page = reconciliation.find_stuck(hours=2)
    assert [(item.reference, item.status) for item in page.items] == [(reference, "initialized")]

    age_transaction(reference, created_hours=24 * 8)
    assert reconciliation.cleanup_stale() == 1
    assert ledger.get_transaction(reference).status == "failed"


class CountingService:
    def __init__(self):
        self.sweeps = 0
        self.cleanups = 0

    def run_sweep(self):
        self.sweeps += 1

    def cleanup_stale(self):
        self.cleanups += 1
        return 0


def test_scheduler_tick_runs_sweep_and_cleanup_on_its_own_cadence():
    service = CountingService()
    scheduler = ReconciliationScheduler(service, interval_seconds=60, cleanup_interval_seconds=3600)

    async def scenario():
        await scheduler.tick()
        await scheduler.tick()

    asyncio.run(scenario())

    assert (service.sweeps, service.cleanups) == (2, 1)


def test_scheduler_start_stop():
    service = CountingService()
    scheduler = ReconciliationScheduler(service, interval_seconds=3600, cleanup_interval_seconds=3600)

    async def scenario():
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.2)
        await scheduler.stop()
        assert not scheduler.running

    asyncio.run(scenario())

    assert service.sweeps == 1
