"""Shared fixtures: in-memory SQLite ledger and scripted provider fakes."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("MERCHANT_SECRET_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paylink.common.db import Base, utcnow
from paylink.services.gateways.models import Merchant
from paylink.services.gateways.registry import CredentialModel, GatewayRegistration, GatewayRegistry
from paylink.services.gateways.schemas import CheckoutSession, Outcome, ProviderStatus
from paylink.services.ledger.models import PaymentLink, Transaction
from paylink.services.ledger.service import LedgerService
from paylink.services.reconciliation.service import ReconciliationService
from paylink.services.webhooks.service import WebhookService


class FakeAdapter:
    """Scripted provider: records calls and replays configured answers."""

    def __init__(self, name: str):
        self.name = name
        self.initialize_error: Exception | None = None
        self.statuses: dict[str, ProviderStatus] = {}
        self.initialized: list[str] = []
        self.polled: list[str] = []

    def initialize(self, checkout, urls):
        self.initialized.append(checkout.reference)
        if self.initialize_error is not None:
            raise self.initialize_error
        return CheckoutSession(
            checkout_url=f"https://pay.example/{self.name}/{checkout.reference}",
            raw={"notify_url": str(urls.notify_url)},
        )

    def fetch_status(self, reference):
        self.polled.append(reference)
        return self.statuses.get(reference, ProviderStatus(reference=reference, outcome=Outcome.PENDING))

    def payout(self, request):
        return {}

    def set_status(self, reference: str, outcome: Outcome, word: str | None = None, error: str | None = None):
        self.statuses[reference] = ProviderStatus(
            reference=reference, outcome=outcome, provider_status=word or outcome.value, error=error
        )


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def adapters():
    return {"santimpay": FakeAdapter("santimpay"), "chapa": FakeAdapter("chapa")}


@pytest.fixture
def registry(session_factory, adapters):
    return GatewayRegistry(
        session_factory,
        registrations=[
            GatewayRegistration(name, CredentialModel.PLATFORM, factory=lambda _secret, a=adapter: a)
            for name, adapter in adapters.items()
        ],
        failover={},
    )


@pytest.fixture
def ledger(session_factory, registry):
    return LedgerService(session_factory, registry)


@pytest.fixture
def webhooks(session_factory, ledger):
    return WebhookService(session_factory, ledger)


@pytest.fixture
def reconciliation(session_factory, ledger, registry):
    return ReconciliationService(session_factory, ledger, registry)


@pytest.fixture
def merchant(session_factory):
    with session_factory() as db:
        db.add(Merchant(merchant_id="m-1", name="Abebe Books"))
        db.commit()
    return "m-1"


@pytest.fixture
def make_link(session_factory, merchant):
    counter = {"n": 0}

    def _make(link_type="one_time", amount_cents=10000, gateway="santimpay", **fields):
        counter["n"] += 1
        link_id = fields.pop("link_id", f"pay_{counter['n']:010d}")
        with session_factory() as db:
            db.add(
                PaymentLink(
                    link_id=link_id,
                    merchant_id=merchant,
                    link_type=link_type,
                    title="Order",
                    amount_cents=amount_cents,
                    currency="ETB",
                    gateway=gateway,
                    **fields,
                )
            )
            db.commit()
        return link_id

    return _make


@pytest.fixture
def age_transaction(session_factory):
    """Backdate a transaction so sweep windows apply to it."""

    def _age(reference: str, created_hours: float, updated_hours: float | None = None):
        now = utcnow()
        updated = created_hours if updated_hours is None else updated_hours
        with session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.reference == reference)
                .values(created_at=now - timedelta(hours=created_hours), updated_at=now - timedelta(hours=updated))
            )
            db.commit()

    return _age
