"""Outbox rows written with terminal transitions reach the bus once."""

import asyncio

from sqlalchemy import select

from paylink.common.outbox import SENT, OutboxPublisher
from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.models import OutboxEvent


class RecordingBus:
    def __init__(self, fail_first: bool = False):
        self.published = []
        self.fail_first = fail_first

    async def publish(self, topic, event):
        if self.fail_first:
            self.fail_first = False
            raise ConnectionError("broker down")
        self.published.append((topic, event))

    async def close(self):
        pass


def test_terminal_transition_is_published(session_factory, ledger, make_link):
    reference = ledger.open_transaction(None, make_link()).transaction.reference
    ledger.apply_outcome(reference, Outcome.SUCCESS)
    bus = RecordingBus()
    publisher = OutboxPublisher(session_factory, OutboxEvent, "test", bus=bus)

    delivered = asyncio.run(publisher.publish_pending())

    assert delivered == 1
    topic, event = bus.published[0]
    assert topic == "transactions.succeeded"
    assert event.aggregate_id == reference
    assert event.payload["amount_cents"] == 10000
    with session_factory() as db:
        assert db.execute(select(OutboxEvent.status)).scalar_one() == SENT
    assert asyncio.run(publisher.publish_pending()) == 0


def test_failed_publish_is_requeued(session_factory, ledger, make_link):
    reference = ledger.open_transaction(None, make_link()).transaction.reference
    ledger.apply_outcome(reference, Outcome.FAILED)
    bus = RecordingBus(fail_first=True)
    publisher = OutboxPublisher(session_factory, OutboxEvent, "test", bus=bus)

    assert asyncio.run(publisher.publish_pending()) == 0
    assert asyncio.run(publisher.publish_pending()) == 1
    assert bus.published[0][0] == "transactions.failed"
