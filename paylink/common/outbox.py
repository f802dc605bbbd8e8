"""Transactional outbox publishing for ledger notifications.

The ledger writes `OutboxEvent` rows in the same commit as the status change
they describe; `OutboxPublisher` ships them to Kafka afterwards. Helpers take
the outbox model as an argument so they stay independent of the ledger schema.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import func, or_, select, update

from paylink.common.db import as_utc, utcnow
from paylink.common.events import EventEnvelope, KafkaBus
from paylink.common.logging import logger
from paylink.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Claim a batch of pending or stale rows for publishing.

    Rows are locked with `SKIP LOCKED` on PostgreSQL so concurrent publishers
    never claim the same event.
    """

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        db.execute(
            select(table.c.id)
            .where(
                or_(
                    table.c.status == PENDING,
                    (table.c.status == PROCESSING) & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not claim_ids:
        return []
    db.execute(update(table).where(table.c.id.in_(claim_ids)).values(status=PROCESSING, sent_at=now))
    rows = db.execute(select(table.c.id, table.c.topic, table.c.payload).where(table.c.id.in_(claim_ids))).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    table = outbox_model.__table__
    db.execute(
        update(table).where(table.c.id == event_id, table.c.status == PROCESSING).values(status=SENT, sent_at=utcnow())
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table).where(table.c.id == event_id, table.c.status == PROCESSING).values(status=PENDING, sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = (PENDING, PROCESSING)
    pending_count = db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_(pending_statuses))
    ).scalar_one()
    oldest_pending = as_utc(
        db.execute(select(func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))).scalar_one()
    )
    age_seconds = 0.0
    if oldest_pending is not None:
        age_seconds = max(0.0, (utcnow() - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


class OutboxPublisher:
    """Background loop that drains one outbox table into Kafka."""

    def __init__(self, session_factory, outbox_model, service_name: str, bus: KafkaBus | None = None) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.service_name = service_name
        self.kafka = bus or KafkaBus()

    async def publish_pending(self, limit: int = 100) -> int:
        """Publish one claimed batch; returns the number of rows delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=limit)
            update_outbox_backlog_metrics(db, self.outbox_model, self.service_name)
            db.commit()
        delivered = 0
        for row in rows:
            try:
                await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                with self.session_factory() as db:
                    mark_outbox_sent(db, self.outbox_model, row["id"])
                    db.commit()
                delivered += 1
            except Exception as exc:
                logger.exception("outbox publish failed event_id=%s error=%s", row["id"], exc)
                with self.session_factory() as db:
                    requeue_outbox_event(db, self.outbox_model, row["id"])
                    db.commit()
        return delivered

    async def run(self, poll_seconds: float = 0.5) -> None:
        """Continuously publish pending outbox rows."""

        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(poll_seconds)

    async def close(self) -> None:
        await self.kafka.close()
