"""Process entrypoint: wires settings, services and background loops into the app."""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from paylink.common.config import settings
from paylink.common.db import SessionLocal
from paylink.common.logging import configure_logging
from paylink.common.outbox import OutboxPublisher
from paylink.common.startup import log_startup_config
from paylink.common.tracing import instrument_app, setup_tracing
from paylink.services.api.app import TokenBucket, create_app
from paylink.services.gateways.registry import GatewayRegistry
from paylink.services.ledger.models import OutboxEvent
from paylink.services.ledger.service import LedgerService
from paylink.services.reconciliation.scheduler import ReconciliationScheduler
from paylink.services.reconciliation.service import ReconciliationService
from paylink.services.webhooks.service import WebhookService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
        "santimpay_merchant_id",
        "santimpay_private_key",
        "santimpay_testbed",
        "merchant_secret_encryption_key",
        "gateway_failover",
        "reconcile_interval_seconds",
        "reconcile_grace_seconds",
        "reconcile_timeout_seconds",
        "rate_limit_per_minute",
    ],
)

registry = GatewayRegistry(SessionLocal)
ledger = LedgerService(SessionLocal, registry)
webhooks = WebhookService(SessionLocal, ledger)
reconciliation = ReconciliationService(SessionLocal, ledger, registry)
scheduler = ReconciliationScheduler(reconciliation)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, settings.service_name)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the reconciliation scheduler and outbox publisher with the app lifecycle."""

    scheduler.start()
    publisher_task = asyncio.create_task(publisher.run())
    yield
    publisher_task.cancel()
    await scheduler.stop()
    await publisher.close()


app = create_app(
    SessionLocal,
    ledger,
    webhooks,
    reconciliation,
    rate_limiter=TokenBucket(rdb),
    lifespan=lifespan,
)
instrument_app(app)
