"""Provider callback ingestion with exactly-once receipts."""

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from paylink.common.db import utcnow
from paylink.common.errors import ConflictingOutcome, NotFound
from paylink.common.logging import logger, provider_ctx, reference_ctx
from paylink.common.metrics import duplicate_webhooks_skipped_total, webhooks_received_total
from paylink.common.tracing import get_tracer
from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.schemas import OutcomeEvidence
from paylink.services.webhooks.extractors import WebhookNotice, extract_notice
from paylink.services.webhooks.models import WebhookReceipt

tracer = get_tracer("paylink.webhooks")


class WebhookAck(BaseModel):
    accepted: bool = True
    duplicate: bool = False
    reference: str | None = None
    detail: str = ""


class WebhookService:
    """Records every callback and forwards definitive outcomes to the ledger.

    A receipt is marked processed only once the ledger has accepted (or
    permanently refused) the outcome, so redeliveries of pending or failed
    attempts are still applied later.
    """

    def __init__(self, session_factory, ledger, service_name: str = "webhooks"):
        self.session_factory = session_factory
        self.ledger = ledger
        self.service_name = service_name

    def receive(self, provider: str, payload) -> WebhookAck:
        """Ingest one callback. Only `MalformedPayload` escapes."""

        try:
            notice = extract_notice(provider, payload)
        except Exception:
            webhooks_received_total.labels(service=self.service_name, provider=provider, result="malformed").inc()
            raise
        reference_ctx.set(notice.reference)
        provider_ctx.set(provider)

        with tracer.start_as_current_span("webhook.receive") as span:
            span.set_attribute("paylink.provider", provider)
            span.set_attribute("paylink.reference", notice.reference)
            receipt_id, already_processed = self._record(notice)
            if already_processed:
                duplicate_webhooks_skipped_total.labels(service=self.service_name, provider=provider).inc()
                webhooks_received_total.labels(service=self.service_name, provider=provider, result="duplicate").inc()
                logger.info(
                    "duplicate webhook skipped provider=%s correlation_id=%s", provider, notice.correlation_id
                )
                return WebhookAck(duplicate=True, reference=notice.reference, detail="duplicate")
            return self._process(receipt_id, notice)

    def replay(self, provider: str, correlation_id: str) -> WebhookAck:
        """Re-run a stored, not yet processed receipt."""

        with self.session_factory() as db:
            receipt = self._find(db, provider, correlation_id)
            if receipt is None:
                raise NotFound(f"webhook receipt not found: {provider}/{correlation_id}")
            if receipt.processed:
                return WebhookAck(duplicate=True, reference=receipt.reference, detail="duplicate")
            receipt.attempts += 1
            db.commit()
            receipt_id, payload = receipt.receipt_id, receipt.payload
        notice = extract_notice(provider, payload)
        logger.info("webhook replay provider=%s correlation_id=%s", provider, correlation_id)
        return self._process(receipt_id, notice)

    @staticmethod
    def _find(db, provider: str, correlation_id: str) -> WebhookReceipt | None:
        return db.execute(
            select(WebhookReceipt).where(
                WebhookReceipt.provider == provider,
                WebhookReceipt.correlation_id == correlation_id,
            )
        ).scalar_one_or_none()

    def _record(self, notice: WebhookNotice) -> tuple[str, bool]:
        """Insert or refresh the receipt; returns `(receipt_id, processed)`."""

        with self.session_factory() as db:
            receipt = self._find(db, notice.provider, notice.correlation_id)
            if receipt is not None and receipt.processed:
                return receipt.receipt_id, True
            if receipt is None:
                receipt = WebhookReceipt(
                    provider=notice.provider,
                    correlation_id=notice.correlation_id,
                    reference=notice.reference,
                    payload=notice.raw,
                    status=notice.status,
                    attempts=1,
                )
                db.add(receipt)
                try:
                    db.commit()
                    return receipt.receipt_id, False
                except IntegrityError:
                    # Concurrent delivery inserted first.
                    db.rollback()
                    receipt = self._find(db, notice.provider, notice.correlation_id)
                    if receipt.processed:
                        return receipt.receipt_id, True
            receipt.payload = notice.raw
            receipt.status = notice.status
            receipt.reference = notice.reference
            receipt.attempts += 1
            db.commit()
            return receipt.receipt_id, False

    def _finish(self, receipt_id: str, processed: bool, error: str = "") -> None:
        values = {"error": error}
        if processed:
            values.update(processed=True, processed_at=utcnow())
        with self.session_factory() as db:
            db.execute(
                update(WebhookReceipt)
                .where(WebhookReceipt.receipt_id == receipt_id, WebhookReceipt.processed.is_(False))
                .values(**values)
            )
            db.commit()

    def _process(self, receipt_id: str, notice: WebhookNotice) -> WebhookAck:
        provider = notice.provider
        if not notice.outcome.is_definitive:
            self._finish(receipt_id, processed=False, error="")
            webhooks_received_total.labels(service=self.service_name, provider=provider, result="pending").inc()
            logger.info(
                "non-terminal webhook recorded provider=%s reference=%s status=%s",
                provider,
                notice.reference,
                notice.status,
            )
            return WebhookAck(reference=notice.reference, detail=notice.outcome.value)

        evidence = OutcomeEvidence(
            source="webhook",
            reason=notice.message or f"webhook_{notice.outcome.value}",
            raw=notice.raw,
            provider_transaction_id=notice.provider_transaction_id,
            paid_at=notice.occurred_at if notice.outcome is Outcome.SUCCESS else None,
        )
        try:
            tx = self.ledger.get_transaction(notice.reference)
            if tx.provider != provider:
                self._finish(receipt_id, processed=True, error=f"provider mismatch: transaction uses {tx.provider}")
                webhooks_received_total.labels(service=self.service_name, provider=provider, result="ignored").inc()
                logger.warning(
                    "webhook provider mismatch provider=%s reference=%s expected=%s",
                    provider,
                    notice.reference,
                    tx.provider,
                )
                return WebhookAck(reference=notice.reference, detail="provider_mismatch")
            self.ledger.apply_outcome(notice.reference, notice.outcome, evidence)
        except NotFound as exc:
            self._finish(receipt_id, processed=True, error=exc.message)
            webhooks_received_total.labels(service=self.service_name, provider=provider, result="not_found").inc()
            logger.warning("webhook for unknown transaction provider=%s reference=%s", provider, notice.reference)
            return WebhookAck(reference=notice.reference, detail="not_found")
        except ConflictingOutcome as exc:
            self._finish(receipt_id, processed=True, error=exc.message)
            webhooks_received_total.labels(service=self.service_name, provider=provider, result="conflict").inc()
            return WebhookAck(reference=notice.reference, detail="conflict")
        except Exception as exc:
            self._finish(receipt_id, processed=False, error=str(exc) or type(exc).__name__)
            webhooks_received_total.labels(service=self.service_name, provider=provider, result="error").inc()
            logger.exception("webhook processing failed provider=%s reference=%s", provider, notice.reference)
            return WebhookAck(reference=notice.reference, detail="deferred")

        self._finish(receipt_id, processed=True)
        webhooks_received_total.labels(service=self.service_name, provider=provider, result="applied").inc()
        return WebhookAck(reference=notice.reference, detail=notice.outcome.value)
