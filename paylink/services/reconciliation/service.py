"""Repair path for transactions whose callbacks never arrived.

Every repair goes through `LedgerService.apply_outcome`, so the sweep can race
webhooks and manual syncs freely.
"""

from datetime import timedelta

from sqlalchemy import func, select

from paylink.common.config import settings
from paylink.common.db import as_utc, utcnow
from paylink.common.errors import InvalidRequest, PaymentError, StatusUnknown
from paylink.common.logging import logger, reference_ctx
from paylink.common.metrics import reconciliation_results_total, reconciliation_runs_total
from paylink.common.state_machine import OPEN_STATES
from paylink.services.gateways.schemas import Outcome
from paylink.services.ledger.models import PaymentLink, Transaction
from paylink.services.ledger.schemas import OutcomeEvidence, TransactionView
from paylink.services.reconciliation.schemas import (
    BatchItem,
    BatchReport,
    ReconcileDiagnostic,
    StuckPage,
    StuckTransaction,
    SweepSummary,
)

MAX_BATCH_REFERENCES = 50


class ReconciliationService:
    def __init__(
        self,
        session_factory,
        ledger,
        registry,
        service_name: str = "reconciliation",
        grace_seconds: int | None = None,
        timeout_seconds: int | None = None,
        window_seconds: int | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.registry = registry
        self.service_name = service_name
        self.grace = timedelta(seconds=grace_seconds if grace_seconds is not None else settings.reconcile_grace_seconds)
        self.timeout = timedelta(
            seconds=timeout_seconds if timeout_seconds is not None else settings.reconcile_timeout_seconds
        )
        self.window = timedelta(seconds=window_seconds if window_seconds is not None else settings.reconcile_window_seconds)
        self.batch_size = batch_size or settings.reconcile_batch_size

    def _result(self, result: str) -> None:
        reconciliation_results_total.labels(service=self.service_name, result=result).inc()

    # ------------------------------------------------------------------ sweep

    def _candidates(self) -> list[str]:
        now = utcnow()
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Transaction.reference)
                    .where(
                        Transaction.status.in_(OPEN_STATES),
                        Transaction.updated_at < now - self.grace,
                        Transaction.created_at >= now - self.window,
                    )
                    .order_by(
                        func.coalesce(Transaction.last_reconciled_at, Transaction.updated_at),
                        Transaction.created_at,
                    )
                    .limit(self.batch_size)
                ).scalars()
            )

    def run_sweep(self) -> SweepSummary:
        """One pass over unsettled transactions, least recently polled first."""

        reconciliation_runs_total.labels(service=self.service_name, kind="sweep").inc()
        summary = SweepSummary()
        references = self._candidates()
        logger.info("reconciliation sweep started candidates=%s", len(references))
        for reference in references:
            reference_ctx.set(reference)
            try:
                result = self._reconcile_candidate(reference)
            except Exception as exc:
                summary.errors += 1
                self._result("error")
                message = exc.message if isinstance(exc, PaymentError) else str(exc) or type(exc).__name__
                logger.warning("reconciliation error reference=%s error=%s", reference, message)
                self.ledger.note_reconciliation_error(reference, message)
                continue
            if result == "still_processing":
                self.ledger.mark_polled(reference)
            setattr(summary, result, getattr(summary, result) + 1)
            self._result(result)
        reference_ctx.set("")
        logger.info(
            "reconciliation sweep finished success=%s failed=%s still_processing=%s timed_out=%s errors=%s",
            summary.success,
            summary.failed,
            summary.still_processing,
            summary.timed_out,
            summary.errors,
        )
        return summary

    def _reconcile_candidate(self, reference: str) -> str:
        with self.session_factory() as db:
            tx = db.get(Transaction, reference)
            if tx is None or tx.status not in OPEN_STATES:
                return "still_processing"
            link = db.get(PaymentLink, tx.link_id)
            link_paid_by_tx = link is not None and link.is_paid and link.paid_reference == reference
            merchant_id, provider = tx.merchant_id, tx.provider
            created_at = as_utc(tx.created_at)

        if link_paid_by_tx:
            self.ledger.apply_outcome(
                reference,
                Outcome.SUCCESS,
                OutcomeEvidence(source="reconciliation", reason="link_already_paid", raw={"reconciled": True}),
            )
            return "success"

        adapter = self.registry.resolve(merchant_id, provider)
        status = adapter.fetch_status(reference)
        if status.outcome.is_definitive:
            self.ledger.apply_outcome(
                reference,
                status.outcome,
                OutcomeEvidence(
                    source="reconciliation",
                    reason=f"provider_reported_{status.outcome.value}",
                    raw=status.raw,
                    provider_transaction_id=status.provider_transaction_id,
                    paid_at=status.paid_at,
                ),
            )
            return status.outcome.value

        if created_at is not None and utcnow() - created_at > self.timeout:
            hours = (utcnow() - created_at).total_seconds() / 3600
            logger.info("transaction timed out reference=%s age_hours=%.1f", reference, hours)
            self.ledger.apply_outcome(
                reference,
                Outcome.FAILED,
                OutcomeEvidence(
                    source="reconciliation",
                    reason=f"timeout: no definitive provider status after {hours:.0f}h",
                    raw={"reconciled": True, "provider_error": status.error, "provider_status": status.provider_status},
                ),
            )
            return "timed_out"
        return "still_processing"

    def cleanup_stale(self) -> int:
        """Force-fail unsettled transactions older than the sweep window."""

        reconciliation_runs_total.labels(service=self.service_name, kind="cleanup").inc()
        cutoff = utcnow() - self.window
        with self.session_factory() as db:
            references = list(
                db.execute(
                    select(Transaction.reference).where(
                        Transaction.status.in_(OPEN_STATES), Transaction.created_at < cutoff
                    )
                ).scalars()
            )
        cleaned = 0
        for reference in references:
            try:
                self.ledger.apply_outcome(
                    reference,
                    Outcome.FAILED,
                    OutcomeEvidence(source="cleanup", reason="timeout: exceeded cleanup window"),
                )
            except PaymentError as exc:
                logger.warning("cleanup skipped reference=%s error=%s", reference, exc.message)
                continue
            cleaned += 1
        logger.info("stale transaction cleanup finished cleaned=%s", cleaned)
        return cleaned

    # ----------------------------------------------------------------- manual

    def reconcile_one(self, reference: str) -> ReconcileDiagnostic:
        """Poll the provider and report; nothing is written."""

        reconciliation_runs_total.labels(service=self.service_name, kind="manual").inc()
        tx = self.ledger.get_transaction(reference)
        adapter = self.registry.resolve(tx.merchant_id, tx.provider)
        status = adapter.fetch_status(reference)
        return ReconcileDiagnostic(
            reference=reference,
            status=tx.status,
            provider=tx.provider,
            outcome=status.outcome,
            provider_status=status.provider_status,
            provider_raw=status.raw,
            error=status.error,
            transaction=TransactionView.model_validate(tx),
        )

    def force_sync(self, reference: str) -> Transaction:
        """Apply the provider's current definitive status to the ledger."""

        diagnostic = self.reconcile_one(reference)
        if not diagnostic.outcome.is_definitive:
            raise StatusUnknown(
                f"provider status for {reference} is {diagnostic.outcome.value}",
                reference=reference,
                error=diagnostic.error,
            )
        tx = self.ledger.apply_outcome(
            reference,
            diagnostic.outcome,
            OutcomeEvidence(
                source="manual",
                reason=f"force_sync_{diagnostic.outcome.value}",
                raw=diagnostic.provider_raw,
            ),
        )
        logger.info("force sync applied reference=%s status=%s", reference, tx.status)
        return tx

    def reconcile_batch(self, references: list[str]) -> BatchReport:
        if not references:
            raise InvalidRequest("references cannot be empty")
        if len(references) > MAX_BATCH_REFERENCES:
            raise InvalidRequest(f"batch size cannot exceed {MAX_BATCH_REFERENCES} transactions")
        successful, errors = [], []
        for reference in references:
            try:
                diagnostic = self.reconcile_one(reference)
            except PaymentError as exc:
                errors.append(BatchItem(reference=reference, error=exc.message))
                continue
            successful.append(BatchItem(reference=reference, outcome=diagnostic.outcome, error=diagnostic.error))
        return BatchReport(total=len(references), successful=successful, errors=errors)

    def find_stuck(
        self,
        hours: float = 1,
        provider: str | None = None,
        merchant_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> StuckPage:
        now = utcnow()
        filters = [Transaction.status.in_(OPEN_STATES), Transaction.updated_at < now - timedelta(hours=hours)]
        if provider:
            filters.append(Transaction.provider == provider)
        if merchant_id:
            filters.append(Transaction.merchant_id == merchant_id)
        with self.session_factory() as db:
            total = db.execute(select(func.count()).select_from(Transaction).where(*filters)).scalar_one()
            rows = (
                db.execute(select(Transaction).where(*filters).order_by(Transaction.updated_at).offset(offset).limit(limit))
                .scalars()
                .all()
            )
        items = [
            StuckTransaction(
                reference=tx.reference,
                merchant_id=tx.merchant_id,
                link_id=tx.link_id,
                provider=tx.provider,
                status=tx.status,
                amount_cents=tx.amount_cents,
                currency=tx.currency,
                created_at=as_utc(tx.created_at),
                updated_at=as_utc(tx.updated_at),
                age_hours=round((now - as_utc(tx.updated_at)).total_seconds() / 3600, 1),
            )
            for tx in rows
        ]
        by_provider: dict[str, int] = {}
        for item in items:
            by_provider[item.provider] = by_provider.get(item.provider, 0) + 1
        return StuckPage(total=total, items=items, by_provider=by_provider, limit=limit, offset=offset)
