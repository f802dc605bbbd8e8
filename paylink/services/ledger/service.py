"""Transaction ledger.

Owns transaction creation and every status write. `apply_outcome` is the only
path into a terminal state; webhook ingestion, the reconciliation sweep and
operator repairs all converge on it.
"""

from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from paylink.common.config import settings
from paylink.common.db import as_utc, utcnow
from paylink.common.errors import (
    ConflictingOutcome,
    InvalidRequest,
    LinkUnavailable,
    NotFound,
    PaymentError,
    ProviderRejected,
)
from paylink.common.events import TRANSACTION_FAILED, TRANSACTION_SUCCEEDED, EventEnvelope
from paylink.common.logging import logger, provider_ctx, reference_ctx, trace_id_ctx
from paylink.common.metrics import (
    outcome_conflicts_total,
    transaction_e2e_seconds,
    transaction_terminal_total,
    transactions_opened_total,
)
from paylink.common.state_machine import (
    FAILED,
    INITIALIZED,
    OPEN_STATES,
    PROCESSING,
    SUCCESS,
    is_terminal,
    validate_transition,
)
from paylink.services.gateways.schemas import CheckoutSession, Outcome, ProviderCheckout, ReturnUrls
from paylink.services.ledger.models import (
    OutboxEvent,
    OutcomeConflict,
    PaymentLink,
    Transaction,
    TransactionEvent,
)
from paylink.services.ledger.schemas import (
    CheckoutResult,
    OpenTransactionRequest,
    OutcomeEvidence,
    TransactionView,
)


def generate_reference() -> str:
    """Provider-facing correlation key, e.g. `INT-20261019-3f9a0c1b2d4e`."""

    return f"INT-{utcnow():%Y%m%d}-{uuid4().hex[:12]}"


class LedgerService:
    """Creates transactions and applies every state transition atomically."""

    def __init__(self, session_factory, registry, service_name: str = "ledger", max_transition_attempts: int = 3):
        self.session_factory = session_factory
        self.registry = registry
        self.service_name = service_name
        self.max_transition_attempts = max_transition_attempts

    # ------------------------------------------------------------------ reads

    def get_transaction(self, reference: str) -> Transaction:
        with self.session_factory() as db:
            tx = db.get(Transaction, reference)
            if tx is None:
                raise NotFound(f"Transaction not found: {reference}")
            return tx

    def _load_open_link(self, db, merchant_id: str | None, link_id: str) -> PaymentLink:
        link = db.get(PaymentLink, link_id)
        if link is None or (merchant_id is not None and link.merchant_id != merchant_id):
            raise NotFound("Payment link not found")
        if link.archived_at is not None:
            raise LinkUnavailable("Payment link archived")
        if link.status != "active":
            raise LinkUnavailable(f"Payment link not available ({link.status})")
        expires_at = as_utc(link.expires_at)
        if expires_at is not None and expires_at < utcnow():
            raise LinkUnavailable("Payment link expired")
        if link.link_type == "one_time" and link.is_paid:
            raise LinkUnavailable("This payment link has already been used")
        return link

    @staticmethod
    def _return_urls(request: OpenTransactionRequest, provider: str) -> ReturnUrls:
        try:
            return ReturnUrls(
                success_url=request.success_url or settings.default_success_url,
                cancel_url=request.cancel_url or settings.default_cancel_url,
                failure_url=request.failure_url or settings.default_failure_url,
                notify_url=request.notify_url or f"{settings.webhook_base_url.rstrip('/')}/webhooks/{provider}",
            )
        except ValidationError as exc:
            raise InvalidRequest(f"invalid return URL: {exc.errors()[0]['loc'][0]}") from exc

    # ------------------------------------------------------------------- open

    def open_transaction(
        self,
        merchant_id: str | None,
        link_id: str,
        request: OpenTransactionRequest | None = None,
    ) -> CheckoutResult:
        """Open a checkout against a link.

        `merchant_id=None` is the anonymous customer flow. Link, amount, provider
        and URL validation all happen before anything is persisted. Once the
        transaction row exists the call always ends in `processing` (with a
        checkout URL) or `failed` (with a reason); adapter errors never escape.
        """

        request = request or OpenTransactionRequest()
        with self.session_factory() as db:
            link = self._load_open_link(db, merchant_id, link_id)
            if request.idempotency_key:
                existing = db.execute(
                    select(Transaction).where(
                        Transaction.link_id == link_id,
                        Transaction.idempotency_key == request.idempotency_key,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    logger.info("checkout idempotent replay reference=%s", existing.reference)
                    return self._checkout_result(existing)
            owner_id = link.merchant_id
            preferred = link.gateway
            currency = link.currency
            amount_cents = request.amount_cents or link.amount_cents
        if amount_cents <= 0:
            raise InvalidRequest("Invalid amount")

        adapter = self.registry.resolve_for_checkout(owner_id, preferred)
        urls = self._return_urls(request, adapter.name)

        reference = generate_reference()
        reference_ctx.set(reference)
        provider_ctx.set(adapter.name)
        with self.session_factory() as db:
            tx = Transaction(
                reference=reference,
                merchant_id=owner_id,
                link_id=link_id,
                amount_cents=amount_cents,
                currency=currency,
                provider=adapter.name,
                status=INITIALIZED,
                state_version=0,
                customer_name=request.customer_name,
                customer_phone=request.customer_phone,
                customer_email=request.customer_email,
                extra=dict(request.metadata),
                idempotency_key=request.idempotency_key,
                provider_response={},
            )
            db.add(tx)
            db.add(
                TransactionEvent(
                    reference=reference, from_status=None, to_status=INITIALIZED, source="checkout", reason="checkout_opened"
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if not request.idempotency_key:
                    raise
                winner = db.execute(
                    select(Transaction).where(
                        Transaction.link_id == link_id,
                        Transaction.idempotency_key == request.idempotency_key,
                    )
                ).scalar_one()
                return self._checkout_result(winner)

        checkout = ProviderCheckout(
            reference=reference,
            link_id=link_id,
            amount_cents=amount_cents,
            currency=currency,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_email=request.customer_email,
        )
        try:
            session = adapter.initialize(checkout, urls)
        except Exception as exc:
            reason = exc.message if isinstance(exc, PaymentError) else str(exc) or type(exc).__name__
            raw = exc.raw if isinstance(exc, ProviderRejected) and isinstance(exc.raw, dict) else {}
            logger.warning("checkout initialization failed reference=%s error=%s", reference, reason)
            transactions_opened_total.labels(service=self.service_name, provider=adapter.name, result="failed").inc()
            evidence = OutcomeEvidence(source="checkout", reason=f"initialization_failed: {reason}", raw=raw)
            try:
                tx = self.apply_outcome(reference, Outcome.FAILED, evidence)
            except ConflictingOutcome:
                # A callback already settled it; report what the ledger holds.
                tx = self.get_transaction(reference)
            return CheckoutResult(checkout_url=None, transaction=TransactionView.model_validate(tx), error=reason)

        tx = self._mark_processing(reference, session)
        transactions_opened_total.labels(service=self.service_name, provider=adapter.name, result="processing").inc()
        logger.info("checkout opened reference=%s provider=%s", reference, adapter.name)
        return CheckoutResult(checkout_url=session.checkout_url, transaction=TransactionView.model_validate(tx))

    def _checkout_result(self, tx: Transaction) -> CheckoutResult:
        return CheckoutResult(
            checkout_url=tx.checkout_url,
            transaction=TransactionView.model_validate(tx),
            error=tx.failure_reason if tx.status == FAILED else None,
        )

    def _mark_processing(self, reference: str, session: CheckoutSession) -> Transaction:
        """Move `initialized -> processing` unless a callback got there first."""

        with self.session_factory() as db:
            tx = db.get(Transaction, reference)
            if tx.status == INITIALIZED:
                result = db.execute(
                    update(Transaction)
                    .where(
                        Transaction.reference == reference,
                        Transaction.status == INITIALIZED,
                        Transaction.state_version == tx.state_version,
                    )
                    .values(
                        status=PROCESSING,
                        state_version=tx.state_version + 1,
                        checkout_url=session.checkout_url,
                        provider_response=session.raw,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    db.add(
                        TransactionEvent(
                            reference=reference,
                            from_status=INITIALIZED,
                            to_status=PROCESSING,
                            source="checkout",
                            reason="provider_accepted",
                        )
                    )
            db.execute(
                update(Transaction)
                .where(Transaction.reference == reference, Transaction.checkout_url.is_(None))
                .values(checkout_url=session.checkout_url)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            db.refresh(tx)
            return tx

    # ------------------------------------------------------- terminal outcome

    def apply_outcome(self, reference: str, outcome: Outcome | str, evidence: OutcomeEvidence | None = None) -> Transaction:
        """Apply a definitive provider outcome exactly once.

        Same terminal state again is a no-op. A different terminal state is
        persisted as an `OutcomeConflict` and raised as `ConflictingOutcome`;
        the stored status is never overwritten.
        """

        outcome = Outcome(outcome)
        if not outcome.is_definitive:
            raise InvalidRequest(f"cannot apply non-terminal outcome {outcome.value}")
        evidence = evidence or OutcomeEvidence()
        target = outcome.value
        reference_ctx.set(reference)

        for attempt in range(1, self.max_transition_attempts + 1):
            with self.session_factory() as db:
                tx = db.get(Transaction, reference)
                if tx is None:
                    raise NotFound(f"Transaction not found: {reference}")
                if is_terminal(tx.status):
                    if tx.status == target:
                        logger.info("outcome already applied reference=%s status=%s source=%s", reference, target, evidence.source)
                        return tx
                    self._record_conflict(db, tx, target, evidence)
                    db.commit()
                    raise ConflictingOutcome(
                        f"transaction {reference} is {tx.status}; {evidence.source} claimed {target}",
                        reference=reference,
                        current=tx.status,
                        claimed=target,
                    )
                if self._transition(db, tx, target, evidence):
                    if target == SUCCESS:
                        self._settle_link(db, tx)
                    self._enqueue_notification(db, tx, target, evidence)
                    db.commit()
                    db.refresh(tx)
                    self._observe_terminal(tx, evidence)
                    return tx
                db.rollback()
            logger.info("transition race lost reference=%s attempt=%s", reference, attempt)
        raise RuntimeError(f"could not apply {target} to {reference} after {self.max_transition_attempts} attempts")

    def _transition(self, db, tx: Transaction, new_status: str, evidence: OutcomeEvidence) -> bool:
        """Conditional status write guarded by `(reference, status, state_version)`."""

        validate_transition(tx.status, new_status)
        from_status = tx.status
        current_version = tx.state_version
        now = utcnow()
        values = {
            "status": new_status,
            "state_version": current_version + 1,
            "updated_at": now,
        }
        if evidence.raw:
            values["provider_response"] = evidence.raw
        if evidence.provider_transaction_id:
            values["provider_transaction_id"] = evidence.provider_transaction_id
        if new_status == SUCCESS:
            values["paid_at"] = evidence.paid_at or now
        if new_status == FAILED:
            values["failure_reason"] = evidence.reason or f"{evidence.source}_reported_failure"

        result = db.execute(
            update(Transaction)
            .where(
                Transaction.reference == tx.reference,
                Transaction.status == from_status,
                Transaction.state_version == current_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        db.add(
            TransactionEvent(
                reference=tx.reference,
                from_status=from_status,
                to_status=new_status,
                source=evidence.source,
                reason=evidence.reason or f"{evidence.source}_{new_status}",
            )
        )
        return True

    def _settle_link(self, db, tx: Transaction) -> None:
        """Fold one successful transaction into its link's aggregates."""

        now = utcnow()
        db.execute(
            update(PaymentLink)
            .where(PaymentLink.link_id == tx.link_id)
            .values(
                total_collected_cents=PaymentLink.total_collected_cents + tx.amount_cents,
                paid_count=PaymentLink.paid_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(PaymentLink)
            .where(
                PaymentLink.link_id == tx.link_id,
                PaymentLink.link_type == "one_time",
                PaymentLink.is_paid.is_(False),
            )
            .values(status="expired", is_paid=True, paid_at=now, paid_reference=tx.reference)
            .execution_options(synchronize_session=False)
        )

    def _record_conflict(self, db, tx: Transaction, claimed: str, evidence: OutcomeEvidence) -> None:
        db.add(
            OutcomeConflict(
                reference=tx.reference,
                current_status=tx.status,
                claimed_status=claimed,
                source=evidence.source,
                evidence=evidence.model_dump(mode="json"),
            )
        )
        outcome_conflicts_total.labels(service=self.service_name, source=evidence.source).inc()
        logger.error(
            "outcome conflict flagged for review reference=%s current=%s claimed=%s source=%s",
            tx.reference,
            tx.status,
            claimed,
            evidence.source,
        )

    def _enqueue_notification(self, db, tx: Transaction, status: str, evidence: OutcomeEvidence) -> None:
        topic = TRANSACTION_SUCCEEDED if status == SUCCESS else TRANSACTION_FAILED
        db.add(
            OutboxEvent(
                aggregate_type="transaction",
                aggregate_id=tx.reference,
                event_type=topic,
                topic=topic,
                payload=EventEnvelope(
                    event_type=topic,
                    aggregate_id=tx.reference,
                    trace_id=trace_id_ctx.get(),
                    payload={
                        "merchant_id": tx.merchant_id,
                        "link_id": tx.link_id,
                        "amount_cents": tx.amount_cents,
                        "currency": tx.currency,
                        "provider": tx.provider,
                        "status": status,
                        "source": evidence.source,
                    },
                ).model_dump(),
            )
        )

    def _observe_terminal(self, tx: Transaction, evidence: OutcomeEvidence) -> None:
        transaction_terminal_total.labels(
            service=self.service_name, provider=tx.provider, status=tx.status, source=evidence.source
        ).inc()
        created_at = as_utc(tx.created_at)
        if created_at is not None:
            elapsed = max(0.0, (utcnow() - created_at).total_seconds())
            transaction_e2e_seconds.labels(service=self.service_name, terminal_state=tx.status).observe(elapsed)
        logger.info("transaction %s reference=%s source=%s", tx.status, tx.reference, evidence.source)

    # ------------------------------------------------------------ bookkeeping

    def mark_polled(self, reference: str) -> None:
        """Stamp an inconclusive sweep poll so the next sweep starts elsewhere.

        Only the poll timestamp moves. Status, version and `updated_at` are left
        alone, so this never competes with `apply_outcome`.
        """

        with self.session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.reference == reference, Transaction.status.in_(OPEN_STATES))
                .values(last_reconciled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def note_reconciliation_error(self, reference: str, error: str) -> None:
        """Append a repair failure to the transaction metadata; status is untouched."""

        with self.session_factory() as db:
            tx = db.get(Transaction, reference)
            if tx is None:
                return
            extra = dict(tx.extra or {})
            errors = list(extra.get("reconciliation_errors", []))
            errors.append({"timestamp": utcnow().isoformat(), "error": error})
            extra["reconciliation_errors"] = errors[-20:]
            tx.extra = extra
            tx.last_reconciled_at = utcnow()
            db.commit()

    def recompute_link_totals(self, link_id: str) -> PaymentLink:
        """Re-derive a link's aggregates from its successful transactions."""

        with self.session_factory() as db:
            link = db.get(PaymentLink, link_id, with_for_update=True)
            if link is None:
                raise NotFound("Payment link not found")
            total, count = db.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0), func.count(Transaction.reference)).where(
                    Transaction.link_id == link_id, Transaction.status == SUCCESS
                )
            ).one()
            link.total_collected_cents = int(total)
            link.paid_count = int(count)
            if link.link_type == "one_time" and count and not link.is_paid:
                first = db.execute(
                    select(Transaction)
                    .where(Transaction.link_id == link_id, Transaction.status == SUCCESS)
                    .order_by(Transaction.paid_at, Transaction.created_at)
                    .limit(1)
                ).scalar_one()
                link.is_paid = True
                link.status = "expired"
                link.paid_at = first.paid_at or first.created_at
                link.paid_reference = first.reference
            db.commit()
            logger.info("link totals recomputed link_id=%s total_cents=%s count=%s", link_id, total, count)
            return link
