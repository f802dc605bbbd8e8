"""Recompute payment link aggregates from successful transactions.

Repairs links whose `total_collected_cents`/`paid_count` drifted from the
ledger, e.g. after a manual database fix.
"""

import argparse

from sqlalchemy import func, select

from paylink.common.db import SessionLocal
from paylink.common.logging import configure_logging
from paylink.services.gateways.registry import GatewayRegistry
from paylink.services.ledger.models import PaymentLink, Transaction
from paylink.services.ledger.service import LedgerService


def drifted_links(limit: int) -> list[str]:
    """Links whose stored aggregates disagree with their successful transactions."""

    totals = (
        select(
            Transaction.link_id,
            func.sum(Transaction.amount_cents).label("total"),
            func.count(Transaction.reference).label("count"),
        )
        .where(Transaction.status == "success")
        .group_by(Transaction.link_id)
        .subquery()
    )
    with SessionLocal() as db:
        return list(
            db.execute(
                select(PaymentLink.link_id)
                .outerjoin(totals, totals.c.link_id == PaymentLink.link_id)
                .where(
                    (PaymentLink.total_collected_cents != func.coalesce(totals.c.total, 0))
                    | (PaymentLink.paid_count != func.coalesce(totals.c.count, 0))
                )
                .limit(limit)
            ).scalars()
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute payment link totals.")
    parser.add_argument("--link-id", action="append", default=[], help="link to repair (repeatable)")
    parser.add_argument("--limit", type=int, default=1000, help="max drifted links to repair")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    configure_logging()
    link_ids = args.link_id or drifted_links(args.limit)
    print(f"links_to_fix={len(link_ids)}")
    if args.dry_run:
        for link_id in link_ids:
            print(link_id)
        return

    ledger = LedgerService(SessionLocal, GatewayRegistry(SessionLocal))
    for link_id in link_ids:
        link = ledger.recompute_link_totals(link_id)
        print(f"fixed link_id={link_id} total_cents={link.total_collected_cents} paid_count={link.paid_count}")


if __name__ == "__main__":
    main()
