"""Downgrade accounts whose deferred cancellation is overdue.

Normally the billing provider's ``customer.subscription.deleted`` webhook
finishes a cancellation, and any authenticated request finishes it as well.
This job covers accounts that stay idle after their period ends.
"""
from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone

from humanizer import db as db_module
from humanizer.config import Settings
from humanizer.db import init_db
from humanizer.logger import setup_logging
from humanizer.services.billing import StripeBilling
from humanizer.services.reconciler import SubscriptionReconciler

logger = logging.getLogger("expire_cancellations")


def run(cfg: Settings, *, dry_run: bool = False, now: datetime | None = None) -> list[str]:
    now = now or datetime.now(timezone.utc)
    reconciler = SubscriptionReconciler(
        db_module.SessionLocal, StripeBilling(cfg), cfg
    )
    if dry_run:
        due = reconciler.due_cancellations(now)
        for account_id in due:
            print(f"[dry-run] expire account={account_id}")
        return due
    expired = reconciler.expire_all_due(now)
    logger.info("expired overdue cancellations", extra={"count": len(expired)})
    return expired


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Finish deferred cancellations whose period has ended."
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="List due accounts, change nothing"
    )
    args = parser.parse_args(argv)

    setup_logging()
    cfg = Settings()
    init_db(cfg)
    run(cfg, dry_run=args.dry_run)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
