"""Word quota accounting.

The pre-check and the usage increment are separate round trips because the
LLM call sits between them and cannot share a transaction with the balance
update. Concurrent requests may both pass :meth:`QuotaLedger.check_and_reserve`;
the conditional UPDATE in :meth:`QuotaLedger.commit` decides which of them is
actually charged. A rejected commit is logged and the already delivered
result is not clawed back.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, NamedTuple

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from humanizer.metrics import (
    quota_commit_failed_total,
    quota_commit_rejected_total,
    quota_reject_total,
)
from humanizer.models import Account, Transformation
from humanizer.plans import get_plan_config, is_plan

logger = logging.getLogger(__name__)


class AccountNotFound(LookupError):
    """No account row exists for the given id."""


class QuotaStatus(str, Enum):
    ALLOWED = "allowed"
    DENIED_PER_REQUEST = "per-request-limit"
    DENIED_BALANCE = "insufficient-balance"


class CommitResult(str, Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"
    FAILED = "failed"


class QuotaDecision(NamedTuple):
    """Outcome of a pre-check together with the snapshot it was based on."""

    status: QuotaStatus
    plan: str
    word_limit: int
    words_used: int
    requested: int
    max_per_request: int | None

    @property
    def allowed(self) -> bool:
        return self.status is QuotaStatus.ALLOWED

    @property
    def words_remaining(self) -> int:
        return max(self.word_limit - self.words_used, 0)


def count_words(value: str) -> int:
    """Number of whitespace-delimited tokens in ``value``."""
    return len(value.split())


_COMMIT_SQL = text(
    "UPDATE users SET words_used = words_used + :n, "
    "updated_at = CURRENT_TIMESTAMP "
    "WHERE id = :uid AND words_used + :n <= word_limit"
)


class QuotaLedger:
    """Gate and account for word consumption against the monthly allowance."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def check_and_reserve(self, account_id: str, requested: int) -> QuotaDecision:
        """Check ``requested`` words against the account's plan and balance.

        Nothing is written. Datastore errors propagate so the caller fails
        closed.
        """
        if requested <= 0:
            raise ValueError("requested word count must be positive")

        with self._session_factory() as db:
            row = db.execute(
                select(Account.plan, Account.word_limit, Account.words_used).where(
                    Account.id == account_id
                )
            ).first()
        if row is None:
            raise AccountNotFound(account_id)

        plan = row.plan if is_plan(row.plan) else "free"
        max_per_request = get_plan_config(plan).max_words_per_request
        word_limit = int(row.word_limit)
        words_used = int(row.words_used or 0)

        if max_per_request is not None and requested > max_per_request:
            status = QuotaStatus.DENIED_PER_REQUEST
        elif word_limit - words_used < requested:
            status = QuotaStatus.DENIED_BALANCE
        else:
            status = QuotaStatus.ALLOWED

        if status is not QuotaStatus.ALLOWED:
            quota_reject_total.labels(reason=status.value).inc()
            logger.info(
                "quota denied",
                extra={
                    "account_id": account_id,
                    "reason": status.value,
                    "requested": requested,
                    "words_used": words_used,
                    "word_limit": word_limit,
                },
            )
        return QuotaDecision(
            status=status,
            plan=plan,
            word_limit=word_limit,
            words_used=words_used,
            requested=requested,
            max_per_request=max_per_request,
        )

    def commit(self, account_id: str, word_count: int) -> CommitResult:
        """Charge ``word_count`` words with a single conditional UPDATE.

        Must be called once per transformation; there is no deduplication.
        """
        try:
            with self._session_factory() as db:
                result = db.execute(_COMMIT_SQL, {"n": word_count, "uid": account_id})
                db.commit()
                affected = result.rowcount
        except SQLAlchemyError:
            quota_commit_failed_total.inc()
            logger.exception(
                "usage commit failed",
                extra={"account_id": account_id, "words": word_count},
            )
            return CommitResult.FAILED

        if affected == 0:
            quota_commit_rejected_total.inc()
            logger.warning(
                "usage commit rejected: limit reached or concurrent overshoot",
                extra={"account_id": account_id, "words": word_count},
            )
            return CommitResult.REJECTED
        return CommitResult.COMMITTED

    def record_transformation(
        self, account_id: str, input_text: str, output_text: str, word_count: int
    ) -> bool:
        """Append to the history log. Failures are logged, never raised."""
        try:
            with self._session_factory() as db:
                db.add(
                    Transformation(
                        user_id=account_id,
                        input_text=input_text,
                        output_text=output_text,
                        words_used=word_count,
                    )
                )
                db.commit()
        except SQLAlchemyError:
            logger.exception(
                "history insert failed", extra={"account_id": account_id}
            )
            return False
        return True


__all__ = [
    "AccountNotFound",
    "QuotaStatus",
    "CommitResult",
    "QuotaDecision",
    "QuotaLedger",
    "count_words",
]
