from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from humanizer import db as db_module
from humanizer.models import Transformation
from humanizer.services.quota import (
    AccountNotFound,
    CommitResult,
    QuotaLedger,
    QuotaStatus,
    count_words,
)
from tests.utils.accounts import load_account, make_account


@pytest.fixture
def ledger():
    return QuotaLedger(db_module.SessionLocal)


def test_count_words_splits_on_any_whitespace():
    assert count_words("one  two\tthree\nfour") == 4
    assert count_words("   ") == 0


def test_free_plan_per_request_ceiling(ledger):
    account_id = make_account()
    decision = ledger.check_and_reserve(account_id, 600)
    assert decision.status is QuotaStatus.DENIED_PER_REQUEST
    assert decision.max_per_request == 250

    decision = ledger.check_and_reserve(account_id, 200)
    assert decision.allowed
    assert ledger.commit(account_id, 200) is CommitResult.COMMITTED
    assert load_account(account_id).words_used == 200


def test_per_request_ceiling_ignores_balance(ledger):
    account_id = make_account(plan="starter", words_used=0)
    decision = ledger.check_and_reserve(account_id, 501)
    assert decision.status is QuotaStatus.DENIED_PER_REQUEST


def test_insufficient_balance(ledger):
    account_id = make_account(words_used=480)
    decision = ledger.check_and_reserve(account_id, 30)
    assert decision.status is QuotaStatus.DENIED_BALANCE
    assert decision.words_remaining == 20


def test_premium_has_no_per_request_ceiling(ledger):
    account_id = make_account(plan="premium")
    decision = ledger.check_and_reserve(account_id, 5000)
    assert decision.allowed
    assert decision.max_per_request is None


def test_check_and_reserve_writes_nothing(ledger):
    account_id = make_account(words_used=10)
    ledger.check_and_reserve(account_id, 100)
    assert load_account(account_id).words_used == 10


def test_check_and_reserve_rejects_non_positive(ledger):
    account_id = make_account()
    with pytest.raises(ValueError):
        ledger.check_and_reserve(account_id, 0)


def test_check_and_reserve_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        ledger.check_and_reserve("user_missing", 10)


def test_commit_rejected_when_over_limit(ledger):
    account_id = make_account(words_used=450)
    assert ledger.commit(account_id, 100) is CommitResult.REJECTED
    assert load_account(account_id).words_used == 450


def test_concurrent_commits_share_the_same_snapshot(ledger):
    account_id = make_account(plan="pro", word_limit=1000, words_used=400)
    first = ledger.check_and_reserve(account_id, 300)
    second = ledger.check_and_reserve(account_id, 300)
    assert first.allowed and second.allowed

    assert ledger.commit(account_id, 300) is CommitResult.COMMITTED
    assert load_account(account_id).words_used == 700
    assert ledger.commit(account_id, 300) is CommitResult.COMMITTED
    assert load_account(account_id).words_used == 1000
    assert ledger.commit(account_id, 300) is CommitResult.REJECTED
    account = load_account(account_id)
    assert account.words_used == 1000
    assert account.words_used <= account.word_limit


class _BrokenSession:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, *args, **kwargs):
        raise OperationalError("UPDATE users", {}, Exception("connection lost"))


def test_commit_reports_failure_on_datastore_error():
    ledger = QuotaLedger(_BrokenSession)
    assert ledger.commit("user_any", 10) is CommitResult.FAILED


def test_parallel_commits_never_exceed_limit(ledger):
    account_id = make_account(words_used=0)
    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: ledger.commit(account_id, 200), range(5)))

    account = load_account(account_id)
    committed = results.count(CommitResult.COMMITTED)
    assert account.words_used == committed * 200
    assert account.words_used <= account.word_limit
    assert committed <= 2


def test_record_transformation_appends_history(ledger):
    account_id = make_account()
    assert ledger.record_transformation(account_id, "in put", "out put", 2)
    with db_module.SessionLocal() as db:
        rows = db.execute(
            select(Transformation).where(Transformation.user_id == account_id)
        ).scalars().all()
    assert [(r.input_text, r.output_text, r.words_used) for r in rows] == [
        ("in put", "out put", 2)
    ]


def test_record_transformation_failure_is_swallowed(ledger):
    # FK violation: no such account
    assert ledger.record_transformation("user_missing", "a", "b", 1) is False
