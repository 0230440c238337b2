from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from humanizer import db as db_module
from humanizer import dependencies
from humanizer.models import Transformation
from humanizer.services.llm import HumanizeError
from humanizer.services.quota import CommitResult, QuotaLedger
from tests.utils.accounts import load_account, make_account
from tests.utils.auth import build_auth_headers


def _post(client, account_id, text, *, as_user=None):
    return client.post(
        "/transform",
        json={"text": text, "accountId": account_id},
        headers=build_auth_headers(as_user or account_id),
    )


def test_transform_success(client, fake_humanizer):
    account_id = make_account()
    resp = _post(client, account_id, "the quick brown fox")
    assert resp.status_code == 200
    assert resp.json() == {
        "humanizedText": "rethe requick rebrown refox",
        "wordsUsed": 4,
        "wordsRemaining": 496,
    }
    assert fake_humanizer.calls == ["the quick brown fox"]
    assert load_account(account_id).words_used == 4
    with db_module.SessionLocal() as db:
        history = db.execute(
            select(Transformation).where(Transformation.user_id == account_id)
        ).scalars().all()
    assert len(history) == 1
    assert history[0].words_used == 4


def test_transform_requires_token(client):
    account_id = make_account()
    resp = client.post("/transform", json={"text": "hi", "accountId": account_id})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Unauthorized"


def test_transform_rejects_bad_token(client):
    account_id = make_account()
    resp = client.post(
        "/transform",
        json={"text": "hi", "accountId": account_id},
        headers=build_auth_headers(account_id, secret="wrong-secret"),
    )
    assert resp.status_code == 401


def test_transform_rejects_expired_token(client):
    account_id = make_account()
    resp = client.post(
        "/transform",
        json={"text": "hi", "accountId": account_id},
        headers=build_auth_headers(account_id, expires_in=-60),
    )
    assert resp.status_code == 401


def test_transform_identity_mismatch(client, fake_humanizer):
    account_id = make_account()
    other = make_account()
    resp = _post(client, account_id, "hello there", as_user=other)
    assert resp.status_code == 401
    assert fake_humanizer.calls == []


def test_transform_invalid_json(client):
    account_id = make_account()
    resp = client.post(
        "/transform",
        content=b"{not json",
        headers={
            **build_auth_headers(account_id),
            "Content-Type": "application/json",
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON in request body"


def test_transform_missing_text(client):
    account_id = make_account()
    resp = client.post(
        "/transform",
        json={"accountId": account_id},
        headers=build_auth_headers(account_id),
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "BAD_REQUEST"


def test_transform_whitespace_only(client):
    account_id = make_account()
    resp = _post(client, account_id, "   \n ")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Text is required"


def test_transform_character_cap(client):
    account_id = make_account(plan="premium")
    resp = _post(client, account_id, "a" * (dependencies.settings.max_text_chars + 1))
    assert resp.status_code == 400


def test_transform_per_request_limit(client, fake_humanizer):
    account_id = make_account()
    resp = _post(client, account_id, " ".join(["word"] * 600))
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "PER_REQUEST_LIMIT"
    assert "maximum of 250 words per request" in body["error"]
    assert "600 words" in body["error"]
    assert fake_humanizer.calls == []
    assert load_account(account_id).words_used == 0


def test_transform_insufficient_balance(client, fake_humanizer):
    account_id = make_account(words_used=480)
    resp = _post(client, account_id, " ".join(["word"] * 30))
    assert resp.status_code == 402
    assert resp.json()["error"] == "Not enough words. You have 20 words remaining."
    assert fake_humanizer.calls == []


def test_transform_unknown_account(client):
    resp = _post(client, "user_never_initialized", "hello there")
    assert resp.status_code == 404


def test_transform_llm_failure_does_not_charge(client, fake_humanizer):
    account_id = make_account()
    fake_humanizer.error = HumanizeError("overloaded")
    resp = _post(client, account_id, "some words here")
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to humanize text"
    assert load_account(account_id).words_used == 0


def test_transform_quality_gate(client, fake_humanizer, monkeypatch):
    account_id = make_account()
    monkeypatch.setattr(dependencies.settings, "quality_gate_enabled", True)
    fake_humanizer.output = "Some words here"
    resp = _post(client, account_id, "some words here")
    assert resp.status_code == 500
    assert load_account(account_id).words_used == 0


def test_transform_applies_overdue_cancellation_first(client):
    account_id = make_account(
        plan="pro",
        words_used=1000,
        stripe_subscription_id="sub_transform_overdue",
        subscription_status="canceling",
        subscription_period_end=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    resp = _post(client, account_id, " ".join(["word"] * 300))
    assert resp.status_code == 400
    assert resp.json()["code"] == "PER_REQUEST_LIMIT"
    account = load_account(account_id)
    assert (account.plan, account.subscription_status) == ("free", "none")


def test_transform_rejected_commit_still_returns_text(
    client, fake_humanizer, monkeypatch
):
    account_id = make_account()
    monkeypatch.setattr(
        QuotaLedger, "commit", lambda self, account_id, words: CommitResult.REJECTED
    )
    resp = _post(client, account_id, "the quick brown fox")
    assert resp.status_code == 200
    body = resp.json()
    assert body["humanizedText"] == "rethe requick rebrown refox"
    assert body["wordsUsed"] == 4
    assert body["wordsRemaining"] == 500
    assert load_account(account_id).words_used == 0


def test_transform_failed_commit_still_returns_text(
    client, fake_humanizer, monkeypatch
):
    account_id = make_account()
    monkeypatch.setattr(
        QuotaLedger, "commit", lambda self, account_id, words: CommitResult.FAILED
    )
    resp = _post(client, account_id, "the quick brown fox")
    assert resp.status_code == 200
    assert resp.json()["wordsRemaining"] == 500
    assert fake_humanizer.calls == ["the quick brown fox"]


def test_transform_precheck_datastore_error(client, fake_humanizer, monkeypatch):
    account_id = make_account()

    def _fail(self, account_id, requested):
        raise OperationalError("SELECT users", {}, Exception("connection lost"))

    monkeypatch.setattr(QuotaLedger, "check_and_reserve", _fail)
    resp = _post(client, account_id, "the quick brown fox")
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to fetch user data"
    assert fake_humanizer.calls == []
