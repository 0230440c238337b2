from __future__ import annotations

from redis.exceptions import RedisError

from humanizer import dependencies
from tests.utils.accounts import make_account
from tests.utils.auth import build_auth_headers


def _transform(client, account_id):
    return client.post(
        "/transform",
        json={"text": "two words", "accountId": account_id},
        headers=build_auth_headers(account_id),
    )


def test_rate_limit_per_user(client):
    account_id = make_account(plan="premium")
    for _ in range(dependencies.settings.rate_limit_requests):
        assert _transform(client, account_id).status_code == 200
    resp = _transform(client, account_id)
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    body = resp.json()
    assert body["code"] == "TOO_MANY_REQUESTS"
    assert body["retryAfter"] == int(resp.headers["Retry-After"])


def test_rate_limit_is_per_account(client):
    busy = make_account(plan="premium")
    idle = make_account()
    for _ in range(dependencies.settings.rate_limit_requests + 1):
        _transform(client, busy)
    assert _transform(client, idle).status_code == 200


def test_rejected_requests_do_not_extend_window(client, mock_redis):
    account_id = make_account(plan="premium")
    for _ in range(dependencies.settings.rate_limit_requests + 3):
        _transform(client, account_id)
    key = f"rate:transform:{account_id}"
    assert len(mock_redis.store[key]) == dependencies.settings.rate_limit_requests


def test_rate_limit_redis_unavailable(client, monkeypatch):
    class _RedisFail:
        def pipeline(self):
            raise RedisError

    monkeypatch.setattr(dependencies, "redis_client", _RedisFail())
    account_id = make_account()
    assert _transform(client, account_id).status_code == 200


def test_rate_limit_disabled_without_redis(client, monkeypatch):
    monkeypatch.setattr(dependencies, "redis_client", None)
    account_id = make_account(plan="premium")
    for _ in range(dependencies.settings.rate_limit_requests + 1):
        assert _transform(client, account_id).status_code == 200
