import os
from contextlib import redirect_stderr, redirect_stdout
from io import StringIO
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

# Ensure tests run against SQLite and known secrets before settings load
os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/humanizer_test.db")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_stripe_secret")
os.environ.setdefault("CLERK_WEBHOOK_SECRET", "whsec_dGVzdC1jbGVyay1zZWNyZXQ=")
os.environ.setdefault("STRIPE_PRICE_STARTER_MONTHLY", "price_starter_monthly")
os.environ.setdefault("STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
os.environ.setdefault("STRIPE_PRICE_PREMIUM_MONTHLY", "price_premium_monthly")
os.environ.setdefault("STRIPE_PRICE_PRO_ANNUAL", "price_pro_annual")
os.environ.pop("REDIS_URL", None)

from fastapi.testclient import TestClient  # noqa: E402

from humanizer import dependencies  # noqa: E402
from humanizer.config import Settings  # noqa: E402
from humanizer.db import init_db  # noqa: E402
from humanizer.main import app  # noqa: E402
from tests.utils.fakes import FakeBilling, FakeHumanizer  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def apply_migrations():
    """Apply Alembic migrations before running tests."""
    db_url = os.environ["DATABASE_URL"]
    if db_url.startswith("sqlite:///"):
        stale = Path(db_url.replace("sqlite:///", ""))
        if stale.exists():
            stale.unlink()
    cfg_path = Path(__file__).resolve().parent.parent / "alembic.ini"
    config = Config(str(cfg_path))
    stdout_buf, stderr_buf = StringIO(), StringIO()
    try:
        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            command.upgrade(config, "head")
    except Exception as exc:
        print("Alembic upgrade failed:", exc)
        print("stdout:\n", stdout_buf.getvalue())
        print("stderr:\n", stderr_buf.getvalue())
        raise
    init_db(Settings())


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    """Remove temporary SQLite database after tests finish."""
    yield
    db_url = os.environ.get("DATABASE_URL")
    if db_url and db_url.startswith("sqlite:///"):
        db_path = Path(db_url.replace("sqlite:///", ""))
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(scope="module")
def client(apply_migrations):
    """Yields a TestClient with lifespan events."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def fake_billing():
    fake = FakeBilling(dependencies.settings)
    app.dependency_overrides[dependencies.get_billing] = lambda: fake
    yield fake
    app.dependency_overrides.pop(dependencies.get_billing, None)


@pytest.fixture(autouse=True)
def fake_humanizer():
    fake = FakeHumanizer()
    app.dependency_overrides[dependencies.get_humanizer] = lambda: fake
    yield fake
    app.dependency_overrides.pop(dependencies.get_humanizer, None)


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    class _Pipe:
        def __init__(self, store):
            self.store = store
            self.ops = []

        def zremrangebyscore(self, key, low, high):
            self.ops.append(("zremrangebyscore", key, low, high))
            return self

        def zadd(self, key, mapping):
            self.ops.append(("zadd", key, mapping))
            return self

        def zcard(self, key):
            self.ops.append(("zcard", key))
            return self

        def zrange(self, key, start, end, withscores=False):
            self.ops.append(("zrange", key, start, end))
            return self

        def expire(self, key, ttl):
            self.ops.append(("expire", key, ttl))
            return self

        async def execute(self):
            results = []
            for op in self.ops:
                name, key = op[0], op[1]
                members = self.store.setdefault(key, {})
                if name == "zremrangebyscore":
                    stale = [m for m, s in members.items() if op[2] <= s <= op[3]]
                    for member in stale:
                        del members[member]
                    results.append(len(stale))
                elif name == "zadd":
                    members.update(op[2])
                    results.append(len(op[2]))
                elif name == "zcard":
                    results.append(len(members))
                elif name == "zrange":
                    ordered = sorted(members.items(), key=lambda item: item[1])
                    results.append(ordered[op[2] : op[3] + 1])
                else:
                    results.append(True)
            self.ops.clear()
            return results

    class _Redis:
        def __init__(self):
            self.store = {}

        def pipeline(self):
            return _Pipe(self.store)

        async def zrem(self, key, member):
            return int(self.store.get(key, {}).pop(member, None) is not None)

    fake = _Redis()
    monkeypatch.setattr(dependencies, "redis_client", fake)
    yield fake


