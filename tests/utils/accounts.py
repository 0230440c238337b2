from __future__ import annotations

import uuid

from humanizer import db as db_module
from humanizer.models import Account
from humanizer.plans import get_word_limit


def new_account_id() -> str:
    return f"user_{uuid.uuid4().hex[:16]}"


def make_account(account_id: str | None = None, **fields) -> str:
    """Insert an account row, free plan unless overridden; returns its id."""
    account_id = account_id or new_account_id()
    plan = fields.pop("plan", "free")
    values = {
        "plan": plan,
        "word_limit": get_word_limit(plan),
        "words_used": 0,
        "subscription_status": "none",
    }
    values.update(fields)
    with db_module.SessionLocal() as db:
        db.add(Account(id=account_id, **values))
        db.commit()
    return account_id


def load_account(account_id: str) -> Account | None:
    with db_module.SessionLocal() as db:
        return db.get(Account, account_id)
