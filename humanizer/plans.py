"""Plan catalogue and the price id → plan mapping.

``annual_price`` is a monthly-equivalent rate. Annual checkouts charge
``annual_price * 12`` once per year.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from humanizer.config import Settings

PlanType = Literal["free", "starter", "pro", "premium"]
BillingPeriod = Literal["monthly", "annual"]

PAID_PLANS: tuple[str, ...] = ("starter", "pro", "premium")
BILLING_PERIODS: tuple[str, ...] = ("monthly", "annual")


@dataclass(frozen=True)
class PlanConfig:
    name: str
    word_limit: int
    monthly_price: float
    annual_price: float
    # ``None`` means no per-request ceiling.
    max_words_per_request: int | None


PLANS: dict[str, PlanConfig] = {
    "free": PlanConfig(
        name="Free",
        word_limit=500,
        monthly_price=0,
        annual_price=0,
        max_words_per_request=250,
    ),
    "starter": PlanConfig(
        name="Starter",
        word_limit=5000,
        monthly_price=4.99,
        annual_price=3,
        max_words_per_request=500,
    ),
    "pro": PlanConfig(
        name="Pro",
        word_limit=20000,
        monthly_price=14.99,
        annual_price=8,
        max_words_per_request=1500,
    ),
    "premium": PlanConfig(
        name="Premium",
        word_limit=50000,
        monthly_price=38.99,
        annual_price=20,
        max_words_per_request=None,
    ),
}


def is_plan(value: object) -> bool:
    return isinstance(value, str) and value in PLANS


def get_plan_config(plan: str) -> PlanConfig:
    return PLANS[plan]


def get_word_limit(plan: str) -> int:
    return PLANS[plan].word_limit


def get_plan_price(plan: str, period: str) -> float:
    """Amount charged per billing interval, in major currency units."""
    if plan == "free":
        return 0
    cfg = PLANS[plan]
    if period == "monthly":
        return cfg.monthly_price
    return round(cfg.annual_price * 12, 2)


def price_ids(cfg: Settings) -> dict[tuple[str, str], str]:
    """Configured Stripe price ids keyed by ``(plan, period)``."""
    result: dict[tuple[str, str], str] = {}
    for plan in PAID_PLANS:
        for period in BILLING_PERIODS:
            value = getattr(cfg, f"stripe_price_{plan}_{period}")
            if value:
                result[(plan, period)] = value
    return result


def plan_for_price(cfg: Settings, price_id: str | None) -> tuple[str, str] | None:
    """Reverse lookup of :func:`price_ids`; ``None`` for unknown prices."""
    if not price_id:
        return None
    for key, value in price_ids(cfg).items():
        if value == price_id:
            return key
    return None


__all__ = [
    "PlanType",
    "BillingPeriod",
    "PAID_PLANS",
    "BILLING_PERIODS",
    "PlanConfig",
    "PLANS",
    "is_plan",
    "get_plan_config",
    "get_word_limit",
    "get_plan_price",
    "price_ids",
    "plan_for_price",
]
