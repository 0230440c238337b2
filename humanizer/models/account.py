from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Integer, String

from .base import Base

PLAN_VALUES = ("free", "starter", "pro", "premium")
SUBSCRIPTION_STATUS_VALUES = ("none", "active", "canceling", "canceled")
BILLING_PERIOD_VALUES = ("monthly", "annual")


class Account(Base):
    """Billing and usage record, one per identity-provider user."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=True)
    plan = Column(
        Enum(*PLAN_VALUES, name="plan_type"), nullable=False, default="free"
    )
    word_limit = Column(Integer, nullable=False)
    words_used = Column(Integer, nullable=False, default=0, server_default="0")
    billing_period = Column(
        Enum(*BILLING_PERIOD_VALUES, name="billing_period"), nullable=True
    )
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    subscription_status = Column(
        Enum(*SUBSCRIPTION_STATUS_VALUES, name="subscription_status"),
        nullable=False,
        default="none",
        server_default="none",
    )
    subscription_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


__all__ = ["Account", "PLAN_VALUES", "SUBSCRIPTION_STATUS_VALUES"]
