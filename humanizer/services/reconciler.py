"""Subscription state reconciliation.

Billing events arrive at least once and in no particular order. Every handler
reads the persisted row, looks at the event payload and overwrites whole
fields, so replaying an event converges on the same row. Events that refer to
a subscription are matched by subscription id, never by account id alone, so
a late event for a superseded subscription finds nothing to change.

State machine over ``subscription_status``::

    none      --checkout.session.completed-->        active
    active    --invoice.payment_succeeded (cycle)--> active   (usage reset)
    active    --customer.subscription.updated-->     active   (plan change)
    active    --begin_cancellation / portal-->       canceling
    canceling --subscription.updated (reversal)-->   active
    canceling --subscription.deleted (period end)--> none     (downgrade)
    canceling --period end passed, no webhook-->     none     (safety net)
    active    --subscription.deleted (other)-->      canceled (manual review)
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from humanizer.config import Settings
from humanizer.models import Account
from humanizer.plans import (
    BILLING_PERIODS,
    PAID_PLANS,
    get_word_limit,
    plan_for_price,
    price_ids,
)
from humanizer.services.billing import BillingError, field, subscription_period_end
from humanizer.services.quota import AccountNotFound

logger = logging.getLogger(__name__)


class BillingGateway(Protocol):
    def cancel_at_period_end(self, subscription_id: str) -> datetime | None: ...

    def change_price(self, subscription_id: str, price_id: str, plan: str) -> None: ...


class SubscriptionError(ValueError):
    """The account is not in a state that allows the requested change."""

    def __init__(self, message: str, *, needs_checkout: bool = False):
        super().__init__(message)
        self.needs_checkout = needs_checkout


def _ensure_utc(value: datetime | None) -> datetime | None:
    if not value:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ref(value: Any) -> str | None:
    """Stripe ids arrive either as plain strings or as expanded objects."""
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


def _invoice_subscription(invoice: dict) -> str | None:
    sub = _ref(field(invoice, "subscription"))
    if sub is None:
        sub = _ref(field(invoice, "parent", "subscription_details", "subscription"))
    return sub


def _downgrade(account: Account) -> None:
    account.plan = "free"
    account.word_limit = get_word_limit("free")
    account.words_used = 0
    account.billing_period = None
    account.stripe_subscription_id = None
    account.stripe_customer_id = None
    account.subscription_status = "none"
    account.subscription_period_end = None


class SubscriptionReconciler:
    """Apply billing lifecycle changes to account rows."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        billing: BillingGateway,
        cfg: Settings,
    ):
        self._session_factory = session_factory
        self._billing = billing
        self._cfg = cfg

    # -- webhook events -------------------------------------------------

    def handle_event(self, event: dict) -> str:
        """Dispatch a verified billing event; returns a short outcome tag."""
        event_type = event.get("type", "")
        obj = field(event, "data", "object") or {}
        handlers: dict[str, Callable[[dict], str]] = {
            "checkout.session.completed": self.apply_checkout_completed,
            "invoice.payment_succeeded": self.apply_renewal,
            "customer.subscription.updated": self.apply_subscription_updated,
            "customer.subscription.deleted": self.apply_subscription_deleted,
            "invoice.payment_failed": self.note_payment_failed,
        }
        handler = handlers.get(event_type)
        if handler is None:
            return "ignored"
        outcome = handler(obj)
        logger.info(
            "billing event applied",
            extra={"event_id": event.get("id"), "type": event_type, "outcome": outcome},
        )
        return outcome

    def resolve_plan(self, subscription: dict) -> tuple[str | None, str | None]:
        """Plan and billing period of a subscription payload.

        The configured price map is authoritative; subscription metadata is
        the fallback for ad-hoc prices created at checkout.
        """
        price_id = field(subscription, "items", "data", 0, "price", "id")
        mapped = plan_for_price(self._cfg, price_id)
        if mapped:
            return mapped
        plan = field(subscription, "metadata", "plan")
        period = field(subscription, "metadata", "billingPeriod")
        return (
            plan if plan in PAID_PLANS else None,
            period if period in BILLING_PERIODS else None,
        )

    def apply_checkout_completed(self, session: dict) -> str:
        account_id = field(session, "client_reference_id") or field(
            session, "metadata", "userId"
        )
        plan = field(session, "metadata", "plan")
        period = field(session, "metadata", "billingPeriod")
        subscription_id = _ref(field(session, "subscription"))
        customer_id = _ref(field(session, "customer"))

        if not account_id or plan not in PAID_PLANS or not subscription_id:
            logger.warning(
                "checkout event missing account, plan or subscription",
                extra={"account_id": account_id, "plan": plan},
            )
            return "ignored"

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                logger.warning(
                    "checkout completed for unknown account",
                    extra={"account_id": account_id},
                )
                return "ignored"
            # Plan changes on a live subscription arrive as subscription.updated.
            if (
                account.stripe_subscription_id == subscription_id
                and account.subscription_status in ("active", "canceling")
            ):
                return "duplicate"

            account.plan = plan
            account.word_limit = get_word_limit(plan)
            account.words_used = 0
            account.billing_period = period if period in BILLING_PERIODS else None
            account.stripe_customer_id = customer_id
            account.stripe_subscription_id = subscription_id
            account.subscription_status = "active"
            account.subscription_period_end = None
            db.commit()
        logger.info(
            "account upgraded",
            extra={"account_id": account_id, "plan": plan, "billing_period": period},
        )
        return "upgraded"

    def apply_renewal(self, invoice: dict) -> str:
        if field(invoice, "billing_reason") != "subscription_cycle":
            return "ignored"
        subscription_id = _invoice_subscription(invoice)
        if not subscription_id:
            return "ignored"
        with self._session_factory() as db:
            account = db.execute(
                select(Account).where(Account.stripe_subscription_id == subscription_id)
            ).scalar_one_or_none()
            if account is None:
                logger.info(
                    "renewal for unknown or superseded subscription",
                    extra={"subscription_id": subscription_id},
                )
                return "ignored"
            account.words_used = 0
            db.commit()
            return "renewed"

    def apply_subscription_updated(self, subscription: dict) -> str:
        subscription_id = _ref(field(subscription, "id"))
        if not subscription_id:
            return "ignored"
        plan, period = self.resolve_plan(subscription)
        cancel_at_period_end = bool(field(subscription, "cancel_at_period_end"))

        outcome = "unchanged"
        with self._session_factory() as db:
            account = db.execute(
                select(Account).where(Account.stripe_subscription_id == subscription_id)
            ).scalar_one_or_none()
            if account is None:
                return "ignored"

            if plan and plan != account.plan:
                account.plan = plan
                account.word_limit = get_word_limit(plan)
                account.words_used = 0
                if period:
                    account.billing_period = period
                outcome = "plan_changed"

            if cancel_at_period_end and account.subscription_status == "active":
                account.subscription_status = "canceling"
                account.subscription_period_end = subscription_period_end(subscription)
                outcome = "canceling"
            elif not cancel_at_period_end and account.subscription_status == "canceling":
                account.subscription_status = "active"
                account.subscription_period_end = None
                outcome = "reactivated"
            db.commit()
        return outcome

    def apply_subscription_deleted(self, subscription: dict) -> str:
        subscription_id = _ref(field(subscription, "id"))
        if not subscription_id:
            return "ignored"
        with self._session_factory() as db:
            account = db.execute(
                select(Account).where(Account.stripe_subscription_id == subscription_id)
            ).scalar_one_or_none()
            if account is None:
                return "ignored"
            if not field(subscription, "cancel_at_period_end"):
                # Not a scheduled cancellation (e.g. unpaid invoices escalated).
                account.subscription_status = "canceled"
                db.commit()
                logger.warning(
                    "subscription deleted without period-end cancellation; "
                    "plan left unchanged for manual review",
                    extra={
                        "account_id": account.id,
                        "subscription_id": subscription_id,
                        "reason": field(subscription, "cancellation_details", "reason"),
                    },
                )
                return "flagged"
            _downgrade(account)
            db.commit()
            logger.info(
                "account downgraded at period end",
                extra={"account_id": account.id, "subscription_id": subscription_id},
            )
            return "downgraded"

    def note_payment_failed(self, invoice: dict) -> str:
        logger.warning(
            "invoice payment failed",
            extra={
                "subscription_id": _invoice_subscription(invoice),
                "customer_id": _ref(field(invoice, "customer")),
                "attempt_count": field(invoice, "attempt_count"),
            },
        )
        return "logged"

    # -- user-initiated changes ---------------------------------------

    def begin_cancellation(self, account_id: str) -> Account:
        """Schedule the paid subscription to end with the current period.

        Plan, limit and subscription id stay as they are until the period
        actually ends. Calling again while already canceling is a no-op.
        """
        with self._session_factory() as db:
            account = db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        if account.subscription_status == "canceling":
            return account
        if account.subscription_status == "canceled":
            raise SubscriptionError("Subscription already canceled")
        if not account.stripe_subscription_id:
            raise SubscriptionError("No active subscription to cancel")
        if account.plan == "free":
            raise SubscriptionError("Already on free plan")

        subscription_id = account.stripe_subscription_id
        period_end = self._billing.cancel_at_period_end(subscription_id)
        logger.info(
            "subscription set to cancel at period end",
            extra={
                "account_id": account_id,
                "subscription_id": subscription_id,
                "period_end": period_end,
            },
        )

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            if account.stripe_subscription_id == subscription_id:
                account.subscription_status = "canceling"
                account.subscription_period_end = period_end
                db.commit()
        return account

    def change_plan(self, account_id: str, plan: str) -> Account:
        """Move an existing subscription to another paid plan with proration."""
        if plan not in PAID_PLANS:
            raise SubscriptionError("Invalid plan")
        with self._session_factory() as db:
            account = db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        if account.plan == plan:
            raise SubscriptionError(f"You are already on the {plan} plan")
        if not account.stripe_subscription_id:
            raise SubscriptionError(
                "No existing subscription. Please use checkout.", needs_checkout=True
            )

        period = account.billing_period or "monthly"
        price_id = price_ids(self._cfg).get((plan, period))
        if not price_id:
            raise BillingError(
                f"no price configured for {plan}/{period}",
                user_message="Price not configured for plan. Please contact support.",
            )
        subscription_id = account.stripe_subscription_id
        self._billing.change_price(subscription_id, price_id, plan)

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            account.plan = plan
            account.word_limit = get_word_limit(plan)
            account.words_used = 0
            db.commit()
        logger.info(
            "subscription plan changed",
            extra={"account_id": account_id, "plan": plan, "price_id": price_id},
        )
        return account

    # -- safety net ---------------------------------------------------

    def expire_if_due(self, account_id: str, now: datetime | None = None) -> bool:
        """Finish an overdue deferred cancellation whose webhook never came."""
        now = _ensure_utc(now) or datetime.now(timezone.utc)
        stmt = (
            update(Account)
            .where(
                Account.id == account_id,
                Account.subscription_status == "canceling",
                Account.subscription_period_end.is_not(None),
                Account.subscription_period_end < now,
            )
            .values(
                plan="free",
                word_limit=get_word_limit("free"),
                words_used=0,
                billing_period=None,
                stripe_subscription_id=None,
                stripe_customer_id=None,
                subscription_status="none",
                subscription_period_end=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as db:
            result = db.execute(stmt)
            db.commit()
        if result.rowcount:
            logger.info(
                "deferred cancellation completed locally",
                extra={"account_id": account_id},
            )
            return True
        return False

    def due_cancellations(self, now: datetime | None = None) -> list[str]:
        now = _ensure_utc(now) or datetime.now(timezone.utc)
        with self._session_factory() as db:
            rows = db.execute(
                select(Account.id).where(
                    Account.subscription_status == "canceling",
                    Account.subscription_period_end.is_not(None),
                    Account.subscription_period_end < now,
                )
            ).scalars()
            return list(rows)

    def expire_all_due(self, now: datetime | None = None) -> list[str]:
        """Batch variant of :meth:`expire_if_due`; returns expired ids."""
        now = _ensure_utc(now) or datetime.now(timezone.utc)
        return [
            account_id
            for account_id in self.due_cancellations(now)
            if self.expire_if_due(account_id, now)
        ]


__all__ = [
    "BillingGateway",
    "SubscriptionError",
    "SubscriptionReconciler",
]
