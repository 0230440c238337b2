"""Stripe integration: checkout, billing portal, subscriptions, webhooks."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import stripe

from humanizer.config import Settings
from humanizer.plans import get_plan_config, get_plan_price, price_ids

logger = logging.getLogger(__name__)


class BillingError(RuntimeError):
    """The billing provider rejected a request or could not be reached."""

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message or "Billing provider error"


class InvalidSignature(ValueError):
    """Webhook payload failed signature verification."""


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None


@dataclass(frozen=True)
class CheckoutStatus:
    account_id: str | None
    plan: str | None
    billing_period: str | None
    payment_status: str | None


def field(obj: Any, *path: Any) -> Any:
    """Walk ``path`` through nested Stripe objects/dicts; ``None`` if absent."""
    current = obj
    for key in path:
        if current is None:
            return None
        try:
            current = current[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return None
    return current


def subscription_period_end(subscription: Any) -> datetime | None:
    """Current period end of a subscription payload.

    Newer API versions moved the field from the subscription onto its items.
    """
    raw = field(subscription, "current_period_end")
    if raw is None:
        raw = field(subscription, "items", "data", 0, "current_period_end")
    if raw is None:
        return None
    return datetime.fromtimestamp(int(raw), timezone.utc)


def _user_message(exc: stripe.StripeError) -> str:
    if isinstance(exc, stripe.InvalidRequestError):
        return "Subscription not found. It may already be cancelled."
    if isinstance(exc, stripe.CardError):
        return f"Card error: {exc.user_message or 'payment declined'}"
    if isinstance(exc, stripe.APIError):
        return "Stripe service error. Please try again later."
    return "Billing provider error"


class StripeBilling:
    """Thin wrapper over the ``stripe`` SDK with an explicit API key."""

    def __init__(self, cfg: Settings):
        self._cfg = cfg
        self._api_key = cfg.stripe_secret_key
        self._webhook_secret = cfg.stripe_webhook_secret

    def verify_event(self, payload: bytes, signature: str) -> dict:
        """Check the ``Stripe-Signature`` header and return the event as a dict."""
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise InvalidSignature(str(exc)) from exc
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise InvalidSignature("event payload is not an object")
        return data

    def create_checkout_session(
        self, account_id: str, plan: str, billing_period: str
    ) -> CheckoutSession:
        metadata = {
            "userId": account_id,
            "plan": plan,
            "billingPeriod": billing_period,
        }
        price_id = price_ids(self._cfg).get((plan, billing_period))
        if price_id:
            line_item: dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            cfg = get_plan_config(plan)
            amount = get_plan_price(plan, billing_period)
            line_item = {
                "price_data": {
                    "currency": self._cfg.stripe_currency,
                    "product_data": {
                        "name": f"TextHume {cfg.name} Plan",
                        "description": f"{cfg.word_limit:,} words per month",
                    },
                    "unit_amount": int(round(amount * 100)),
                    "recurring": {
                        "interval": "month" if billing_period == "monthly" else "year",
                        "interval_count": 1,
                    },
                },
                "quantity": 1,
            }
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[line_item],
                success_url=f"{self._cfg.app_url}/app?checkout=success&plan={plan}",
                cancel_url=f"{self._cfg.app_url}/pricing?checkout=cancelled",
                client_reference_id=account_id,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            raise BillingError(
                f"checkout session create failed: {exc}",
                user_message="Failed to create checkout session",
            ) from exc
        return CheckoutSession(id=field(session, "id"), url=field(session, "url"))

    def retrieve_checkout_session(self, session_id: str) -> CheckoutStatus | None:
        try:
            session = stripe.checkout.Session.retrieve(
                session_id, api_key=self._api_key
            )
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as exc:
            raise BillingError(
                f"checkout session retrieve failed: {exc}",
                user_message="Failed to validate checkout session",
            ) from exc
        return CheckoutStatus(
            account_id=field(session, "client_reference_id"),
            plan=field(session, "metadata", "plan"),
            billing_period=field(session, "metadata", "billingPeriod"),
            payment_status=field(session, "payment_status"),
        )

    def create_portal_session(self, customer_id: str) -> str | None:
        try:
            portal = stripe.billing_portal.Session.create(
                api_key=self._api_key,
                customer=customer_id,
                return_url=f"{self._cfg.app_url}/app/profile",
            )
        except stripe.StripeError as exc:
            raise BillingError(
                f"portal session create failed: {exc}",
                user_message="Failed to create billing portal session",
            ) from exc
        return field(portal, "url")

    def cancel_at_period_end(self, subscription_id: str) -> datetime | None:
        """Schedule the subscription to end with the current period."""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id, api_key=self._api_key, cancel_at_period_end=True
            )
        except stripe.StripeError as exc:
            raise BillingError(
                f"subscription cancel failed: {exc}", user_message=_user_message(exc)
            ) from exc
        return subscription_period_end(subscription)

    def change_price(self, subscription_id: str, price_id: str, plan: str) -> None:
        """Swap the subscription's only item to ``price_id`` with proration."""
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id, api_key=self._api_key
            )
            item_id = field(subscription, "items", "data", 0, "id")
            if not item_id:
                raise BillingError(
                    f"subscription {subscription_id} has no items",
                    user_message="No items in subscription",
                )
            stripe.Subscription.modify(
                subscription_id,
                api_key=self._api_key,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
                metadata={"plan": plan},
            )
        except stripe.StripeError as exc:
            raise BillingError(
                f"subscription price change failed: {exc}",
                user_message=_user_message(exc),
            ) from exc


__all__ = [
    "BillingError",
    "InvalidSignature",
    "CheckoutSession",
    "CheckoutStatus",
    "StripeBilling",
    "field",
    "subscription_period_end",
]
