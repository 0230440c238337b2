import asyncio
import logging
from datetime import timezone

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from humanizer import db as db_module
from humanizer.dependencies import (
    ErrorResponse,
    api_error,
    current_account,
    get_billing,
    get_reconciler,
    parse_body,
)
from humanizer.models import Account, ErrorCode
from humanizer.plans import BILLING_PERIODS, PAID_PLANS, is_plan
from humanizer.services.billing import BillingError, StripeBilling
from humanizer.services.quota import AccountNotFound
from humanizer.services.reconciler import SubscriptionError, SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str
    billing_period: str = Field(alias="billingPeriod")
    account_id: str = Field(alias="accountId", min_length=1)


class UpgradeRequest(BaseModel):
    plan: str


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _billing_failure(exc: BillingError):
    logger.error("billing provider error: %s", exc)
    return api_error(500, ErrorCode.UPSTREAM_ERROR, exc.user_message)


@router.post(
    "/checkout",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def create_checkout(
    request: Request,
    user_id: str = Depends(current_account),
    billing: StripeBilling = Depends(get_billing),
):
    body = await parse_body(request, CheckoutRequest)
    if body.account_id != user_id:
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")
    if not is_plan(body.plan):
        raise api_error(400, ErrorCode.BAD_REQUEST, "Invalid plan")
    if body.plan not in PAID_PLANS:
        raise api_error(400, ErrorCode.BAD_REQUEST, "Cannot checkout free plan")
    if body.billing_period not in BILLING_PERIODS:
        raise api_error(400, ErrorCode.BAD_REQUEST, "Invalid billing period")

    try:
        session = await asyncio.to_thread(
            billing.create_checkout_session, user_id, body.plan, body.billing_period
        )
    except BillingError as exc:
        raise _billing_failure(exc) from exc
    if not session.url:
        raise api_error(
            500, ErrorCode.UPSTREAM_ERROR, "Failed to create checkout session"
        )
    return {"sessionUrl": session.url, "sessionId": session.id}


@router.get(
    "/validate-checkout",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def validate_checkout(
    session_id: str | None = Query(None),
    user_id: str = Depends(current_account),
    billing: StripeBilling = Depends(get_billing),
):
    if not session_id:
        raise api_error(400, ErrorCode.BAD_REQUEST, "Missing session_id parameter")
    try:
        status = await asyncio.to_thread(billing.retrieve_checkout_session, session_id)
    except BillingError as exc:
        raise _billing_failure(exc) from exc
    if status is None:
        raise api_error(404, ErrorCode.NOT_FOUND, "Checkout session not found")
    if status.account_id != user_id:
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")
    return {
        "accountId": status.account_id,
        "plan": status.plan,
        "billingPeriod": status.billing_period,
        "paymentStatus": status.payment_status,
    }


@router.post(
    "/billing-portal",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def billing_portal(
    user_id: str = Depends(current_account),
    billing: StripeBilling = Depends(get_billing),
):
    def _db_call() -> str | None:
        with db_module.SessionLocal() as db:
            account = db.get(Account, user_id)
            return account.stripe_customer_id if account else None

    customer_id = await asyncio.to_thread(_db_call)
    if not customer_id:
        raise api_error(400, ErrorCode.BAD_REQUEST, "User has no active subscription")
    try:
        url = await asyncio.to_thread(billing.create_portal_session, customer_id)
    except BillingError as exc:
        raise _billing_failure(exc) from exc
    if not url:
        raise api_error(500, ErrorCode.UPSTREAM_ERROR, "Failed to create portal session")
    return {"portalUrl": url}


@router.post(
    "/cancel-subscription",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def cancel_subscription(
    user_id: str = Depends(current_account),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    try:
        account = await asyncio.to_thread(reconciler.begin_cancellation, user_id)
    except AccountNotFound as exc:
        raise api_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    except SubscriptionError as exc:
        raise api_error(400, ErrorCode.BAD_REQUEST, str(exc)) from exc
    except BillingError as exc:
        raise _billing_failure(exc) from exc
    return {
        "plan": account.plan,
        "wordLimit": account.word_limit,
        "subscriptionStatus": account.subscription_status,
        "periodEnd": _iso(account.subscription_period_end),
    }


@router.post(
    "/upgrade-subscription",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def upgrade_subscription(
    request: Request,
    user_id: str = Depends(current_account),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    body = await parse_body(request, UpgradeRequest)
    if not is_plan(body.plan):
        raise api_error(400, ErrorCode.BAD_REQUEST, "Invalid plan")
    try:
        account = await asyncio.to_thread(reconciler.change_plan, user_id, body.plan)
    except AccountNotFound as exc:
        raise api_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    except SubscriptionError as exc:
        extra = {"needsCheckout": True} if exc.needs_checkout else {}
        raise api_error(400, ErrorCode.BAD_REQUEST, str(exc), **extra) from exc
    except BillingError as exc:
        raise _billing_failure(exc) from exc
    return {"plan": account.plan, "wordLimit": account.word_limit}
