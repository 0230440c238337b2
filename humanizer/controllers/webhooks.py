import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from humanizer import db as db_module
from humanizer.dependencies import (
    ErrorResponse,
    api_error,
    get_billing,
    get_reconciler,
    settings,
)
from humanizer.metrics import (
    webhook_events_total,
    webhook_forbidden_total,
    webhook_handler_errors_total,
)
from humanizer.models import Account, ErrorCode, Transformation
from humanizer.services.billing import BillingError, InvalidSignature, StripeBilling
from humanizer.services.hmac import verify_webhook
from humanizer.services.reconciler import SubscriptionReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")


@router.post(
    "/billing",
    status_code=200,
    responses={400: {"model": ErrorResponse}},
)
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    billing: StripeBilling = Depends(get_billing),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    raw_body = await request.body()
    if not stripe_signature:
        webhook_forbidden_total.labels(source="billing").inc()
        logger.warning("audit: billing webhook without signature")
        raise api_error(400, ErrorCode.INVALID_SIGNATURE, "Missing signature")
    try:
        event = billing.verify_event(raw_body, stripe_signature)
    except InvalidSignature as exc:
        webhook_forbidden_total.labels(source="billing").inc()
        logger.warning("audit: invalid billing webhook signature: %s", exc)
        raise api_error(
            400, ErrorCode.INVALID_SIGNATURE, "Invalid signature"
        ) from exc

    event_type = event.get("type", "unknown")
    webhook_events_total.labels(source="billing", type=event_type).inc()
    try:
        await asyncio.to_thread(reconciler.handle_event, event)
    except Exception:
        webhook_handler_errors_total.labels(source="billing").inc()
        logger.exception(
            "billing webhook handler failed",
            extra={"event_id": event.get("id"), "type": event_type},
        )
    return {"received": True}


def _delete_account(account_id: str, billing: StripeBilling) -> None:
    try:
        with db_module.SessionLocal() as db:
            account = db.get(Account, account_id)
            subscription_id = account.stripe_subscription_id if account else None
    except SQLAlchemyError:
        logger.exception(
            "could not load account for deletion", extra={"account_id": account_id}
        )
        subscription_id = None

    if subscription_id:
        try:
            billing.cancel_at_period_end(subscription_id)
            logger.info(
                "subscription canceled for deleted account",
                extra={"account_id": account_id, "subscription_id": subscription_id},
            )
        except BillingError as exc:
            logger.warning(
                "could not cancel subscription for deleted account: %s",
                exc,
                extra={"account_id": account_id, "subscription_id": subscription_id},
            )

    try:
        with db_module.SessionLocal() as db:
            db.execute(
                delete(Transformation).where(Transformation.user_id == account_id)
            )
            db.execute(delete(Account).where(Account.id == account_id))
            db.commit()
    except SQLAlchemyError:
        logger.exception("account deletion failed", extra={"account_id": account_id})
        return
    logger.info("account deleted", extra={"account_id": account_id})


@router.post(
    "/identity",
    status_code=200,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def identity_webhook(
    request: Request,
    svix_id: str | None = Header(None, alias="svix-id"),
    svix_timestamp: str | None = Header(None, alias="svix-timestamp"),
    svix_signature: str | None = Header(None, alias="svix-signature"),
    billing: StripeBilling = Depends(get_billing),
):
    secret = settings.clerk_webhook_secret
    if not secret:
        logger.error("identity webhook secret not configured")
        raise api_error(
            500, ErrorCode.INTERNAL_ERROR, "Webhook secret not configured"
        )

    raw_body = await request.body()
    if not verify_webhook(
        secret,
        svix_id or "",
        svix_timestamp or "",
        svix_signature or "",
        raw_body,
        tolerance_s=settings.webhook_tolerance_s,
    ):
        webhook_forbidden_total.labels(source="identity").inc()
        logger.warning("audit: invalid identity webhook signature")
        raise api_error(400, ErrorCode.INVALID_SIGNATURE, "Invalid signature")

    try:
        event = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise api_error(
            400, ErrorCode.BAD_REQUEST, "Malformed JSON body"
        ) from exc
    if not isinstance(event, dict):
        raise api_error(400, ErrorCode.BAD_REQUEST, "Payload must be a JSON object")

    event_type = event.get("type", "unknown")
    data = event.get("data") or {}
    account_id = data.get("id") if isinstance(data, dict) else None
    webhook_events_total.labels(source="identity", type=event_type).inc()

    if event_type == "user.deleted" and account_id:
        await asyncio.to_thread(_delete_account, account_id, billing)
    elif event_type == "user.created":
        logger.info("identity user created", extra={"account_id": account_id})
    return {"received": True}
