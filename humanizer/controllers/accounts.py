import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from humanizer import db as db_module
from humanizer.dependencies import ErrorResponse, api_error, current_account, parse_body
from humanizer.models import Account, ErrorCode
from humanizer.plans import get_word_limit

logger = logging.getLogger(__name__)

router = APIRouter()

_UPSERT_SQL = text(
    "INSERT INTO users (id, email, plan, word_limit, words_used, "
    "subscription_status, created_at, updated_at) "
    "VALUES (:id, :email, 'free', :word_limit, 0, 'none', "
    "CURRENT_TIMESTAMP, CURRENT_TIMESTAMP) "
    "ON CONFLICT (id) DO NOTHING"
)


class InitializeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId", min_length=1)
    email: str | None = None


class FetchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId", min_length=1)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None = None
    plan: str
    word_limit: int
    words_used: int
    billing_period: str | None = None
    subscription_status: str
    subscription_period_end: datetime | None = None
    created_at: datetime | None = None


@router.post(
    "/account/initialize",
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def initialize_account(
    request: Request,
    user_id: str = Depends(current_account),
):
    body = await parse_body(request, InitializeRequest)
    if body.account_id != user_id:
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")

    def _db_call() -> tuple[Account | None, bool]:
        with db_module.SessionLocal() as db:
            result = db.execute(
                _UPSERT_SQL,
                {
                    "id": user_id,
                    "email": body.email,
                    "word_limit": get_word_limit("free"),
                },
            )
            db.commit()
            return db.get(Account, user_id), result.rowcount == 1

    try:
        account, is_new = await asyncio.to_thread(_db_call)
    except SQLAlchemyError as exc:
        logger.exception("account upsert failed", extra={"account_id": user_id})
        raise api_error(
            500, ErrorCode.INTERNAL_ERROR, "Failed to initialize user"
        ) from exc
    if account is None:
        raise api_error(500, ErrorCode.INTERNAL_ERROR, "Failed to initialize user")
    if is_new:
        logger.info("account created", extra={"account_id": user_id})
    return {
        "user": AccountOut.model_validate(account).model_dump(mode="json"),
        "isNew": is_new,
    }


@router.post(
    "/account/fetch",
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def fetch_account(
    request: Request,
    user_id: str = Depends(current_account),
):
    body = await parse_body(request, FetchRequest)
    if body.account_id != user_id:
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")

    def _db_call() -> Account | None:
        with db_module.SessionLocal() as db:
            return db.get(Account, user_id)

    account = await asyncio.to_thread(_db_call)
    if account is None:
        raise api_error(404, ErrorCode.NOT_FOUND, "User not found")
    return {
        "plan": account.plan,
        "word_limit": account.word_limit,
        "words_used": account.words_used,
        "billing_period": account.billing_period,
    }
