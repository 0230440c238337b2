from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from typing import TypeVar

import jwt
import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from humanizer import db as db_module
from humanizer.config import Settings
from humanizer.metrics import rate_limit_reject_total
from humanizer.models import ErrorCode
from humanizer.services.billing import StripeBilling
from humanizer.services.llm import Humanizer
from humanizer.services.quota import QuotaLedger
from humanizer.services.reconciler import SubscriptionReconciler

settings = Settings()
redis_client = (
    redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    if settings.redis_url
    else None
)

logger = logging.getLogger(__name__)

_jwks_client: jwt.PyJWKClient | None = None
_humanizer: Humanizer | None = None


class ErrorResponse(BaseModel):
    code: str
    message: str


def api_error(
    status_code: int,
    code: ErrorCode,
    message: str,
    headers: dict[str, str] | None = None,
    **extra,
) -> HTTPException:
    """Build an ``HTTPException`` rendered as ``{"error": message, ...}``."""
    detail = ErrorResponse(code=ErrorCode(code).value, message=message).model_dump()
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


def _get_jwks_client() -> jwt.PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = jwt.PyJWKClient(settings.clerk_jwks_url)
    return _jwks_client


def decode_session_token(token: str) -> dict:
    """Verify an identity-provider session token.

    RS256 against the provider's JWKS when ``CLERK_JWKS_URL`` is set,
    otherwise HS256 with ``JWT_SECRET``.
    """
    options = {"verify_exp": True, "verify_aud": False}
    if settings.clerk_jwks_url:
        signing_key = _get_jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=settings.clerk_issuer,
            options=options,
        )
    return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"], options=options)


async def require_user(
    authorization: str | None = Header(None, alias="Authorization"),
) -> str:
    """Return the authenticated account id or fail with 401."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_session_token(token)
    except jwt.PyJWTError as exc:
        logger.info("session token rejected: %s", exc.__class__.__name__)
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized") from exc
    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")
    return subject


def get_billing() -> StripeBilling:
    return StripeBilling(settings)


def get_ledger() -> QuotaLedger:
    return QuotaLedger(db_module.SessionLocal)


def get_reconciler(
    billing: StripeBilling = Depends(get_billing),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(db_module.SessionLocal, billing, settings)


def get_humanizer() -> Humanizer:
    global _humanizer
    if _humanizer is None:
        _humanizer = Humanizer(settings)
    return _humanizer


async def current_account(
    user_id: str = Depends(require_user),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> str:
    """Authenticated account id, with any overdue cancellation applied first."""
    await asyncio.to_thread(reconciler.expire_if_due, user_id)
    return user_id


async def check_rate_limit(user_id: str) -> None:
    """Sliding-window throttle per user on a Redis sorted set.

    Disabled without ``REDIS_URL``; Redis errors let the request through.
    """
    if redis_client is None:
        return

    window = settings.rate_limit_window_s
    now = time.time()
    key = f"rate:transform:{user_id}"
    member = f"{now}:{uuid.uuid4().hex}"
    try:
        pipe = redis_client.pipeline()
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, window)
        _, _, count, oldest, _ = await pipe.execute()
        if count > settings.rate_limit_requests:
            await redis_client.zrem(key, member)
    except RedisError as exc:
        logger.warning("Redis unavailable for rate limiting: %s", exc)
        return

    if count > settings.rate_limit_requests:
        oldest_ts = oldest[0][1] if oldest else now
        retry_after = max(1, math.ceil(oldest_ts + window - now))
        rate_limit_reject_total.inc()
        raise api_error(
            429,
            ErrorCode.TOO_MANY_REQUESTS,
            f"Rate limit exceeded. Maximum {settings.rate_limit_requests} "
            "requests per minute.",
            headers={"Retry-After": str(retry_after)},
            retryAfter=retry_after,
        )


ModelT = TypeVar("ModelT", bound=BaseModel)


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        path = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{path}: {error.get('msg')}" if path else str(error.get("msg")))
    return "; ".join(parts)


async def parse_body(request: Request, model: type[ModelT]) -> ModelT:
    """Decode the JSON body into ``model``; any problem is a 400."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise api_error(
            400, ErrorCode.BAD_REQUEST, "Invalid JSON in request body"
        ) from exc
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise api_error(400, ErrorCode.BAD_REQUEST, _describe(exc)) from exc
