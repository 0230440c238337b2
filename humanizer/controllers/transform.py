import asyncio
import logging
import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from humanizer.dependencies import (
    ErrorResponse,
    api_error,
    check_rate_limit,
    current_account,
    get_humanizer,
    get_ledger,
    parse_body,
    settings,
)
from humanizer.metrics import (
    quality_gate_reject_total,
    transform_latency_seconds,
    transform_requests_total,
)
from humanizer.models import ErrorCode
from humanizer.services.llm import HumanizeError, Humanizer
from humanizer.services.quality import check_transformation
from humanizer.services.quota import (
    AccountNotFound,
    CommitResult,
    QuotaLedger,
    QuotaStatus,
    count_words,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class TransformRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1)
    account_id: str = Field(alias="accountId", min_length=1)


class TransformResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    humanized_text: str = Field(serialization_alias="humanizedText")
    words_used: int = Field(serialization_alias="wordsUsed")
    words_remaining: int = Field(serialization_alias="wordsRemaining")


@router.post(
    "/transform",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
    },
)
async def transform(
    request: Request,
    user_id: str = Depends(current_account),
    ledger: QuotaLedger = Depends(get_ledger),
    humanizer: Humanizer = Depends(get_humanizer),
):
    started = time.perf_counter()
    transform_requests_total.inc()

    body = await parse_body(request, TransformRequest)
    if body.account_id != user_id:
        raise api_error(401, ErrorCode.UNAUTHORIZED, "Unauthorized")
    if len(body.text) > settings.max_text_chars:
        raise api_error(
            400,
            ErrorCode.BAD_REQUEST,
            f"Text cannot exceed {settings.max_text_chars} characters",
        )
    word_count = count_words(body.text)
    if word_count == 0:
        raise api_error(400, ErrorCode.BAD_REQUEST, "Text is required")

    await check_rate_limit(user_id)

    try:
        decision = await asyncio.to_thread(
            ledger.check_and_reserve, user_id, word_count
        )
    except AccountNotFound as exc:
        raise api_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    except SQLAlchemyError as exc:
        logger.exception("quota pre-check failed", extra={"account_id": user_id})
        raise api_error(
            500, ErrorCode.UPSTREAM_ERROR, "Failed to fetch user data"
        ) from exc

    if decision.status is QuotaStatus.DENIED_PER_REQUEST:
        raise api_error(
            400,
            ErrorCode.PER_REQUEST_LIMIT,
            f"Your {decision.plan} plan allows a maximum of "
            f"{decision.max_per_request} words per request. "
            f"Your input has {word_count} words.",
        )
    if decision.status is QuotaStatus.DENIED_BALANCE:
        raise api_error(
            402,
            ErrorCode.INSUFFICIENT_BALANCE,
            f"Not enough words. You have {decision.words_remaining} words remaining.",
        )

    try:
        humanized = await humanizer.humanize(body.text)
    except HumanizeError as exc:
        logger.exception("humanization failed", extra={"account_id": user_id})
        raise api_error(
            500, ErrorCode.UPSTREAM_ERROR, "Failed to humanize text"
        ) from exc

    if settings.quality_gate_enabled:
        quality = check_transformation(body.text, humanized)
        if not quality.ok:
            quality_gate_reject_total.inc()
            logger.warning(
                "transformation too similar to input",
                extra={"account_id": user_id, "reason": quality.reason},
            )
            raise api_error(
                500,
                ErrorCode.UPSTREAM_ERROR,
                "Humanization failed to produce sufficiently different output. "
                "Please try again.",
            )

    # Best-effort: a rejected or failed commit never fails the request.
    committed = await asyncio.to_thread(ledger.commit, user_id, word_count)
    await asyncio.to_thread(
        ledger.record_transformation, user_id, body.text, humanized, word_count
    )

    remaining = decision.words_remaining
    if committed is CommitResult.COMMITTED:
        remaining = max(remaining - word_count, 0)

    transform_latency_seconds.observe(time.perf_counter() - started)
    return TransformResponse(
        humanized_text=humanized,
        words_used=word_count,
        words_remaining=remaining,
    ).model_dump(by_alias=True)
