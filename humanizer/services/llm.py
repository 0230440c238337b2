"""Text rewriting through the Anthropic Messages API."""

from __future__ import annotations

import asyncio
import logging
import time

from anthropic import APIError, APIStatusError, AsyncAnthropic

from humanizer.config import Settings
from humanizer.metrics import llm_overloaded_retry_total

logger = logging.getLogger(__name__)

# Anthropic answers 529 when the API is overloaded; only that is retried.
OVERLOADED_STATUS = 529

_SYSTEM_PROMPT = (
    "You rewrite text so it reads as if a person wrote it. Keep every fact, "
    "name and date. Do not add or remove information. Return only the "
    "rewritten text."
)


class HumanizeError(RuntimeError):
    """The LLM call failed or returned an unusable response."""


class Humanizer:
    """Rewrite text with Claude, retrying only on overloaded responses."""

    def __init__(self, cfg: Settings, client: AsyncAnthropic | None = None):
        self._cfg = cfg
        self._client = client

    def _get_client(self) -> AsyncAnthropic:
        """Lazily build and cache the Anthropic client."""
        if self._client is None:
            if not self._cfg.anthropic_api_key:
                raise HumanizeError("ANTHROPIC_API_KEY environment variable is not set")
            # Retries are ours: overloaded only, with our own backoff.
            self._client = AsyncAnthropic(
                api_key=self._cfg.anthropic_api_key, max_retries=0
            )
        return self._client

    async def humanize(self, text: str) -> str:
        client = self._get_client()
        attempts = max(1, self._cfg.llm_max_attempts)
        started = time.perf_counter()
        for attempt in range(attempts):
            try:
                message = await client.messages.create(
                    model=self._cfg.anthropic_model,
                    max_tokens=self._cfg.anthropic_max_tokens,
                    system=_SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": text}],
                )
                break
            except APIStatusError as exc:
                if exc.status_code == OVERLOADED_STATUS and attempt < attempts - 1:
                    delay = self._cfg.llm_backoff_base_s * (2**attempt)
                    llm_overloaded_retry_total.inc()
                    logger.warning(
                        "LLM overloaded, retrying",
                        extra={"attempt": attempt + 1, "delay_s": delay},
                    )
                    await asyncio.sleep(delay)
                    continue
                raise HumanizeError(f"LLM request failed: {exc.status_code}") from exc
            except APIError as exc:
                raise HumanizeError("LLM request failed") from exc
        logger.info(
            "LLM call finished",
            extra={
                "attempts": attempt + 1,
                "elapsed_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return _extract_text(message)


def _extract_text(message) -> str:
    content = getattr(message, "content", None)
    if not content:
        raise HumanizeError("Invalid LLM response: missing content")
    first = content[0]
    if getattr(first, "type", None) != "text":
        raise HumanizeError("Invalid LLM response: expected text content")
    value = getattr(first, "text", None)
    if not isinstance(value, str) or not value.strip():
        raise HumanizeError("Invalid LLM response: empty text")
    return value.strip()


__all__ = ["Humanizer", "HumanizeError", "OVERLOADED_STATUS"]
