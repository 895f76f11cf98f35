"""LLM client module for coach replies via the Anthropic SDK.

The coach makes one stateless completion per turn: a system prompt plus the
ordered message history in, a single text reply out.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import anthropic

from coach.core.config import settings
from coach.core.exceptions import LLMCallError, LLMUnavailableError

logger = logging.getLogger(__name__)


class CoachLLMClient:
    """Async client for coach completions.

    The Anthropic client is created lazily so a missing credential surfaces
    as ``LLMUnavailableError`` on use rather than at import time.
    """

    def __init__(
        self,
        model: str | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize LLM client.

        Args:
            model: Claude model to use (defaults to ``COACH_MODEL``).
            max_tokens: Reply token cap (defaults to ``COACH_MAX_TOKENS``).
            timeout: Per-call timeout in seconds (defaults to ``LLM_TIMEOUT_SECONDS``).
        """
        self._model = model or settings.COACH_MODEL
        self._max_tokens = max_tokens or settings.COACH_MAX_TOKENS
        self._timeout = timeout or settings.LLM_TIMEOUT_SECONDS
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def is_configured(self) -> bool:
        """Whether an API key is available."""
        return settings.is_llm_configured

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if not self.is_configured:
            raise LLMUnavailableError()
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.ANTHROPIC_API_KEY.get_secret_value(),
                timeout=self._timeout,
                max_retries=settings.LLM_MAX_RETRIES,
            )
        return self._client

    async def generate_reply(
        self,
        system_prompt: str,
        messages: list[dict[str, str]],
        user_id: str | None = None,
    ) -> str:
        """Generate a coach reply.

        Args:
            system_prompt: Persona plus rendered relationship context.
            messages: List of message dicts with 'role' and 'content', oldest first.
            user_id: Optional user ID for log correlation.

        Returns:
            Generated text response.

        Raises:
            LLMUnavailableError: If the API key is not configured.
            LLMCallError: If the provider call fails, times out or returns no text.
        """
        client = self._get_client()

        logger.debug(
            "Calling Claude API",
            extra={
                "model": self._model,
                "message_count": len(messages),
                "user_id": user_id,
            },
        )

        start = time.time()
        try:
            response = await client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system_prompt,
                messages=messages,  # type: ignore[arg-type]
            )
        except anthropic.APITimeoutError as e:
            logger.warning(
                "Claude API call timed out after %.1fs",
                self._timeout,
                extra={"user_id": user_id},
            )
            raise LLMCallError("Coach reply timed out", timed_out=True) from e
        except anthropic.APIError as e:
            logger.exception("Claude API call failed", extra={"user_id": user_id})
            raise LLMCallError(f"Coach reply failed: {e}") from e

        latency_ms = int((time.time() - start) * 1000)
        text = _extract_text(response)
        if not text:
            logger.warning("Claude API returned no text content", extra={"user_id": user_id})
            raise LLMCallError("Coach reply was empty")

        logger.info(
            "Claude API response received",
            extra={
                "user_id": user_id,
                "latency_ms": latency_ms,
                "response_length": len(text),
            },
        )
        return text


def _extract_text(response: Any) -> str:
    """Join the text blocks of a Messages API response."""
    parts = [
        block.text
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", None) == "text"
    ]
    return "".join(parts).strip()
