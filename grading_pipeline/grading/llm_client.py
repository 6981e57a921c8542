"""
LLM client acting as the scoring oracle.

Provides a wrapper around the async OpenAI SDK. Each call is a single
attempt; retry policy lives in the criterion scorer so that every oracle,
real or fake, is retried the same way.
"""

import logging
from typing import Protocol

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)

from grading_pipeline.config import Settings, get_settings

logger = logging.getLogger(__name__)


class OracleInvocationError(Exception):
    """Raised when the scoring oracle cannot produce a usable response."""

    def __init__(self, message: str, cause: Exception | None = None, retryable: bool = False):
        self.cause = cause
        self.retryable = retryable
        super().__init__(message)


class ScoringOracle(Protocol):
    """Contract for anything that can complete a scoring prompt."""

    async def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """Return the raw text response for a prompt."""
        ...


class LLMClient:
    """
    Scoring oracle backed by an OpenAI-compatible chat completions API.

    SDK-level retries are disabled; failures are mapped onto
    OracleInvocationError with a retryable flag.
    """

    DEFAULT_SYSTEM_PROMPT = (
        "Expert APTIS English assessor. Respond JSON only. Be precise with CEFR levels."
    )

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the LLM client.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._client = AsyncOpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._settings.scoring_timeout,
            max_retries=0,
        )

    async def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """
        Generate a response from the LLM.

        Args:
            prompt: User message with the scoring request.
            system_prompt: System message defining the LLM's role.

        Returns:
            The generated text response.

        Raises:
            OracleInvocationError: If the call fails or returns no content.
        """
        messages: list[dict[str, str]] = [
            {"role": "system", "content": system_prompt or self.DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            response = await self._client.chat.completions.create(
                model=self._settings.scoring_model,
                messages=messages,  # type: ignore[arg-type]
                temperature=self._settings.llm_temperature,
                max_tokens=self._settings.llm_max_tokens,
            )
        except RateLimitError as e:
            raise OracleInvocationError("Rate limit exceeded", cause=e, retryable=True) from e
        except APITimeoutError as e:
            raise OracleInvocationError("Request timed out", cause=e, retryable=True) from e
        except APIConnectionError as e:
            raise OracleInvocationError("Connection failed", cause=e, retryable=True) from e
        except APIStatusError as e:
            # Don't retry on client errors (4xx except 429)
            retryable = not (400 <= e.status_code < 500 and e.status_code != 429)
            raise OracleInvocationError(
                f"API error: {e.message}", cause=e, retryable=retryable
            ) from e
        except OpenAIError as e:
            raise OracleInvocationError(f"API error: {e}", cause=e, retryable=True) from e

        if response.choices and response.choices[0].message.content:
            return response.choices[0].message.content

        raise OracleInvocationError("Empty response from LLM", retryable=True)

    async def health_check(self) -> bool:
        """
        Check if the API is reachable.

        Returns:
            True if API is healthy, False otherwise.
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._settings.scoring_model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=5,
            )
            return bool(response.choices)
        except Exception:
            logger.warning("Health check against %s failed", self._settings.openai_base_url)
            return False
