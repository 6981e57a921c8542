"""
Response parser and criterion scorer.

Parses the JSON response from the oracle for a single criterion, retries
failed or malformed calls within a fixed budget, and clamps the score
into the criterion's range.
"""

import asyncio
import json
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, NamedTuple

from grading_pipeline.config import Settings, get_settings
from grading_pipeline.grading.llm_client import OracleInvocationError, ScoringOracle
from grading_pipeline.grading.prompt_builder import PromptBuilder
from grading_pipeline.models import CriterionResult, Question, ScoringCriterion

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


def round_score(value: Decimal) -> Decimal:
    """Round a score half-up to 2 decimal places."""
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def clamp_score(value: Decimal, max_score: Decimal) -> Decimal:
    """Clamp a score into [0, max_score]."""
    return min(max(value, Decimal(0)), max_score)


class MalformedResponseError(OracleInvocationError):
    """Raised when the oracle response cannot be parsed into a score."""

    def __init__(self, message: str, raw_response: str | None = None):
        self.raw_response = raw_response
        super().__init__(message, retryable=True)


class ParsedResponse(NamedTuple):
    """Fields extracted from one oracle response."""

    score: Decimal
    comment: str
    suggestions: str
    strengths: str
    weaknesses: str


class ResponseParser:
    """
    Parses and validates oracle responses for a single criterion.

    Ensures:
    1. Response contains a JSON object
    2. A finite numeric score is present
    3. Text fields are normalized to strings
    """

    TEXT_FIELDS = ("comment", "suggestions", "strengths", "weaknesses")

    def parse(self, response: str) -> ParsedResponse:
        """
        Parse an oracle response.

        Args:
            response: Raw oracle response (expected JSON).

        Returns:
            The extracted score and feedback fields. The score is not clamped.

        Raises:
            MalformedResponseError: If parsing or validation fails.
        """
        json_str = self._extract_json(response)

        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                f"Invalid JSON in response: {e}",
                raw_response=response,
            ) from e

        if not isinstance(data, dict):
            raise MalformedResponseError("Response JSON must be an object", raw_response=response)

        if data.get("score") is None:
            raise MalformedResponseError("Missing required field: score", raw_response=response)

        score = self._parse_decimal(data["score"], response)
        texts = {name: self._parse_text(data.get(name)) for name in self.TEXT_FIELDS}

        return ParsedResponse(
            score=score,
            comment=texts["comment"] or "No comment provided",
            suggestions=texts["suggestions"],
            strengths=texts["strengths"],
            weaknesses=texts["weaknesses"],
        )

    def _extract_json(self, response: str) -> str:
        """
        Extract JSON from response, handling common formats.

        Args:
            response: Raw response text.

        Returns:
            Extracted JSON string.
        """
        # Remove markdown code block if present
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
        if json_match:
            return json_match.group(1).strip()

        brace_start = response.find("{")
        if brace_start == -1:
            raise MalformedResponseError("No JSON object found in response", raw_response=response)

        # Find matching closing brace
        depth = 0
        for i, char in enumerate(response[brace_start:], start=brace_start):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return response[brace_start : i + 1]

        raise MalformedResponseError("Unclosed JSON object in response", raw_response=response)

    def _parse_decimal(self, value: Any, raw_response: str) -> Decimal:
        """Parse the score as a finite Decimal."""
        if isinstance(value, bool):
            raise MalformedResponseError(f"Invalid score: {value}", raw_response=raw_response)
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise MalformedResponseError(
                f"Invalid score: {value}", raw_response=raw_response
            ) from e
        if not result.is_finite():
            raise MalformedResponseError(f"Invalid score: {value}", raw_response=raw_response)
        return result

    def _parse_text(self, value: Any) -> str:
        """Normalize a feedback field; lists are joined."""
        if value is None:
            return ""
        if isinstance(value, list):
            return "; ".join(str(item).strip() for item in value if str(item).strip())
        return str(value).strip()


class CriterionScorer:
    """
    Produces one validated, bounded score for one rubric criterion.

    Oracle failures are retried up to the configured attempt budget;
    anything left after that propagates. There is no default score.
    """

    def __init__(self, oracle: ScoringOracle, settings: Settings | None = None):
        """
        Initialize the scorer.

        Args:
            oracle: Scoring oracle to invoke.
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._oracle = oracle
        self._settings = settings or get_settings()
        self._parser = ResponseParser()

    async def score(
        self,
        answer_text: str,
        question: Question | None,
        criterion: ScoringCriterion,
    ) -> CriterionResult:
        """
        Score an answer against one criterion.

        Args:
            answer_text: The student's answer text; must be non-empty.
            question: Question context, may be None.
            criterion: The criterion to score.

        Returns:
            CriterionResult with the score clamped into range.

        Raises:
            ValueError: If the answer text is empty.
            OracleInvocationError: If the oracle fails after all retries.
        """
        if not answer_text or not answer_text.strip():
            raise ValueError("Answer text must not be empty")

        prompt = PromptBuilder.build_criterion_prompt(answer_text, question, criterion)
        parsed = await self._invoke_with_retry(prompt, criterion)

        in_range = clamp_score(parsed.score, criterion.max_score)
        clamped = in_range != parsed.score
        score = round_score(in_range)
        if clamped:
            logger.warning(
                "Score %s for criterion '%s' outside [0, %s], clamped to %s",
                parsed.score,
                criterion.name,
                criterion.max_score,
                score,
            )

        return CriterionResult(
            criterion_id=criterion.id,
            name=criterion.name,
            score=score,
            max_score=criterion.max_score,
            weight=criterion.weight,
            comment=parsed.comment,
            suggestions=parsed.suggestions,
            strengths=parsed.strengths,
            weaknesses=parsed.weaknesses,
            raw_score=parsed.score,
            clamped=clamped,
        )

    async def _invoke_with_retry(self, prompt: str, criterion: ScoringCriterion) -> ParsedResponse:
        """
        Call the oracle and parse its response, retrying on failure.

        Args:
            prompt: The user prompt.
            criterion: The criterion being scored, for messages.

        Returns:
            The parsed response.

        Raises:
            OracleInvocationError: If all attempts fail, or on a non-retryable failure.
        """
        max_attempts = self._settings.scoring_max_attempts
        timeout = self._settings.scoring_timeout
        last_error: OracleInvocationError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                raw_response = await asyncio.wait_for(
                    self._oracle.complete(prompt, system_prompt=PromptBuilder.get_system_prompt()),
                    timeout=timeout,
                )
                return self._parser.parse(raw_response)

            except asyncio.TimeoutError as e:
                last_error = OracleInvocationError(
                    f"Oracle call timed out after {timeout}s", cause=e, retryable=True
                )

            except OracleInvocationError as e:
                if not e.retryable:
                    logger.error("Criterion '%s' failed without retry: %s", criterion.name, e)
                    raise
                last_error = e

            except Exception as e:
                last_error = OracleInvocationError(
                    f"Oracle call failed: {e}", cause=e, retryable=True
                )

            logger.warning(
                "Criterion '%s' attempt %d/%d failed: %s",
                criterion.name,
                attempt,
                max_attempts,
                last_error,
            )
            if attempt < max_attempts:
                await asyncio.sleep(self._settings.scoring_retry_delay * attempt)

        raise OracleInvocationError(
            f"Scoring criterion '{criterion.name}' failed after {max_attempts} attempts: "
            f"{last_error}",
            cause=last_error,
        ) from last_error
