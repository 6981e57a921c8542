"""
Scoring orchestrator - the core of the grading pipeline.

Runs every rubric criterion for one answer sequentially, aggregates the
weighted results and commits them all-or-nothing.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Sequence

from grading_pipeline.config import Settings, get_settings
from grading_pipeline.grading.feedback import FeedbackGenerator
from grading_pipeline.grading.llm_client import ScoringOracle
from grading_pipeline.grading.scorer import CriterionScorer, round_score
from grading_pipeline.models import (
    Answer,
    CriterionResult,
    Question,
    ScoringCriterion,
    ScoringResult,
)
from grading_pipeline.storage.repository import AnswerRepository
from grading_pipeline.transcription.speech_client import SpeechToText, TranscriptionError

logger = logging.getLogger(__name__)


class MissingCriteriaError(Exception):
    """Raised when no scoring criteria are configured for a question type."""

    def __init__(self, aptis_type_id: int | None = None, question_type_id: int | None = None):
        self.aptis_type_id = aptis_type_id
        self.question_type_id = question_type_id
        super().__init__(
            f"No scoring criteria configured for aptis type {aptis_type_id}, "
            f"question type {question_type_id}"
        )


class MissingAnswerTextError(Exception):
    """Raised when an answer has no text to score."""

    def __init__(self, answer_id: int, reason: str):
        self.answer_id = answer_id
        super().__init__(f"Answer {answer_id}: {reason}")


class ScoringOrchestrator:
    """
    Drives a full multi-criteria scoring run over one answer.

    Criteria are scored one at a time, so at most one oracle call is in
    flight per run and the first failure aborts without leaving siblings
    running. Nothing is persisted unless every criterion succeeds.
    """

    def __init__(
        self,
        repository: AnswerRepository,
        oracle: ScoringOracle,
        speech: SpeechToText | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Persistence for answers, criteria and feedback.
            oracle: Scoring oracle used for every criterion.
            speech: Speech-to-text used when a speaking answer lacks a transcription.
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._repository = repository
        self._speech = speech
        self._scorer = CriterionScorer(oracle, self._settings)

    async def score_criteria(
        self,
        answer_text: str,
        question: Question | None,
        criteria: Sequence[ScoringCriterion],
    ) -> ScoringResult:
        """
        Score an answer against every criterion and aggregate the results.

        Args:
            answer_text: The text to score.
            question: Question context for the prompts.
            criteria: Rubric criteria, scored in order.

        Returns:
            ScoringResult with weighted totals rounded to 2 decimals.

        Raises:
            MissingCriteriaError: If criteria is empty. No oracle call is made.
            OracleInvocationError: If any criterion fails; no partial result.
        """
        if not criteria:
            raise MissingCriteriaError(
                question.aptis_type_id if question else None,
                question.question_type_id if question else None,
            )

        results: list[CriterionResult] = []
        total = Decimal(0)
        total_max = Decimal(0)

        for i, criterion in enumerate(criteria, start=1):
            logger.info("Scoring criterion %d/%d: %s", i, len(criteria), criterion.name)
            result = await self._scorer.score(answer_text, question, criterion)
            results.append(result)
            total += result.weighted_score
            total_max += result.weighted_max_score

        return ScoringResult(
            total_score=round_score(total),
            total_max_score=round_score(total_max),
            criteria_scores=tuple(results),
            overall_feedback=FeedbackGenerator.generate_overall_feedback(results),
        )

    async def score_writing(self, answer_id: int) -> ScoringResult:
        """
        Score a written answer and persist the result.

        Args:
            answer_id: Id of the answer; its text must already be present.

        Returns:
            The committed ScoringResult.
        """
        answer, question, criteria = await self._load(answer_id)

        text = (answer.text_answer or "").strip()
        if not text:
            raise MissingAnswerTextError(answer_id, "no text answer to score")

        return await self._run(answer, question, criteria, text)

    async def score_speaking(self, answer_id: int) -> ScoringResult:
        """
        Score a spoken answer and persist the result.

        Transcribes the recording first when no usable transcription is
        stored; an existing transcription is used as is.

        Args:
            answer_id: Id of the answer.

        Returns:
            The committed ScoringResult.
        """
        answer, question, criteria = await self._load(answer_id)

        if answer.has_usable_transcription:
            text = (answer.transcribed_text or "").strip()
        elif answer.audio_url:
            text = await self._transcribe(answer)
        else:
            raise MissingAnswerTextError(answer_id, "no transcription and no audio to transcribe")

        return await self._run(answer, question, criteria, text)

    async def _load(self, answer_id: int) -> tuple[Answer, Question, list[ScoringCriterion]]:
        """Load an answer with its question and criteria; criteria must exist."""
        answer = await self._repository.get_answer(answer_id)
        question = await self._repository.get_question(answer.question_id)
        criteria = await self._repository.list_criteria(
            question.aptis_type_id, question.question_type_id
        )
        if not criteria:
            raise MissingCriteriaError(question.aptis_type_id, question.question_type_id)
        return answer, question, criteria

    async def _transcribe(self, answer: Answer) -> str:
        """Transcribe an answer's audio directly and store the text."""
        if self._speech is None:
            raise MissingAnswerTextError(answer.id, "no speech-to-text service configured")

        audio_path = answer.audio_url or ""
        logger.info("Answer %s has no transcription, transcribing %s", answer.id, audio_path)
        try:
            text = await asyncio.wait_for(
                self._speech.transcribe(audio_path, self._settings.transcription_language),
                timeout=self._settings.transcription_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionError(
                f"timed out after {self._settings.transcription_timeout}s", audio_path, cause=e
            ) from e

        await self._repository.save_transcription(answer.id, text)
        return text

    async def _run(
        self,
        answer: Answer,
        question: Question,
        criteria: list[ScoringCriterion],
        text: str,
    ) -> ScoringResult:
        """Score the text and commit the result for the answer."""
        logger.info("Scoring answer %s with %d criteria", answer.id, len(criteria))
        result = await self.score_criteria(text, question, criteria)

        score = result.total_score
        if answer.max_score is not None and score > answer.max_score:
            logger.warning(
                "Answer %s score capped: %s -> %s", answer.id, score, answer.max_score
            )
            score = answer.max_score

        await self._repository.commit_scoring(answer.id, result, score)
        logger.info(
            "Answer %s scored %s/%s", answer.id, result.total_score, result.total_max_score
        )
        return result
