"""
Persistence contract for the grading pipeline and an in-memory implementation.

The relational store belongs to the surrounding exam application; the
pipeline only needs the handful of operations on AnswerRepository. The
in-memory repository backs the CLI (loading and saving JSON data files)
and the test suite.
"""

import json
import logging
from decimal import Decimal
from itertools import count
from pathlib import Path
from typing import Any, Iterable, Protocol

from grading_pipeline.models import (
    TRANSCRIPTION_FAILED_SENTINEL,
    Answer,
    AnswerFeedback,
    AnswerType,
    GradedBy,
    Question,
    ScoringCriterion,
    ScoringResult,
)

logger = logging.getLogger(__name__)

AI_GRADABLE_TYPES = (AnswerType.TEXT, AnswerType.AUDIO)


class RecordNotFoundError(LookupError):
    """Raised when a requested record does not exist."""

    def __init__(self, entity: str, record_id: int):
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} {record_id} not found")


class AnswerRepository(Protocol):
    """Persistence operations the pipeline depends on."""

    async def get_answer(self, answer_id: int) -> Answer: ...

    async def get_question(self, question_id: int) -> Question: ...

    async def list_criteria(
        self, aptis_type_id: int, question_type_id: int
    ) -> list[ScoringCriterion]: ...

    async def save_transcription(self, answer_id: int, text: str) -> None: ...

    async def mark_transcription_failed(self, answer_id: int, diagnostic: str) -> None: ...

    async def mark_needs_review(self, answer_id: int, reason: str) -> None: ...

    async def commit_scoring(
        self, answer_id: int, result: ScoringResult, score: Decimal
    ) -> list[AnswerFeedback]: ...

    async def list_feedback(self, answer_id: int) -> list[AnswerFeedback]: ...

    async def find_pending(self, limit: int) -> list[Answer]: ...


class InMemoryAnswerRepository:
    """
    Dictionary-backed AnswerRepository.

    Reads return copies so callers can never mutate stored state without
    going through a repository operation.
    """

    def __init__(
        self,
        answers: Iterable[Answer] = (),
        questions: Iterable[Question] = (),
        criteria: Iterable[ScoringCriterion] = (),
        feedback: Iterable[AnswerFeedback] = (),
    ):
        self._answers: dict[int, Answer] = {a.id: a for a in answers}
        self._questions: dict[int, Question] = {q.id: q for q in questions}
        self._criteria: list[ScoringCriterion] = list(criteria)
        self._feedback: list[AnswerFeedback] = list(feedback)
        next_id = max((f.id for f in self._feedback), default=0) + 1
        self._feedback_ids = count(next_id)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_answer(self, answer_id: int) -> Answer:
        return self._require_answer(answer_id).model_copy(deep=True)

    async def get_question(self, question_id: int) -> Question:
        question = self._questions.get(question_id)
        if question is None:
            raise RecordNotFoundError("Question", question_id)
        return question

    async def list_criteria(self, aptis_type_id: int, question_type_id: int) -> list[ScoringCriterion]:
        return [
            c
            for c in self._criteria
            if c.aptis_type_id == aptis_type_id and c.question_type_id == question_type_id
        ]

    async def list_feedback(self, answer_id: int) -> list[AnswerFeedback]:
        return [f for f in self._feedback if f.answer_id == answer_id]

    async def find_pending(self, limit: int) -> list[Answer]:
        pending = [
            a.model_copy(deep=True)
            for a in sorted(self._answers.values(), key=lambda a: a.id)
            if a.is_pending and a.answer_type in AI_GRADABLE_TYPES
        ]
        return pending[:limit]

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def save_transcription(self, answer_id: int, text: str) -> None:
        self._require_answer(answer_id).transcribed_text = text

    async def mark_transcription_failed(self, answer_id: int, diagnostic: str) -> None:
        answer = self._require_answer(answer_id)
        answer.transcribed_text = TRANSCRIPTION_FAILED_SENTINEL
        answer.needs_review = True
        answer.ai_feedback = diagnostic

    async def mark_needs_review(self, answer_id: int, reason: str) -> None:
        answer = self._require_answer(answer_id)
        answer.needs_review = True
        answer.ai_feedback = reason

    async def commit_scoring(
        self, answer_id: int, result: ScoringResult, score: Decimal
    ) -> list[AnswerFeedback]:
        """Update the answer and insert its feedback rows in one step."""
        current = self._require_answer(answer_id)
        rows = [
            AnswerFeedback(
                id=next(self._feedback_ids),
                answer_id=answer_id,
                criterion_id=cs.criterion_id,
                score=cs.score,
                comment=cs.comment,
                suggestions=cs.suggestions,
                strengths=cs.strengths,
                weaknesses=cs.weaknesses,
                created_at=result.scored_at,
            )
            for cs in result.criteria_scores
        ]
        updated = current.model_copy(
            update={
                "score": score,
                "ai_feedback": result.overall_feedback,
                "ai_graded_at": result.scored_at,
                "graded_by": GradedBy.AI,
                "needs_review": False,
            }
        )

        self._answers[answer_id] = updated
        self._feedback.extend(rows)
        logger.debug("Committed score %s and %d feedback rows for answer %s", score, len(rows), answer_id)
        return rows

    def _require_answer(self, answer_id: int) -> Answer:
        answer = self._answers.get(answer_id)
        if answer is None:
            raise RecordNotFoundError("Answer", answer_id)
        return answer

    # ==========================================================================
    # JSON data files
    # ==========================================================================

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InMemoryAnswerRepository":
        """Build a repository from a dict with questions, criteria, answers and feedback."""
        return cls(
            answers=[Answer.model_validate(item) for item in data.get("answers", [])],
            questions=[Question.model_validate(item) for item in data.get("questions", [])],
            criteria=[ScoringCriterion.model_validate(item) for item in data.get("criteria", [])],
            feedback=[AnswerFeedback.model_validate(item) for item in data.get("feedback", [])],
        )

    @classmethod
    def load(cls, path: Path) -> "InMemoryAnswerRepository":
        """Load a repository from a JSON data file."""
        with path.open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> dict[str, Any]:
        """Serialize the repository contents to JSON-compatible data."""
        return {
            "questions": [q.model_dump(mode="json") for q in self._questions.values()],
            "criteria": [c.model_dump(mode="json") for c in self._criteria],
            "answers": [a.model_dump(mode="json") for a in self._answers.values()],
            "feedback": [f.model_dump(mode="json") for f in self._feedback],
        }

    def save(self, path: Path) -> Path:
        """Write the repository contents to a JSON data file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    def answer_ids(self) -> list[int]:
        """Return all stored answer ids in ascending order."""
        return sorted(self._answers)
