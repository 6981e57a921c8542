"""
Tests for the in-memory repository, the data models and settings.
"""

import asyncio
import json
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from grading_pipeline.config import RetryBackoffMode, Settings
from grading_pipeline.models import (
    TRANSCRIPTION_FAILED_SENTINEL,
    Answer,
    AnswerType,
    CriterionResult,
    GradedBy,
    RequeueItem,
    RequeueOutcome,
    RequeueSummary,
    ScoringCriterion,
    ScoringResult,
)
from grading_pipeline.storage import InMemoryAnswerRepository, RecordNotFoundError


def _result(score: str = "4", max_score: str = "5") -> ScoringResult:
    criterion = CriterionResult(
        criterion_id=1,
        name="Grammar accuracy",
        score=Decimal(score),
        max_score=Decimal(max_score),
        weight=Decimal("1"),
        comment="Accurate.",
    )
    return ScoringResult(
        total_score=Decimal(score),
        total_max_score=Decimal(max_score),
        criteria_scores=(criterion,),
        overall_feedback="Overall Performance: Very Good (80%).",
    )


class TestInMemoryRepository:
    """Tests for InMemoryAnswerRepository."""

    def test_reads_return_copies(self, repository: InMemoryAnswerRepository) -> None:
        """Test mutating a returned answer does not change the stored one."""
        answer = asyncio.run(repository.get_answer(1))
        answer.text_answer = "changed"

        assert asyncio.run(repository.get_answer(1)).text_answer != "changed"

    def test_missing_records(self, repository: InMemoryAnswerRepository) -> None:
        with pytest.raises(RecordNotFoundError, match="Answer 42 not found"):
            asyncio.run(repository.get_answer(42))
        with pytest.raises(RecordNotFoundError, match="Question 42 not found"):
            asyncio.run(repository.get_question(42))

    def test_list_criteria_by_question_type(self, repository: InMemoryAnswerRepository) -> None:
        criteria = asyncio.run(repository.list_criteria(1, 20))

        assert [c.id for c in criteria] == [11, 12]
        assert asyncio.run(repository.list_criteria(2, 20)) == []

    def test_find_pending(self, repository: InMemoryAnswerRepository) -> None:
        """Test only unscored text and audio answers are returned, by id."""
        pending = asyncio.run(repository.find_pending(10))

        assert [a.id for a in pending] == [1, 2, 3, 4]
        assert [a.id for a in asyncio.run(repository.find_pending(2))] == [1, 2]

    def test_commit_scoring(self, repository: InMemoryAnswerRepository) -> None:
        """Test one commit updates the answer and inserts the feedback rows."""
        asyncio.run(repository.mark_needs_review(1, "earlier failure"))
        result = _result()

        rows = asyncio.run(repository.commit_scoring(1, result, Decimal("4")))

        answer = asyncio.run(repository.get_answer(1))
        assert answer.score == Decimal("4")
        assert answer.ai_feedback == result.overall_feedback
        assert answer.ai_graded_at == result.scored_at
        assert answer.graded_by == GradedBy.AI
        assert not answer.needs_review
        assert len(rows) == 1
        assert rows[0].criterion_id == 1
        assert asyncio.run(repository.list_feedback(1)) == rows
        assert asyncio.run(repository.find_pending(10))[0].id == 2

    def test_commit_unknown_answer_writes_nothing(
        self, repository: InMemoryAnswerRepository
    ) -> None:
        with pytest.raises(RecordNotFoundError):
            asyncio.run(repository.commit_scoring(99, _result(), Decimal("4")))

        assert asyncio.run(repository.list_feedback(99)) == []

    def test_mark_transcription_failed(self, repository: InMemoryAnswerRepository) -> None:
        asyncio.run(repository.mark_transcription_failed(2, "gave up"))

        answer = asyncio.run(repository.get_answer(2))
        assert answer.transcribed_text == TRANSCRIPTION_FAILED_SENTINEL
        assert not answer.has_usable_transcription
        assert answer.needs_review
        assert answer.ai_feedback == "gave up"

    def test_json_round_trip(self, repository: InMemoryAnswerRepository, temp_dir: Path) -> None:
        """Test a saved data file loads back with scores and feedback."""
        asyncio.run(repository.commit_scoring(1, _result("3.5"), Decimal("3.5")))
        path = repository.save(temp_dir / "data" / "out.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data) == {"questions", "criteria", "answers", "feedback"}

        loaded = InMemoryAnswerRepository.load(path)
        assert loaded.answer_ids() == [1, 2, 3, 4, 5]
        assert asyncio.run(loaded.get_answer(1)).score == Decimal("3.5")
        assert len(asyncio.run(loaded.list_feedback(1))) == 1
        new_rows = asyncio.run(loaded.commit_scoring(3, _result(), Decimal("4")))
        assert new_rows[0].id == 2


class TestModels:
    """Tests for model validation."""

    def test_criterion_result_rejects_score_above_max(self) -> None:
        with pytest.raises(ValidationError):
            CriterionResult(
                criterion_id=1,
                name="Grammar",
                score=Decimal("6"),
                max_score=Decimal("5"),
                weight=Decimal("0.5"),
            )

    def test_scoring_result_rejects_total_above_max(self) -> None:
        with pytest.raises(ValidationError):
            ScoringResult(
                total_score=Decimal("6"),
                total_max_score=Decimal("5"),
                criteria_scores=_result().criteria_scores,
                overall_feedback="x",
            )

    def test_scoring_result_requires_criteria(self) -> None:
        with pytest.raises(ValidationError):
            ScoringResult(
                total_score=Decimal("0"),
                total_max_score=Decimal("5"),
                criteria_scores=(),
                overall_feedback="x",
            )

    def test_percentages(self) -> None:
        result = _result("4", "5")

        assert result.percentage_score == 80.0
        assert result.criteria_scores[0].percentage == 80.0

    def test_answer_rejects_negative_score(self) -> None:
        with pytest.raises(ValidationError):
            Answer(id=1, attempt_id=1, question_id=1, answer_type=AnswerType.TEXT, score=-1)

    def test_criterion_max_score_has_two_decimals_at_most(self) -> None:
        """Test a criterion maximum that rounding could overshoot is rejected."""
        with pytest.raises(ValidationError):
            ScoringCriterion(
                id=1,
                aptis_type_id=1,
                question_type_id=10,
                name="Grammar",
                weight=Decimal("1"),
                max_score=Decimal("4.995"),
                rubric_prompt="5: no errors.",
            )

    def test_requeue_summary_tallies(self) -> None:
        summary = RequeueSummary(
            total_found=4,
            items=(
                RequeueItem(answer_id=1, outcome=RequeueOutcome.SCORED),
                RequeueItem(answer_id=2, outcome=RequeueOutcome.SCORED),
                RequeueItem(answer_id=3, outcome=RequeueOutcome.FAILED),
                RequeueItem(answer_id=4, outcome=RequeueOutcome.SKIPPED),
            ),
        )

        assert (summary.scored, summary.failed, summary.skipped) == (2, 1, 1)
        assert summary.model_dump()["scored"] == 2


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None, openai_api_key="test-api-key-for-testing")

        assert settings.scoring_max_attempts == 3
        assert settings.transcription_max_attempts == 3
        assert settings.scoring_timeout == 30.0
        assert settings.retry_backoff_mode == RetryBackoffMode.DEFERRED
        assert settings.requeue_limit == 100

    def test_base_url_trailing_slash(self, test_settings: Settings) -> None:
        assert test_settings.openai_base_url == "https://test.api.local"

    def test_log_level_normalized(self) -> None:
        settings = Settings(
            _env_file=None, openai_api_key="test-api-key-for-testing", log_level="debug"
        )

        assert settings.log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, openai_api_key="test-api-key-for-testing", log_level="LOUD")

    def test_short_api_key(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, openai_api_key="short")
