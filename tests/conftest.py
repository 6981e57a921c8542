"""
Pytest configuration and fixtures.

Provides common test fixtures and collaborator fakes for all test modules.
"""

import json
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Generator

import pytest

from grading_pipeline.config import RetryBackoffMode, Settings
from grading_pipeline.grading import OracleInvocationError, ScoringOrchestrator
from grading_pipeline.lifecycle import AnswerLifecycleCoordinator
from grading_pipeline.models import (
    Answer,
    AnswerType,
    Question,
    QuestionSkill,
    ScoringCriterion,
)
from grading_pipeline.storage import InMemoryAnswerRepository
from grading_pipeline.transcription import TranscriptionError, TranscriptionQueue

WRITING_QUESTION_ID = 1
SPEAKING_QUESTION_ID = 2


# ==============================================================================
# Collaborator Fakes
# ==============================================================================


def oracle_response(score: object, comment: str = "Clear and well organized.") -> str:
    """Build a well-formed oracle JSON response."""
    return json.dumps(
        {
            "score": score,
            "comment": comment,
            "strengths": "Good range of vocabulary",
            "weaknesses": "Some tense errors",
            "suggestions": "Review past simple forms",
        }
    )


class FakeOracle:
    """
    Scoring oracle replaying scripted responses.

    Each call consumes the next scripted item; exceptions are raised.
    Once the script is used up, the default response is returned.
    """

    def __init__(self, responses: list[object] | None = None, default: str | None = None):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: list[str] = []

    async def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        self.prompts.append(prompt)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise OracleInvocationError("No scripted response")
        return str(item)

    @property
    def call_count(self) -> int:
        return len(self.prompts)


class FakeSpeech:
    """
    Speech-to-text replaying scripted outcomes per audio path.

    Paths without a script transcribe to "transcript of <path>".
    """

    def __init__(self, outcomes: dict[str, list[object]] | None = None):
        self.outcomes = {path: list(items) for path, items in (outcomes or {}).items()}
        self.calls: list[str] = []

    async def transcribe(self, audio_path: str, language: str) -> str:
        self.calls.append(audio_path)
        script = self.outcomes.get(audio_path)
        if script:
            item = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(item, Exception):
                raise item
            return str(item)
        return f"transcript of {audio_path}"


class FailingSpeech(FakeSpeech):
    """Speech-to-text that fails on every call."""

    async def transcribe(self, audio_path: str, language: str) -> str:
        self.calls.append(audio_path)
        raise TranscriptionError("service unavailable", audio_path)


# ==============================================================================
# Directory Fixtures
# ==============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with no retry delays."""
    return Settings(
        _env_file=None,
        openai_api_key="test-api-key-for-testing",
        openai_base_url="https://test.api.local/",
        scoring_model="test-model",
        scoring_retry_delay=0.0,
        scoring_timeout=5.0,
        transcription_retry_delay=0.0,
        transcription_timeout=5.0,
        retry_backoff_mode=RetryBackoffMode.DEFERRED,
    )


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def writing_question() -> Question:
    """A writing question with context for the prompts."""
    return Question(
        id=WRITING_QUESTION_ID,
        aptis_type_id=1,
        question_type_id=10,
        skill=QuestionSkill.WRITING,
        content="Write an email to a friend about your last holiday.",
        sample_answer="Hi Sam, last summer I went to the coast...",
        key_points=("destination", "activities", "opinion"),
    )


@pytest.fixture
def speaking_question() -> Question:
    """A speaking question."""
    return Question(
        id=SPEAKING_QUESTION_ID,
        aptis_type_id=1,
        question_type_id=20,
        skill=QuestionSkill.SPEAKING,
        content="Describe your favourite place in your town.",
    )


def _criteria(question_type_id: int, first_id: int) -> list[ScoringCriterion]:
    return [
        ScoringCriterion(
            id=first_id,
            aptis_type_id=1,
            question_type_id=question_type_id,
            name="Grammar accuracy",
            description="Range and accuracy of grammatical structures",
            weight=Decimal("0.5"),
            max_score=Decimal("5"),
            rubric_prompt="5: no errors. 3: some errors that do not impede meaning. 0: no control.",
        ),
        ScoringCriterion(
            id=first_id + 1,
            aptis_type_id=1,
            question_type_id=question_type_id,
            name="Task fulfilment",
            description="How well the response answers the question",
            weight=Decimal("0.5"),
            max_score=Decimal("5"),
            rubric_prompt="5: all points covered. 3: most points covered. 0: off topic.",
        ),
    ]


@pytest.fixture
def writing_criteria() -> list[ScoringCriterion]:
    """Two equally weighted writing criteria, max 5 each."""
    return _criteria(10, 1)


@pytest.fixture
def speaking_criteria() -> list[ScoringCriterion]:
    """Two equally weighted speaking criteria, max 5 each."""
    return _criteria(20, 11)


@pytest.fixture
def sample_answers() -> list[Answer]:
    """
    Answers covering every pipeline path.

    1: typed text, 2: audio awaiting transcription, 3: audio already
    transcribed, 4: speaking answer with neither audio nor text,
    5: multiple choice.
    """
    return [
        Answer(
            id=1,
            attempt_id=100,
            question_id=WRITING_QUESTION_ID,
            answer_type=AnswerType.TEXT,
            text_answer="Hi Sam, I went to Lisbon last month and visited the old town.",
        ),
        Answer(
            id=2,
            attempt_id=100,
            question_id=SPEAKING_QUESTION_ID,
            answer_type=AnswerType.AUDIO,
            audio_url="audio/answer-2.webm",
        ),
        Answer(
            id=3,
            attempt_id=100,
            question_id=SPEAKING_QUESTION_ID,
            answer_type=AnswerType.AUDIO,
            audio_url="audio/answer-3.webm",
            transcribed_text="My favourite place is the park near the river.",
        ),
        Answer(
            id=4,
            attempt_id=100,
            question_id=SPEAKING_QUESTION_ID,
            answer_type=AnswerType.AUDIO,
        ),
        Answer(
            id=5,
            attempt_id=100,
            question_id=WRITING_QUESTION_ID,
            answer_type=AnswerType.OPTION,
            text_answer="B",
        ),
    ]


@pytest.fixture
def repository(
    sample_answers: list[Answer],
    writing_question: Question,
    speaking_question: Question,
    writing_criteria: list[ScoringCriterion],
    speaking_criteria: list[ScoringCriterion],
) -> InMemoryAnswerRepository:
    """In-memory repository seeded with the sample data."""
    return InMemoryAnswerRepository(
        answers=sample_answers,
        questions=[writing_question, speaking_question],
        criteria=writing_criteria + speaking_criteria,
    )


# ==============================================================================
# Pipeline Fixtures
# ==============================================================================


@pytest.fixture
def oracle() -> FakeOracle:
    """Oracle that scores 4 on every criterion."""
    return FakeOracle(default=oracle_response(4))


@pytest.fixture
def speech() -> FakeSpeech:
    """Speech-to-text that always succeeds."""
    return FakeSpeech()


@pytest.fixture
def orchestrator(
    repository: InMemoryAnswerRepository,
    oracle: FakeOracle,
    speech: FakeSpeech,
    test_settings: Settings,
) -> ScoringOrchestrator:
    """Scoring orchestrator over the fakes."""
    return ScoringOrchestrator(repository, oracle, speech, test_settings)


def build_coordinator(
    repository: InMemoryAnswerRepository,
    oracle: FakeOracle,
    speech: FakeSpeech,
    settings: Settings,
) -> AnswerLifecycleCoordinator:
    """Wire a full pipeline over the given collaborators."""
    orchestrator = ScoringOrchestrator(repository, oracle, speech, settings)
    queue = TranscriptionQueue(speech, repository, settings)
    return AnswerLifecycleCoordinator(repository, orchestrator, queue, settings)
