"""
Pydantic models for the grading pipeline.

These models define the schemas for:
- Answers, questions and scoring criteria read from persistence
- Per-criterion and aggregate scoring results
- Transcription jobs and queue introspection
- Administrative re-queue summaries

Result models use strict validation so a grade that breaks its bounds
can never be constructed.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

TRANSCRIPTION_FAILED_SENTINEL = "[Transcription failed]"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_decimal(v: Any) -> Any:
    """Convert numeric values to Decimal for precision, leaving None alone."""
    if v is None or isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise ValueError("Boolean is not a valid score")
    return Decimal(str(v))


# ==============================================================================
# Enumerations
# ==============================================================================


class AnswerType(str, Enum):
    """How the student answered a question."""

    OPTION = "option"
    TEXT = "text"
    AUDIO = "audio"
    JSON = "json"


class GradedBy(str, Enum):
    """Who produced the stored score."""

    AUTO = "auto"
    AI = "ai"
    MANUAL = "manual"


class QuestionSkill(str, Enum):
    """Skill a question assesses, which selects the scoring path."""

    WRITING = "writing"
    SPEAKING = "speaking"


class JobStatus(str, Enum):
    """Status of a transcription job while it is owned by the queue."""

    PENDING = "pending"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"


# ==============================================================================
# Persistence Models
# ==============================================================================


class Answer(BaseModel):
    """
    A student's answer to one question of an exam attempt.

    Created by the exam-attempt subsystem and mutated by the pipeline
    at each stage. Never deleted here.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: int
    attempt_id: int
    question_id: int
    answer_type: AnswerType
    text_answer: str | None = None
    audio_url: str | None = None
    transcribed_text: str | None = None
    score: Decimal | None = Field(default=None, ge=0)
    max_score: Decimal | None = Field(default=None, gt=0)
    ai_feedback: str | None = None
    ai_graded_at: datetime | None = None
    needs_review: bool = False
    graded_by: GradedBy | None = None

    @field_validator("score", "max_score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal | None:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)

    @property
    def has_usable_transcription(self) -> bool:
        """Whether transcribed text exists and is not the failure sentinel."""
        text = (self.transcribed_text or "").strip()
        return bool(text) and text != TRANSCRIPTION_FAILED_SENTINEL

    @property
    def is_pending(self) -> bool:
        """Whether the answer still awaits an automated grade."""
        return self.score is None and self.ai_graded_at is None


class Question(BaseModel):
    """Read-only question context used to build scoring prompts."""

    model_config = ConfigDict(frozen=True)

    id: int
    aptis_type_id: int
    question_type_id: int
    skill: QuestionSkill
    content: str = ""
    sample_answer: str | None = None
    key_points: tuple[str, ...] = ()


class ScoringCriterion(BaseModel):
    """
    A single weighted rubric criterion for a question type.

    Weights need not sum to 1 across a question type.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    aptis_type_id: int
    question_type_id: int

    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Name of the criterion (e.g., 'Grammar accuracy')",
    )

    description: str = Field(
        default="",
        description="Optional description of what this criterion evaluates",
    )

    weight: Decimal = Field(
        ...,
        gt=0,
        le=1,
        description="Weight of this criterion in the aggregate score",
    )

    max_score: Decimal = Field(
        ...,
        gt=0,
        le=1000,
        decimal_places=2,
        description="Maximum score for this criterion",
    )

    rubric_prompt: str = Field(
        ...,
        min_length=1,
        description="Band descriptors the oracle scores against",
    )

    @field_validator("weight", "max_score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)


class AnswerFeedback(BaseModel):
    """Persisted per-criterion feedback row, inserted once per scoring run."""

    model_config = ConfigDict(frozen=True)

    id: int
    answer_id: int
    criterion_id: int
    score: Decimal
    comment: str
    suggestions: str
    strengths: str
    weaknesses: str
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)


# ==============================================================================
# Scoring Result Models
# ==============================================================================


class CriterionResult(BaseModel):
    """
    The scoring result for a single criterion.

    The score is always within [0, max_score]; out-of-range oracle
    output is clamped before a result is built.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    criterion_id: int
    name: str = Field(..., min_length=1)
    score: Decimal = Field(..., ge=0)
    max_score: Decimal = Field(..., gt=0)
    weight: Decimal = Field(..., gt=0, le=1)
    comment: str = ""
    suggestions: str = ""
    strengths: str = ""
    weaknesses: str = ""

    raw_score: Decimal | None = Field(
        default=None,
        description="Score as returned by the oracle, before clamping",
    )

    clamped: bool = Field(
        default=False,
        description="Whether the oracle score was outside [0, max_score]",
    )

    @field_validator("score", "max_score", "weight", "raw_score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal | None:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)

    @model_validator(mode="after")
    def validate_score_range(self) -> "CriterionResult":
        """Ensure the score doesn't exceed the criterion maximum."""
        if self.score > self.max_score:
            raise ValueError(
                f"Score ({self.score}) cannot exceed max score ({self.max_score})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def weighted_score(self) -> Decimal:
        """Score multiplied by the criterion weight."""
        return self.score * self.weight

    @computed_field  # type: ignore[prop-decorator]
    @property
    def weighted_max_score(self) -> Decimal:
        """Maximum score multiplied by the criterion weight."""
        return self.max_score * self.weight

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> float:
        """Calculate percentage score for this criterion."""
        return float(self.score / self.max_score * 100)


class ScoringResult(BaseModel):
    """
    Aggregate result of a complete multi-criteria scoring run.

    Totals are weighted sums rounded to 2 decimals.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    total_score: Decimal = Field(..., ge=0)
    total_max_score: Decimal = Field(..., gt=0)

    criteria_scores: tuple[CriterionResult, ...] = Field(
        ...,
        min_length=1,
        description="Results for each criterion, in rubric order",
    )

    overall_feedback: str = Field(
        ...,
        min_length=1,
        description="Summary synthesized from the per-criterion comments",
    )

    scored_at: datetime = Field(default_factory=utc_now)

    @field_validator("total_score", "total_max_score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Decimal:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)

    @model_validator(mode="after")
    def validate_total_range(self) -> "ScoringResult":
        """Ensure the total never exceeds the weighted maximum."""
        if self.total_score > self.total_max_score:
            raise ValueError(
                f"Total score ({self.total_score}) cannot exceed "
                f"total max score ({self.total_max_score})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage_score(self) -> float:
        """Calculate overall percentage score."""
        return float(self.total_score / self.total_max_score * 100)


# ==============================================================================
# Transcription Queue Models
# ==============================================================================


class TranscriptionJob(BaseModel):
    """
    An audio-to-text job owned by the transcription queue.

    Lives only for the process lifetime; never persisted.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    answer_id: int
    audio_path: str = Field(..., min_length=1)
    language: str = "en"
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    not_before: float = Field(
        default=0.0,
        description="Monotonic time before which the job is not retried",
    )
    last_error: str | None = None

    @property
    def exhausted(self) -> bool:
        """Whether the job has used its whole retry budget."""
        return self.attempts >= self.max_attempts


class JobSnapshot(BaseModel):
    """Read-only view of a queued job."""

    model_config = ConfigDict(frozen=True)

    id: str
    answer_id: int
    attempts: int
    created_at: datetime


class QueueStatus(BaseModel):
    """Read-only view of the transcription queue."""

    model_config = ConfigDict(frozen=True)

    length: int
    is_processing: bool
    jobs: tuple[JobSnapshot, ...] = ()


# ==============================================================================
# Administration Models
# ==============================================================================


class RequeueOutcome(str, Enum):
    """What happened to one answer during a bulk re-queue."""

    SCORED = "scored"
    FAILED = "failed"
    SKIPPED = "skipped"


class RequeueItem(BaseModel):
    """Outcome of re-scoring one pending answer."""

    model_config = ConfigDict(frozen=True)

    answer_id: int
    outcome: RequeueOutcome
    skill: QuestionSkill | None = None
    score: Decimal | None = None
    max_score: Decimal | None = None
    reason: str | None = None


class RequeueSummary(BaseModel):
    """Tallies of a bulk re-queue of pending answers."""

    model_config = ConfigDict(frozen=True)

    total_found: int = 0
    items: tuple[RequeueItem, ...] = ()

    def _count(self, outcome: RequeueOutcome) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def scored(self) -> int:
        """Number of answers scored."""
        return self._count(RequeueOutcome.SCORED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed(self) -> int:
        """Number of answers whose scoring failed."""
        return self._count(RequeueOutcome.FAILED)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def skipped(self) -> int:
        """Number of speaking answers skipped for lack of a transcription."""
        return self._count(RequeueOutcome.SKIPPED)
