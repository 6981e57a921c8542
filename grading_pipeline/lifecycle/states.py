"""
Answer lifecycle states and the transitions allowed between them.
"""

from enum import Enum

from grading_pipeline.models import Answer, AnswerType


class AnswerState(str, Enum):
    """Where an answer is in the grading pipeline."""

    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    QUEUED = "queued"
    TRANSCRIBED = "transcribed"
    SCORING = "scoring"
    SCORED = "scored"
    NEEDS_REVIEW = "needs_review"


ALLOWED_TRANSITIONS: dict[AnswerState, frozenset[AnswerState]] = {
    AnswerState.UNANSWERED: frozenset({AnswerState.ANSWERED}),
    AnswerState.ANSWERED: frozenset({AnswerState.QUEUED, AnswerState.SCORING}),
    AnswerState.QUEUED: frozenset({AnswerState.TRANSCRIBED, AnswerState.NEEDS_REVIEW}),
    AnswerState.TRANSCRIBED: frozenset({AnswerState.SCORING}),
    AnswerState.SCORING: frozenset({AnswerState.SCORED, AnswerState.NEEDS_REVIEW}),
    AnswerState.SCORED: frozenset(),
    # Administrative re-queue only
    AnswerState.NEEDS_REVIEW: frozenset({AnswerState.SCORING, AnswerState.QUEUED}),
}


class InvalidTransitionError(Exception):
    """Raised when an answer is moved along an edge the state machine lacks."""

    def __init__(self, answer_id: int, current: AnswerState, target: AnswerState):
        self.answer_id = answer_id
        self.current = current
        self.target = target
        super().__init__(
            f"Answer {answer_id} cannot move from {current.value} to {target.value}"
        )


def can_transition(current: AnswerState, target: AnswerState) -> bool:
    """Check whether the state machine has an edge from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


def derive_state(answer: Answer) -> AnswerState:
    """
    Infer the lifecycle state of a stored answer.

    Used for answers the coordinator has not seen in this process, e.g.
    after a restart dropped the in-memory queue.
    """
    if answer.score is not None or answer.ai_graded_at is not None:
        return AnswerState.SCORED
    if answer.needs_review:
        return AnswerState.NEEDS_REVIEW
    if answer.answer_type == AnswerType.AUDIO and answer.has_usable_transcription:
        return AnswerState.TRANSCRIBED
    if (answer.text_answer or "").strip() or answer.audio_url:
        return AnswerState.ANSWERED
    return AnswerState.UNANSWERED
