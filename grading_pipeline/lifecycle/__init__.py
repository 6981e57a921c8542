"""
Lifecycle Module.

Per-answer state machine chaining transcription into scoring.
"""

from grading_pipeline.lifecycle.coordinator import AnswerLifecycleCoordinator
from grading_pipeline.lifecycle.states import (
    ALLOWED_TRANSITIONS,
    AnswerState,
    InvalidTransitionError,
    can_transition,
    derive_state,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AnswerLifecycleCoordinator",
    "AnswerState",
    "InvalidTransitionError",
    "can_transition",
    "derive_state",
]
