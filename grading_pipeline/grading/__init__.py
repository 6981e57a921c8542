"""
Grading Engine Module.

Per-criterion LLM scoring with weighted, all-or-nothing aggregation.
"""

from grading_pipeline.grading.engine import (
    MissingAnswerTextError,
    MissingCriteriaError,
    ScoringOrchestrator,
)
from grading_pipeline.grading.feedback import FeedbackGenerator
from grading_pipeline.grading.llm_client import LLMClient, OracleInvocationError, ScoringOracle
from grading_pipeline.grading.prompt_builder import PromptBuilder
from grading_pipeline.grading.scorer import (
    CriterionScorer,
    MalformedResponseError,
    ResponseParser,
)

__all__ = [
    "CriterionScorer",
    "FeedbackGenerator",
    "LLMClient",
    "MalformedResponseError",
    "MissingAnswerTextError",
    "MissingCriteriaError",
    "OracleInvocationError",
    "PromptBuilder",
    "ResponseParser",
    "ScoringOracle",
    "ScoringOrchestrator",
]
