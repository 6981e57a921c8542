"""
Overall feedback synthesis from per-criterion results.
"""

from decimal import Decimal
from typing import Sequence

from grading_pipeline.models import CriterionResult

# (minimum percentage, level, description), highest band first
PERFORMANCE_BANDS: tuple[tuple[int, str, str], ...] = (
    (90, "Excellent", "Outstanding performance demonstrating mastery of the required skills"),
    (80, "Very Good", "Strong performance with only minor areas for improvement"),
    (70, "Good", "Solid performance meeting most requirements effectively"),
    (60, "Satisfactory", "Acceptable performance but with room for notable improvement"),
    (50, "Below Average", "Performance below expected standards requiring focused improvement"),
    (0, "Needs Improvement", "The answer needs significant improvement in multiple areas"),
)


class FeedbackGenerator:
    """Builds the overall feedback text for a scoring run."""

    @staticmethod
    def performance_band(percentage: float) -> tuple[str, str]:
        """Return the (level, description) band for a percentage."""
        for minimum, level, description in PERFORMANCE_BANDS:
            if percentage >= minimum:
                return level, description
        return PERFORMANCE_BANDS[-1][1], PERFORMANCE_BANDS[-1][2]

    @staticmethod
    def generate_overall_feedback(criteria_scores: Sequence[CriterionResult]) -> str:
        """
        Summarize a run from its per-criterion results.

        The summary opens with a weighted performance band and then lists
        each criterion's score and comment in rubric order.

        Args:
            criteria_scores: Results of every criterion in the run.

        Returns:
            The overall feedback text.
        """
        if not criteria_scores:
            return "No scoring data available for feedback generation."

        total = sum((cs.weighted_score for cs in criteria_scores), Decimal(0))
        total_max = sum((cs.weighted_max_score for cs in criteria_scores), Decimal(0))
        percentage = float(total / total_max * 100) if total_max > 0 else 0.0

        level, description = FeedbackGenerator.performance_band(percentage)
        lines = [f"Overall Performance: {level} ({round(percentage)}%). {description}."]
        for cs in criteria_scores:
            lines.append(f"- {cs.name} ({cs.score}/{cs.max_score}): {cs.comment}")

        return "\n".join(lines)
