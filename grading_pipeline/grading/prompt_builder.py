"""
Prompt builder for per-criterion scoring.

Constructs prompts that enforce:
- Evaluation against a single rubric criterion
- Language and relevance checks before anything else
- A numeric score within the criterion's range
- Consistent JSON output
"""

from grading_pipeline.models import Question, QuestionSkill, ScoringCriterion


class PromptBuilder:
    """
    Builds scoring prompts for one criterion at a time.

    The prompts are designed to:
    1. Give the oracle the question context and expected key points
    2. Restrict the evaluation to exactly one criterion
    3. Spell out the score range so the oracle answers on the right scale
    4. Produce consistent JSON output
    """

    SYSTEM_PROMPT = """You are an expert APTIS English language examiner.

RULES:
1. Score ONLY the criterion you are given. Other criteria are scored separately.
2. This is an ENGLISH test. A response in another language receives the minimum score.
3. Song lyrics, random words or content unrelated to the question are heavily penalized.
4. Two identical answers MUST receive IDENTICAL scores.
5. Your output MUST be valid JSON matching the exact format specified.
6. Do not add any text before or after the JSON."""

    TASK_CONTEXT = {
        QuestionSkill.WRITING: (
            "Task: APTIS Writing. The student typed the response below. "
            "Spelling, punctuation and organization are visible to you."
        ),
        QuestionSkill.SPEAKING: (
            "Task: APTIS Speaking. The response below is an automatic transcription "
            "of the student's recording. Do not penalize missing punctuation or "
            "capitalization introduced by the transcription."
        ),
    }

    @staticmethod
    def build_criterion_prompt(
        answer_text: str,
        question: Question | None,
        criterion: ScoringCriterion,
    ) -> str:
        """
        Build the user prompt for scoring one criterion.

        Args:
            answer_text: The student's answer or transcription.
            question: Question context; may be absent.
            criterion: The rubric criterion to score.

        Returns:
            The formatted user prompt.
        """
        context_text = PromptBuilder._format_context(question)
        max_score = criterion.max_score

        prompt = f"""SCORING TASK

{context_text}

STUDENT RESPONSE:
---BEGIN RESPONSE---
{answer_text}
---END RESPONSE---

SCORING CRITERION:
Name: {criterion.name}
Description: {criterion.description or 'N/A'}
Score range: 0 to {max_score}

RUBRIC:
{criterion.rubric_prompt}

INSTRUCTIONS:
1. FIRST check the response is in English and answers the question.
2. Evaluate the response against the criterion above and nothing else.
3. Choose a score between 0 and {max_score} inclusive using the rubric bands.
4. Quote or paraphrase the response when justifying the score.
5. Give concrete suggestions the student can act on.

OUTPUT FORMAT (respond with ONLY this JSON, no other text):
{{
  "score": <number between 0 and {max_score}>,
  "comment": "<2-3 sentence assessment for this criterion>",
  "strengths": "<what the response does well>",
  "weaknesses": "<what the response does poorly>",
  "suggestions": "<specific improvements, e.g. corrected sentences>"
}}"""

        return prompt

    @staticmethod
    def _format_context(question: Question | None) -> str:
        """Format the question context for the prompt."""
        if question is None:
            return "CONTEXT:\nQuestion: N/A\nSample Answer: N/A\nKey Points Expected: N/A"

        key_points = ", ".join(question.key_points) if question.key_points else "N/A"
        lines: list[str] = [
            "CONTEXT:",
            PromptBuilder.TASK_CONTEXT[question.skill],
            f"Question: {question.content or 'N/A'}",
            f"Sample Answer: {question.sample_answer or 'N/A'}",
            f"Key Points Expected: {key_points}",
        ]
        return "\n".join(lines)

    @staticmethod
    def get_system_prompt() -> str:
        """Get the system prompt for criterion scoring."""
        return PromptBuilder.SYSTEM_PROMPT
