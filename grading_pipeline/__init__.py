"""
Grading Pipeline - AI grading for written and spoken exam answers.

This package transcribes audio answers through a retrying in-memory queue,
scores answers criterion by criterion against a weighted rubric using an
LLM, and falls back to human review whenever automated grading cannot
produce a trustworthy grade.
"""

__version__ = "1.0.0"
__author__ = "Grading Pipeline Team"
