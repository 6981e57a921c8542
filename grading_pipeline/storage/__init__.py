"""
Storage Module.

Persistence contract used by the pipeline and its in-memory implementation.
"""

from grading_pipeline.storage.repository import (
    AnswerRepository,
    InMemoryAnswerRepository,
    RecordNotFoundError,
)

__all__ = [
    "AnswerRepository",
    "InMemoryAnswerRepository",
    "RecordNotFoundError",
]
