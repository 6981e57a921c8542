"""
Transcription Module.

Audio-to-text conversion through a single-worker retrying queue.
"""

from grading_pipeline.transcription.queue import TranscriptionListener, TranscriptionQueue
from grading_pipeline.transcription.speech_client import (
    PermanentTranscriptionError,
    SpeechToText,
    TranscriptionError,
    WhisperTranscriber,
)

__all__ = [
    "PermanentTranscriptionError",
    "SpeechToText",
    "TranscriptionError",
    "TranscriptionListener",
    "TranscriptionQueue",
    "WhisperTranscriber",
]
