"""
Speech-to-text client for audio answers.

Wraps the OpenAI audio transcription endpoint behind the SpeechToText
contract. Every failure surfaces as TranscriptionError so callers can
count it against a retry budget.
"""

import logging
from pathlib import Path
from typing import Protocol

from openai import AsyncOpenAI, OpenAIError

from grading_pipeline.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Upload limit of the transcription endpoint
MAX_AUDIO_BYTES = 25 * 1024 * 1024


class TranscriptionError(Exception):
    """
    Raised when an audio file cannot be converted to text.

    Transient by default: the queue retries it within the job's budget.
    """

    def __init__(self, message: str, audio_path: str | Path, cause: Exception | None = None):
        self.audio_path = str(audio_path)
        self.cause = cause
        super().__init__(f"Failed to transcribe '{audio_path}': {message}")


class PermanentTranscriptionError(TranscriptionError):
    """Raised through a job's completion future once its retries are exhausted."""

    def __init__(self, audio_path: str | Path, attempts: int, cause: Exception | None = None):
        self.attempts = attempts
        super().__init__(f"gave up after {attempts} attempts ({cause})", audio_path, cause)


class SpeechToText(Protocol):
    """Contract for anything that can transcribe an audio file."""

    async def transcribe(self, audio_path: str, language: str) -> str:
        """Return the transcribed text of an audio file."""
        ...


class WhisperTranscriber:
    """
    Speech-to-text backed by the OpenAI audio transcription API.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the transcriber.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._client = AsyncOpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
            timeout=self._settings.transcription_timeout,
            max_retries=0,
        )

    async def transcribe(self, audio_path: str, language: str) -> str:
        """
        Transcribe an audio file.

        Args:
            audio_path: Path to the audio file.
            language: ISO-639-1 language code of the recording.

        Returns:
            The transcribed text.

        Raises:
            TranscriptionError: If the file is missing, too large, or the API call fails.
        """
        path = Path(audio_path)
        if not path.is_file():
            raise TranscriptionError("Audio file not found", audio_path)

        size = path.stat().st_size
        if size == 0:
            raise TranscriptionError("Audio file is empty", audio_path)
        if size > MAX_AUDIO_BYTES:
            raise TranscriptionError(f"Audio file too large ({size} bytes)", audio_path)

        logger.debug("Transcribing %s (%d bytes, language=%s)", path.name, size, language)

        try:
            with path.open("rb") as audio_file:
                response = await self._client.audio.transcriptions.create(
                    model=self._settings.transcription_model,
                    file=audio_file,
                    language=language,
                )
        except OpenAIError as e:
            raise TranscriptionError(f"API error: {e}", audio_path, cause=e) from e

        text = (response.text or "").strip()
        if not text:
            raise TranscriptionError("Empty transcription", audio_path)

        return text
