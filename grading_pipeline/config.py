"""
Configuration management for the grading pipeline.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
All configuration is validated at startup to fail fast on misconfiguration.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryBackoffMode(str, Enum):
    """How the transcription worker waits between retries."""

    SLEEP = "sleep"  # Worker sleeps in place, no other job progresses
    DEFERRED = "deferred"  # Failed job gets a not-before time, due jobs keep flowing


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are validated at startup. Missing required fields
    will raise clear validation errors.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # OpenAI API Configuration
    # ==========================================================================
    openai_api_key: str = Field(
        ...,
        description="API key for the OpenAI-compatible endpoint",
        min_length=10,
    )

    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL for the OpenAI-compatible API",
    )

    scoring_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model used to score answers",
    )

    transcription_model: str = Field(
        default="whisper-1",
        description="Speech-to-text model used for audio answers",
    )

    llm_temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Temperature for LLM generation (0.0 = deterministic)",
    )

    llm_max_tokens: int = Field(
        default=1024,
        ge=64,
        description="Maximum tokens in a scoring response",
    )

    # ==========================================================================
    # Scoring Configuration
    # ==========================================================================
    scoring_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Oracle calls per criterion before the run is aborted",
    )

    scoring_retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay in seconds between oracle retries (multiplied by attempt)",
    )

    scoring_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout in seconds for a single oracle call",
    )

    # ==========================================================================
    # Transcription Queue Configuration
    # ==========================================================================
    transcription_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Transcription attempts per job before the answer needs review",
    )

    transcription_retry_delay: float = Field(
        default=10.0,
        ge=0.0,
        description="Delay in seconds before a failed job is retried",
    )

    transcription_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Timeout in seconds for a single transcription call",
    )

    transcription_language: str = Field(
        default="en",
        min_length=2,
        description="Default spoken language of audio answers",
    )

    retry_backoff_mode: RetryBackoffMode = Field(
        default=RetryBackoffMode.DEFERRED,
        description="How the transcription worker waits between retries",
    )

    # ==========================================================================
    # Administration
    # ==========================================================================
    requeue_limit: int = Field(
        default=100,
        ge=1,
        description="Maximum number of pending answers re-scored per requeue",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level for the CLI",
    )

    @field_validator("openai_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and check the logging level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
