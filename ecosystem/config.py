"""
Ecosystem — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Ecosystem matching engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "ecosystem_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "ecosystem"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # ------------------------------------------------------------------ #
    # Redis – optional second-level embedding cache
    # ------------------------------------------------------------------ #
    REDIS_URL: str = ""
    EMBEDDING_CACHE_TTL_SECONDS: int = 86_400

    # ------------------------------------------------------------------ #
    # Embedding provider (Hugging Face inference API)
    # ------------------------------------------------------------------ #
    HUGGINGFACE_API_KEY: str = ""
    EMBEDDING_API_BASE: str = "https://api-inference.huggingface.co"
    EMBEDDING_MODEL: str = "BAAI/bge-base-en-v1.5"
    EMBEDDING_DIMENSION: int = 768
    EMBEDDING_MAX_CHARS: int = 512  # BGE has a 512 token window

    # ------------------------------------------------------------------ #
    # Transcription + moderation provider (OpenAI-compatible)
    # ------------------------------------------------------------------ #
    OPENAI_API_KEY: str = ""
    TRANSCRIPTION_API_URL: str = "https://api.openai.com/v1/audio/transcriptions"
    TRANSCRIPTION_MODEL: str = "whisper-1"
    MODERATION_API_URL: str = "https://api.openai.com/v1/moderations"
    AUDIO_MIN_SECONDS: float = 2.0
    AUDIO_MAX_SECONDS: float = 20.0
    AUDIO_MAX_BYTES: int = 25 * 1024 * 1024  # Whisper upload ceiling
    TRANSCRIPTION_MIN_CHARS: int = 10

    # ------------------------------------------------------------------ #
    # Outbound call policy
    # ------------------------------------------------------------------ #
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_RETRIES: int = 2
    PROVIDER_BACKOFF_BASE: float = 1.0
    PROVIDER_BACKOFF_MAX: float = 8.0
    PROVIDER_MAX_CONCURRENT: int = 5
    PROVIDER_REQUESTS_PER_MINUTE: int = 120

    # Inbound per-user quota on expensive endpoints
    USER_REQUESTS_PER_MINUTE: int = 30

    # ------------------------------------------------------------------ #
    # Match scoring weights
    # ------------------------------------------------------------------ #
    SCORING_WEIGHTS: Dict[str, float] = {
        "needs_to_strengths": 0.35,
        "strengths_to_needs": 0.15,
        "goals": 0.30,
        "values": 0.20,
    }
    # Split of the structured (list-overlap) score across its components
    STRUCTURED_COMPONENT_WEIGHTS: Dict[str, float] = {
        "complementary": 0.4,
        "goals": 0.3,
        "values": 0.2,
        "industry": 0.1,
    }
    STRUCTURED_OVERLAP_WEIGHT: float = 0.2
    EVIDENCE_SIMILARITY_THRESHOLD: float = 0.5

    # ------------------------------------------------------------------ #
    # Batch matching
    # ------------------------------------------------------------------ #
    MATCH_BATCH_CONCURRENCY: int = 8
    MATCH_CANDIDATE_POOL_SIZE: int = 200
    MATCH_DEFAULT_LIMIT: int = 3

    # ------------------------------------------------------------------ #
    # Onboarding
    # ------------------------------------------------------------------ #
    ONBOARDING_TIME_BUDGET_SECONDS: float = 1200.0
    REFLECTIVE_MIN_SECONDS_PER_STEP: float = 60.0

    # ------------------------------------------------------------------ #
    # Health validation
    # ------------------------------------------------------------------ #
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 15.0

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 70.0
    SHUTDOWN_DRAIN_SECONDS: float = 15.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("STRUCTURED_OVERLAP_WEIGHT", "EVIDENCE_SIMILARITY_THRESHOLD")
    @classmethod
    def _weight_must_be_between_0_and_1(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Weight must be between 0 and 1, got {v}")
        return v

    @field_validator("SCORING_WEIGHTS", "STRUCTURED_COMPONENT_WEIGHTS")
    @classmethod
    def _scoring_weights_in_range(cls, v: Dict[str, float]) -> Dict[str, float]:
        for name, weight in v.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(
                    f"Scoring weight {name!r} must be between 0 and 1, got {weight}"
                )
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from ecosystem.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]
