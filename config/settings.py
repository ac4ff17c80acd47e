"""Pydantic settings for environment configuration with async support."""


from __future__ import annotations
import logging
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Postgres - must be configured in .env file
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432  # Standard PostgreSQL port
    POSTGRES_DB: str = "replies"
    POSTGRES_USER: str = "replies"
    POSTGRES_PASSWORD: str = "replies"
    POSTGRES_DSN: str | None = None  # If set, overrides individual fields above

    # Redis (response cache)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Application
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    PHOENIX_ENDPOINT: str = "http://localhost:4317"
    TRACING_ENABLED: bool = True

    # General LLM Settings
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None

    # ────────────────────────────────────────────────────────────────────────────
    #     RESPONSE GENERATOR - Reply suggestion generation
    # ────────────────────────────────────────────────────────────────────────────
    #     Requires: natural short replies, strict JSON output
    #     Recommendation: moderate temperature for suggestion variety
    # ────────────────────────────────────────────────────────────────────────────
    RESPONSE_MODEL: str = "gpt-4-turbo-preview"
    RESPONSE_TEMPERATURE: float = 0.7
    RESPONSE_MAX_TOKENS: int = 500
    # Wall-clock bound on a single model call (batch or streaming)
    RESPONSE_TIMEOUT_SECONDS: float = 30.0
    RESPONSE_SUGGESTION_COUNT: int = 3
    # Recent messages loaded into the conversation context
    CONTEXT_MAX_MESSAGES: int = 20

    # ────────────────────────────────────────────────────────────────────────────
    #     PROMISE DETECTOR - commitments, deadlines, appointments, tasks
    # ────────────────────────────────────────────────────────────────────────────
    #     Pattern rules always run; the model pass adds recall on longer messages
    # ────────────────────────────────────────────────────────────────────────────
    PROMISE_AI_DETECTION_ENABLED: bool = True
    PROMISE_MODEL: str = "gpt-4o-mini"

    # Postgres pool bounds
    POSTGRES_POOL_MIN_SIZE: int = 2
    POSTGRES_POOL_MAX_SIZE: int = 20

    # ╔════════════════════════════════════════════════════════════════════════════╗
    # ║                              RESPONSE CACHE                              ║
    # ║  Redis cache of generated suggestions keyed by (content, user)             ║
    # ╚════════════════════════════════════════════════════════════════════════════╝
    # Base TTL (seconds) - scaled by confidence: 0.5x .. 4x
    CACHE_BASE_TTL_SECONDS: int = 3600
    CACHE_KEY_PREFIX: str = "ai_response:"
    # Expired-entry sweep interval (seconds) - default: 3600 = 1 hour
    CACHE_CLEANUP_INTERVAL_SECONDS: int = 3600
    # Coalesce concurrent cache misses for the same fingerprint in-process
    SINGLE_FLIGHT_ENABLED: bool = True

    # ╔════════════════════════════════════════════════════════════════════════════╗
    # ║                               JOB QUEUES                                   ║
    # ║  4 queues, one JobWorker each, all started in main.py:                     ║
    # ║                                                                            ║
    # ║  1. response           - reply suggestion generation                       ║
    # ║  2. promise-detection  - commitments / deadlines in messages               ║
    # ║  3. contact-inference  - name and relationship inference                   ║
    # ║  4. media              - media reference processing                        ║
    # ╚════════════════════════════════════════════════════════════════════════════╝
    WORKERS_ENABLED: bool = True
    # Idle poll interval when a queue is empty (seconds)
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    # Max attempts before a job is moved to failed
    JOB_MAX_ATTEMPTS: int = 3
    # Exponential backoff base: 2s -> 4s -> 8s
    JOB_BACKOFF_BASE_SECONDS: float = 2.0
    # Active jobs older than this are considered stalled and re-queued
    JOB_LEASE_SECONDS: int = 120
    # Bounded history per queue
    JOB_KEEP_COMPLETED: int = 100
    JOB_KEEP_FAILED: int = 50
    # Fan-out delays (seconds)
    RESPONSE_JOB_DELAY_SECONDS: float = 1.0
    CONTACT_INFERENCE_DELAY_SECONDS: float = 5.0

    # Analytics window when no date range is given
    ANALYTICS_DEFAULT_DAYS: int = 7

    # New-style Pydantic v2 config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def postgres_dsn(self) -> str:
        """psycopg2-style DSN string (space-separated), used by scripts/migrations.py."""
        return (
            f"host={self.POSTGRES_HOST} "
            f"port={self.POSTGRES_PORT} "
            f"dbname={self.POSTGRES_DB} "
            f"user={self.POSTGRES_USER} "
            f"password={self.POSTGRES_PASSWORD}"
        )

    @property
    def postgres_url(self) -> str:
        """AsyncPG DSN.
        - If POSTGRES_DSN exists:
            * 'postgresql+asyncpg://' -> normalized to 'postgresql://'
            * 'postgresql://' stays the same
        - Else build from HOST/PORT/DB/USER/PASSWORD
        """
        dsn = (self.POSTGRES_DSN or "").strip()
        if dsn:
            if dsn.startswith("postgresql+asyncpg://"):
                return "postgresql://" + dsn.split("postgresql+asyncpg://", 1)[1]
            return dsn
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )
