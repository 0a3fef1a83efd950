from __future__ import annotations

from typing import Optional

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    APP_ENV: str = "local"
    FRONTEND_CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173"],
    )

    # "memory" keeps everything in-process; "supabase" uses the durable tables.
    STORE_BACKEND: str = "memory"
    SUPABASE_URL: Optional[AnyUrl] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"
    LLM_MAX_ATTEMPTS: int = 3
    LLM_BACKOFF_BASE_SECONDS: float = 1.0
    BRAVE_SEARCH_API_KEY: Optional[str] = None

    # Artifacts go to R2 when a bucket is configured, otherwise to memory.
    R2_ACCOUNT_ID: Optional[str] = None
    R2_ACCESS_KEY_ID: Optional[str] = None
    R2_SECRET_ACCESS_KEY: Optional[str] = None
    R2_BUCKET_NAME: Optional[str] = None
    R2_PUBLIC_URL: Optional[str] = None

    # Fetch
    FETCH_TIMEOUT_SECONDS: float = 30.0
    MAX_FETCH_RETRIES: int = 2
    MAX_FETCH_SIZE_BYTES: int = 5 * 1024 * 1024
    MAX_REDIRECTS: int = 5
    RESPECT_ROBOTS_TXT: bool = True
    INGEST_USER_AGENT: str = "RecipeIngestAgent/1.0"
    CONTENT_CHARACTER_BUDGET: int = 60_000
    PIPELINE_DEADLINE_SECONDS: float = 120.0

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_FAILURE_WINDOW_MINUTES: int = 10
    CIRCUIT_BLOCK_DURATION_MINUTES: int = 30

    # Similarity guard
    GUARDRAIL_TOKEN_OVERLAP_WARN: int = 40
    GUARDRAIL_TOKEN_OVERLAP_ERROR: int = 80
    GUARDRAIL_SIMILARITY_WARN: float = 0.20
    GUARDRAIL_SIMILARITY_ERROR: float = 0.35
    GUARDRAIL_NGRAM_SIZE: int = 5
    AUTO_REPAIR_ON_ERROR: bool = True
    BLOCK_ON_POLICY_VIOLATION: bool = False

    # Phase weights must add up to 100
    PHASE_WEIGHT_FETCH: int = 20
    PHASE_WEIGHT_EXTRACT: int = 50
    PHASE_WEIGHT_VALIDATE: int = 20
    PHASE_WEIGHT_REVIEW_READY: int = 10

    # Drafts
    DRAFT_EXPIRATION_DAYS: int = 7
    TASK_STATE_TTL_HOURS: int = 192
    EXPIRATION_SWEEP_INTERVAL_MINUTES: int = 60
    EXPIRATION_SWEEP_INITIAL_DELAY_SECONDS: int = 60
    EXPIRATION_SWEEP_BATCH_SIZE: int = 100
    RUN_SWEEPER_IN_PROCESS: bool = True

    # Artifact retention, counted from task creation
    ARTIFACT_RETENTION_ENABLED: bool = True
    ARTIFACT_RETENTION_COMMITTED_DAYS: int = 180
    ARTIFACT_RETENTION_OTHER_DAYS: int = 30
    ARTIFACT_RETENTION_INTERVAL_HOURS: int = 24
    ARTIFACT_RETENTION_MAX_DELETES: int = 1000


settings = Settings()
