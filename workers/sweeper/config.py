# workers/sweeper/config.py
"""
Configuration for the draft expiration worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the expiration sweeper worker."""

    worker_id: str = os.getenv("WORKER_ID", f"sweeper-{os.getpid()}")

    # Schedule
    sweep_interval_minutes: int = int(os.getenv("EXPIRATION_SWEEP_INTERVAL_MINUTES", "60"))
    initial_delay_seconds: int = int(os.getenv("EXPIRATION_SWEEP_INITIAL_DELAY_SECONDS", "60"))
    batch_size: int = int(os.getenv("EXPIRATION_SWEEP_BATCH_SIZE", "100"))
    max_runs: int = int(os.getenv("WORKER_MAX_RUNS", "0"))  # 0 = infinite

    # Review window and ephemeral state lifetime
    draft_expiration_days: int = int(os.getenv("DRAFT_EXPIRATION_DAYS", "7"))
    task_state_ttl_hours: int = int(os.getenv("TASK_STATE_TTL_HOURS", "192"))

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if self.sweep_interval_minutes <= 0:
            errors.append("EXPIRATION_SWEEP_INTERVAL_MINUTES must be positive")
        if self.batch_size <= 0:
            errors.append("EXPIRATION_SWEEP_BATCH_SIZE must be positive")
        if self.draft_expiration_days <= 0:
            errors.append("DRAFT_EXPIRATION_DAYS must be positive")
        if self.task_state_ttl_hours < self.draft_expiration_days * 24:
            errors.append("TASK_STATE_TTL_HOURS must outlast the draft expiration window")

        return errors


def get_config() -> WorkerConfig:
    """Get worker configuration from environment."""
    return WorkerConfig()
