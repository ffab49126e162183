"""
Typing engine configuration.

Frozen dataclass loaded from environment variables.
Loads ~/.typist/typist.env first (if present), then .env in the current
directory. Values already in the environment are never overridden.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_REQUIRED_FIELDS = (
    "DOCS_ACCESS_TOKEN",
)


@dataclass(frozen=True)
class Config:
    """Immutable engine configuration."""

    # Document writer
    docs_api_base_url: str
    docs_access_token: str
    docs_insert_offset: int

    # Storage
    db_path: str

    # Control server
    control_host: str
    control_port: int

    # Scheduling
    timer_tick_seconds: float
    min_batch_interval_ms: int
    default_throttle_ms: int
    max_throttle_ms: int
    max_dispatch_failures: int

    # Job limits and retention
    max_text_chars: int
    stuck_job_seconds: int
    max_runtime_hours: int
    job_ttl_days: int
    scrub_after_days: int
    delete_after_days: int
    cleanup_interval_seconds: int

    # Plan tiers
    default_plan_tier: str
    tier_overrides_ttl_seconds: int

    # Logging
    log_level: str

    @classmethod
    def load(cls) -> Config:
        """Load configuration from environment variables.

        Raises ValueError if any required field is missing or empty, or if
        a numeric field does not parse.
        """
        user_env = Path.home() / ".typist" / "typist.env"
        local_env = Path.cwd() / ".env"
        if user_env.exists():
            load_dotenv(user_env)
        if local_env.exists():
            load_dotenv(local_env)

        missing = [
            name for name in _REQUIRED_FIELDS
            if not os.environ.get(name, "").strip()
        ]
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        return cls(
            docs_api_base_url=os.environ.get(
                "DOCS_API_BASE_URL", "https://docs.googleapis.com"
            ).strip(),
            docs_access_token=os.environ["DOCS_ACCESS_TOKEN"].strip(),
            docs_insert_offset=int(os.environ.get("DOCS_INSERT_OFFSET", "1")),
            db_path=os.environ.get("DB_PATH", "typist.db").strip(),
            control_host=os.environ.get("CONTROL_HOST", "127.0.0.1").strip(),
            control_port=int(os.environ.get("CONTROL_PORT", "8430")),
            timer_tick_seconds=float(os.environ.get("TIMER_TICK_SECONDS", "0.25")),
            min_batch_interval_ms=int(os.environ.get("MIN_BATCH_INTERVAL_MS", "150")),
            default_throttle_ms=int(os.environ.get("DEFAULT_THROTTLE_MS", "500")),
            max_throttle_ms=int(os.environ.get("MAX_THROTTLE_MS", "10000")),
            max_dispatch_failures=int(os.environ.get("MAX_DISPATCH_FAILURES", "5")),
            max_text_chars=int(os.environ.get("MAX_TEXT_CHARS", "50000")),
            stuck_job_seconds=int(os.environ.get("STUCK_JOB_SECONDS", "3600")),
            max_runtime_hours=int(os.environ.get("MAX_RUNTIME_HOURS", "8")),
            job_ttl_days=int(os.environ.get("JOB_TTL_DAYS", "7")),
            scrub_after_days=int(os.environ.get("SCRUB_AFTER_DAYS", "30")),
            delete_after_days=int(os.environ.get("DELETE_AFTER_DAYS", "90")),
            cleanup_interval_seconds=int(
                os.environ.get("CLEANUP_INTERVAL_SECONDS", "86400")
            ),
            default_plan_tier=os.environ.get("DEFAULT_PLAN_TIER", "FREE").strip().upper(),
            tier_overrides_ttl_seconds=int(
                os.environ.get("TIER_OVERRIDES_TTL_SECONDS", "60")
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        )
