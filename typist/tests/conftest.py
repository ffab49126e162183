"""Shared pytest configuration for typist tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio

# Add the project root (parent of typist/) to sys.path so tests can import
# typist.* without installing the project.
_PROJECT_ROOT = str(Path(__file__).resolve().parent.parent.parent)
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from typist.db import Database  # noqa: E402


@dataclass(frozen=True)
class FakeConfig:
    docs_api_base_url: str = "https://docs.test"
    docs_access_token: str = "token"
    docs_insert_offset: int = 1
    db_path: str = ":memory:"
    control_host: str = "127.0.0.1"
    control_port: int = 8430
    timer_tick_seconds: float = 0.25
    min_batch_interval_ms: int = 150
    default_throttle_ms: int = 500
    max_throttle_ms: int = 10_000
    max_dispatch_failures: int = 3
    max_text_chars: int = 50_000
    stuck_job_seconds: int = 3600
    max_runtime_hours: int = 8
    job_ttl_days: int = 7
    scrub_after_days: int = 30
    delete_after_days: int = 90
    cleanup_interval_seconds: int = 86400
    default_plan_tier: str = "UNLIMITED"
    tier_overrides_ttl_seconds: int = 60
    log_level: str = "INFO"


@pytest.fixture
def config() -> FakeConfig:
    return FakeConfig()


@pytest_asyncio.fixture
async def db():
    """In-memory database, connected and ready."""
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()
