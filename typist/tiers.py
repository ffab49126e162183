"""Plan-tier limits consumed by the control surface.

Limits are opaque bounds to the engine: max duration, daily job quota,
history length and allowed profiles. The free tier's quota and history
can be overridden at runtime through the settings table; those overrides
are read through an explicit cache value owned by the LimitsProvider.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from typist.db import Database
from typist.errors import ValidationError
from typist.models import utcnow
from typist.profiles import TypingProfile

log = logging.getLogger(__name__)

# settings keys
FREE_MAX_JOBS_PER_DAY = "FREE_MAX_JOBS_PER_DAY"
FREE_MAX_JOB_HISTORY = "FREE_MAX_JOB_HISTORY"


class PlanTier(str, Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"
    UNLIMITED = "UNLIMITED"

    @classmethod
    def parse(cls, value: str | PlanTier) -> PlanTier:
        if isinstance(value, cls):
            return value
        try:
            return cls(value.strip().upper())
        except (AttributeError, ValueError):
            raise ValidationError(f"Invalid plan tier: {value!r}") from None


@dataclass(frozen=True)
class TierLimits:
    """None means unlimited."""

    max_duration_minutes: int | None
    max_jobs_per_day: int | None
    max_job_history: int | None
    allowed_profiles: frozenset[TypingProfile]

    def allows_profile(self, profile: TypingProfile) -> bool:
        return profile in self.allowed_profiles


_BASIC_PROFILES = frozenset({TypingProfile.STEADY, TypingProfile.FATIGUE})
_ALL_PROFILES = frozenset(TypingProfile)

TIER_LIMITS: dict[PlanTier, TierLimits] = {
    PlanTier.FREE: TierLimits(60, 5, 10, _BASIC_PROFILES),
    PlanTier.BASIC: TierLimits(180, 20, 20, _BASIC_PROFILES),
    PlanTier.PRO: TierLimits(360, 50, 100, _ALL_PROFILES),
    PlanTier.UNLIMITED: TierLimits(None, None, None, _ALL_PROFILES),
}


@dataclass(frozen=True)
class TierOverridesCache:
    data: dict[str, int]
    fetched_at: datetime


def is_fresh(cache: TierOverridesCache | None, ttl_seconds: float, now: datetime) -> bool:
    if cache is None:
        return False
    return now - cache.fetched_at < timedelta(seconds=ttl_seconds)


def _parse_override(key: str, raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        log.warning("Ignoring non-integer tier override %s=%r", key, raw)
        return None
    if value < 0:
        log.warning("Ignoring negative tier override %s=%d", key, value)
        return None
    return value


class LimitsProvider:
    """Resolves limits for a tier, applying free-tier overrides."""

    def __init__(
        self,
        db: Database | None = None,
        default_tier: str | PlanTier = PlanTier.FREE,
        ttl_seconds: float = 60,
    ) -> None:
        self._db = db
        self._default_tier = PlanTier.parse(default_tier)
        self._ttl_seconds = ttl_seconds
        self._cache: TierOverridesCache | None = None

    @property
    def default_tier(self) -> PlanTier:
        return self._default_tier

    async def overrides(self, now: datetime | None = None) -> dict[str, int]:
        now = now or utcnow()
        if self._db is None:
            return {}
        if not is_fresh(self._cache, self._ttl_seconds, now):
            data = {}
            for key in (FREE_MAX_JOBS_PER_DAY, FREE_MAX_JOB_HISTORY):
                value = _parse_override(key, await self._db.get_setting(key))
                if value is not None:
                    data[key] = value
            self._cache = TierOverridesCache(data=data, fetched_at=now)
        return self._cache.data

    def invalidate(self) -> None:
        self._cache = None

    async def limits_for(
        self, tier: str | PlanTier | None = None, now: datetime | None = None
    ) -> TierLimits:
        parsed = PlanTier.parse(tier) if tier else self._default_tier
        limits = TIER_LIMITS[parsed]
        if parsed is not PlanTier.FREE:
            return limits
        overrides = await self.overrides(now)
        if FREE_MAX_JOBS_PER_DAY in overrides:
            limits = replace(limits, max_jobs_per_day=overrides[FREE_MAX_JOBS_PER_DAY])
        if FREE_MAX_JOB_HISTORY in overrides:
            limits = replace(limits, max_job_history=overrides[FREE_MAX_JOB_HISTORY])
        return limits
