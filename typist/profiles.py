"""
Delay profile calculator.

Maps a typing profile (and, for typing-test, a target WPM) to the delay
parameters the batch planner samples from. Pure math only: nothing here
draws random numbers, so the parameters are fully deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from typist.errors import ValidationError

MIN_TEST_WPM = 1
MAX_TEST_WPM = 300

# Average characters per word used for WPM conversions.
CHARS_PER_WORD = 5

# Nominal per-character delay (ms) that relative speed modifiers scale.
# Roughly 80 WPM; the planner rescales everything to the job duration.
NOMINAL_CHAR_DELAY_MS = 150.0


class TypingProfile(str, Enum):
    STEADY = "steady"
    FATIGUE = "fatigue"
    BURST = "burst"
    MICROPAUSE = "micropause"
    TYPING_TEST = "typing-test"

    @classmethod
    def parse(cls, value: str | TypingProfile) -> TypingProfile:
        """Parse a profile string. Raises ValidationError if unrecognized."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Invalid typing profile: {value!r}") from None


@dataclass(frozen=True)
class DelayParams:
    """Distribution parameters for one profile.

    base_delay_ms: mean per-character delay before duration scaling
    jitter_ms: standard deviation applied around the base
    mistake_probability: chance per batch of a simulated typo
    burstiness: chance per batch of a burst "thinking" stall
    fatigue_rate: total slow-down (fraction) accumulated across the job
    hesitation_probability: chance of a short hesitation per word boundary
    """

    base_delay_ms: float
    jitter_ms: float
    mistake_probability: float
    burstiness: float
    fatigue_rate: float = 0.0
    hesitation_probability: float = 0.0


@dataclass(frozen=True)
class _Shape:
    speed: float  # relative delay multiplier, >1 is slower
    jitter: float  # jitter as a fraction of the base delay
    mistake_probability: float
    burstiness: float = 0.0
    fatigue_rate: float = 0.0
    hesitation_probability: float = 0.0


_SHAPES: dict[TypingProfile, _Shape] = {
    TypingProfile.STEADY: _Shape(speed=1.0, jitter=0.05, mistake_probability=0.02),
    TypingProfile.FATIGUE: _Shape(
        speed=1.15, jitter=0.10, mistake_probability=0.05, fatigue_rate=0.3,
    ),
    TypingProfile.BURST: _Shape(
        speed=0.8, jitter=0.15, mistake_probability=0.04, burstiness=0.35,
    ),
    TypingProfile.MICROPAUSE: _Shape(
        speed=1.0, jitter=0.12, mistake_probability=0.03, hesitation_probability=0.4,
    ),
}

_TYPING_TEST_MISTAKE_PROBABILITY = 0.03


@dataclass(frozen=True)
class EngineValidation:
    valid: bool
    error: str | None = None


def validate_engine_inputs(
    profile: str | TypingProfile,
    test_wpm: int | None = None,
) -> EngineValidation:
    """Check a profile/WPM pair without raising.

    test_wpm is only consulted for the typing-test profile; for every other
    profile it is ignored.
    """
    try:
        parsed = TypingProfile.parse(profile)
    except ValidationError as exc:
        return EngineValidation(valid=False, error=exc.message)

    if parsed is not TypingProfile.TYPING_TEST:
        return EngineValidation(valid=True)

    if test_wpm is None:
        return EngineValidation(
            valid=False,
            error="testWPM is required when typingProfile is 'typing-test'",
        )
    if isinstance(test_wpm, bool) or not isinstance(test_wpm, int):
        return EngineValidation(
            valid=False,
            error=f"testWPM must be an integer between {MIN_TEST_WPM} and {MAX_TEST_WPM}",
        )
    if not MIN_TEST_WPM <= test_wpm <= MAX_TEST_WPM:
        return EngineValidation(
            valid=False,
            error=f"testWPM must be between {MIN_TEST_WPM} and {MAX_TEST_WPM} (got {test_wpm})",
        )
    return EngineValidation(valid=True)


def normalize_test_wpm(
    profile: TypingProfile, test_wpm: int | None
) -> int | None:
    """Drop a WPM value supplied for any profile other than typing-test."""
    return test_wpm if profile is TypingProfile.TYPING_TEST else None


def wpm_to_char_delay_ms(wpm: int) -> float:
    """Average per-character delay for a words-per-minute speed."""
    return 60_000.0 / (wpm * CHARS_PER_WORD)


def wpm_jitter_fraction(wpm: int) -> float:
    """Relative jitter for typing-test pacing.

    Very fast and very slow speeds get a tighter spread so the result
    neither feels robotic nor stalls.
    """
    if wpm >= 100:
        return 0.20
    if wpm <= 20:
        return 0.25
    return 0.30


def compute_delay_params(
    profile: str | TypingProfile,
    target_wpm: int | None = None,
) -> DelayParams:
    """Return delay parameters for a profile.

    Raises ValidationError (same messages as validate_engine_inputs) for an
    unknown profile, or a missing/out-of-range WPM on typing-test.
    """
    check = validate_engine_inputs(profile, target_wpm)
    if not check.valid:
        raise ValidationError(check.error)

    parsed = TypingProfile.parse(profile)
    if parsed is TypingProfile.TYPING_TEST:
        base = wpm_to_char_delay_ms(target_wpm)
        # jitter is a standard deviation; +-fraction is treated as ~2 sigma
        return DelayParams(
            base_delay_ms=base,
            jitter_ms=base * wpm_jitter_fraction(target_wpm) / 2,
            mistake_probability=_TYPING_TEST_MISTAKE_PROBABILITY,
            burstiness=0.0,
        )

    shape = _SHAPES[parsed]
    base = NOMINAL_CHAR_DELAY_MS * shape.speed
    return DelayParams(
        base_delay_ms=base,
        jitter_ms=base * shape.jitter,
        mistake_probability=shape.mistake_probability,
        burstiness=shape.burstiness,
        fatigue_rate=shape.fatigue_rate,
        hesitation_probability=shape.hesitation_probability,
    )
