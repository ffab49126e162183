"""
Batch planner: turns the remaining text of a job into one paced write.

A plan covers a slice of a few seconds of typing. Per-character delays are
sampled from the profile's delay parameters (key-pair difficulty, shift
penalty, gaussian jitter), context pauses are added for punctuation and
paragraphs, and the whole batch is then rescaled so the job as a whole
trends toward its requested duration.

Simulated mistakes only shape timing. The text written to the document is
always exactly the slice of the original text.
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass
from typing import Union

from typist.profiles import (
    DelayParams,
    TypingProfile,
    compute_delay_params,
    normalize_test_wpm,
)

# Target amount of typed content per batch.
BATCH_TARGET_MS = 3_000
MIN_BATCH_SIZE = 3
MAX_BATCH_SIZE = 60

# Human bounds for a single keystroke delay.
MIN_CHAR_DELAY_MS = 30
MAX_CHAR_DELAY_MS = 1_500

# Floor on the gap between two consecutive batches.
MIN_BATCH_INTERVAL_MS = 150

# Natural thinking pauses (ms)
MICRO_PAUSES = {
    "sentence": (500, 1200),  # . ! ?
    "comma": (150, 400),
    "newline": (300, 600),
    "paragraph": (1000, 2500),  # \n\n
    "long_word": (100, 300),  # word longer than LONG_WORD_CHARS
    "word_boundary": (50, 150),  # micropause hesitation
    "burst": (600, 1200),  # burst stall
}
LONG_WORD_CHARS = 8

# Noticing a typo before backspacing it (ms)
NOTICE_PAUSE = (250, 600)

# Mean multiplier of a fast burst run; stalls make up the rest.
_BURST_FAST_MEAN = 0.7

# QWERTY neighbours used to pick a plausible wrong key.
ADJACENT_KEYS = {
    'q': 'wa', 'w': 'qeas', 'e': 'wrsd', 'r': 'etdf', 't': 'ryfg',
    'y': 'tugh', 'u': 'yihj', 'i': 'uojk', 'o': 'ipkl', 'p': 'ol',
    'a': 'qwsz', 's': 'awedzx', 'd': 'serfxc', 'f': 'drtgcv',
    'g': 'ftyhvb', 'h': 'gyujbn', 'j': 'huiknm', 'k': 'jiolm', 'l': 'kop',
    'z': 'asx', 'x': 'zsdc', 'c': 'xdfv', 'v': 'cfgb', 'b': 'vghn',
    'n': 'bhjm', 'm': 'njk',
    '1': '2q', '2': '13qw', '3': '24we', '4': '35er', '5': '46rt',
    '6': '57ty', '7': '68yu', '8': '79ui', '9': '80io', '0': '9op',
}

# Character pairs that take longer to type
SLOW_PAIRS = {
    ('a', 'p'), ('p', 'a'), ('q', 'p'), ('p', 'q'),
    ('z', 'p'), ('p', 'z'), ('a', 'l'), ('l', 'a'),
    ('z', 'm'), ('m', 'z'), ('q', 'z'), ('z', 'q'),
}

_SHIFTED = set('!@#$%^&*()_+{}|:"<>?~')


@dataclass(frozen=True)
class NoMistake:
    pass


@dataclass(frozen=True)
class Mistake:
    """A wrong key typed at insert_position, then backspaced and corrected."""

    insert_position: int
    wrong_char: str
    correction_delay_ms: int


MistakePlan = Union[NoMistake, Mistake]

NO_MISTAKE = NoMistake()


@dataclass(frozen=True)
class BatchPlan:
    batch_text: str
    start_index: int
    per_char_delays_ms: tuple[int, ...]
    batch_pause_ms: int
    mistake_plan: MistakePlan
    completes_job: bool
    min_interval_ms: int = MIN_BATCH_INTERVAL_MS

    @property
    def end_index(self) -> int:
        return self.start_index + len(self.batch_text)

    @property
    def total_delay_ms(self) -> int:
        return sum(self.per_char_delays_ms)

    @property
    def correction_delay_ms(self) -> int:
        if isinstance(self.mistake_plan, Mistake):
            return self.mistake_plan.correction_delay_ms
        return 0

    @property
    def next_delay_ms(self) -> int:
        """Time to wait after writing this batch before the next one."""
        paced = self.total_delay_ms + self.batch_pause_ms + self.correction_delay_ms
        return max(self.min_interval_ms, paced)


def char_target_ms(
    total_chars: int,
    duration_minutes: int,
    profile: TypingProfile,
    params: DelayParams,
) -> float:
    """Per-character time budget.

    Duration-driven for every profile except typing-test, where the
    requested WPM sets the pace.
    """
    if profile is TypingProfile.TYPING_TEST:
        return params.base_delay_ms
    if total_chars <= 0:
        return params.base_delay_ms
    return duration_minutes * 60_000 / total_chars


def choose_batch_size(target_ms: float, rng: random.Random) -> int:
    """Roughly BATCH_TARGET_MS of content, +-20%, within batch bounds."""
    nominal = BATCH_TARGET_MS / max(target_ms, MIN_CHAR_DELAY_MS)
    size = round(nominal * rng.uniform(0.8, 1.2))
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))


def key_factor(char: str, prev_char: str = '') -> float:
    """Relative difficulty of typing char after prev_char."""
    factor = 1.0
    if (prev_char.lower(), char.lower()) in SLOW_PAIRS:
        factor *= 1.4
    if char.isupper() or char in _SHIFTED:
        factor *= 1.15
    if char == ' ':
        factor *= 0.85
    return factor


def pacing_multiplier(
    params: DelayParams,
    progress: float,
    rng: random.Random,
) -> tuple[float, bool]:
    """Batch budget multiplier with an expected value of 1 over a job.

    Returns (multiplier, stalled). Fatigue ramps linearly around 1 as
    progress grows; burst alternates fast runs with stalls.
    """
    if params.burstiness > 0:
        p = params.burstiness
        if rng.random() < p:
            stall_mean = (1 - (1 - p) * _BURST_FAST_MEAN) / p
            return rng.uniform(0.9 * stall_mean, 1.1 * stall_mean), True
        return rng.uniform(_BURST_FAST_MEAN - 0.1, _BURST_FAST_MEAN + 0.1), False

    spread = min(0.1, params.jitter_ms / params.base_delay_ms)
    noise = rng.uniform(1 - spread, 1 + spread)
    if params.fatigue_rate > 0:
        return (1 + params.fatigue_rate * (progress - 0.5)) * noise, False
    return noise, False


def _rand_range(bounds: tuple[int, int], rng: random.Random) -> int:
    return rng.randint(bounds[0], bounds[1])


def context_pause_ms(
    text: str,
    params: DelayParams,
    rng: random.Random,
    stalled: bool = False,
) -> int:
    """Pauses triggered by punctuation, line breaks, long words and stalls."""
    pause = 0
    for ch in text:
        if ch in '.!?':
            pause += _rand_range(MICRO_PAUSES["sentence"], rng)
        elif ch == ',':
            pause += _rand_range(MICRO_PAUSES["comma"], rng)
        elif ch == '\n':
            pause += _rand_range(MICRO_PAUSES["newline"], rng)
        elif ch == ' ' and params.hesitation_probability > 0:
            if rng.random() < params.hesitation_probability:
                pause += _rand_range(MICRO_PAUSES["word_boundary"], rng)

    if any(len(word) > LONG_WORD_CHARS for word in text.split()):
        pause += _rand_range(MICRO_PAUSES["long_word"], rng)
    if '\n\n' in text:
        pause += _rand_range(MICRO_PAUSES["paragraph"], rng)
    if stalled:
        pause += _rand_range(MICRO_PAUSES["burst"], rng)
    return pause


def adjacent_key(char: str, rng: random.Random) -> str:
    """A plausible wrong key for char; never returns char itself."""
    lower = char.lower()
    if lower in ADJACENT_KEYS:
        wrong = rng.choice(ADJACENT_KEYS[lower])
        return wrong.upper() if char.isupper() else wrong
    return rng.choice([c for c in string.ascii_lowercase if c != lower])


def _raw_char_delays(text: str, params: DelayParams, rng: random.Random) -> list[float]:
    delays = []
    prev = ''
    floor = params.base_delay_ms * 0.3
    for ch in text:
        mean = params.base_delay_ms * key_factor(ch, prev)
        delays.append(max(floor, rng.gauss(mean, params.jitter_ms)))
        prev = ch
    return delays


def build_batch_plan(
    full_text: str,
    current_index: int,
    total_chars: int,
    duration_minutes: int,
    profile: str | TypingProfile,
    target_wpm: int | None = None,
    *,
    rng: random.Random | None = None,
    min_interval_ms: int = MIN_BATCH_INTERVAL_MS,
) -> BatchPlan:
    """Plan the next batch of a job.

    Raises ValidationError for a bad profile/WPM and ValueError when the
    job is already complete or its text does not cover current_index.
    """
    if not 0 <= current_index < total_chars:
        raise ValueError(
            f"current_index {current_index} out of range for {total_chars} chars"
        )
    if len(full_text) < total_chars:
        raise ValueError("Job text is shorter than its recorded length")

    rng = rng or random.Random()
    parsed = TypingProfile.parse(profile)
    wpm = normalize_test_wpm(parsed, target_wpm)
    params = compute_delay_params(parsed, wpm)

    target = char_target_ms(total_chars, duration_minutes, parsed, params)
    size = min(choose_batch_size(target, rng), total_chars - current_index)
    batch_text = full_text[current_index:current_index + size]

    progress = current_index / total_chars
    multiplier, stalled = pacing_multiplier(params, progress, rng)
    budget = target * len(batch_text) * multiplier

    raw_chars = _raw_char_delays(batch_text, params, rng)
    raw_pause = context_pause_ms(batch_text, params, rng, stalled=stalled)

    raw_correction = 0.0
    mistake_at = None
    wrong_char = ''
    if rng.random() < params.mistake_probability:
        mistake_at = rng.randrange(len(batch_text))
        wrong_char = adjacent_key(batch_text[mistake_at], rng)
        raw_correction = _rand_range(NOTICE_PAUSE, rng) + 2 * params.base_delay_ms

    # Rescale everything to the batch budget, then clamp each keystroke to
    # human bounds. Time cut off by the upper clamp moves into the pause.
    scale = budget / (sum(raw_chars) + raw_pause + raw_correction)
    delays = []
    overflow = 0.0
    for raw in raw_chars:
        d = raw * scale
        if d > MAX_CHAR_DELAY_MS:
            overflow += d - MAX_CHAR_DELAY_MS
            d = MAX_CHAR_DELAY_MS
        delays.append(max(MIN_CHAR_DELAY_MS, round(d)))

    if mistake_at is None:
        mistake: MistakePlan = NO_MISTAKE
    else:
        mistake = Mistake(
            insert_position=mistake_at,
            wrong_char=wrong_char,
            correction_delay_ms=max(1, round(raw_correction * scale)),
        )

    return BatchPlan(
        batch_text=batch_text,
        start_index=current_index,
        per_char_delays_ms=tuple(delays),
        batch_pause_ms=max(0, round(raw_pause * scale + overflow)),
        mistake_plan=mistake,
        completes_job=current_index + len(batch_text) >= total_chars,
        min_interval_ms=min_interval_ms,
    )


def plan_analytics(plan: BatchPlan) -> dict:
    """Summary statistics of a plan's pacing."""
    delays = plan.per_char_delays_ms
    average = sum(delays) / len(delays) if delays else 0.0
    variance = (
        sum((d - average) ** 2 for d in delays) / len(delays) if delays else 0.0
    )
    return {
        "chars": len(delays),
        "average_delay_ms": average,
        "variance": variance,
        "pause_count": 1 if plan.batch_pause_ms > 0 else 0,
        "pause_total_ms": plan.batch_pause_ms,
        "correction_ms": plan.correction_delay_ms,
        "next_delay_ms": plan.next_delay_ms,
    }
