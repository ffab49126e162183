"""Tests for the batch planner.

Plans are random; every test seeds its own random.Random so runs are
reproducible.
"""

from __future__ import annotations

import random

import pytest

from typist.errors import ValidationError
from typist.planner import (
    MAX_BATCH_SIZE,
    MAX_CHAR_DELAY_MS,
    MIN_BATCH_SIZE,
    MIN_CHAR_DELAY_MS,
    Mistake,
    NoMistake,
    adjacent_key,
    build_batch_plan,
    choose_batch_size,
    context_pause_ms,
    key_factor,
    pacing_multiplier,
    plan_analytics,
)
from typist.profiles import compute_delay_params

_TEXT = (
    "The quick brown fox jumps over the lazy dog. Pack my box with five "
    "dozen liquor jugs!\n\nSphinx of black quartz, judge my vow."
)

_PROFILES = [
    ("steady", None),
    ("fatigue", None),
    ("burst", None),
    ("micropause", None),
    ("typing-test", 70),
]


# ---------------------------------------------------------------------------
# build_batch_plan: output guarantees
# ---------------------------------------------------------------------------


class TestBuildBatchPlan:
    @pytest.mark.parametrize("profile,wpm", _PROFILES)
    def test_non_empty_and_one_delay_per_char(self, profile: str, wpm: int | None) -> None:
        rng = random.Random(7)
        for index in (0, 1, len(_TEXT) // 2, len(_TEXT) - 1):
            plan = build_batch_plan(
                _TEXT, index, len(_TEXT), 10, profile, wpm, rng=rng
            )
            assert len(plan.batch_text) > 0
            assert len(plan.per_char_delays_ms) == len(plan.batch_text)
            assert plan.total_delay_ms >= 0
            assert plan.batch_pause_ms >= 0

    @pytest.mark.parametrize("profile,wpm", _PROFILES)
    def test_delays_within_human_bounds(self, profile: str, wpm: int | None) -> None:
        rng = random.Random(11)
        for _ in range(20):
            plan = build_batch_plan(_TEXT, 0, len(_TEXT), 360, profile, wpm, rng=rng)
            assert all(
                MIN_CHAR_DELAY_MS <= d <= MAX_CHAR_DELAY_MS
                for d in plan.per_char_delays_ms
            )

    def test_slice_matches_text(self) -> None:
        plan = build_batch_plan(_TEXT, 10, len(_TEXT), 10, "steady", rng=random.Random(1))
        assert plan.start_index == 10
        assert plan.batch_text == _TEXT[10:plan.end_index]

    def test_tail_is_truncated_and_completes(self) -> None:
        plan = build_batch_plan(
            _TEXT, len(_TEXT) - 2, len(_TEXT), 10, "steady", rng=random.Random(3)
        )
        assert plan.batch_text == _TEXT[-2:]
        assert plan.completes_job

    def test_batch_not_completing(self) -> None:
        plan = build_batch_plan(_TEXT, 0, len(_TEXT), 10, "steady", rng=random.Random(3))
        assert not plan.completes_job

    def test_index_at_end_raises(self) -> None:
        with pytest.raises(ValueError):
            build_batch_plan(_TEXT, len(_TEXT), len(_TEXT), 10, "steady")

    def test_negative_index_raises(self) -> None:
        with pytest.raises(ValueError):
            build_batch_plan(_TEXT, -1, len(_TEXT), 10, "steady")

    def test_scrubbed_text_raises(self) -> None:
        with pytest.raises(ValueError, match="shorter"):
            build_batch_plan("", 0, 50, 10, "steady")

    def test_invalid_profile_raises(self) -> None:
        with pytest.raises(ValidationError, match="Invalid typing profile"):
            build_batch_plan(_TEXT, 0, len(_TEXT), 10, "turbo")

    def test_typing_test_without_wpm_raises(self) -> None:
        with pytest.raises(ValidationError, match="testWPM is required"):
            build_batch_plan(_TEXT, 0, len(_TEXT), 10, "typing-test")

    def test_next_delay_floored(self) -> None:
        """Even a very fast plan waits at least the minimum batch interval."""
        plan = build_batch_plan(
            "abc", 0, 3, 10, "typing-test", 300,
            rng=random.Random(5), min_interval_ms=5_000,
        )
        assert plan.next_delay_ms == 5_000

    def test_mistake_never_changes_text(self) -> None:
        rng = random.Random(2024)
        seen_mistake = False
        for _ in range(400):
            plan = build_batch_plan(_TEXT, 0, len(_TEXT), 10, "fatigue", rng=rng)
            assert plan.batch_text == _TEXT[:plan.end_index]
            if isinstance(plan.mistake_plan, Mistake):
                seen_mistake = True
                m = plan.mistake_plan
                assert 0 <= m.insert_position < len(plan.batch_text)
                assert m.wrong_char != plan.batch_text[m.insert_position]
                assert m.correction_delay_ms > 0
            else:
                assert isinstance(plan.mistake_plan, NoMistake)
                assert plan.correction_delay_ms == 0
        assert seen_mistake


# ---------------------------------------------------------------------------
# Duration-aware pacing
# ---------------------------------------------------------------------------


def _simulate_job_ms(text: str, minutes: int, profile: str, wpm: int | None, seed: int) -> int:
    rng = random.Random(seed)
    index = 0
    total = 0
    while index < len(text):
        plan = build_batch_plan(text, index, len(text), minutes, profile, wpm, rng=rng)
        total += plan.next_delay_ms
        index = plan.end_index
    return total


class TestPacing:
    @pytest.mark.parametrize("profile", ["steady", "fatigue", "burst", "micropause"])
    def test_job_trends_to_duration(self, profile: str) -> None:
        text = (_TEXT + " ") * 40  # ~4.5k chars
        minutes = 30
        elapsed = _simulate_job_ms(text, minutes, profile, None, seed=99)
        assert elapsed == pytest.approx(minutes * 60_000, rel=0.2)

    def test_short_duration_compresses(self) -> None:
        text = (_TEXT + " ") * 10
        fast = _simulate_job_ms(text, 10, "fatigue", None, seed=1)
        slow = _simulate_job_ms(text, 60, "fatigue", None, seed=1)
        assert fast < slow

    def test_typing_test_follows_wpm(self) -> None:
        """At 60 WPM, 1000 chars take about 200 s regardless of duration."""
        text = ("typing speed " * 80)[:1000]
        elapsed = _simulate_job_ms(text, 360, "typing-test", 60, seed=4)
        assert elapsed == pytest.approx(200_000, rel=0.35)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_batch_size_bounds(self) -> None:
        rng = random.Random(0)
        assert choose_batch_size(10_000, rng) == MIN_BATCH_SIZE
        assert choose_batch_size(1, rng) == MAX_BATCH_SIZE

    def test_key_factor(self) -> None:
        assert key_factor("p", "a") > key_factor("s", "a")
        assert key_factor("A") > key_factor("a")
        assert key_factor(" ") < 1

    def test_adjacent_key_is_a_neighbour(self) -> None:
        rng = random.Random(8)
        for _ in range(50):
            wrong = adjacent_key("s", rng)
            assert wrong in "awedzx"

    def test_adjacent_key_keeps_case(self) -> None:
        assert adjacent_key("S", random.Random(1)).isupper()

    def test_adjacent_key_fallback(self) -> None:
        rng = random.Random(8)
        for _ in range(50):
            wrong = adjacent_key("#", rng)
            assert wrong.isalpha() and wrong != "#"

    def test_context_pause_for_sentence(self) -> None:
        params = compute_delay_params("steady")
        rng = random.Random(1)
        assert context_pause_ms("hello world", params, rng) == 0
        assert context_pause_ms("end.", params, rng) >= 500

    def test_paragraph_pause(self) -> None:
        params = compute_delay_params("steady")
        assert context_pause_ms("a\n\nb", params, random.Random(1)) >= 1000 + 2 * 300

    def test_burst_multiplier_mean_is_one(self) -> None:
        params = compute_delay_params("burst")
        rng = random.Random(17)
        values = [pacing_multiplier(params, 0.5, rng)[0] for _ in range(5000)]
        assert sum(values) / len(values) == pytest.approx(1.0, abs=0.05)

    def test_fatigue_slows_down(self) -> None:
        params = compute_delay_params("fatigue")
        rng = random.Random(17)
        early = sum(pacing_multiplier(params, 0.0, rng)[0] for _ in range(500))
        late = sum(pacing_multiplier(params, 1.0, rng)[0] for _ in range(500))
        assert late > early

    def test_plan_analytics(self) -> None:
        plan = build_batch_plan(_TEXT, 0, len(_TEXT), 10, "steady", rng=random.Random(6))
        stats = plan_analytics(plan)
        assert stats["chars"] == len(plan.batch_text)
        assert stats["average_delay_ms"] == pytest.approx(
            plan.total_delay_ms / len(plan.batch_text)
        )
        assert stats["variance"] >= 0
        assert stats["next_delay_ms"] == plan.next_delay_ms
