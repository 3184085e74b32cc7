"""Window arithmetic: sliding window pair, leaky bucket drain, sampler ring."""

from __future__ import annotations

import random

import pytest

from GlobalGuard.windows import (
    LeakyBucketState,
    SamplerState,
    SlidingWindowState,
    advance_sliding_window,
    bucket_has_room,
    failure_ratio_exceeded,
    has_minimum_throughput,
    leak,
    new_sampler_state,
    push_outcome,
    reset_windows,
    rotate_window,
    sampler_layout,
    sliding_window_estimate,
    window_start_for,
)


def _assert_totals_match(state: SamplerState) -> None:
    assert state.current_failures == sum(w.failures for w in state.windows)
    assert state.current_successes == sum(w.successes for w in state.windows)


# ============================================================================
# Sliding window
# ============================================================================


class TestSlidingWindow:
    def test_window_start_is_interval_aligned(self) -> None:
        assert window_start_for(125.0, 60.0) == 120.0
        assert window_start_for(120.0, 60.0) == 120.0

    def test_first_call_starts_empty(self) -> None:
        state = advance_sliding_window(None, 125.0, 60.0)
        assert state == SlidingWindowState(0, 0, 120.0)

    def test_one_boundary_shifts_current_into_previous(self) -> None:
        state = SlidingWindowState(previous_count=7, current_count=3, current_window_start=120.0)
        advanced = advance_sliding_window(state, 185.0, 60.0)
        assert advanced == SlidingWindowState(3, 0, 180.0)

    def test_more_than_one_boundary_zeroes_both(self) -> None:
        state = SlidingWindowState(previous_count=7, current_count=3, current_window_start=120.0)
        advanced = advance_sliding_window(state, 245.0, 60.0)
        assert advanced == SlidingWindowState(0, 0, 240.0)

    def test_clock_behind_window_does_not_move_it_back(self) -> None:
        state = SlidingWindowState(previous_count=1, current_count=2, current_window_start=180.0)
        assert advance_sliding_window(state, 125.0, 60.0) is state

    def test_estimate_blends_previous_by_overlap(self) -> None:
        state = SlidingWindowState(previous_count=4, current_count=1, current_window_start=120.0)
        # a quarter of the way into the current window: 3/4 of previous still counts
        assert sliding_window_estimate(state, 135.0, 60.0) == pytest.approx(1 + 4 * 0.75)

    def test_estimate_overlap_is_clamped(self) -> None:
        state = SlidingWindowState(previous_count=4, current_count=1, current_window_start=120.0)
        assert sliding_window_estimate(state, 100.0, 60.0) == pytest.approx(5.0)


# ============================================================================
# Leaky bucket
# ============================================================================


class TestLeakyBucket:
    def test_first_leak_starts_empty(self) -> None:
        assert leak(None, 10.0, 2.0) == LeakyBucketState(level=0.0, last_leak_at=10.0)

    def test_level_drains_with_elapsed_time(self) -> None:
        state = leak(LeakyBucketState(level=5.0, last_leak_at=0.0), 1.5, 2.0)
        assert state.level == pytest.approx(2.0)
        assert state.last_leak_at == 1.5

    def test_level_never_negative(self) -> None:
        state = leak(LeakyBucketState(level=1.0, last_leak_at=0.0), 100.0, 2.0)
        assert state.level == 0.0

    def test_room_requires_one_free_unit(self) -> None:
        assert bucket_has_room(LeakyBucketState(level=4.0), 5.0)
        assert not bucket_has_room(LeakyBucketState(level=4.5), 5.0)
        assert not bucket_has_room(LeakyBucketState(level=0.0), 0.0)

    def test_drain_at_epoch_scale_frees_a_whole_unit(self) -> None:
        start = 1.7e9
        state = leak(LeakyBucketState(level=5.0, last_leak_at=start), start + 0.1, 10.0)
        assert bucket_has_room(state, 5.0)
        assert state.level == pytest.approx(4.0)


# ============================================================================
# Sampler ring
# ============================================================================


class TestSamplerLayout:
    @pytest.mark.parametrize(
        ("duration_ms", "expected"),
        [
            (30_000, (30, 1000, 30_000)),
            (1_000, (5, 200, 1_000)),
            (7_250, (8, 906, 7_248)),
            (12.5, (5, 3, 15)),
            (3, (5, 1, 5)),
        ],
    )
    def test_layout(self, duration_ms, expected) -> None:
        assert sampler_layout(duration_ms) == expected

    def test_new_state_uses_effective_duration(self) -> None:
        state = new_sampler_state(7_250, 0.01)
        assert len(state.windows) == 8
        assert state.duration_ms == 7_248
        assert state.total == 0


class TestSamplerRing:
    def test_failure_push_counts_failures(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        window = push_outcome(state, 1_000_000.0, success=False)
        assert window.failures == 1
        assert window.successes == 0
        assert state.current_failures == 1
        assert state.current_successes == 0

    def test_rotation_of_unexpired_window_is_noop(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        push_outcome(state, 1_000_000.0, success=True)
        before = state.to_doc()

        assert rotate_window(state, 1_000_500.0) == 0
        assert rotate_window(state, 1_000_500.0) == 0
        assert state.to_doc() == before

    def test_rotation_subtracts_overwritten_slot(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        t0 = 1_000_000.0
        for step in range(5):
            push_outcome(state, t0 + step * 1_000, success=False)
        assert state.current_failures == 5

        # the sixth window overwrites the oldest slot
        push_outcome(state, t0 + 5 * 1_000, success=True)
        assert state.current_failures == 4
        assert state.current_successes == 1
        _assert_totals_match(state)

    def test_idle_gap_ages_out_every_window(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        t0 = 1_000_000.0
        for _ in range(3):
            push_outcome(state, t0, success=False)

        push_outcome(state, t0 + 60_000, success=True)
        assert state.current_failures == 0
        assert state.current_successes == 1

    def test_totals_match_slots_over_random_sequence(self) -> None:
        rng = random.Random(20240601)
        state = new_sampler_state(5_000, 0.01)
        now = 1_000_000.0
        for _ in range(2_000):
            now += rng.choice([0, 1, 50, 400, 999, 1_000, 2_500, 7_000])
            push_outcome(state, now, success=rng.random() < 0.7)
            _assert_totals_match(state)
            assert state.current_failures >= 0 and state.current_successes >= 0

    def test_totals_survive_document_round_trip(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        push_outcome(state, 1_000_000.0, success=False)
        restored = SamplerState.from_doc(state.to_doc())
        assert restored == state

    def test_reset_zeroes_everything(self) -> None:
        state = new_sampler_state(5_000, 0.01)
        push_outcome(state, 1_000_000.0, success=False)
        reset_windows(state)
        assert state.total == 0
        _assert_totals_match(state)


class TestTripArithmetic:
    def test_throughput_guard(self) -> None:
        state = new_sampler_state(5_000, 0.002)  # at least 10 samples
        for _ in range(9):
            push_outcome(state, 1_000_000.0, success=False)
        assert not has_minimum_throughput(state)
        push_outcome(state, 1_000_000.0, success=False)
        assert has_minimum_throughput(state)

    def test_ratio_is_strictly_greater(self) -> None:
        state = new_sampler_state(5_000, 0.002)
        for success in [True, False] * 5:
            push_outcome(state, 1_000_000.0, success=success)
        assert not failure_ratio_exceeded(state, 0.5)
        push_outcome(state, 1_000_000.0, success=False)
        assert failure_ratio_exceeded(state, 0.5)
