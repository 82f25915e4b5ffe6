"""Tests for the exponential backoff counter."""

import pytest

from mansion.provisioning.backoff import BackoffCounter, compute_backoff


class TestComputeBackoff:
    def test_no_errors_means_no_backoff(self):
        assert compute_backoff(0, 2, 600) == 0

    def test_doubles_from_first_backoff(self):
        assert [compute_backoff(n, 2, 600) for n in range(1, 6)] == [2, 4, 8, 16, 32]

    def test_capped_at_max_backoff(self):
        assert compute_backoff(10, 2, 600) == 600
        assert compute_backoff(10_000, 2, 600) == 600


class TestBackoffCounter:
    def test_fresh_counter_not_in_effect(self, clock):
        counter = BackoffCounter("t", clock=clock)
        assert counter.error_count == 0
        assert counter.backoff() == 0
        assert counter.is_backoff_in_effect() is False

    def test_record_error_stamps_and_counts(self, clock):
        counter = BackoffCounter("t", clock=clock)
        counter.record_error()

        assert counter.error_count == 1
        assert counter.last_error_at == clock.now
        assert counter.next_attempt() == clock.now + 2

    def test_in_effect_until_backoff_elapses(self, clock):
        counter = BackoffCounter("t", first_backoff=2, max_backoff=600, clock=clock)
        counter.record_error()
        counter.record_error()  # 4 seconds

        clock.advance(3.9)
        assert counter.is_backoff_in_effect() is True
        clock.advance(0.2)
        assert counter.is_backoff_in_effect() is False

    def test_clear_resets(self, clock):
        counter = BackoffCounter("t", clock=clock)
        for _ in range(5):
            counter.record_error()
        counter.clear()

        assert counter.error_count == 0
        assert counter.is_backoff_in_effect() is False

    def test_to_dict(self, clock):
        counter = BackoffCounter("lxc", clock=clock)
        counter.record_error()
        data = counter.to_dict()

        assert data["id"] == "lxc"
        assert data["error_count"] == 1
        assert data["backoff_seconds"] == 2
        assert data["in_effect"] is True

    @pytest.mark.parametrize("errors,expected", [(1, 5), (2, 10), (3, 20), (4, 30)])
    def test_custom_limits(self, clock, errors, expected):
        counter = BackoffCounter("t", first_backoff=5, max_backoff=30, clock=clock)
        for _ in range(errors):
            counter.record_error()
        assert counter.backoff() == expected
