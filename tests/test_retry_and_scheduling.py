from __future__ import annotations

import asyncio

import pytest

from cookie_pool.core.retry import RetryPolicy
from cookie_pool.core.scheduling import PeriodicTask, jittered_delay


class TestRetryPolicy:
    @pytest.mark.parametrize(
        ("failures", "expected"),
        [(0, 300), (1, 300), (2, 600), (3, 1200), (4, 2400), (5, 3600), (9, 3600)],
    )
    def test_backoff_is_clamped(self, failures, expected):
        assert RetryPolicy(base_delay=300, max_delay=3600).backoff(failures) == expected

    def test_exponent_cap_limits_growth(self):
        policy = RetryPolicy(base_delay=1, max_delay=10_000, exponent_cap=2)
        assert policy.backoff(10) == 4

    def test_can_retry_respects_budget(self):
        policy = RetryPolicy(max_attempts=3)
        assert [policy.can_retry(n) for n in (1, 2, 3)] == [True, True, False]


class TestJitteredDelay:
    def test_within_bounds(self):
        assert jittered_delay(2.0, 1.5, 1.0, rng=lambda lo, hi: hi) == 3.5
        assert jittered_delay(2.0, 1.5, 1.0, rng=lambda lo, hi: lo) == 1.0

    def test_floor_applies(self):
        assert jittered_delay(0.1, 0.0, 1.0) == 1.0

    def test_no_jitter(self):
        assert jittered_delay(5.0) == 5.0


class TestPeriodicTask:
    async def test_runs_repeatedly_until_stopped(self):
        calls = []

        async def record():
            calls.append(1)

        timer = PeriodicTask("test", record, 0.01)
        timer.start()
        await asyncio.sleep(0.1)
        await timer.stop()
        count = len(calls)
        await asyncio.sleep(0.05)

        assert count >= 2
        assert len(calls) == count
        assert timer.running is False

    async def test_callback_errors_do_not_stop_the_loop(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        timer = PeriodicTask("flaky", flaky, 0.01)
        timer.start()
        await asyncio.sleep(0.1)
        await timer.stop()

        assert len(calls) >= 2

    async def test_start_is_idempotent_and_stop_without_start_is_safe(self):
        async def noop():
            return None

        timer = PeriodicTask("noop", noop, 10)
        await timer.stop()
        timer.start()
        first = timer._task
        timer.start()
        assert timer._task is first
        await timer.stop()
