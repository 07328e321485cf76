from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cookie_pool.core.errors import AttemptNotFound
from cookie_pool.core.retry import RetryPolicy
from cookie_pool.repositories.attempt.repository import (
    MAX_ERROR_LENGTH,
    STUCK_ERROR_MESSAGE,
    AttemptTracker,
)


def _since(moment: datetime) -> float:
    return (moment - datetime.now(timezone.utc)).total_seconds()


async def _next_millisecond() -> None:
    # Stored datetimes have millisecond precision; keep completions ordered.
    await asyncio.sleep(0.002)


async def _backdate(tracker, attempt_id: str, **delta) -> None:
    await tracker._col.update_one(
        {"attempt_id": attempt_id},
        {"$set": {"started_at": datetime.now(timezone.utc) - timedelta(**delta)}},
    )


class TestTransitions:
    async def test_start_records_in_progress(self, tracker):
        attempt = await tracker.start("t1", None, {"session_id": "abc"})

        stored = await tracker.get(attempt.attempt_id)
        assert stored.status == "in_progress"
        assert stored.proxy_ref == "no_proxy"
        assert stored.metadata == {"session_id": "abc"}

    async def test_success_schedules_next_refresh(self, tracker):
        attempt = await tracker.start("t1", "p1")

        done = await tracker.mark_success(attempt.attempt_id, 12, retry_count=1)

        assert done.status == "success"
        assert done.artifact_count == 12
        assert done.retry_count == 1
        assert done.consecutive_failures == 0
        assert done.duration_ms is not None
        assert 1790 < _since(done.next_eligible_at) <= 1800

    async def test_failure_backs_off_exponentially_per_target(self, tracker):
        delays = []
        for _ in range(7):
            attempt = await tracker.start("t1", "p1")
            failed = await tracker.mark_failed(attempt.attempt_id, "boom")
            delays.append(round(_since(failed.next_eligible_at) / 60))
            await _next_millisecond()

        assert delays == [5, 10, 20, 40, 60, 60, 60]

    async def test_success_resets_failure_streak(self, tracker):
        first = await tracker.start("t1", "p1")
        await tracker.mark_failed(first.attempt_id, "boom")
        await _next_millisecond()
        second = await tracker.start("t1", "p1")
        await tracker.mark_success(second.attempt_id, 3)
        await _next_millisecond()
        third = await tracker.start("t1", "p1")

        failed = await tracker.mark_failed(third.attempt_id, "boom")

        assert failed.consecutive_failures == 1

    async def test_streak_is_tracked_per_target(self, tracker):
        a = await tracker.start("t1", "p1")
        await tracker.mark_failed(a.attempt_id, "boom")
        b = await tracker.start("t2", "p1")

        failed = await tracker.mark_failed(b.attempt_id, "boom")

        assert failed.consecutive_failures == 1

    async def test_error_message_is_truncated(self, tracker):
        attempt = await tracker.start("t1", "p1")
        failed = await tracker.mark_failed(attempt.attempt_id, "x" * 2000)
        assert len(failed.error_message) == MAX_ERROR_LENGTH

    async def test_terminal_attempt_cannot_transition_again(self, tracker):
        attempt = await tracker.start("t1", "p1")
        await tracker.mark_success(attempt.attempt_id, 1)

        with pytest.raises(AttemptNotFound):
            await tracker.mark_failed(attempt.attempt_id, "late")
        with pytest.raises(AttemptNotFound):
            await tracker.mark_success(attempt.attempt_id, 1)

    async def test_unknown_attempt_raises(self, tracker):
        with pytest.raises(AttemptNotFound):
            await tracker.mark_success("missing", 1)

    async def test_custom_policy_is_used(self, mongo):
        tracker = AttemptTracker(mongo["attempts_custom"], RetryPolicy(base_delay=10, max_delay=15))
        attempt = await tracker.start("t1", "p1")
        failed = await tracker.mark_failed(attempt.attempt_id, "boom")
        assert 9 < _since(failed.next_eligible_at) <= 10


class TestStuckAndPrune:
    async def test_reset_stuck_fails_old_in_progress_only(self, tracker):
        stuck = await tracker.start("t1", "p1")
        fresh = await tracker.start("t2", "p1")
        await _backdate(tracker, stuck.attempt_id, minutes=31)

        assert len(await tracker.stuck_attempts()) == 1
        assert await tracker.reset_stuck() == 1

        reset = await tracker.get(stuck.attempt_id)
        assert reset.status == "failed"
        assert reset.error_message == STUCK_ERROR_MESSAGE
        assert 290 < _since(reset.next_eligible_at) <= 300
        assert (await tracker.get(fresh.attempt_id)).status == "in_progress"

    async def test_reset_stuck_extends_failure_streak(self, tracker):
        first = await tracker.start("t1", "p1")
        await tracker.mark_failed(first.attempt_id, "boom")
        await _next_millisecond()
        stuck = await tracker.start("t1", "p1")
        await _backdate(tracker, stuck.attempt_id, minutes=31)

        assert await tracker.reset_stuck() == 1
        reset = await tracker.get(stuck.attempt_id)
        assert reset.consecutive_failures == 2
        assert 590 < _since(reset.next_eligible_at) <= 600

        await _next_millisecond()
        third = await tracker.start("t1", "p1")
        failed = await tracker.mark_failed(third.attempt_id, "boom")

        assert failed.consecutive_failures == 3
        assert 1190 < _since(failed.next_eligible_at) <= 1200

    async def test_stuck_attempts_on_one_target_chain_their_streak(self, tracker):
        older = await tracker.start("t1", "p1")
        newer = await tracker.start("t1", "p2")
        await _backdate(tracker, older.attempt_id, minutes=50)
        await _backdate(tracker, newer.attempt_id, minutes=40)

        assert await tracker.reset_stuck() == 2

        assert (await tracker.get(older.attempt_id)).consecutive_failures == 1
        assert (await tracker.get(newer.attempt_id)).consecutive_failures == 2

    async def test_late_completion_after_reset_raises(self, tracker):
        attempt = await tracker.start("t1", "p1")
        await _backdate(tracker, attempt.attempt_id, hours=1)
        await tracker.reset_stuck()

        with pytest.raises(AttemptNotFound):
            await tracker.mark_success(attempt.attempt_id, 5)

    async def test_prune_keeps_in_progress(self, tracker):
        old_done = await tracker.start("t1", "p1")
        await tracker.mark_success(old_done.attempt_id, 1)
        old_running = await tracker.start("t1", "p1")
        await _backdate(tracker, old_done.attempt_id, days=31)
        await _backdate(tracker, old_running.attempt_id, days=31)

        assert await tracker.prune() == 1
        assert await tracker.get(old_done.attempt_id) is None
        assert await tracker.get(old_running.attempt_id) is not None


class TestReads:
    async def test_refresh_due_without_history(self, tracker):
        assert await tracker.is_refresh_due() is True

    async def test_refresh_not_due_after_recent_success(self, tracker):
        attempt = await tracker.start("t1", "p1")
        await tracker.mark_success(attempt.attempt_id, 4)
        assert await tracker.is_refresh_due() is False

    async def test_history_paginates_and_filters(self, tracker):
        for i in range(5):
            attempt = await tracker.start(f"t{i % 2}", "p1")
            if i % 2:
                await tracker.mark_failed(attempt.attempt_id, "boom")

        page = await tracker.history(page=1, limit=2)
        assert len(page.attempts) == 2
        assert page.pagination.total == 5
        assert page.pagination.pages == 3
        assert page.pagination.has_next is True
        assert page.pagination.has_prev is False

        failed = await tracker.history(status="failed")
        assert failed.pagination.total == 2
        assert {a.target_ref for a in failed.attempts} == {"t1"}

        by_target = await tracker.history(target_ref="t0")
        assert by_target.pagination.total == 3

    async def test_stats(self, tracker):
        ok = await tracker.start("t1", "p1")
        await tracker.mark_success(ok.attempt_id, 10)
        ok2 = await tracker.start("t1", "p1")
        await tracker.mark_success(ok2.attempt_id, 20)
        bad = await tracker.start("t1", "p1")
        await tracker.mark_failed(bad.attempt_id, "boom")
        await tracker.start("t1", "p1")

        stats = await tracker.stats()

        assert stats.total == 4
        assert stats.success_count == 2
        assert stats.failed_count == 1
        assert stats.in_progress_count == 1
        assert stats.success_rate == 50.0
        assert stats.average_artifacts == 15.0
        assert stats.health == "healthy"
        assert stats.next_eligible_at is not None

    async def test_stats_on_empty_collection(self, tracker):
        stats = await tracker.stats()
        assert stats.total == 0
        assert stats.success_rate is None
        assert stats.health == "degraded"


class TestHealth:
    async def test_recent_success_is_healthy(self, tracker):
        attempt = await tracker.start("t1", "p1")
        await tracker.mark_success(attempt.attempt_id, 4)

        health = await tracker.health()

        assert health.status == "healthy"
        assert health.last_hour_success_count == 1
        assert health.last_day_success_count == 1
        assert health.stuck_count == 0
        assert health.next_eligible_at is not None

    async def test_no_recent_success_is_degraded(self, tracker):
        attempt = await tracker.start("t1", "p1")
        await tracker.mark_success(attempt.attempt_id, 4)
        await tracker._col.update_one(
            {"attempt_id": attempt.attempt_id},
            {"$set": {"completed_at": datetime.now(timezone.utc) - timedelta(hours=3)}},
        )

        health = await tracker.health()

        assert health.status == "degraded"
        assert health.last_hour_success_count == 0
        assert health.last_day_success_count == 1

    async def test_stuck_attempt_is_critical(self, tracker):
        ok = await tracker.start("t1", "p1")
        await tracker.mark_success(ok.attempt_id, 4)
        stuck = await tracker.start("t1", "p1")
        await _backdate(tracker, stuck.attempt_id, minutes=31)

        health = await tracker.health()

        assert health.status == "critical"
        assert health.stuck_count == 1
