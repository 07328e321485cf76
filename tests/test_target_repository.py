from __future__ import annotations

from cookie_pool.models.target.document import TargetOutcome


class TestTargetRepository:
    async def test_report_outcome_updates_metrics(self, targets):
        await targets.create("home", "https://example.com/")

        await targets.report_outcome("home", TargetOutcome(success=True, artifact_count=6, latency_ms=900))
        await targets.report_outcome("home", TargetOutcome(success=False, error="timeout"))

        [target] = await targets.list_targets()
        assert target.metrics.total_visits == 2
        assert target.metrics.successful_visits == 1
        assert target.metrics.failed_visits == 1
        assert target.metrics.artifacts_generated == 6
        assert target.metrics.last_error == "timeout"

    async def test_stats_totals_and_success_rate(self, targets):
        await targets.create("a", "https://a.example/")
        await targets.create("b", "https://b.example/")
        await targets._col.update_one({"target_id": "b"}, {"$set": {"enabled": False}})
        for success in (True, True, False):
            await targets.report_outcome("a", TargetOutcome(success=success, artifact_count=3))

        stats = await targets.stats()

        assert stats.total == 2
        assert stats.enabled == 1
        assert stats.disabled == 1
        assert stats.total_visits == 3
        assert stats.successful_visits == 2
        assert stats.failed_visits == 1
        assert stats.artifacts_generated == 6
        assert stats.success_rate == 67

    async def test_stats_on_empty_collection(self, targets):
        stats = await targets.stats()
        assert stats.total == 0
        assert stats.success_rate == 0
