from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from cookie_pool.core.errors import ArtifactNotFound
from cookie_pool.models.artifact.schemas import (
    ArtifactListResponse,
    ArtifactStats,
    BestArtifactResponse,
    EvictionResult,
    FeedbackResponse,
    QualitySummary,
)
from cookie_pool.models.attempt.document import AttemptDocument
from cookie_pool.models.attempt.schemas import AttemptHealth
from cookie_pool.models.pool.schemas import (
    CleanupReport,
    PoolConfig,
    PoolStatus,
    SessionCounters,
)
from cookie_pool.models.target.document import TargetDocument
from cookie_pool.models.target.schemas import TargetStats
from cookie_pool.services.pool.scheduler import PoolScheduler

_NOW = datetime.now(timezone.utc)
_SERVICE = "cookie_pool.api.artifacts.routes.ArtifactService"
_TRACKER = "cookie_pool.api.attempts.routes.AttemptTracker"
_TARGETS = "cookie_pool.api.targets.routes.TargetRepository"


@pytest.fixture
def scheduler(client):
    mock = MagicMock(spec=PoolScheduler)
    mock.running = False
    client.app.state.scheduler = mock
    return mock


class TestArtifacts:
    def test_best_returns_artifact(self, client):
        response = BestArtifactResponse(
            success=True, total=3, artifact_id="a1", token_name="sid", token="abc", quality=90
        )
        with patch(f"{_SERVICE}.best_artifact", new_callable=AsyncMock, return_value=response) as best:
            resp = client.get("/artifacts/best?domain=example.com&tags=eu&tags=us&anti_reuse=true")

        assert resp.status_code == 200
        assert resp.json()["artifact_id"] == "a1"
        criteria = best.await_args.args[0]
        assert criteria.domain == "example.com"
        assert criteria.tags == ["eu", "us"]
        assert criteria.min_quality == 50
        assert criteria.anti_reuse is True

    def test_best_on_empty_pool_is_200(self, client):
        response = BestArtifactResponse(success=False, message="No artifacts available", total=0)
        with patch(f"{_SERVICE}.best_artifact", new_callable=AsyncMock, return_value=response):
            resp = client.get("/artifacts/best")

        assert resp.status_code == 200
        assert resp.json()["success"] is False
        assert resp.json()["total"] == 0

    def test_best_invalid_quality_returns_422(self, client):
        resp = client.get("/artifacts/best?min_quality=150")
        assert resp.status_code == 422

    def test_best_db_error_returns_500(self, client):
        with patch(f"{_SERVICE}.best_artifact", new_callable=AsyncMock, side_effect=RuntimeError("DB down")):
            resp = client.get("/artifacts/best")
        assert resp.status_code == 500

    def test_feedback_success(self, client):
        ack = FeedbackResponse(artifact_id="a1", score=95, status="active")
        with patch(f"{_SERVICE}.record_feedback", new_callable=AsyncMock, return_value=ack) as feedback:
            resp = client.post("/artifacts/a1/feedback", json={"success": False})

        assert resp.status_code == 200
        assert resp.json()["score"] == 95
        feedback.assert_awaited_once_with("a1", False)

    def test_feedback_unknown_artifact_returns_404(self, client):
        with patch(
            f"{_SERVICE}.record_feedback",
            new_callable=AsyncMock,
            side_effect=ArtifactNotFound("a1"),
        ):
            resp = client.post("/artifacts/a1/feedback", json={"success": True})
        assert resp.status_code == 404

    def test_feedback_missing_body_returns_422(self, client):
        resp = client.post("/artifacts/a1/feedback", json={})
        assert resp.status_code == 422

    def test_list_passes_sort_and_filter(self, client):
        listing = ArtifactListResponse(total=0, artifacts=[])
        with patch(f"{_SERVICE}.list_artifacts", new_callable=AsyncMock, return_value=listing) as lister:
            resp = client.get("/artifacts?domain=example.com&sort_by=expiry&descending=false&limit=5")

        assert resp.status_code == 200
        assert resp.json() == {"total": 0, "artifacts": []}
        criteria = lister.await_args.args[0]
        assert criteria.domain == "example.com"
        assert lister.await_args.kwargs == {"sort_by": "expiry", "descending": False, "limit": 5}

    def test_list_rejects_unknown_sort_field(self, client):
        resp = client.get("/artifacts?sort_by=color")
        assert resp.status_code == 422

    def test_stats(self, client):
        stats = ArtifactStats(total=3, active=2, valid=2, expired=1, quality=QualitySummary())
        with patch(f"{_SERVICE}.stats", new_callable=AsyncMock, return_value=stats):
            resp = client.get("/artifacts/stats")
        assert resp.status_code == 200
        assert resp.json()["active"] == 2


class TestPool:
    def test_start(self, client, scheduler):
        resp = client.post("/pool/start")
        assert resp.status_code == 200
        assert resp.json()["running"] is True
        scheduler.start.assert_awaited_once()

    def test_start_when_running_is_noop(self, client, scheduler):
        scheduler.running = True
        resp = client.post("/pool/start")
        assert resp.status_code == 200
        assert "already" in resp.json()["message"]
        scheduler.start.assert_not_called()

    def test_stop(self, client, scheduler):
        scheduler.running = True
        resp = client.post("/pool/stop")
        assert resp.status_code == 200
        scheduler.stop.assert_awaited_once_with(wait=False)

    def test_status(self, client, scheduler):
        scheduler.status.return_value = PoolStatus(
            running=True,
            active_sessions=2,
            pool_size=512,
            config=PoolConfig(),
            counters=SessionCounters(total_sessions=5),
        )
        resp = client.get("/pool/status")
        assert resp.status_code == 200
        assert resp.json()["pool_size"] == 512
        assert resp.json()["counters"]["total_sessions"] == 5

    def test_update_config(self, client, scheduler):
        scheduler.update_config.return_value = PoolConfig(min_size=10, max_size=20)
        resp = client.put("/pool/config", json={"min_size": 10, "max_size": 20})
        assert resp.status_code == 200
        scheduler.update_config.assert_called_once_with({"min_size": 10, "max_size": 20})

    def test_invalid_config_returns_422(self, client, scheduler):
        try:
            PoolConfig(min_size=10, max_size=5)
        except ValidationError as exc:
            scheduler.update_config.side_effect = exc
        resp = client.put("/pool/config", json={"min_size": 10, "max_size": 5})
        assert resp.status_code == 422

    def test_cleanup(self, client, scheduler):
        scheduler.run_cleanup.return_value = CleanupReport(
            eviction=EvictionResult(expired=4, invalid=1), stuck_reset=2
        )
        resp = client.post("/pool/cleanup")
        assert resp.status_code == 200
        assert resp.json()["eviction"]["total"] == 5
        assert resp.json()["stuck_reset"] == 2


class TestAttempts:
    def test_get_attempt(self, client):
        attempt = AttemptDocument(attempt_id="x1", target_ref="t1", started_at=_NOW)
        with patch(f"{_TRACKER}.get", new_callable=AsyncMock, return_value=attempt):
            resp = client.get("/attempts/x1")
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_progress"

    def test_get_unknown_attempt_returns_404(self, client):
        with patch(f"{_TRACKER}.get", new_callable=AsyncMock, return_value=None):
            resp = client.get("/attempts/missing")
        assert resp.status_code == 404

    def test_refresh_due(self, client):
        with patch(f"{_TRACKER}.is_refresh_due", new_callable=AsyncMock, return_value=True):
            resp = client.get("/attempts/refresh-due")
        assert resp.status_code == 200
        assert resp.json() == {"refresh_due": True}

    def test_health_status(self, client):
        health = AttemptHealth(
            status="critical",
            last_hour_success_count=0,
            last_day_success_count=4,
            stuck_count=2,
            checked_at=_NOW,
        )
        with patch(f"{_TRACKER}.health", new_callable=AsyncMock, return_value=health):
            resp = client.get("/attempts/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "critical"
        assert resp.json()["stuck_count"] == 2

    def test_reset_stuck(self, client):
        with patch(f"{_TRACKER}.reset_stuck", new_callable=AsyncMock, return_value=3):
            resp = client.post("/attempts/reset-stuck")
        assert resp.json() == {"reset": 3}

    def test_history_rejects_unknown_status(self, client):
        resp = client.get("/attempts/history?status=exploded")
        assert resp.status_code == 422

    def test_stats_db_error_returns_500(self, client):
        with patch(f"{_TRACKER}.stats", new_callable=AsyncMock, side_effect=RuntimeError("DB gone")):
            resp = client.get("/attempts/stats")
        assert resp.status_code == 500


class TestTargets:
    def test_create(self, client):
        target = TargetDocument(target_id="home", url="https://example.com/", created_at=_NOW)
        with patch(f"{_TARGETS}.create", new_callable=AsyncMock, return_value=target) as create:
            resp = client.post("/targets", json={"target_id": "home", "url": "https://example.com/"})
        assert resp.status_code == 201
        assert create.await_args.args == ("home", "https://example.com/")

    def test_duplicate_returns_409(self, client):
        with patch(f"{_TARGETS}.create", new_callable=AsyncMock, return_value=None):
            resp = client.post("/targets", json={"target_id": "home", "url": "https://example.com/"})
        assert resp.status_code == 409

    def test_invalid_url_returns_422(self, client):
        resp = client.post("/targets", json={"target_id": "home", "url": "not-a-url"})
        assert resp.status_code == 422

    def test_bulk_counts_created(self, client):
        created = [TargetDocument(target_id="a", url="https://a.example/", created_at=_NOW)]
        with patch(f"{_TARGETS}.bulk_create", new_callable=AsyncMock, return_value=created):
            resp = client.post(
                "/targets/bulk",
                json={
                    "targets": [
                        {"target_id": "a", "url": "https://a.example/"},
                        {"target_id": "b", "url": "https://b.example/"},
                    ]
                },
            )
        assert resp.json() == {"created": 1}

    def test_stats(self, client):
        stats = TargetStats(total=2, enabled=2, total_visits=4, successful_visits=3, success_rate=75)
        with patch(f"{_TARGETS}.stats", new_callable=AsyncMock, return_value=stats):
            resp = client.get("/targets/stats")
        assert resp.status_code == 200
        assert resp.json()["success_rate"] == 75


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
