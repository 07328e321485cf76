from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from cookie_pool.core.collections import CollectionNames
from cookie_pool.main import app
from cookie_pool.repositories.artifact.repository import ArtifactStore
from cookie_pool.repositories.attempt.repository import AttemptTracker
from cookie_pool.repositories.target.repository import TargetRepository


@pytest.fixture
def client():
    """TestClient with lifespan startup/shutdown hooks fully mocked."""
    with (
        patch(
            "cookie_pool.core.database.DatabaseManager.connect",
            new_callable=AsyncMock,
        ),
        patch(
            "cookie_pool.core.database.DatabaseManager.disconnect",
            new_callable=AsyncMock,
        ),
        patch(
            "cookie_pool.core.database.DatabaseManager.get_collection",
            return_value=MagicMock(),
        ),
        patch(
            "cookie_pool.repositories.artifact.repository.ArtifactStore.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch(
            "cookie_pool.repositories.attempt.repository.AttemptTracker.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch(
            "cookie_pool.repositories.target.repository.TargetRepository.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch("cookie_pool.main.close_http_client", new_callable=AsyncMock),
        patch("cookie_pool.main.settings.pool_autostart", False),
    ):
        with TestClient(app) as c:
            yield c


@pytest.fixture
def mongo():
    """Fresh in-memory database per test."""
    return AsyncMongoMockClient(tz_aware=True)["cookie_pool_test"]


@pytest.fixture
async def store(mongo) -> ArtifactStore:
    repository = ArtifactStore(mongo[CollectionNames.ARTIFACTS])
    await repository.ensure_indexes()
    return repository


@pytest.fixture
async def tracker(mongo) -> AttemptTracker:
    repository = AttemptTracker(mongo[CollectionNames.ATTEMPTS])
    await repository.ensure_indexes()
    return repository


@pytest.fixture
async def targets(mongo) -> TargetRepository:
    repository = TargetRepository(mongo[CollectionNames.TARGETS])
    await repository.ensure_indexes()
    return repository
