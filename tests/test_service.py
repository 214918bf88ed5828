"""HTTP surface tests: health, metrics and the emergency stop."""
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from newsintel.bootstrap import build_orchestrator
from newsintel.core.cache import MemoryCache
from newsintel.core.config import EmbeddingConfig, EngineConfig
from newsintel.core.settings import Settings
from newsintel.core.store import InMemoryStore
from newsintel.jobs import MemoryJobStore
from newsintel.services.app import create_app


@pytest.fixture
def client(orchestrator):
    return TestClient(create_app(orchestrator, service_name="pipeline"))


def test_healthz(client):
    """Test health check with a working store and cache."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "pipeline"
    assert data["accepting_jobs"] is True
    assert data["alerts"] == []


def test_healthz_reports_failed_dependency(client, cache):
    """Test health check when the cache stops answering."""
    with patch.object(cache, "ping", AsyncMock(return_value=False)):
        response = client.get("/healthz")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "unhealthy"
    assert "dependency check failed" in data["error"]


def test_healthz_without_pipeline():
    client = TestClient(create_app(service_name="pipeline"))

    response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["error"] == "pipeline not started"


def test_metrics(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    data = response.json()
    assert set(data["queues"]) >= {"embedding", "batch"}
    assert data["system"]["accepting_jobs"] is True


def test_metrics_without_pipeline():
    client = TestClient(create_app(service_name="pipeline"))

    assert client.get("/metrics").status_code == 503


def test_emergency_stop(client, orchestrator):
    """Test that the emergency stop halts intake."""
    response = client.post("/admin/emergency-stop")

    assert response.status_code == 200
    assert response.json()["stopped"] is True
    assert response.json()["cleared_jobs"] == 0
    assert orchestrator.queue.accepting is False
    assert client.get("/healthz").json()["accepting_jobs"] is False


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_build_in_memory_pipeline(self):
        """Test wiring a development pipeline without Postgres, Redis or API keys."""
        settings = Settings(db_url="memory://", redis_url="", llm_provider="dummy", embedding_providers="local")

        orchestrator = await build_orchestrator(
            settings=settings, engine_config=EngineConfig(embedding=EmbeddingConfig(dimensions=384))
        )

        assert isinstance(orchestrator.store, InMemoryStore)
        assert isinstance(orchestrator.cache, MemoryCache)
        assert isinstance(orchestrator.queue.store, MemoryJobStore)
        assert [p.name for p in orchestrator.embedding_service.providers] == ["local"]
        assert orchestrator.categorizer.llm.provider_name == "dummy"
        assert orchestrator.recommender.store is orchestrator.store
