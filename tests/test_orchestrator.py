"""Tests for the pipeline orchestrator and the job handlers behind it."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from newsintel.core.errors import QueueStopped, ValidationError
from newsintel.jobs import Job, JobState, JobType
from newsintel.jobs.models import RecommendationPayload

BASE_BODY = (
    "Engineers at the harbour authority deployed autonomous cranes that unload containers "
    "overnight while sensors track every pallet, forklift and truck moving across the busy "
    "terminal, cutting waiting times for shipping lines and lowering fuel consumption."
)


@pytest.fixture
def started(orchestrator):
    """Start workers without the periodic refresh loops."""
    async def _start():
        await orchestrator.start(background_refresh=False, health_checks=False)
        return orchestrator
    return _start


class TestNewContent:
    @pytest.mark.asyncio
    async def test_queues_four_jobs_at_new_content_priority(self, orchestrator, store, make_item):
        item = make_item("n1", "Harbour cranes", BASE_BODY)

        queued = await orchestrator.process_new_content(item)

        assert queued["queued"] == ["embedding", "categorization", "analysis", "duplicate_detection"]
        assert orchestrator.queue.waiting_count() == 4
        assert all(orchestrator.queue.jobs[j].priority == 2 for j in queued["jobs"].values())
        assert await store.get_item("n1") is not None

    @pytest.mark.asyncio
    async def test_empty_body_rejected(self, orchestrator, make_item):
        with pytest.raises(ValidationError):
            await orchestrator.process_new_content(make_item("n1", "Empty", "  "))

    @pytest.mark.asyncio
    async def test_jobs_enrich_the_stored_item(self, started, store, make_item):
        """Once the jobs finish the item carries embeddings, a category and scores."""
        orchestrator = await started()
        queued = await orchestrator.process_new_content(make_item("n1", "Harbour cranes", BASE_BODY))

        for job_id in queued["jobs"].values():
            job = await orchestrator.queue.wait_for(job_id, timeout=10)
            assert job.state == JobState.COMPLETED, job.errors
        await orchestrator.close()

        stored = await store.get_item("n1")
        assert stored.embedding is not None
        assert stored.category is not None
        assert stored.quality_score is not None
        assert stored.content_hash is not None
        assert stored.duplicate_of is None


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_later_near_duplicate_is_marked(self, orchestrator, store, make_item, embed_items):
        original = make_item("A", "Harbour cranes", BASE_BODY, hours_ago=5)
        follow_up = make_item("B", "Harbour cranes update", BASE_BODY + " Officials confirmed.", hours_ago=2)
        unrelated = make_item("C", "Quantum chips", "A quantum processor keeps qubits stable.", hours_ago=1)
        await embed_items([original, follow_up, unrelated])

        for item in (original, follow_up, unrelated):
            await orchestrator.handlers.detect_duplicates(item.id, item.content_type, item.title, item.body)

        assert (await store.get_item("B")).duplicate_of == "A"
        assert (await store.get_item("A")).duplicate_of is None
        assert (await store.get_item("C")).duplicate_of is None
        assert len(store.items) == 3

    @pytest.mark.asyncio
    async def test_exact_copy_is_marked_by_hash(self, orchestrator, store, make_item):
        await store.upsert_item(make_item("A", "Harbour cranes", BASE_BODY, hours_ago=5))
        await store.upsert_item(make_item("copy", "Harbour cranes", BASE_BODY, hours_ago=1))

        await orchestrator.handlers.detect_duplicates("A", "article", "Harbour cranes", BASE_BODY)
        result = await orchestrator.handlers.detect_duplicates("copy", "article", "Harbour cranes", BASE_BODY)

        assert result["is_duplicate"] is True
        assert result["exact_duplicates"] == ["A"]
        assert result["duplicate_of"] == "A"

    @pytest.mark.asyncio
    async def test_unknown_item(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.handlers.detect_duplicates("missing", "article", "", "text")


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_counts_every_item(self, started, store, make_item):
        orchestrator = await started()
        items = [
            make_item("b1", "Robots", "The robot arm uses robotics and automation."),
            make_item("b2", "Empty", ""),
            make_item("b3", "Chips", "A quantum processor keeps qubits stable."),
        ]
        for item in items:
            await store.upsert_item(item)

        queued = await orchestrator.process_batch_content(items, operations=["categorization"], batch_size=2)
        job = await orchestrator.queue.wait_for(queued["batch_jobs"]["categorization"], timeout=10)
        await orchestrator.close()

        outcome = job.result.data
        assert job.state == JobState.COMPLETED
        assert outcome["total_items"] == 3
        assert outcome["success_count"] == 2
        assert outcome["failure_count"] == 1
        assert outcome["errors"][0]["content_id"] == "b2"
        assert (await store.get_item("b1")).category == "robotics"

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected(self, orchestrator, make_item):
        with pytest.raises(ValidationError):
            await orchestrator.process_batch_content([make_item("b1", "T", "body")], operations=["translate"])


class TestReadPaths:
    @pytest.mark.asyncio
    async def test_feed_without_workers_calls_recommender(self, orchestrator, store, sample_items):
        for item in sample_items:
            await store.upsert_item(item)

        feed = await orchestrator.personalized_feed("newcomer", include_analytics=True)
        again = await orchestrator.personalized_feed("newcomer")

        assert feed["cached"] is False
        assert feed["fallback"] is True
        assert len(feed["recommendations"]) == len(sample_items)
        assert isinstance(feed["trending"], list)
        assert feed["analytics"]["total_reads"] == 0
        assert again["cached"] is True

    @pytest.mark.asyncio
    async def test_feed_through_recommendation_job(self, started, store, sample_items):
        orchestrator = await started()
        for item in sample_items:
            await store.upsert_item(item)

        feed = await orchestrator.personalized_feed("newcomer", refresh=True)
        stats = orchestrator.queue.stats()
        await orchestrator.close()

        assert feed["recommendations"]
        assert stats["recommendation"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_analyze_comprehensive(self, orchestrator, sample_items, embed_items):
        await embed_items(sample_items)

        report = await orchestrator.analyze_comprehensive(sample_items[0])

        assert report["errors"] == {}
        assert report["analysis"]["content_id"] == "a1"
        assert report["categorization"]["method"] == "hybrid"
        assert all(s["id"] != "a1" for s in report["similar_content"])


    @pytest.mark.asyncio
    async def test_recommendation_job_passes_options_through(self, orchestrator):
        payload = RecommendationPayload(user_id="u1", exclude_read=True, min_quality=70)
        job = Job(id="rec_u1", type=JobType.RECOMMENDATION, payload=payload)
        recommend = AsyncMock(return_value=MagicMock(to_dict=lambda: {"recommendations": []}))

        with patch.object(orchestrator.recommender, "recommend", recommend):
            data = await orchestrator.handlers.recommendation(job)

        options = recommend.await_args.args[1]
        assert data == {"recommendations": []}
        assert options.min_quality == 70
        assert options.exclude_read is True


class TestOperations:
    @pytest.mark.asyncio
    async def test_emergency_stop(self, orchestrator, make_item):
        await orchestrator.process_new_content(make_item("n1", "Harbour cranes", BASE_BODY))

        stopped = await orchestrator.emergency_stop()

        assert stopped["stopped"] is True
        assert stopped["cleared_jobs"] == 4
        with pytest.raises(QueueStopped):
            await orchestrator.process_new_content(make_item("n2", "More cranes", BASE_BODY))

    @pytest.mark.asyncio
    async def test_metrics_and_health(self, orchestrator):
        metrics = await orchestrator.get_metrics()
        health = await orchestrator.health()

        assert set(metrics) == {
            "embedding", "categorization", "analysis", "search", "recommendation", "trending", "queues", "system",
        }
        assert metrics["system"]["accepting_jobs"] is True
        assert metrics["system"]["workers_running"] is False
        assert health == {"store": True, "cache": True, "queue": True, "alerts": []}
