"""Tests for the per-type job queue."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from newsintel.core.cache import RedisCache
from newsintel.core.config import QueuePolicy
from newsintel.core.errors import QueueStopped, ValidationError
from newsintel.jobs import Job, JobQueue, JobState, JobType, MemoryJobStore, RedisJobStore, create_job_store
from newsintel.jobs.models import TrendingPayload
from newsintel.jobs.store import pending_score
from conftest import JOB_TYPES, queue_config


@pytest.fixture
def make_queue(job_store, telemetry, clock):
    """Queues built on one shared job store, as consecutive processes would be."""
    def _make(**config):
        return JobQueue(queue_config(**config), job_store, telemetry, clock)
    return _make


def flaky(failures, result="ok"):
    """Handler failing ``failures`` times before succeeding."""
    calls = []

    async def handler(job):
        calls.append(job.id)
        if len(calls) <= failures:
            raise RuntimeError(f"boom {len(calls)}")
        return result

    handler.calls = calls
    return handler


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, make_queue):
        """Higher priority first; equal priorities keep enqueue order."""
        queue = make_queue()
        order = []

        async def handler(job):
            order.append(job.id)

        queue.register("trending", handler)
        await queue.add("trending", {}, job_id="low-1")
        await queue.add("trending", {}, priority=5, job_id="high")
        await queue.add("trending", {}, job_id="low-2")

        queue.start(health_checks=False)
        for job_id in ("low-1", "high", "low-2"):
            await queue.wait_for(job_id, timeout=5)
        await queue.close(drain_timeout=1)

        assert order == ["high", "low-1", "low-2"]

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, make_queue):
        with pytest.raises(ValidationError):
            await make_queue().add("telepathy", {})

    @pytest.mark.asyncio
    async def test_duplicate_pending_id_rejected(self, make_queue):
        queue = make_queue()
        await queue.add("trending", {}, job_id="t1")

        with pytest.raises(ValidationError):
            await queue.add("trending", {}, job_id="t1")

    @pytest.mark.asyncio
    async def test_job_record_written_to_store(self, make_queue, job_store):
        queue = make_queue()
        job = await queue.add("trending", TrendingPayload(time_windows=["short"]), job_id="t1")

        record = await job_store.load("t1")

        assert record["state"] == "waiting"
        assert record["payload"]["time_windows"] == ["short"]
        assert record["max_attempts"] == job.max_attempts == 3


class TestProcessing:
    @pytest.mark.asyncio
    async def test_retries_until_success(self, make_queue):
        queue = make_queue()
        handler = flaky(2)
        queue.register("trending", handler)
        queue.start(health_checks=False)

        await queue.add("trending", {}, job_id="t1")
        job = await queue.wait_for("t1", timeout=5)
        await queue.close(drain_timeout=1)

        assert job.state == JobState.COMPLETED
        assert job.attempts == 3
        assert job.errors == ["boom 1", "boom 2"]
        assert job.result.success is True
        assert job.result.data == "ok"
        assert job.progress == 100

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter(self, make_queue, telemetry):
        queue = make_queue(max_attempts=2)
        queue.register("trending", flaky(10))
        queue.start(health_checks=False)

        await queue.add("trending", {}, job_id="t1")
        job = await queue.wait_for("t1", timeout=5)
        await queue.close(drain_timeout=1)

        assert job.state == JobState.DEAD_LETTER
        assert job.attempts == 2
        assert job.result.success is False
        assert telemetry.counter("queue.jobs.dead_lettered", tags={"type": "trending"}) == 1

    @pytest.mark.asyncio
    async def test_bad_payload_dead_letters_without_calling_handler(self, make_queue):
        queue = make_queue()
        handler = flaky(0)
        queue.register("embedding", handler)
        queue.start(health_checks=False)

        await queue.add("embedding", {"content": "no id"}, job_id="e1")
        job = await queue.wait_for("e1", timeout=5)
        await queue.close(drain_timeout=1)

        assert job.state == JobState.DEAD_LETTER
        assert job.attempts == 1
        assert handler.calls == []
        assert job.errors[0].startswith("Invalid embedding payload")

    @pytest.mark.asyncio
    async def test_validation_error_is_not_retried(self, make_queue):
        queue = make_queue()
        calls = []

        async def handler(job):
            calls.append(job.id)
            raise ValidationError("content is empty")

        queue.register("trending", handler)
        queue.start(health_checks=False)

        await queue.add("trending", {}, job_id="t1")
        job = await queue.wait_for("t1", timeout=5)
        await queue.close(drain_timeout=1)

        assert job.state == JobState.DEAD_LETTER
        assert calls == ["t1"]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, make_queue):
        queue = make_queue(max_attempts=1, job_timeout_seconds=0.01)

        async def slow(job):
            await asyncio.sleep(1)

        queue.register("trending", slow)
        queue.start(health_checks=False)

        await queue.add("trending", {}, job_id="t1")
        job = await queue.wait_for("t1", timeout=5)
        await queue.close(drain_timeout=1)

        assert job.state == JobState.DEAD_LETTER
        assert job.errors == ["timed out after 0.01s"]

    @pytest.mark.asyncio
    async def test_handler_can_report_progress(self, make_queue):
        queue = make_queue()
        seen = []

        async def handler(job):
            job.update_progress(250)
            seen.append(job.progress)
            return {"done": True}

        queue.register("trending", handler)
        queue.start(health_checks=False)
        await queue.add("trending", {}, job_id="t1")
        await queue.wait_for("t1", timeout=5)
        await queue.close(drain_timeout=1)

        assert seen == [100]
        assert (await queue.get_job("t1"))["result"]["data"] == {"done": True}


class TestStatsAndShutdown:
    @pytest.mark.asyncio
    async def test_stats_per_type(self, make_queue):
        queue = make_queue(max_attempts=1)
        queue.register("trending", flaky(0))
        queue.register("analysis", flaky(10))
        queue.start(health_checks=False)

        await queue.add("trending", {}, job_id="t1")
        await queue.add("analysis", {"content_id": "c1", "content": "text"}, job_id="a1")
        await queue.wait_for("t1", timeout=5)
        await queue.wait_for("a1", timeout=5)
        await queue.close(drain_timeout=1)

        stats = queue.stats()
        assert set(stats) == set(JOB_TYPES)
        assert stats["trending"]["completed"] == 1
        assert stats["trending"]["daily_processed"] == 1
        assert stats["analysis"]["dead_lettered"] == 1
        assert stats["analysis"]["failed"] == 1
        assert stats["analysis"]["daily_failed"] == 1
        assert stats["embedding"]["waiting"] == 0

    @pytest.mark.asyncio
    async def test_health_check_reports_backlog(self, make_queue):
        queue = make_queue(backlog_high_water=1)
        await queue.add("trending", {})
        await queue.add("trending", {})

        assert queue.health_check() == ["trending: 2 jobs waiting"]

    @pytest.mark.asyncio
    async def test_emergency_stop_clears_waiting_jobs(self, make_queue):
        queue = make_queue()
        first = await queue.add("trending", {})
        second = await queue.add("analysis", {"content_id": "c1", "content": "text"})

        cleared = await queue.emergency_stop()

        assert cleared == 2
        assert first.state == second.state == JobState.DEAD_LETTER
        assert queue.waiting_count() == 0
        with pytest.raises(QueueStopped):
            await queue.add("trending", {})

        queue.resume()
        job = await queue.add("trending", {})
        assert job.state == JobState.WAITING

    def test_backoff_is_exponential(self, telemetry, clock):
        policies = {name: QueuePolicy(backoff_base_seconds=2.0) for name in JOB_TYPES}
        queue = JobQueue(queue_config(policies=policies), MemoryJobStore(), telemetry, clock)
        job = Job(id="e1", type=JobType.EMBEDDING, payload={}, attempts=3)

        assert queue.backoff_delay(job) == 8.0

    @pytest.mark.asyncio
    async def test_finished_jobs_leave_memory(self, make_queue, job_store):
        """Finished jobs are dropped from the live map and read back from the store."""
        queue = make_queue()
        queue.register("trending", flaky(0))
        queue.start(health_checks=False)

        for i in range(50):
            await queue.add("trending", {}, job_id=f"t{i}")
        for i in range(50):
            await queue.wait_for(f"t{i}", timeout=5)
        await queue.close(drain_timeout=1)

        assert queue.jobs == {}
        assert queue.stats()["trending"]["completed"] == 50
        assert (await queue.get_job("t7"))["state"] == "completed"
        assert await job_store.pending("trending") == []


class TestRecovery:
    @pytest.mark.asyncio
    async def test_restarted_queue_picks_up_waiting_jobs(self, make_queue):
        first = make_queue()
        await first.add("trending", {}, job_id="low")
        await first.add("trending", {}, priority=5, job_id="high")

        restarted = make_queue()
        order = []

        async def handler(job):
            order.append(job.id)

        restarted.register("trending", handler)
        recovered = await restarted.recover()
        assert recovered == 2
        assert restarted.waiting_count() == 2

        restarted.start(health_checks=False)
        await restarted.wait_for("low", timeout=5)
        await restarted.wait_for("high", timeout=5)
        await restarted.close(drain_timeout=1)

        assert order == ["high", "low"]

    @pytest.mark.asyncio
    async def test_recovered_job_keeps_attempts(self, make_queue, job_store):
        first = make_queue(max_attempts=2)
        job = await first.add("trending", {}, job_id="t1")
        job.attempts = 1
        job.errors.append("boom 1")
        await job_store.save(job.to_dict())

        restarted = make_queue(max_attempts=2)
        restarted.register("trending", flaky(10))
        await restarted.recover()
        restarted.start(health_checks=False)
        finished = await restarted.wait_for("t1", timeout=5)
        await restarted.close(drain_timeout=1)

        assert finished.state == JobState.DEAD_LETTER
        assert finished.attempts == 2
        assert finished.errors == ["boom 1", "boom 1"]

    @pytest.mark.asyncio
    async def test_finished_jobs_are_not_recovered(self, make_queue):
        first = make_queue()
        first.register("trending", flaky(0))
        first.start(health_checks=False)
        await first.add("trending", {}, job_id="t1")
        await first.wait_for("t1", timeout=5)
        await first.close(drain_timeout=1)

        assert await make_queue().recover() == 0


class TestMemoryJobStore:
    @pytest.mark.asyncio
    async def test_finished_history_is_bounded(self):
        store = MemoryJobStore(max_finished=2)
        await store.mark_pending("trending", "live", 0)
        await store.save({"id": "live"})
        for job_id in ("a", "b", "c"):
            await store.save({"id": job_id})

        assert await store.load("a") is None
        assert await store.load("c") == {"id": "c"}
        assert await store.load("live") == {"id": "live"}


class TestJobStoreSelection:
    def test_memory_cache_gets_memory_store(self, cache):
        store = create_job_store(cache, queue_config(finished_history=5))

        assert isinstance(store, MemoryJobStore)
        assert store.max_finished == 5

    @pytest.mark.asyncio
    async def test_redis_cache_shares_its_client(self):
        client = AsyncMock()
        client.zrange.return_value = ["high", "low"]
        store = create_job_store(RedisCache(client), queue_config(job_record_ttl_seconds=60))

        await store.mark_pending("trending", "high", pending_score(5, 1000))
        await store.save({"id": "high", "state": "waiting"})

        assert isinstance(store, RedisJobStore)
        assert store.redis is client
        client.zadd.assert_awaited_once_with("jobs:pending:trending", {"high": pending_score(5, 1000)})
        assert client.set.await_args.kwargs["ex"] == 60
        assert await store.pending("trending") == ["high", "low"]
