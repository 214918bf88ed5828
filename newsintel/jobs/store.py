"""
Job state storage for the queue.

Every job record and a per-type index of unfinished jobs live here, so a
restarted process can pick up waiting, delayed and interrupted work. Redis is
used whenever the cache is Redis-backed; otherwise an in-memory store keeps a
bounded history of finished records.
"""
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from newsintel.core.cache import Cache, RedisCache
from newsintel.core.config import QueueConfig
from newsintel.core.logging import get_logger

logger = get_logger(__name__)

RECORD_PREFIX = "jobs:record:"
PENDING_PREFIX = "jobs:pending:"

# Pending order: higher priority first, then enqueue time in milliseconds
PRIORITY_STRIDE = 10 ** 13


def pending_score(priority: int, enqueued_ms: int) -> float:
    """
    Sort key for the pending index, ascending.

    >>> pending_score(5, 1000) < pending_score(0, 10)
    True
    >>> pending_score(0, 10) < pending_score(0, 11)
    True
    """
    return float(-priority * PRIORITY_STRIDE + enqueued_ms)


class JobStore(ABC):
    """Durable job records plus the index of jobs that have not finished."""

    @abstractmethod
    async def save(self, record: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def mark_pending(self, job_type: str, job_id: str, score: float) -> None:
        pass

    @abstractmethod
    async def clear_pending(self, job_type: str, job_id: str) -> None:
        pass

    @abstractmethod
    async def pending(self, job_type: str) -> List[str]:
        """Unfinished job ids of one type, in run order."""

    async def close(self) -> None:
        pass


class MemoryJobStore(JobStore):
    """Process-local store; finished records beyond ``max_finished`` are evicted oldest first."""

    def __init__(self, max_finished: int = 1000):
        self.max_finished = max_finished
        self.records: "OrderedDict[str, str]" = OrderedDict()
        self._pending: Dict[str, Dict[str, float]] = {}

    def _is_pending(self, job_id: str) -> bool:
        return any(job_id in ids for ids in self._pending.values())

    async def save(self, record: Dict[str, Any]) -> None:
        self.records[record["id"]] = json.dumps(record, default=str)
        self.records.move_to_end(record["id"])
        finished = [job_id for job_id in self.records if not self._is_pending(job_id)]
        for job_id in finished[: max(0, len(finished) - self.max_finished)]:
            del self.records[job_id]

    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = self.records.get(job_id)
        return json.loads(raw) if raw is not None else None

    async def mark_pending(self, job_type: str, job_id: str, score: float) -> None:
        self._pending.setdefault(job_type, {})[job_id] = score

    async def clear_pending(self, job_type: str, job_id: str) -> None:
        self._pending.get(job_type, {}).pop(job_id, None)

    async def pending(self, job_type: str) -> List[str]:
        ids = self._pending.get(job_type, {})
        return sorted(ids, key=ids.get)


class RedisJobStore(JobStore):
    """Records as expiring JSON strings, pending jobs in one sorted set per type."""

    def __init__(self, client: "aioredis.Redis", record_ttl_seconds: int = 24 * 3600):
        self.redis = client
        self.record_ttl_seconds = record_ttl_seconds

    async def save(self, record: Dict[str, Any]) -> None:
        await self.redis.set(
            f"{RECORD_PREFIX}{record['id']}", json.dumps(record, default=str), ex=self.record_ttl_seconds
        )

    async def load(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.get(f"{RECORD_PREFIX}{job_id}")
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable job record {job_id}")
            return None

    async def mark_pending(self, job_type: str, job_id: str, score: float) -> None:
        await self.redis.zadd(f"{PENDING_PREFIX}{job_type}", {job_id: score})

    async def clear_pending(self, job_type: str, job_id: str) -> None:
        await self.redis.zrem(f"{PENDING_PREFIX}{job_type}", job_id)

    async def pending(self, job_type: str) -> List[str]:
        return list(await self.redis.zrange(f"{PENDING_PREFIX}{job_type}", 0, -1))


def create_job_store(cache: Optional[Cache], config: Optional[QueueConfig] = None) -> JobStore:
    """Share the cache's Redis connection when there is one."""
    config = config or QueueConfig()
    if isinstance(cache, RedisCache):
        logger.info("Using Redis job store")
        return RedisJobStore(cache.redis, config.job_record_ttl_seconds)
    return MemoryJobStore(max_finished=config.finished_history)
