"""Telemetry port for metrics emitted on read and write paths.

Recording a metric never blocks the caller: writes to the backing cache are
scheduled as tasks and can be awaited explicitly with ``flush()``.
"""
import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Optional, Set, Tuple

from .cache import Cache
from .logging import get_logger
from .time import Clock

logger = get_logger(__name__)

Tags = Optional[Dict[str, str]]


def _metric_key(name: str, tags: Tags) -> str:
    if not tags:
        return name
    suffix = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}[{suffix}]"


class Telemetry:
    """In-memory counters and timings."""

    def __init__(self):
        self.counters: Dict[str, float] = defaultdict(float)
        self.timings: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=1000))
        self.events: Deque[Tuple[str, str, float, Dict[str, str]]] = deque(maxlen=1000)

    def increment(self, name: str, value: float = 1, tags: Tags = None) -> None:
        self.counters[_metric_key(name, tags)] += value
        self.events.append(("counter", name, value, dict(tags or {})))
        self._emit(name, value, tags)

    def timing(self, name: str, seconds: float, tags: Tags = None) -> None:
        self.timings[_metric_key(name, tags)].append(seconds)
        self.events.append(("timing", name, seconds, dict(tags or {})))

    def _emit(self, name: str, value: float, tags: Tags) -> None:
        """Hook for backends that persist counters."""

    async def flush(self) -> None:
        """Wait for outstanding writes (none for the in-memory backend)."""

    def counter(self, name: str, tags: Tags = None) -> float:
        return self.counters.get(_metric_key(name, tags), 0.0)

    def counters_with_prefix(self, prefix: str) -> Dict[str, float]:
        return {k: v for k, v in self.counters.items() if k.startswith(prefix)}

    def timing_stats(self, name: str, tags: Tags = None) -> Dict[str, float]:
        samples = self.timings.get(_metric_key(name, tags), [])
        if not samples:
            return {"count": 0, "total": 0.0, "avg": 0.0}
        total = sum(samples)
        return {"count": len(samples), "total": total, "avg": total / len(samples)}

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "timings": {k: self.timing_stats(k) for k in self.timings},
        }


class CacheTelemetry(Telemetry):
    """Telemetry that also keeps daily counters in the shared cache."""

    DAILY_TTL = 2 * 24 * 3600

    def __init__(self, cache: Cache, clock: Optional[Clock] = None):
        super().__init__()
        self.cache = cache
        self.clock = clock or Clock()
        self._pending: Set[asyncio.Task] = set()

    def _emit(self, name: str, value: float, tags: Tags) -> None:
        day = self.clock.now().strftime("%Y-%m-%d")
        key = f"metrics:{_metric_key(name, tags)}:{day}"
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): in-memory counter only
            return
        task = loop.create_task(self.cache.incr(key, value, ttl=self.DAILY_TTL))
        self._pending.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Telemetry write failed: {task.exception()}")

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def daily_counter(self, name: str, tags: Tags = None) -> float:
        day = self.clock.now().strftime("%Y-%m-%d")
        return float(await self.cache.get(f"metrics:{_metric_key(name, tags)}:{day}") or 0)
