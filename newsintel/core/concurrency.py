"""Concurrency helpers: bounded fan-out, settled results and timeouts."""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

from .errors import ProviderTimeout

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Settled(Generic[R]):
    """Outcome of one concurrent call (fulfilled or rejected)."""
    ok: bool
    value: Optional[R] = None
    error: Optional[BaseException] = None


def create_batches(items: Sequence[T], size: int) -> List[List[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def gather_settled(awaitables: Iterable[Awaitable[R]]) -> List[Settled[R]]:
    """Await everything and report each outcome without raising."""
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    settled: List[Settled[R]] = []
    for result in results:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            settled.append(Settled(ok=False, error=result))
        else:
            settled.append(Settled(ok=True, value=result))
    return settled


async def bounded_map(
    func: Callable[[T], Awaitable[R]],
    items: Iterable[T],
    limit: int,
) -> List[Settled[R]]:
    """
    Run ``func`` over items with at most ``limit`` calls in flight.

    Results keep input order; one item's failure never affects the others.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def run(item: T) -> R:
        async with semaphore:
            return await func(item)

    return await gather_settled(run(item) for item in items)


async def with_timeout(awaitable: Awaitable[R], seconds: Optional[float], what: str = "call") -> R:
    """Bound a provider call; a timeout becomes ``ProviderTimeout``."""
    if not seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise ProviderTimeout(f"{what} timed out after {seconds}s") from e

