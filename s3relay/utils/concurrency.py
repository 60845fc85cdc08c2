"""
Bounded-concurrency helpers.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int = 1,
) -> list[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results are returned in input order. With ``limit == 1`` items are
    processed strictly one after another.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")

    if limit == 1 or len(items) <= 1:
        results = []
        for item in items:
            results.append(await worker(item))
        return results

    semaphore = asyncio.Semaphore(limit)

    async def run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return list(await asyncio.gather(*(run(item) for item in items)))
