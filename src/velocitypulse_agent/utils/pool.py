"""
Fixed-size worker pool draining a shared queue.

Used wherever many independent probes go out at once (ping sweep, port
scan, banner grab, status probes) so at most `concurrency` sockets or
subprocesses are open at a time.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_pool(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> list[tuple[T, R]]:
    """
    Apply worker to every item with at most `concurrency` in flight.

    Returns (item, result) pairs in completion order. Exceptions from the
    worker propagate after the remaining workers are cancelled.
    """
    queue: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)

    results: list[tuple[T, R]] = []

    async def drain() -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results.append((item, await worker(item)))

    workers = [asyncio.create_task(drain()) for _ in range(min(concurrency, queue.qsize()))]
    try:
        await asyncio.gather(*workers)
    finally:
        for task in workers:
            task.cancel()

    return results
