"""
Async stream helpers: fixed-size batching and bounded unordered concurrency.
"""
import asyncio
from typing import AsyncIterable, AsyncIterator, Awaitable, Iterable, List, TypeVar, Union

T = TypeVar("T")


async def aiterate(source: Union[Iterable[T], AsyncIterable[T]]) -> AsyncIterator[T]:
    """Iterate a sync or async iterable asynchronously."""
    if hasattr(source, "__aiter__"):
        async for item in source:
            yield item
    else:
        for item in source:
            yield item


async def batched(source: Union[Iterable[T], AsyncIterable[T]], size: int) -> AsyncIterator[List[T]]:
    """Group items into lists of at most `size` items."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    batch: List[T] = []
    async for item in aiterate(source):
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


async def buffer_unordered(jobs: AsyncIterable[Awaitable[T]], limit: int) -> AsyncIterator[T]:
    """
    Run awaitables with at most `limit` in flight, yielding results as they complete.

    Jobs are pulled lazily from `jobs`, so a new job only starts once a slot
    frees up. Results come out in completion order. Jobs are expected to
    report their own failures; an exception raised by a job propagates.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    pending = set()
    try:
        async for job in jobs:
            pending.add(asyncio.ensure_future(job))
            if len(pending) >= limit:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    yield task.result()
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                yield task.result()
    finally:
        for task in pending:
            task.cancel()
