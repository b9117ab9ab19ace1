"""
Tests for the async stream helpers.
"""
import asyncio

import pytest

from chunk_sync.streams import batched, buffer_unordered


async def collect(aiter):
    return [item async for item in aiter]


async def numbers(n):
    for i in range(n):
        await asyncio.sleep(0)
        yield i


def test_batched_sync_source():
    batches = asyncio.run(collect(batched(range(7), 3)))

    assert batches == [[0, 1, 2], [3, 4, 5], [6]]


def test_batched_async_source():
    batches = asyncio.run(collect(batched(numbers(4), 2)))

    assert batches == [[0, 1], [2, 3]]


def test_batched_empty_source():
    assert asyncio.run(collect(batched([], 5))) == []


def test_batched_rejects_zero_size():
    with pytest.raises(ValueError):
        asyncio.run(collect(batched([1], 0)))


def test_buffer_unordered_bounds_in_flight():
    """Test no more than `limit` jobs run at once and every result arrives."""
    state = {"running": 0, "peak": 0}

    async def job(i):
        state["running"] += 1
        state["peak"] = max(state["peak"], state["running"])
        await asyncio.sleep(0.01 * (i % 3))
        state["running"] -= 1
        return i

    async def jobs():
        for i in range(12):
            yield job(i)

    results = asyncio.run(collect(buffer_unordered(jobs(), 3)))

    assert sorted(results) == list(range(12))
    assert state["peak"] == 3


def test_buffer_unordered_yields_in_completion_order():
    async def job(i, delay):
        await asyncio.sleep(delay)
        return i

    async def jobs():
        yield job("slow", 0.05)
        yield job("fast", 0.0)

    results = asyncio.run(collect(buffer_unordered(jobs(), 2)))

    assert results == ["fast", "slow"]
