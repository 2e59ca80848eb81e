"""
CancellationToken 与可取消迭代单元测试
"""

import asyncio

import pytest

from nexus.services.cancellation import CancellationToken, iterate_until_cancelled


async def _numbers(count, delay=0.0):
    for i in range(count):
        await asyncio.sleep(delay)
        yield i


def test_cancel_is_idempotent():
    token = CancellationToken()
    assert token.is_cancelled is False

    assert token.cancel() is True
    assert token.is_cancelled is True

    # 重复取消无任何效果
    assert token.cancel("again") is False
    assert token.reason == "user"


@pytest.mark.asyncio
async def test_iterates_all_items_in_order():
    token = CancellationToken()
    items = [i async for i in iterate_until_cancelled(_numbers(5), token)]
    assert items == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_stops_after_cancel_between_items():
    token = CancellationToken()
    seen = []
    async for i in iterate_until_cancelled(_numbers(10), token):
        seen.append(i)
        if i == 2:
            token.cancel()
    assert seen == [0, 1, 2]


@pytest.mark.asyncio
async def test_pending_wait_abandoned_when_cancelled():
    token = CancellationToken()
    closed = asyncio.Event()

    async def slow_stream():
        try:
            yield "first"
            await asyncio.sleep(60)
            yield "never"
        finally:
            closed.set()

    async def cancel_soon():
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    seen = []
    async for item in iterate_until_cancelled(slow_stream(), token):
        seen.append(item)

    await canceller
    assert seen == ["first"]
    assert closed.is_set()


@pytest.mark.asyncio
async def test_stream_errors_propagate():
    token = CancellationToken()

    async def failing():
        yield 1
        raise RuntimeError("provider failed")

    seen = []
    with pytest.raises(RuntimeError, match="provider failed"):
        async for item in iterate_until_cancelled(failing(), token):
            seen.append(item)
    assert seen == [1]


@pytest.mark.asyncio
async def test_already_cancelled_token_yields_nothing():
    token = CancellationToken()
    token.cancel()
    items = [i async for i in iterate_until_cancelled(_numbers(3), token)]
    assert items == []
