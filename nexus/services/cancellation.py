"""
Cancellation - 每次生成独立的取消令牌

令牌由调用方持有并传入编排器入口；取消是协作式的：
正在处理的片段会处理完，等待下一个片段的挂起操作会在令牌触发时立即放弃。
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """单次生成的取消令牌（幂等）"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> bool:
        """
        触发取消

        Returns:
            首次触发返回 True，重复调用返回 False 且无任何效果
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info(f"取消令牌已触发: reason={reason}")
        return True

    async def wait(self) -> None:
        await self._event.wait()


async def iterate_until_cancelled(
    stream: AsyncIterator[T],
    token: CancellationToken
) -> AsyncIterator[T]:
    """
    迭代异步流，令牌触发后立即停止

    每次等待下一个元素时与令牌竞争；令牌先完成则放弃挂起的读取并关闭底层流。

    Args:
        stream: 异步迭代器
        token: 取消令牌

    Yields:
        流中的元素（按原顺序）
    """
    iterator = stream.__aiter__()
    cancel_waiter = asyncio.ensure_future(token.wait())
    next_item = None
    try:
        while not token.is_cancelled:
            next_item = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_item, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED
            )
            # 令牌已触发时，即使下一个元素已就绪也不再处理
            if token.is_cancelled or next_item not in done:
                break
            try:
                item = next_item.result()
            except StopAsyncIteration:
                break
            yield item
    finally:
        cancel_waiter.cancel()
        if next_item is not None and not next_item.done():
            next_item.cancel()
            await asyncio.wait({next_item})
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError as e:
                # 生成器仍在运行时无法关闭
                logger.debug(f"关闭流失败: {e}")


__all__ = ["CancellationToken", "iterate_until_cancelled"]
