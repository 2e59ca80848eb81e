"""
SSE 流式响应工具函数
将编排器的生成事件桥接为 SSE 事件流
"""
import json
import asyncio
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Set, Union

from fastapi.responses import StreamingResponse

from nexus.models.generation import GenerationEvent, GenerationEventType
from nexus.services.cancellation import CancellationToken
from nexus.services.error_classifier import classify_error
from nexus.services.stream_orchestrator import EventCallback

logger = logging.getLogger(__name__)

# 标准 SSE 响应头
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"  # 禁用 nginx 缓冲
}

# 客户端断开后仍需完成收尾的生成任务
_background_tasks: Set[asyncio.Task] = set()

_END = object()


def format_sse_event(data: dict) -> str:
    """
    格式化 SSE 事件

    Args:
        data: 要发送的数据字典

    Returns:
        SSE 格式的字符串
    """
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def create_sse_response(generator: AsyncGenerator) -> StreamingResponse:
    """
    创建标准 SSE 响应

    Args:
        generator: 异步事件生成器

    Returns:
        StreamingResponse 对象
    """
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers=SSE_HEADERS
    )


def sse_session_event(session_id: str) -> str:
    return format_sse_event({
        'type': 'session',
        'session_id': session_id
    })


def sse_message_event(content: str, message_id: Optional[str] = None) -> str:
    """
    生成消息内容 SSE 事件（当前完整可见内容，而非增量）
    """
    return format_sse_event({
        'type': 'message',
        'message_id': message_id,
        'content': content
    })


def sse_warning_event(message: str) -> str:
    return format_sse_event({
        'type': 'warning',
        'message': message
    })


def sse_done_event(
    message_id: Optional[str] = None,
    content: Optional[str] = None,
    reasoning: Optional[str] = None
) -> str:
    data = {'type': 'done'}
    if message_id is not None:
        data['message_id'] = message_id
        data['content'] = content
        data['reasoning'] = reasoning
    return format_sse_event(data)


def sse_error_event(message: str, message_id: Optional[str] = None) -> str:
    data = {'type': 'error', 'message': message}
    if message_id is not None:
        data['message_id'] = message_id
    return format_sse_event(data)


def sse_from_generation_event(event: GenerationEvent) -> str:
    """
    将生成事件转换为 SSE 事件
    """
    if event.type == GenerationEventType.WARNING:
        return sse_warning_event(event.message or "")
    if event.type == GenerationEventType.MESSAGE:
        return sse_message_event(event.content or "", event.message_id)
    if event.type == GenerationEventType.ERROR:
        return sse_error_event(event.message or "", event.message_id)
    return sse_done_event(event.message_id, event.content, event.reasoning)


async def stream_generation_events(
    start: Callable[[EventCallback], Awaitable[Any]],
    token: CancellationToken,
    session_id: str
) -> AsyncGenerator[str, None]:
    """
    在后台任务中运行生成，并把事件逐个转换为 SSE

    客户端断开时触发取消令牌，生成任务继续完成收尾（持久化最终消息）。

    Args:
        start: 接收事件回调并执行生成的协程函数
        token: 本次生成的取消令牌
        session_id: 会话ID

    Yields:
        SSE 格式的事件字符串
    """
    queue: "asyncio.Queue[Union[GenerationEvent, BaseException, object]]" = asyncio.Queue()

    async def on_event(event: GenerationEvent) -> None:
        await queue.put(event)

    async def runner() -> None:
        try:
            await start(on_event)
        except Exception as e:
            logger.error(f"生成请求失败: session={session_id}, error={e}")
            await queue.put(e)
        finally:
            await queue.put(_END)

    task = asyncio.create_task(runner())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    finished = False
    yield sse_session_event(session_id)
    try:
        while True:
            item = await queue.get()
            if item is _END:
                break
            if isinstance(item, BaseException):
                finished = True
                yield sse_error_event(classify_error(item).message or "")
                continue
            if item.type in (GenerationEventType.DONE, GenerationEventType.ERROR):
                finished = True
            yield sse_from_generation_event(item)
        if not finished:
            # 未触发生成（例如仅就地编辑）
            yield sse_done_event()
    finally:
        if not task.done():
            token.cancel("client disconnected")
            logger.info(f"客户端断开，停止生成: session={session_id}")


__all__ = [
    "SSE_HEADERS",
    "format_sse_event",
    "create_sse_response",
    "sse_session_event",
    "sse_message_event",
    "sse_warning_event",
    "sse_done_event",
    "sse_error_event",
    "sse_from_generation_event",
    "stream_generation_events",
]
