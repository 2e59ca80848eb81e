"""
Memory Compactor - 对话记录超出预算时摘要最早的一部分

流程：
1. 未启用或预算 <= 0 -> 原样返回
2. 估算序列化后的 token 数 < 阈值 x 预算 -> 原样返回
3. 在 floor(len x 比例) 处切分，前半部分交给摘要调用
4. 成功：摘要拼接到已有摘要之后，消息替换为一条系统提示 + 保留的后半部分
5. 失败：原样返回并附带非致命警告，本次调用内不重试

每次生成请求只在开始时运行一次。
"""

import math
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from nexus.models.message import Message
from .errors import ERROR_MESSAGES
from .token_estimator import estimate_transcript_tokens

logger = logging.getLogger(__name__)

SUMMARY_NOTICE = "[System: The beginning of the conversation has been summarized to conserve memory.]"

Summarizer = Callable[[List[Message]], Awaitable[str]]


@dataclass
class CompactionResult:
    """压缩结果"""
    messages: List[Message]
    summary: Optional[str]
    compacted: bool = False
    warning: Optional[str] = None


def merge_summaries(previous: Optional[str], new: Optional[str]) -> Optional[str]:
    """摘要只能追加：以空行拼接非空部分"""
    parts = [p for p in (previous, new) if p]
    return "\n\n".join(parts) if parts else None


class MemoryCompactor:
    """
    记忆压缩器

    summarizer 为一次性摘要调用（通常由 Provider 提供），失败时应抛出异常。
    """

    def __init__(
        self,
        trigger_threshold: float = 0.75,
        slice_percent: float = 0.5
    ):
        self.trigger_threshold = trigger_threshold
        self.slice_percent = slice_percent

    async def compact(
        self,
        messages: List[Message],
        summary: Optional[str],
        budget: int,
        summarizer: Summarizer,
        enabled: bool = True
    ) -> CompactionResult:
        """
        按需压缩

        Args:
            messages: 当前消息列表
            summary: 已有记忆摘要
            budget: 上下文预算（token）
            summarizer: 摘要调用
            enabled: 会话是否启用记忆

        Returns:
            CompactionResult
        """
        if not enabled or budget <= 0:
            return CompactionResult(messages=list(messages), summary=summary)

        total_tokens = estimate_transcript_tokens(messages)
        if total_tokens < budget * self.trigger_threshold:
            return CompactionResult(messages=list(messages), summary=summary)

        logger.info(
            f"📝 达到记忆阈值，开始摘要: tokens={total_tokens}, budget={budget}, "
            f"messages={len(messages)}"
        )

        slice_index = math.floor(len(messages) * self.slice_percent)
        to_summarize = list(messages[:slice_index])
        remaining = list(messages[slice_index:])

        try:
            new_summary = await summarizer(to_summarize)
        except Exception as e:
            logger.error(f"❌ 自动摘要失败: {e}", exc_info=True)
            return CompactionResult(
                messages=list(messages),
                summary=summary,
                warning=ERROR_MESSAGES["SUMMARIZATION_FAILED"]
            )

        updated_summary = merge_summaries(summary, new_summary)
        notice = Message.system(SUMMARY_NOTICE)

        logger.info(
            f"✅ 摘要完成: summarized={len(to_summarize)}, kept={len(remaining)}"
        )
        return CompactionResult(
            messages=[notice] + remaining,
            summary=updated_summary,
            compacted=True
        )


__all__ = [
    "SUMMARY_NOTICE",
    "Summarizer",
    "CompactionResult",
    "MemoryCompactor",
    "merge_summaries",
]
