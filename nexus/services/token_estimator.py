"""
Token 预算估算

粗略估算：每 4 个字符约 1 个 token，向上取整。
"""

import json
import math
from typing import Iterable, Optional

from nexus.models.message import Message


def estimate_tokens(text: Optional[str]) -> int:
    """
    估算文本的 token 数

    Args:
        text: 任意文本，None 或空串返回 0

    Returns:
        ceil(len(text) / 4)
    """
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def serialize_transcript(messages: Iterable[Message]) -> str:
    """
    序列化对话记录（用于压缩阈值判断）

    省略值为 None 的字段，保留非 ASCII 字符原样。
    """
    return json.dumps(
        [m.model_dump(mode="json", exclude_none=True) for m in messages],
        ensure_ascii=False
    )


def estimate_transcript_tokens(messages: Iterable[Message]) -> int:
    return estimate_tokens(serialize_transcript(messages))


__all__ = ["estimate_tokens", "serialize_transcript", "estimate_transcript_tokens"]
