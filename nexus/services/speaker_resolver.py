"""
Speaker Attribution Resolver - 识别群聊回复的发言者

回复格式：[Name]: rest
Name 必须与某个参与者的显示名完全一致（区分大小写）。
重名时按会话参与者顺序取第一个。前缀不会从内容中剥离。
"""

import re
from typing import Optional, Sequence

from nexus.models.catalog import Character

SPEAKER_PREFIX = re.compile(r"^\[(.*?)\]:\s*(.*)$", re.DOTALL)


def resolve_speaker(content: str, participants: Sequence[Character]) -> Optional[str]:
    """
    解析发言者

    Args:
        content: 最终回复内容
        participants: 按会话顺序排列的参与者

    Returns:
        参与者ID，未匹配返回 None
    """
    if not content:
        return None
    match = SPEAKER_PREFIX.match(content)
    if not match:
        return None
    name = match.group(1)
    for participant in participants:
        if participant.name == name:
            return participant.id
    return None


__all__ = ["SPEAKER_PREFIX", "resolve_speaker"]
