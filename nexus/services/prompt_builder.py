"""
Prompt Builder - 组装系统提示与发送给 Provider 的历史

系统提示分段：
- CORE INSTRUCTIONS & GUIDELINES: 全局指令
- USER PERSONA: 用户人设
- CONVERSATION SUMMARY: 记忆摘要
- RELEVANT WORLD LORE: 按相关度排序的世界设定条目
- YOUR CHARACTER: 角色设定（群聊时为场景 + 全部参与者）
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from nexus.models.catalog import Character, UserPersona, World, WorldEntry
from nexus.models.message import Message, MessageRole
from .token_estimator import estimate_tokens

logger = logging.getLogger(__name__)

RECENT_MESSAGE_WINDOW = 5
ALWAYS_ACTIVE_SCORE = 100.0
USER_PERSONA_SCORE = 5.0
CHARACTER_PERSONA_SCORE = 3.0


@dataclass
class WireMessage:
    """发送给 Provider 的一轮对话"""
    role: str  # user / assistant
    content: str


def build_group_persona(scenario: str, participants: Sequence[Character]) -> str:
    """
    群聊角色提示：场景 + 参与者设定 + 发言前缀要求

    Args:
        scenario: 场景描述
        participants: 参与者（按会话顺序）

    Returns:
        作为角色设定注入的文本
    """
    personas = "\n\n".join(f"[{c.name}]:\n{c.persona}" for c in participants)
    return (
        f"SCENARIO: {scenario}\n\n"
        f"CHARACTERS IN THIS SCENE:\n{personas}\n\n"
        "INSTRUCTIONS:\n"
        "You will roleplay as the characters listed above. Your response must be from the "
        "perspective of the character who would most logically speak next. You MUST prefix "
        "every response with the speaking character's name in square brackets, exactly as it "
        "appears in the character list. For example: [Clara the Explorer]: *She dusts off her "
        "hat.* \"Well, what have we here?\". Do not add any other text outside this format."
    )


def _count_keyword(text: str, keyword: str) -> int:
    keyword = keyword.strip()
    if not text or not keyword:
        return 0
    pattern = re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", re.IGNORECASE)
    return len(pattern.findall(text))


def select_lore(
    world: Optional[World],
    messages: Sequence[Message],
    user_persona: Optional[UserPersona] = None,
    character_persona: str = "",
    limit: int = 7
) -> List[WorldEntry]:
    """
    选取相关世界设定条目

    评分：常驻条目 100；最近 5 条消息中的关键词命中按时间衰减加权，
    出现次数越多权重越高；用户人设与角色设定中的命中权重较低。

    Returns:
        按分数降序的条目，最多 limit 条
    """
    if world is None or not world.entries:
        return []
    enabled = [e for e in world.entries if e.enabled]
    if not enabled:
        return []

    scores: Dict[str, float] = {}

    def add_score(entry: WorldEntry, score: float) -> None:
        scores[entry.id] = scores.get(entry.id, 0.0) + score

    def search(text: Optional[str], base_score: float) -> None:
        if not text:
            return
        for entry in enabled:
            count = sum(_count_keyword(text, key) for key in entry.keys)
            if count:
                add_score(entry, base_score * (count ** 1.2))

    for entry in enabled:
        if entry.always_active:
            add_score(entry, ALWAYS_ACTIVE_SCORE)

    recent = list(messages)[-RECENT_MESSAGE_WINDOW:]
    for i, message in enumerate(recent):
        recency = len(recent) - 1 - i
        search(message.content, max(2, 12 - recency * 2))

    search(user_persona.description if user_persona else None, USER_PERSONA_SCORE)
    search(character_persona, CHARACTER_PERSONA_SCORE)

    by_id = {e.id: e for e in enabled}
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [by_id[entry_id] for entry_id, _ in ranked]


def build_system_prompt(
    global_instructions: str,
    character_persona: str,
    user_persona: Optional[UserPersona] = None,
    memory_summary: Optional[str] = None,
    lore_entries: Sequence[WorldEntry] = ()
) -> str:
    parts: List[str] = [
        "### CORE INSTRUCTIONS & GUIDELINES ###",
        global_instructions,
    ]

    if user_persona:
        parts.append("### USER PERSONA ###")
        parts.append(
            "This is the persona of the user you are roleplaying with. "
            "Keep their details in mind for your responses."
        )
        parts.append(f"- **Name:** {user_persona.name}")
        parts.append(f"- **Description:** {user_persona.description}")

    if memory_summary:
        parts.append("### CONVERSATION SUMMARY ###")
        parts.append(
            "This is a summary of the conversation so far. "
            "Use it to maintain context and continuity."
        )
        parts.append(f"---\n{memory_summary}\n---")

    if lore_entries:
        parts.append("### RELEVANT WORLD LORE ###")
        parts.append(
            "The following lore entries are relevant to the current scene. "
            "You MUST consult them for context and consistency."
        )
        parts.append("\n\n".join(
            f"--- Entry: {entry.name or 'Untitled'} (Keywords: {', '.join(entry.keys)}) ---\n{entry.content}"
            for entry in lore_entries
        ))

    parts.append("### YOUR CHARACTER ###")
    parts.append(
        "This is your character's persona for this scene. You must fully embody this character."
    )
    parts.append(character_persona)

    return "\n\n".join(parts)


def truncate_history(messages: Sequence[Message], budget: int) -> List[Message]:
    """
    从最新消息向前保留，直到内容 token 估算超出预算

    Args:
        messages: 完整历史
        budget: 历史可用的 token 预算

    Returns:
        保留的消息（原顺序）
    """
    kept: List[Message] = []
    used = 0
    for message in reversed(messages):
        tokens = estimate_tokens(message.content)
        if used + tokens > budget:
            logger.debug(
                f"上下文已满，截断历史: budget={budget}, used={used}, "
                f"total={len(messages)}, kept={len(kept)}"
            )
            break
        kept.append(message)
        used += tokens
    kept.reverse()
    return kept


def merge_consecutive_roles(messages: Sequence[Message]) -> List[WireMessage]:
    """
    丢弃系统消息，并合并相邻的同角色消息（部分 Provider 要求角色交替）
    """
    merged: List[WireMessage] = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            continue
        role = message.role.value
        if merged and merged[-1].role == role:
            merged[-1].content = f"{merged[-1].content}\n\n{message.content}"
        else:
            merged.append(WireMessage(role=role, content=message.content))
    return merged


def build_history(messages: Sequence[Message], context_size: int) -> List[WireMessage]:
    return merge_consecutive_roles(truncate_history(messages, context_size))


__all__ = [
    "WireMessage",
    "build_group_persona",
    "select_lore",
    "build_system_prompt",
    "truncate_history",
    "merge_consecutive_roles",
    "build_history",
]
