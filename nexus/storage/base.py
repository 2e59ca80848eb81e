"""
Storage Base - 存储层抽象接口
会话以完整快照读写（replace-on-write），单人会话额外以 character_id 作为二级键
"""

import json
from abc import ABC, abstractmethod
from typing import List, Optional, Union

from nexus.models.session import ChatSession, GroupChatSession

AnySession = Union[ChatSession, GroupChatSession]

GROUP_NAMESPACE = "group"


def session_namespace(session: ChatSession) -> str:
    """群聊会话归入 group 命名空间，单人会话归入所属角色"""
    if session.is_group or not session.character_id:
        return GROUP_NAMESPACE
    return session.character_id


def dump_session(session: ChatSession) -> str:
    return session.model_dump_json()


def load_session(raw: str) -> AnySession:
    """
    反序列化会话快照

    含 participant_ids 字段的快照视为群聊会话
    """
    data = json.loads(raw)
    if "participant_ids" in data:
        return GroupChatSession.model_validate(data)
    return ChatSession.model_validate(data)


class SessionStore(ABC):
    """
    会话存储抽象接口

    定义统一的存储接口，支持多种后端实现：
    - MemorySessionStore: 进程内存储（开发 / 测试 / Redis 不可用时降级）
    - RedisSessionStore: 基于 Redis 的持久化存储
    """

    @abstractmethod
    async def connect(self) -> None:
        """建立连接"""
        pass

    @abstractmethod
    async def get_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> Optional[AnySession]:
        """
        读取会话快照

        Args:
            session_id: 会话ID
            namespace: 单人会话为 character_id，群聊为 "group"

        Returns:
            会话，不存在返回 None
        """
        pass

    @abstractmethod
    async def save_session(self, session: ChatSession) -> None:
        """整体替换写入会话快照"""
        pass

    @abstractmethod
    async def delete_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> bool:
        """
        删除会话

        Returns:
            是否删除成功
        """
        pass

    @abstractmethod
    async def list_sessions(self, namespace: str) -> List[AnySession]:
        """列出命名空间下的全部会话"""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
