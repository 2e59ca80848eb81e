"""
Memory Storage - 进程内会话存储
以序列化快照保存，读写互不共享对象引用
"""

import logging
from typing import Dict, List, Optional

from nexus.models.session import ChatSession
from .base import (
    GROUP_NAMESPACE,
    AnySession,
    SessionStore,
    dump_session,
    load_session,
    session_namespace,
)

logger = logging.getLogger(__name__)


class MemorySessionStore(SessionStore):
    """进程内存储（不跨进程、不持久化）"""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}

    async def connect(self) -> None:
        logger.info("✅ 内存存储初始化成功")

    async def get_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> Optional[AnySession]:
        raw = self._data.get(namespace, {}).get(session_id)
        return load_session(raw) if raw is not None else None

    async def save_session(self, session: ChatSession) -> None:
        namespace = session_namespace(session)
        self._data.setdefault(namespace, {})[session.id] = dump_session(session)
        logger.debug(f"保存会话: {namespace}/{session.id}, messages={len(session.messages)}")

    async def delete_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> bool:
        bucket = self._data.get(namespace, {})
        return bucket.pop(session_id, None) is not None

    async def list_sessions(self, namespace: str) -> List[AnySession]:
        return [load_session(raw) for raw in self._data.get(namespace, {}).values()]

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
