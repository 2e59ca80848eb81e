"""
Storage Layer - 会话存储层
负责会话快照的持久化存储（内存 / Redis）
"""

from .base import SessionStore, session_namespace, dump_session, load_session
from .memory_storage import MemorySessionStore
from .redis_storage import RedisSessionStore

__all__ = [
    "SessionStore",
    "session_namespace",
    "dump_session",
    "load_session",
    "MemorySessionStore",
    "RedisSessionStore",
]
