"""
Redis Storage - 基于 Redis 的会话快照存储
会话以 JSON 快照整体写入，支持自动过期
"""

import logging
from typing import List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError

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


class RedisSessionStore(SessionStore):
    """
    基于 Redis 的会话存储

    Key 设计：
    - {prefix}{namespace}:{session_id} -> Session JSON
    - {prefix}index:{namespace} -> Set[session_id]
    """

    def __init__(
        self,
        redis_url: str = "redis://127.0.0.1:6379/0",
        ttl_seconds: int = 30 * 86400,
        key_prefix: str = "nexus_session:",
        max_connections: int = 10,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client: Optional[aioredis.Redis] = None
    ):
        """
        初始化 Redis 存储

        Args:
            redis_url: Redis 连接 URL
            ttl_seconds: 会话过期时间（秒）
            key_prefix: Redis key 前缀
            max_connections: 最大连接数
            username: Redis ACL 用户名（可选）
            password: Redis 密码（可选）
            client: 已创建的客户端（测试注入）
        """
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.max_connections = max_connections
        self.username = username
        self.password = password
        self.redis: Optional[aioredis.Redis] = client
        self._connected = client is not None

        auth_status = "启用" if password else "未启用"
        logger.info(
            "初始化 RedisSessionStore: %s, TTL=%ss, 认证%s",
            redis_url,
            ttl_seconds,
            auth_status
        )

    async def connect(self) -> None:
        """建立 Redis 连接"""
        if self._connected and self.redis:
            return

        try:
            connection_kwargs = {
                "encoding": "utf-8",
                "decode_responses": True,
                "max_connections": self.max_connections
            }
            if self.username:
                connection_kwargs["username"] = self.username
            if self.password:
                connection_kwargs["password"] = self.password

            self.redis = aioredis.from_url(self.redis_url, **connection_kwargs)
            await self.redis.ping()
            self._connected = True
            logger.info("✅ Redis 连接成功")
        except RedisConnectionError as e:
            logger.error(f"❌ Redis 连接失败: {e}")
            self._connected = False
            raise

    def _require_connection(self) -> aioredis.Redis:
        if not self._connected or not self.redis:
            raise RuntimeError("Redis 未连接")
        return self.redis

    def _make_key(self, namespace: str, session_id: str) -> str:
        return f"{self.key_prefix}{namespace}:{session_id}"

    def _index_key(self, namespace: str) -> str:
        return f"{self.key_prefix}index:{namespace}"

    async def get_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> Optional[AnySession]:
        redis = self._require_connection()
        try:
            raw = await redis.get(self._make_key(namespace, session_id))
        except RedisError as e:
            logger.error(f"Redis 读取失败: {e}")
            raise

        if raw is None:
            logger.debug(f"会话不存在: {namespace}/{session_id}")
            return None
        return load_session(raw)

    async def save_session(self, session: ChatSession) -> None:
        redis = self._require_connection()
        namespace = session_namespace(session)
        key = self._make_key(namespace, session.id)

        try:
            async with redis.pipeline() as pipe:
                pipe.set(key, dump_session(session), ex=self.ttl_seconds)
                pipe.sadd(self._index_key(namespace), session.id)
                await pipe.execute()
            logger.debug(
                f"保存会话到 Redis: {key}, messages={len(session.messages)}, TTL={self.ttl_seconds}s"
            )
        except RedisError as e:
            logger.error(f"Redis 写入失败: {e}")
            raise

    async def delete_session(self, session_id: str, namespace: str = GROUP_NAMESPACE) -> bool:
        redis = self._require_connection()
        try:
            async with redis.pipeline() as pipe:
                pipe.delete(self._make_key(namespace, session_id))
                pipe.srem(self._index_key(namespace), session_id)
                deleted, _ = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis 删除失败: {e}")
            raise

        if deleted > 0:
            logger.debug(f"删除 Redis 会话: {namespace}/{session_id}")
            return True
        return False

    async def list_sessions(self, namespace: str) -> List[AnySession]:
        redis = self._require_connection()
        try:
            session_ids = await redis.smembers(self._index_key(namespace))
            sessions = []
            for session_id in sorted(session_ids):
                session = await self.get_session(session_id, namespace)
                if session is None:
                    # 快照已过期，清理索引
                    await redis.srem(self._index_key(namespace), session_id)
                    continue
                sessions.append(session)
            return sessions
        except RedisError as e:
            logger.error(f"Redis 扫描失败: {e}")
            raise

    async def health_check(self) -> bool:
        """
        健康检查

        Returns:
            Redis 是否健康
        """
        try:
            if not self.redis:
                return False
            await self.redis.ping()
            return True
        except RedisError as e:
            logger.warning(f"Redis 健康检查失败: {e}")
            return False

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self.redis:
            await self.redis.aclose()
            self._connected = False
            logger.info("Redis 连接已关闭")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
