"""
Chat Service - 将用户操作转换为生成请求

职责:
- 发送 / 重新生成 / 继续生成 / 编辑后重发
- 删除消息、分叉截断
- 维护每个会话的活跃生成（同一会话同时至多一个生成）
- 停止生成（幂等）

单人会话与群聊会话共用同一组操作；群聊时从目录解析参与者并构造群聊角色提示。
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from nexus.models.generation import GenerationResult
from nexus.models.message import Message, MessageRole
from nexus.models.session import ChatSession, GroupChatSession
from nexus.storage.base import SessionStore
from .cancellation import CancellationToken
from .catalog import Catalog, get_catalog
from .errors import GenerationInProgressError, MessageNotFoundError, SessionNotFoundError
from .prompt_builder import build_group_persona
from .stream_orchestrator import EventCallback, GenerationContext, StreamOrchestrator

logger = logging.getLogger(__name__)


class ChatService:
    """对话操作服务"""

    def __init__(
        self,
        store: SessionStore,
        orchestrator: StreamOrchestrator,
        catalog: Optional[Catalog] = None
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.catalog = catalog or get_catalog()
        self._active: Dict[str, CancellationToken] = {}

        logger.info("ChatService instance created")

    # ------------------------------------------------------------------
    # 生成状态
    # ------------------------------------------------------------------

    def is_generating(self, session_id: str) -> bool:
        return session_id in self._active

    def stop_generation(self, session_id: str) -> bool:
        """
        停止会话的当前生成

        Returns:
            是否触发了取消；无活跃生成或已取消时返回 False
        """
        token = self._active.get(session_id)
        if token is None:
            return False
        stopped = token.cancel("user")
        if stopped:
            logger.info(f"Stop generation requested: session={session_id}")
        return stopped

    async def load_session(self, session_id: str, namespace: str) -> ChatSession:
        """
        Raises:
            SessionNotFoundError: 会话不存在
        """
        session = await self.store.get_session(session_id, namespace)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _ensure_idle(self, session_id: str) -> None:
        if session_id in self._active:
            raise GenerationInProgressError(session_id)

    # ------------------------------------------------------------------
    # 生成入口
    # ------------------------------------------------------------------

    def _build_context(self, session: ChatSession, prefill: Optional[str] = None) -> GenerationContext:
        """
        Raises:
            ValueError: 群聊会话中没有可用的参与者
        """
        world = self.catalog.get_world(session.world_id)
        user_persona = self.catalog.user_persona

        if isinstance(session, GroupChatSession):
            participants = self.catalog.participants(session.participant_ids)
            if not participants:
                raise ValueError("No characters found for this group session.")
            return GenerationContext(
                character_persona=build_group_persona(session.scenario, participants),
                participants=participants,
                world=world,
                user_persona=user_persona,
                prefill=prefill
            )

        character = self.catalog.get_character(session.character_id)
        if character is None:
            logger.warning(f"⚠️  角色不存在: {session.character_id}, 使用空角色设定")
        return GenerationContext(
            character_persona=character.persona if character else "",
            world=world,
            user_persona=user_persona,
            prefill=prefill
        )

    async def _generate(
        self,
        session: ChatSession,
        messages: List[Message],
        token: Optional[CancellationToken] = None,
        prefill: Optional[str] = None,
        on_event: Optional[EventCallback] = None
    ) -> GenerationResult:
        self._ensure_idle(session.id)
        context = self._build_context(session, prefill)
        token = token or CancellationToken()
        self._active[session.id] = token
        try:
            return await self.orchestrator.run(session, messages, context, token, on_event)
        finally:
            if self._active.get(session.id) is token:
                del self._active[session.id]

    async def send_message(
        self,
        session: ChatSession,
        content: str,
        token: Optional[CancellationToken] = None,
        on_event: Optional[EventCallback] = None
    ) -> GenerationResult:
        """
        发送用户消息并生成回复

        Raises:
            ValueError: 内容为空
            GenerationInProgressError: 会话已有进行中的生成
        """
        if not content or not content.strip():
            raise ValueError("Message content must not be empty")
        self._ensure_idle(session.id)

        logger.info(f"Sending message: session={session.id}, length={len(content)}")
        messages = list(session.messages) + [Message.user(content)]
        return await self._generate(session, messages, token, on_event=on_event)

    async def regenerate_response(
        self,
        session: ChatSession,
        token: Optional[CancellationToken] = None,
        on_event: Optional[EventCallback] = None
    ) -> Optional[GenerationResult]:
        """
        丢弃最后一条用户消息之后的内容并重新生成

        Returns:
            GenerationResult；没有用户消息时返回 None
        """
        self._ensure_idle(session.id)
        last_user = None
        for i in range(len(session.messages) - 1, -1, -1):
            if session.messages[i].role == MessageRole.USER:
                last_user = i
                break
        if last_user is None:
            logger.info(f"Nothing to regenerate: session={session.id}")
            return None

        logger.info(f"Regenerating response: session={session.id}")
        messages = list(session.messages[:last_user + 1])
        return await self._generate(session, messages, token, on_event=on_event)

    async def continue_generation(
        self,
        session: ChatSession,
        token: Optional[CancellationToken] = None,
        on_event: Optional[EventCallback] = None
    ) -> Optional[GenerationResult]:
        """
        基于完整记录继续生成（不使用预填充）

        Returns:
            GenerationResult；会话为空时返回 None
        """
        self._ensure_idle(session.id)
        if not session.messages:
            return None

        logger.info(f"Continuing generation: session={session.id}")
        return await self._generate(
            session, list(session.messages), token, prefill="", on_event=on_event
        )

    async def edit_message(
        self,
        session: ChatSession,
        message_id: str,
        content: str,
        token: Optional[CancellationToken] = None,
        on_event: Optional[EventCallback] = None
    ) -> Optional[GenerationResult]:
        """
        编辑消息

        - 用户消息：替换尾部（该消息之前的内容 + 编辑后的消息）并重新生成
        - 其他消息：就地修改内容，不触发生成

        Returns:
            编辑用户消息时返回 GenerationResult，否则 None

        Raises:
            MessageNotFoundError: 消息不存在
        """
        self._ensure_idle(session.id)
        index = session.find_index(message_id)
        if index == -1:
            raise MessageNotFoundError(message_id)

        target = session.messages[index]
        logger.info(f"Editing message: session={session.id}, message={message_id}")

        if target.role == MessageRole.USER:
            edited = target.model_copy(update={"content": content, "timestamp": datetime.now()})
            messages = list(session.messages[:index]) + [edited]
            return await self._generate(session, messages, token, on_event=on_event)

        target.content = content
        await self.store.save_session(session)
        return None

    async def delete_message(self, session: ChatSession, message_id: str) -> bool:
        return await self.delete_messages(session, [message_id]) > 0

    async def delete_messages(self, session: ChatSession, message_ids: Iterable[str]) -> int:
        """
        删除消息

        Returns:
            实际删除的数量
        """
        self._ensure_idle(session.id)
        ids = set(message_ids)
        before = len(session.messages)
        session.messages = [m for m in session.messages if m.id not in ids]
        removed = before - len(session.messages)
        if removed:
            await self.store.save_session(session)
            logger.info(f"Deleted {removed} message(s): session={session.id}")
        return removed

    async def fork_truncate(self, session: ChatSession, message_id: str) -> int:
        """
        截断到指定消息（含）为止

        Returns:
            被移除的消息数量

        Raises:
            MessageNotFoundError: 消息不存在
        """
        self._ensure_idle(session.id)
        index = session.find_index(message_id)
        if index == -1:
            raise MessageNotFoundError(message_id)

        removed = len(session.messages) - (index + 1)
        session.messages = session.messages[:index + 1]
        await self.store.save_session(session)
        logger.info(f"Forked session at message {message_id}: session={session.id}, removed={removed}")
        return removed


# 全局服务实例（由应用启动时注入）
_chat_service_instance: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    if _chat_service_instance is None:
        raise RuntimeError("ChatService is not initialized")
    return _chat_service_instance


def set_chat_service(service: Optional[ChatService]) -> None:
    global _chat_service_instance
    _chat_service_instance = service


__all__ = ["ChatService", "get_chat_service", "set_chat_service"]
