"""
Stream Orchestrator - 一次生成请求的完整编排

状态机：IDLE -> REQUESTING -> STREAMING -> FINALIZING -> IDLE
CANCELLED / ERRORED 从 REQUESTING 或 STREAMING 分出，仍经过 FINALIZING。

流程：
1. 记忆压缩（仅在开始时运行一次），结果立即持久化
2. 追加空的助手占位消息
3. 打开 Provider 流，按顺序消费片段，拆分推理侧通道
4. 至多每 RENDER_INTERVAL_MS 提交一次可见内容
5. 收尾：清理预填充回显 / 前言，归一化错误，群聊识别发言者

无论正常完成、取消还是出错，占位消息都会进入非空的最终状态。
"""

import re
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from nexus.config.settings import Settings, get_settings
from nexus.models.catalog import Character, UserPersona, World
from nexus.models.generation import (
    GenerationEvent,
    GenerationEventType,
    GenerationOutcome,
    GenerationResult,
    GenerationState,
)
from nexus.models.message import Message
from nexus.models.session import ChatSession
from nexus.providers.base import REASONING_MARKER, BaseLLMProvider, CompletionRequest, LLMProvider
from nexus.providers.factory import ProviderFactory
from nexus.storage.base import SessionStore
from .cancellation import CancellationToken, iterate_until_cancelled
from .error_classifier import classify_error
from .errors import ERROR_MESSAGES, ConfigurationMissingError, SummarizationError
from .memory_compactor import MemoryCompactor
from .speaker_resolver import resolve_speaker

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_MARKER = "(No explicit response)"
PREAMBLE_DELIMITER = re.compile(r"^[ \t]*---[ \t]*$", re.MULTILINE)

EventCallback = Callable[[GenerationEvent], Awaitable[None]]


@dataclass
class GenerationContext:
    """
    生成所需的外部上下文（由调用方从目录解析）

    - participants 非空时按群聊处理，回复需要识别发言者
    - prefill 为 None 时使用全局默认值
    """
    character_persona: str = ""
    participants: List[Character] = field(default_factory=list)
    world: Optional[World] = None
    user_persona: Optional[UserPersona] = None
    prefill: Optional[str] = None


class ReasoningDemultiplexer:
    """
    拆分可见文本与推理文本

    未见标记：片段包含标记时，标记前为可见文本，标记后（含此后所有片段）为推理文本。
    已见标记：整个片段为推理文本。
    """

    def __init__(self, marker: str = REASONING_MARKER):
        self.marker = marker
        self.in_reasoning = False
        self._visible: List[str] = []
        self._reasoning: List[str] = []

    def feed(self, chunk: str) -> None:
        if self.in_reasoning:
            self._reasoning.append(chunk)
        elif self.marker in chunk:
            before, after = chunk.split(self.marker, 1)
            self._visible.append(before)
            self._reasoning.append(after)
            self.in_reasoning = True
        else:
            self._visible.append(chunk)

    @property
    def visible(self) -> str:
        return "".join(self._visible)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning)


def strip_response_artifacts(text: str, prefill: str = "", scan_chars: int = 400) -> str:
    """
    清理回复中的生成伪影

    - 回复以预填充开头：去掉回显及紧随其后的 --- 分隔线
    - 否则：若前 scan_chars 个字符内存在独立的 --- 分隔行，去掉第一个分隔行及之前的前言

    Args:
        text: 原始可见文本
        prefill: 本次使用的预填充
        scan_chars: 前言扫描范围

    Returns:
        清理后的文本（已 strip）
    """
    cleaned = text.strip()
    echo = prefill.strip() if prefill else ""

    if echo and cleaned.startswith(echo):
        cleaned = cleaned[len(echo):].lstrip()
        if cleaned.startswith("---"):
            cleaned = cleaned[3:]
        return cleaned.strip()

    first = PREAMBLE_DELIMITER.search(cleaned)
    if first is not None and first.end() <= scan_chars:
        cleaned = cleaned[first.end():]
    return cleaned.strip()


class StreamOrchestrator:
    """
    生成编排器

    不负责单会话单生成的互斥（由 ChatService 保证），
    但按会话记录当前状态供查询。
    """

    def __init__(
        self,
        store: SessionStore,
        provider_factory: ProviderFactory,
        settings: Optional[Settings] = None,
        compactor: Optional[MemoryCompactor] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.provider_factory = provider_factory
        self.settings = settings or get_settings()
        self.compactor = compactor or MemoryCompactor(
            trigger_threshold=self.settings.MEMORY_TRIGGER_THRESHOLD,
            slice_percent=self.settings.MEMORY_SLICE_PERCENT
        )
        self.clock = clock
        self.render_interval = self.settings.RENDER_INTERVAL_MS / 1000.0
        self._states: Dict[str, GenerationState] = {}

    def get_state(self, session_id: str) -> GenerationState:
        return self._states.get(session_id, GenerationState.IDLE)

    def _set_state(self, session_id: str, state: GenerationState) -> None:
        previous = self.get_state(session_id)
        if state == GenerationState.IDLE:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = state
        logger.debug(f"生成状态: session={session_id}, {previous.value} -> {state.value}")

    def _resolve_provider(self) -> Tuple[LLMProvider, BaseLLMProvider, str, str]:
        """
        解析当前 Provider 及其凭据

        Raises:
            ConfigurationMissingError: Provider 不支持、API Key 或模型缺失
        """
        try:
            provider = self.provider_factory.active_provider()
            impl = self.provider_factory.get(provider)
        except ValueError as e:
            raise ConfigurationMissingError(str(e)) from e

        api_key, model = self.provider_factory.credentials(provider)
        # Gemini 也走带 x-goog-api-key 的 REST 调用，没有环境注入的凭据，所以同样要求 API Key
        if not api_key:
            raise ConfigurationMissingError(
                ERROR_MESSAGES["API_KEY_MISSING"].format(provider=provider.value),
                provider=provider.value
            )
        if not model or not model.strip():
            raise ConfigurationMissingError(
                ERROR_MESSAGES["MODEL_MISSING"].format(provider=provider.value),
                provider=provider.value
            )
        return provider, impl, api_key, model

    async def _summarize(self, messages: List[Message]) -> str:
        _, impl, api_key, model = self._resolve_provider()
        summary = await impl.summarize(api_key, model, messages)
        if not summary:
            raise SummarizationError("Summarization returned no content.")
        return summary

    def _context_budget(self, session: ChatSession) -> int:
        if session.context_size is not None:
            return session.context_size
        return self.settings.CONTEXT_SIZE

    def _build_request(
        self,
        provider: LLMProvider,
        api_key: str,
        model: str,
        session: ChatSession,
        history: List[Message],
        context: GenerationContext,
        prefill: str
    ) -> CompletionRequest:
        s = self.settings
        return CompletionRequest(
            provider=provider,
            api_key=api_key,
            model=model,
            messages=history,
            character_persona=context.character_persona,
            user_persona=context.user_persona,
            global_instructions=s.SYSTEM_PROMPT,
            world=context.world,
            temperature=session.temperature if session.temperature is not None else s.TEMPERATURE,
            prefill=prefill,
            reasoning_enabled=(
                session.reasoning_enabled if session.reasoning_enabled is not None
                else s.REASONING_ENABLED
            ),
            context_size=self._context_budget(session),
            max_output_tokens=(
                session.max_output_tokens if session.max_output_tokens is not None
                else s.MAX_OUTPUT_TOKENS
            ),
            memory_summary=session.memory_summary,
            max_lore_entries=s.MAX_LORE_ENTRIES
        )

    async def _emit(self, on_event: Optional[EventCallback], event: GenerationEvent) -> None:
        if on_event is not None:
            await on_event(event)

    async def run(
        self,
        session: ChatSession,
        messages: List[Message],
        context: GenerationContext,
        token: CancellationToken,
        on_event: Optional[EventCallback] = None
    ) -> GenerationResult:
        """
        执行一次生成

        Args:
            session: 目标会话（就地更新 messages / memory_summary 并持久化）
            messages: 本次生成使用的消息列表（已包含新用户消息或已截断）
            context: 角色 / 世界 / 用户人设等上下文
            token: 调用方持有的取消令牌
            on_event: 事件回调（警告、增量提交、错误、完成）

        Returns:
            GenerationResult
        """
        warnings: List[str] = []

        # 1. 记忆压缩，结果立即持久化
        compaction = await self.compactor.compact(
            messages,
            session.memory_summary,
            self._context_budget(session),
            self._summarize,
            enabled=session.memory_enabled
        )
        session.messages = compaction.messages
        session.memory_summary = compaction.summary
        await self.store.save_session(session)
        if compaction.warning:
            warnings.append(compaction.warning)
            await self._emit(on_event, GenerationEvent(
                type=GenerationEventType.WARNING,
                message=compaction.warning
            ))

        # 2. 助手占位消息
        placeholder = Message.assistant("")
        session.messages.append(placeholder)
        await self.store.save_session(session)

        prefill = context.prefill if context.prefill is not None else self.settings.RESPONSE_PREFILL
        history = session.messages[:-1]
        demux = ReasoningDemultiplexer()
        error_message: Optional[str] = None
        cancelled = False

        self._set_state(session.id, GenerationState.REQUESTING)
        try:
            # 3. 配置检查在任何网络请求之前
            provider, impl, api_key, model = self._resolve_provider()
            request = self._build_request(provider, api_key, model, session, history, context, prefill)
            logger.info(
                f"🚀 开始生成: session={session.id}, provider={provider.value}, "
                f"model={model}, history={len(history)}"
            )

            last_commit = self.clock()
            stream = impl.stream_chat(request, token)
            async for chunk in iterate_until_cancelled(stream, token):
                if self.get_state(session.id) != GenerationState.STREAMING:
                    self._set_state(session.id, GenerationState.STREAMING)
                demux.feed(chunk)

                # 4. 节流提交
                now = self.clock()
                if now - last_commit >= self.render_interval:
                    placeholder.content = demux.visible.lstrip()
                    await self.store.save_session(session)
                    await self._emit(on_event, GenerationEvent(
                        type=GenerationEventType.MESSAGE,
                        message_id=placeholder.id,
                        content=placeholder.content
                    ))
                    last_commit = now

            if token.is_cancelled:
                cancelled = True
                logger.info(f"⏹️  生成已被用户停止: session={session.id}")

        except asyncio.CancelledError:
            cancelled = True
            token.cancel("task cancelled")
            logger.info(f"⏹️  生成任务被取消: session={session.id}")
            raise
        except Exception as e:
            classification = classify_error(e)
            if classification.silent or token.is_cancelled:
                cancelled = True
                logger.info(f"⏹️  生成已停止: session={session.id}")
            else:
                error_message = classification.message
                self._set_state(session.id, GenerationState.ERRORED)
                logger.error(
                    f"❌ 生成失败: session={session.id}, message={error_message}",
                    exc_info=True
                )
        finally:
            if cancelled:
                self._set_state(session.id, GenerationState.CANCELLED)
            try:
                result = await self._finalize(
                    session, placeholder, demux, context, prefill, error_message, cancelled, warnings
                )
            finally:
                # 最终持久化失败时也要回到 IDLE 并发出终止事件
                self._set_state(session.id, GenerationState.IDLE)
                await self._emit(on_event, GenerationEvent(
                    type=GenerationEventType.ERROR if error_message else GenerationEventType.DONE,
                    message_id=placeholder.id,
                    content=placeholder.content,
                    reasoning=placeholder.reasoning,
                    message=error_message
                ))

        return result

    async def _finalize(
        self,
        session: ChatSession,
        placeholder: Message,
        demux: ReasoningDemultiplexer,
        context: GenerationContext,
        prefill: str,
        error_message: Optional[str],
        cancelled: bool,
        warnings: List[str]
    ) -> GenerationResult:
        self._set_state(session.id, GenerationState.FINALIZING)

        if error_message:
            placeholder.content = f"Error: {error_message}"
            placeholder.is_error = True
        else:
            cleaned = strip_response_artifacts(
                demux.visible, prefill, self.settings.PREAMBLE_SCAN_CHARS
            )
            placeholder.content = cleaned or EMPTY_RESPONSE_MARKER

        placeholder.reasoning = demux.reasoning.strip() or None

        if context.participants and not error_message:
            placeholder.speaker_id = resolve_speaker(placeholder.content, context.participants)
            if placeholder.speaker_id is None:
                logger.debug(f"未识别发言者: session={session.id}")

        await self.store.save_session(session)

        if error_message:
            outcome = GenerationOutcome.ERRORED
        elif cancelled:
            outcome = GenerationOutcome.CANCELLED
        else:
            outcome = GenerationOutcome.COMPLETED

        logger.info(
            f"✅ 生成结束: session={session.id}, outcome={outcome.value}, "
            f"chars={len(placeholder.content)}"
        )
        return GenerationResult(
            outcome=outcome,
            messages=list(session.messages),
            assistant_message=placeholder,
            memory_summary=session.memory_summary,
            error=error_message,
            warnings=warnings
        )


__all__ = [
    "EMPTY_RESPONSE_MARKER",
    "GenerationContext",
    "ReasoningDemultiplexer",
    "StreamOrchestrator",
    "strip_response_artifacts",
]
