"""
LLM Provider 抽象接口

定义统一的 Provider 接口，支持多种后端实现：
- GeminiProvider: Google Gemini REST API
- OpenAICompatibleProvider: OpenRouter / DeepSeek（OpenAI 兼容格式）

Provider 负责把 CompletionRequest 组装成请求并把流式响应解码为文本片段。
推理文本以 REASONING_MARKER 为界追加在可见回复之后，由编排器拆分。
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from nexus.models.catalog import UserPersona, World
from nexus.models.message import Message, MessageRole
from nexus.services.cancellation import CancellationToken
from nexus.services.prompt_builder import (
    WireMessage,
    build_history,
    build_system_prompt,
    select_lore,
)

REASONING_MARKER = "<|REASONING|>"

SUMMARY_SYSTEM_PROMPT = """You are an expert at creating and updating conversation summaries. Your task is to produce a new, consolidated summary.

Instructions:
1.  Read the "PREVIOUS SUMMARY" (if provided). This is the condensed history of events so far.
2.  Read the "NEW CONVERSATION LOG". These are the most recent messages that need to be integrated.
3.  Combine both sources into a single, coherent, and updated summary.
4.  The new summary MUST be written in the third person.
5.  It MUST capture all key events, character developments, important decisions, new lore, and crucial facts.
6.  CRITICAL: Do NOT repeat information. If the new log clarifies or supersedes something from the previous summary, update it. Keep the summary as concise as possible while retaining vital information."""

SUMMARY_TEMPERATURE = 0.3


class LLMProvider(str, Enum):
    """支持的 Provider"""
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"


class CompletionRequest(BaseModel):
    """一次流式生成请求"""
    model_config = ConfigDict(protected_namespaces=())

    provider: LLMProvider = Field(..., description="Provider")
    api_key: Optional[str] = Field(None, description="API Key")
    model: str = Field(..., description="模型名称")
    messages: List[Message] = Field(default_factory=list, description="完整（可能已压缩）历史")
    character_persona: str = Field(default="", description="角色设定或群聊提示")
    user_persona: Optional[UserPersona] = Field(None, description="用户人设")
    global_instructions: str = Field(default="", description="全局指令")
    world: Optional[World] = Field(None, description="世界设定")
    temperature: float = Field(default=0.8, description="采样温度")
    prefill: str = Field(default="", description="回复预填充")
    reasoning_enabled: bool = Field(default=False, description="是否请求推理")
    context_size: int = Field(default=8192, description="上下文预算")
    max_output_tokens: int = Field(default=2048, description="最大输出token")
    memory_summary: Optional[str] = Field(None, description="记忆摘要")
    max_lore_entries: int = Field(default=7, description="世界设定条目上限")


def build_summary_prompt(messages: List[Message]) -> str:
    conversation = "\n".join(
        f"{'User' if m.role == MessageRole.USER else 'Assistant'}: {m.content}"
        for m in messages
    )
    parts = [
        "### NEW CONVERSATION LOG ###",
        conversation,
        "\nBased on the instructions, provide the new, consolidated summary."
    ]
    return "\n\n".join(parts)


class BaseLLMProvider(ABC):
    """
    Provider 抽象基类

    client 可注入（测试中使用 httpx.MockTransport），否则每次调用创建临时客户端。
    """

    name: LLMProvider

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 120.0):
        self._client = client
        self.timeout = timeout

    def _get_client(self) -> Tuple[httpx.AsyncClient, bool]:
        """
        Returns:
            (client, 是否由调用方负责关闭)
        """
        if self._client is not None:
            return self._client, False
        return httpx.AsyncClient(timeout=self.timeout), True

    def prepare_prompt(self, request: CompletionRequest) -> Tuple[str, List[WireMessage]]:
        """
        组装系统提示与截断、合并后的历史

        Returns:
            (system_prompt, history)
        """
        lore = select_lore(
            request.world,
            request.messages,
            user_persona=request.user_persona,
            character_persona=request.character_persona,
            limit=request.max_lore_entries
        )
        system_prompt = build_system_prompt(
            request.global_instructions,
            request.character_persona,
            user_persona=request.user_persona,
            memory_summary=request.memory_summary,
            lore_entries=lore
        )
        history = build_history(request.messages, request.context_size)
        return system_prompt, history

    @abstractmethod
    def stream_chat(
        self,
        request: CompletionRequest,
        token: Optional[CancellationToken] = None
    ) -> AsyncIterator[str]:
        """
        流式生成

        Args:
            request: 生成请求
            token: 取消令牌（触发后停止读取）

        Yields:
            已解码的文本片段
        """
        pass

    @abstractmethod
    async def summarize(
        self,
        api_key: Optional[str],
        model: str,
        messages: List[Message]
    ) -> str:
        """
        一次性（非流式）摘要调用

        Returns:
            摘要文本
        """
        pass


__all__ = [
    "REASONING_MARKER",
    "SUMMARY_SYSTEM_PROMPT",
    "SUMMARY_TEMPERATURE",
    "LLMProvider",
    "CompletionRequest",
    "BaseLLMProvider",
    "build_summary_prompt",
]
