"""
LLM Providers - 流式生成与摘要调用
"""

from .base import (
    REASONING_MARKER,
    LLMProvider,
    CompletionRequest,
    BaseLLMProvider,
)
from .gemini import GeminiProvider
from .openai_compatible import OpenAICompatibleProvider
from .factory import ProviderFactory, get_provider_factory

__all__ = [
    "REASONING_MARKER",
    "LLMProvider",
    "CompletionRequest",
    "BaseLLMProvider",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "ProviderFactory",
    "get_provider_factory",
]
