"""
Provider Factory

Design Pattern: Factory + Registry
- 按 LLMProvider 查找 Provider 实例（懒加载）
- 从 Settings 解析各 Provider 的 API Key 与模型
- 测试中可直接 register 替身实现
"""

import logging
from typing import Dict, Optional, Tuple

import httpx

from nexus.config.settings import Settings, get_settings
from .base import BaseLLMProvider, LLMProvider
from .gemini import GeminiProvider
from .openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Factory for LLM providers"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._providers: Dict[LLMProvider, BaseLLMProvider] = {}

    def register(self, provider: LLMProvider, instance: BaseLLMProvider) -> None:
        self._providers[provider] = instance
        logger.info(f"Registered provider: {provider.value}")

    def _create(self, provider: LLMProvider) -> BaseLLMProvider:
        timeout = self.settings.PROVIDER_TIMEOUT
        if provider == LLMProvider.GEMINI:
            return GeminiProvider(self.settings.GEMINI_BASE_URL, client=self._client, timeout=timeout)
        if provider == LLMProvider.OPENROUTER:
            return OpenAICompatibleProvider(
                provider, self.settings.OPENROUTER_BASE_URL, client=self._client, timeout=timeout
            )
        if provider == LLMProvider.DEEPSEEK:
            return OpenAICompatibleProvider(
                provider, self.settings.DEEPSEEK_BASE_URL, client=self._client, timeout=timeout
            )
        raise ValueError(f"Unsupported provider: {provider}")

    def get(self, provider: LLMProvider) -> BaseLLMProvider:
        """
        获取 Provider 实例

        Raises:
            ValueError: 不支持的 Provider
        """
        if provider not in self._providers:
            self._providers[provider] = self._create(provider)
        return self._providers[provider]

    def active_provider(self) -> LLMProvider:
        return LLMProvider(self.settings.LLM_PROVIDER.lower())

    def credentials(self, provider: LLMProvider) -> Tuple[Optional[str], str]:
        """
        Returns:
            (api_key, model)，未配置时为 None / 空串
        """
        s = self.settings
        if provider == LLMProvider.GEMINI:
            return s.GEMINI_API_KEY, s.GEMINI_MODEL
        if provider == LLMProvider.OPENROUTER:
            return s.OPENROUTER_API_KEY, s.OPENROUTER_MODEL
        return s.DEEPSEEK_API_KEY, s.DEEPSEEK_MODEL


# 全局工厂实例
_provider_factory: Optional[ProviderFactory] = None


def get_provider_factory() -> ProviderFactory:
    global _provider_factory
    if _provider_factory is None:
        _provider_factory = ProviderFactory()
    return _provider_factory


__all__ = ["ProviderFactory", "get_provider_factory"]
