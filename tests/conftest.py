"""
共享测试替身：Provider、时钟、编排器装配
"""

import asyncio
from typing import AsyncIterator, List, Optional

import pytest

from nexus.config.settings import Settings
from nexus.models.message import Message
from nexus.providers.base import BaseLLMProvider, CompletionRequest, LLMProvider
from nexus.providers.factory import ProviderFactory
from nexus.services.cancellation import CancellationToken
from nexus.services.memory_compactor import MemoryCompactor
from nexus.services.stream_orchestrator import StreamOrchestrator
from nexus.storage.memory_storage import MemorySessionStore


class FakeProvider(BaseLLMProvider):
    """按预设片段流式输出的 Provider 替身"""

    name = LLMProvider.GEMINI

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        error: Optional[BaseException] = None,
        summaries: Optional[List[str]] = None,
        summarize_error: Optional[BaseException] = None
    ):
        super().__init__()
        self.chunks = chunks or []
        self.error = error
        self.summaries = list(summaries or [])
        self.summarize_error = summarize_error
        self.requests: List[CompletionRequest] = []
        self.summarize_calls: List[List[Message]] = []
        self.on_chunk = None  # 每个片段产出后调用（测试中用于触发取消）

    async def stream_chat(
        self,
        request: CompletionRequest,
        token: Optional[CancellationToken] = None
    ) -> AsyncIterator[str]:
        self.requests.append(request)
        for i, chunk in enumerate(self.chunks):
            await asyncio.sleep(0)
            yield chunk
            if self.on_chunk is not None:
                self.on_chunk(i)
        if self.error is not None:
            raise self.error

    async def summarize(self, api_key, model, messages) -> str:
        self.summarize_calls.append(list(messages))
        if self.summarize_error is not None:
            raise self.summarize_error
        return self.summaries.pop(0) if self.summaries else "summary"


class FakeClock:
    """手动推进的单调时钟"""

    def __init__(self, step: float = 0.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


def make_settings(**overrides) -> Settings:
    values = dict(
        LLM_PROVIDER="gemini",
        GEMINI_API_KEY="test-key",
        GEMINI_MODEL="gemini-2.5-flash",
        SYSTEM_PROMPT="Be a good roleplay partner.",
        RESPONSE_PREFILL="",
        CONTEXT_SIZE=8192,
        RENDER_INTERVAL_MS=100,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_orchestrator(provider: FakeProvider, store=None, settings: Optional[Settings] = None, clock=None):
    settings = settings or make_settings()
    factory = ProviderFactory(settings)
    factory.register(LLMProvider(settings.LLM_PROVIDER), provider)
    return StreamOrchestrator(
        store or MemorySessionStore(),
        factory,
        settings,
        compactor=MemoryCompactor(
            settings.MEMORY_TRIGGER_THRESHOLD,
            settings.MEMORY_SLICE_PERCENT
        ),
        clock=clock or FakeClock()
    )


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def settings():
    return make_settings()
