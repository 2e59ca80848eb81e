"""
Stream Orchestrator 单元测试
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeClock, FakeProvider, make_orchestrator, make_settings
from nexus.models.catalog import Character
from nexus.models.generation import GenerationEventType, GenerationOutcome, GenerationState
from nexus.models.message import Message, MessageRole
from nexus.models.session import ChatSession
from nexus.services.cancellation import CancellationToken
from nexus.services.memory_compactor import SUMMARY_NOTICE
from nexus.services.stream_orchestrator import (
    EMPTY_RESPONSE_MARKER,
    GenerationContext,
    ReasoningDemultiplexer,
    strip_response_artifacts,
)
from nexus.storage.memory_storage import MemorySessionStore

ARIA = Character(id="c-aria", name="Aria", persona="A bard.")


def _session(**kwargs):
    return ChatSession(id="s1", character_id="c1", **kwargs)


class EventRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


async def _run(orchestrator, session, messages=None, context=None, token=None, recorder=None):
    if messages is None:
        messages = list(session.messages) + [Message.user("Hello")]
    return await orchestrator.run(
        session,
        messages,
        context or GenerationContext(character_persona="You are Aria."),
        token or CancellationToken(),
        recorder
    )


class TestDemultiplexer:
    def test_split_on_marker(self):
        demux = ReasoningDemultiplexer()
        for chunk in ["Answer", " part<|REASONING|>think", "ing <|REASONING|> more"]:
            demux.feed(chunk)
        assert demux.visible == "Answer part"
        assert demux.reasoning == "thinking <|REASONING|> more"

    def test_no_marker(self):
        demux = ReasoningDemultiplexer()
        demux.feed("a")
        demux.feed("b")
        assert demux.visible == "ab"
        assert demux.reasoning == ""


class TestArtifactStripping:
    def test_prefill_echo_and_delimiter(self):
        assert strip_response_artifacts("Sure:\n---\nThe tale begins.", "Sure:") == "The tale begins."

    def test_prefill_echo_without_delimiter(self):
        assert strip_response_artifacts("Sure: The tale begins.", "Sure:") == "The tale begins."

    def test_preamble_within_scan_window(self):
        text = "Planning the scene...\n---\nThe door opens."
        assert strip_response_artifacts(text) == "The door opens."

    def test_scene_break_after_preamble_kept(self):
        text = "Scaffold line\n---\nReal paragraph one.\n---\nReal paragraph two."
        assert strip_response_artifacts(text) == "Real paragraph one.\n---\nReal paragraph two."

    def test_delimiter_outside_window_kept(self):
        text = "a" * 500 + "\n---\nTail"
        assert strip_response_artifacts(text, scan_chars=400) == text

    def test_plain_text_unchanged(self):
        assert strip_response_artifacts("  Hello  ") == "Hello"


@pytest.mark.asyncio
async def test_completed_generation(store):
    provider = FakeProvider(chunks=["Hello", " world"])
    orchestrator = make_orchestrator(provider, store)
    session = _session()

    result = await _run(orchestrator, session)

    assert result.outcome == GenerationOutcome.COMPLETED
    assert [m.role for m in session.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert session.messages[-1].content == "Hello world"
    assert session.messages[-1].reasoning is None
    assert orchestrator.get_state(session.id) == GenerationState.IDLE

    persisted = await store.get_session("s1", "c1")
    assert persisted.messages[-1].content == "Hello world"


@pytest.mark.asyncio
async def test_request_carries_history_and_session_overrides(store):
    provider = FakeProvider(chunks=["ok"])
    orchestrator = make_orchestrator(provider, store)
    session = _session(temperature=0.2, max_output_tokens=64, reasoning_enabled=True)

    await _run(orchestrator, session)

    request = provider.requests[0]
    assert [m.content for m in request.messages] == ["Hello"]
    assert request.temperature == 0.2
    assert request.max_output_tokens == 64
    assert request.reasoning_enabled is True
    assert request.character_persona == "You are Aria."
    assert request.api_key == "test-key"


@pytest.mark.asyncio
async def test_reasoning_side_channel(store):
    provider = FakeProvider(chunks=["The answer", " is 42.<|REASONING|>Because", " math."])
    orchestrator = make_orchestrator(provider, store)
    session = _session()

    await _run(orchestrator, session)

    reply = session.messages[-1]
    assert reply.content == "The answer is 42."
    assert reply.reasoning == "Because math."


@pytest.mark.asyncio
async def test_reasoning_only_gets_empty_marker(store):
    provider = FakeProvider(chunks=["<|REASONING|>only thoughts"])
    orchestrator = make_orchestrator(provider, store)
    session = _session()

    await _run(orchestrator, session)

    assert session.messages[-1].content == EMPTY_RESPONSE_MARKER
    assert session.messages[-1].reasoning == "only thoughts"


@pytest.mark.asyncio
async def test_commits_are_throttled(store):
    provider = FakeProvider(chunks=["c1", "c2", "c3", "c4", "c5"])
    orchestrator = make_orchestrator(provider, store, clock=FakeClock(step=0.06))
    recorder = EventRecorder()
    session = _session()

    await _run(orchestrator, session, recorder=recorder)

    commits = recorder.of_type(GenerationEventType.MESSAGE)
    assert [e.content for e in commits] == ["c1c2", "c1c2c3c4"]
    done = recorder.of_type(GenerationEventType.DONE)
    assert len(done) == 1
    assert done[0].content == "c1c2c3c4c5"


@pytest.mark.asyncio
async def test_empty_stream_uses_marker(store):
    orchestrator = make_orchestrator(FakeProvider(chunks=[]), store)
    session = _session()

    await _run(orchestrator, session)

    assert session.messages[-1].content == EMPTY_RESPONSE_MARKER


@pytest.mark.asyncio
async def test_prefill_echo_removed(store):
    settings = make_settings(RESPONSE_PREFILL="Sure:")
    provider = FakeProvider(chunks=["Sure:", "\n---\n", "The tale begins."])
    orchestrator = make_orchestrator(provider, store, settings=settings)
    session = _session()

    await _run(orchestrator, session)

    assert provider.requests[0].prefill == "Sure:"
    assert session.messages[-1].content == "The tale begins."


@pytest.mark.asyncio
async def test_explicit_empty_prefill_overrides_default(store):
    settings = make_settings(RESPONSE_PREFILL="Sure:")
    provider = FakeProvider(chunks=["more"])
    orchestrator = make_orchestrator(provider, store, settings=settings)

    await _run(orchestrator, _session(), context=GenerationContext(prefill=""))

    assert provider.requests[0].prefill == ""


@pytest.mark.asyncio
async def test_provider_error_is_inline(store):
    provider = FakeProvider(
        chunks=["partial"],
        error=Exception('API request failed with status 429: {"error":{"message":"rate limited"}}')
    )
    orchestrator = make_orchestrator(provider, store)
    recorder = EventRecorder()
    session = _session()

    result = await _run(orchestrator, session, recorder=recorder)

    reply = session.messages[-1]
    assert result.outcome == GenerationOutcome.ERRORED
    assert result.error == "rate limited"
    assert reply.content == "Error: rate limited"
    assert reply.is_error is True
    assert recorder.of_type(GenerationEventType.ERROR)[0].message == "rate limited"
    assert orchestrator.get_state(session.id) == GenerationState.IDLE


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_network(store):
    provider = FakeProvider(chunks=["never"])
    settings = make_settings(GEMINI_API_KEY=None)
    orchestrator = make_orchestrator(provider, store, settings=settings)
    session = _session()

    result = await _run(orchestrator, session)

    assert provider.requests == []
    assert result.outcome == GenerationOutcome.ERRORED
    assert session.messages[-1].content == (
        "Error: API key for gemini is not configured. Please check your settings."
    )


@pytest.mark.asyncio
async def test_missing_model_fails_before_network(store):
    provider = FakeProvider(chunks=["never"])
    settings = make_settings(GEMINI_MODEL="  ")
    orchestrator = make_orchestrator(provider, store, settings=settings)
    session = _session()

    result = await _run(orchestrator, session)

    assert provider.requests == []
    assert result.outcome == GenerationOutcome.ERRORED
    assert session.messages[-1].is_error is True


@pytest.mark.asyncio
async def test_cancel_mid_stream_keeps_partial_reply(store):
    token = CancellationToken()
    provider = FakeProvider(chunks=["a", "b", "c", "d"])
    provider.on_chunk = lambda i: token.cancel() if i == 1 else None
    orchestrator = make_orchestrator(provider, store)
    recorder = EventRecorder()
    session = _session()

    result = await _run(orchestrator, session, token=token, recorder=recorder)

    assert result.outcome == GenerationOutcome.CANCELLED
    assert session.messages[-1].content == "ab"
    assert session.messages[-1].is_error is False
    assert recorder.of_type(GenerationEventType.ERROR) == []
    assert orchestrator.get_state(session.id) == GenerationState.IDLE


@pytest.mark.asyncio
async def test_cancel_before_any_output(store):
    token = CancellationToken()
    token.cancel()
    orchestrator = make_orchestrator(FakeProvider(chunks=["a"]), store)
    session = _session()

    result = await _run(orchestrator, session, token=token)

    assert result.outcome == GenerationOutcome.CANCELLED
    assert session.messages[-1].content == EMPTY_RESPONSE_MARKER


@pytest.mark.asyncio
async def test_task_cancellation_finalizes_and_propagates(store):
    started = asyncio.Event()

    class SlowProvider(FakeProvider):
        async def stream_chat(self, request, token=None):
            yield "partial"
            started.set()
            await asyncio.sleep(60)
            yield "never"

    orchestrator = make_orchestrator(SlowProvider(), store)
    session = _session()
    token = CancellationToken()

    task = asyncio.create_task(_run(orchestrator, session, token=token))
    await started.wait()
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert token.is_cancelled
    assert session.messages[-1].content == "partial"
    persisted = await store.get_session("s1", "c1")
    assert persisted.messages[-1].content == "partial"


@pytest.mark.asyncio
async def test_group_reply_attributed(store):
    orchestrator = make_orchestrator(FakeProvider(chunks=["[Aria]: Hello", " there"]), store)
    session = _session()

    await _run(orchestrator, session, context=GenerationContext(participants=[ARIA]))

    assert session.messages[-1].speaker_id == "c-aria"
    assert session.messages[-1].content == "[Aria]: Hello there"


@pytest.mark.asyncio
async def test_group_reply_unknown_speaker(store):
    orchestrator = make_orchestrator(FakeProvider(chunks=["[Ghost]: Hi"]), store)
    session = _session()

    await _run(orchestrator, session, context=GenerationContext(participants=[ARIA]))

    assert session.messages[-1].speaker_id is None


@pytest.mark.asyncio
async def test_compaction_runs_before_generation(store):
    provider = FakeProvider(chunks=["ok"], summaries=["Earlier events."])
    orchestrator = make_orchestrator(provider, store)
    session = _session(context_size=100)
    history = [Message.user("x" * 200) if i % 2 == 0 else Message.assistant("y" * 200) for i in range(4)]

    result = await _run(orchestrator, session, messages=history)

    assert len(provider.summarize_calls) == 1
    assert session.memory_summary == "Earlier events."
    assert session.messages[0].content == SUMMARY_NOTICE
    assert [m.id for m in session.messages[1:3]] == [m.id for m in history[2:]]
    assert provider.requests[0].memory_summary == "Earlier events."
    assert result.outcome == GenerationOutcome.COMPLETED


@pytest.mark.asyncio
async def test_compaction_failure_is_warning_only(store):
    provider = FakeProvider(chunks=["ok"], summarize_error=RuntimeError("boom"))
    orchestrator = make_orchestrator(provider, store)
    recorder = EventRecorder()
    session = _session(context_size=100)
    history = [Message.user("x" * 400)]

    result = await _run(orchestrator, session, messages=history, recorder=recorder)

    assert result.outcome == GenerationOutcome.COMPLETED
    assert result.warnings == ["Auto-summarization failed. Check API key and model settings."]
    assert recorder.events[0].type == GenerationEventType.WARNING
    assert session.messages[0].id == history[0].id
    assert session.memory_summary is None


@pytest.mark.asyncio
async def test_memory_disabled_skips_summarization(store):
    provider = FakeProvider(chunks=["ok"])
    orchestrator = make_orchestrator(provider, store)
    session = _session(context_size=100, memory_enabled=False)

    await _run(orchestrator, session, messages=[Message.user("x" * 4000)])

    assert provider.summarize_calls == []


class FailingFinalSaveStore(MemorySessionStore):
    """前两次写入成功（压缩结果、占位消息），之后的写入失败"""

    def __init__(self, ok_writes: int = 2):
        super().__init__()
        self.ok_writes = ok_writes
        self.writes = 0

    async def save_session(self, session):
        self.writes += 1
        if self.writes > self.ok_writes:
            raise RedisConnectionError("redis unavailable")
        await super().save_session(session)


@pytest.mark.asyncio
async def test_state_reset_when_final_save_fails():
    provider = FakeProvider(chunks=["Hello"])
    store = FailingFinalSaveStore()
    orchestrator = make_orchestrator(provider, store)
    recorder = EventRecorder()
    session = _session()

    with pytest.raises(RedisConnectionError):
        await _run(orchestrator, session, recorder=recorder)

    assert orchestrator.get_state(session.id) == GenerationState.IDLE
    assert [e.type for e in recorder.events] == [GenerationEventType.DONE]
    assert recorder.events[0].content == "Hello"
