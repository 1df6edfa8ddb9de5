import asyncio

import pytest

from aibot_core.domain.exceptions import ApiError, TransportError, ValidationError
from aibot_core.domain.models import ChatMessage, ChatResult, ChatStreamChunk, LlmConfig
from aibot_core.providers import create_provider
from aibot_core.providers.transport import CancellationHandle, LlmTransport, build_request_messages


LLM = LlmConfig(provider="openai", api_url="https://llm.example.com", api_token="t")


class FakeProvider:
    name = "fake"

    def __init__(self, deltas=(), error=None, content="done"):
        self.deltas = list(deltas)
        self.error = error
        self.content = content
        self.requests = []
        self.closed = False

    async def chat(self, req):
        self.requests.append(req)
        return ChatResult(provider=self.name, content=self.content)

    async def chat_stream(self, req):
        self.requests.append(req)
        try:
            for delta in self.deltas:
                yield ChatStreamChunk(provider=self.name, delta=delta)
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class Recorder:
    def __init__(self):
        self.chunks = []
        self.completed = []
        self.errors = []

    def kwargs(self):
        return {
            "on_chunk": self.chunks.append,
            "on_complete": self.completed.append,
            "on_error": self.errors.append,
        }


def _transport(provider):
    return LlmTransport(provider_factory=lambda config: provider)


@pytest.mark.asyncio
async def test_send_streams_chunks_then_completes_once():
    provider = FakeProvider(["Hel", "", "lo"])
    rec = Recorder()
    await _transport(provider).send(LLM, "hi", "en", [], CancellationHandle(), **rec.kwargs())

    assert rec.chunks == ["Hel", "lo"]
    assert rec.completed == ["Hello"]
    assert rec.errors == []
    assert provider.closed


@pytest.mark.asyncio
async def test_send_reports_business_errors():
    provider = FakeProvider(["par"], error=ApiError(message="API request failed with status 500: boom"))
    rec = Recorder()
    await _transport(provider).send(LLM, "hi", "en", [], CancellationHandle(), **rec.kwargs())

    assert rec.completed == []
    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0], ApiError)


@pytest.mark.asyncio
async def test_send_wraps_unexpected_errors():
    provider = FakeProvider(error=KeyError("choices"))
    rec = Recorder()
    await _transport(provider).send(LLM, "hi", "en", [], CancellationHandle(), **rec.kwargs())

    assert len(rec.errors) == 1
    assert isinstance(rec.errors[0], TransportError)
    assert rec.errors[0].code == "STREAM_ERROR"


@pytest.mark.asyncio
async def test_cancellation_preempts_complete_and_error():
    provider = FakeProvider(["a", "b", "c"])
    handle = CancellationHandle()
    rec = Recorder()

    def on_chunk(text):
        rec.chunks.append(text)
        handle.cancel()

    await _transport(provider).send(
        LLM, "hi", "en", [], handle,
        on_chunk=on_chunk, on_complete=rec.completed.append, on_error=rec.errors.append,
    )
    assert rec.chunks == ["a"]
    assert rec.completed == []
    assert rec.errors == []
    assert provider.closed


@pytest.mark.asyncio
async def test_cancelling_bound_task_is_silent():
    class SlowProvider(FakeProvider):
        async def chat_stream(self, req):
            yield ChatStreamChunk(provider=self.name, delta="first")
            await asyncio.sleep(10)
            yield ChatStreamChunk(provider=self.name, delta="never")

    handle = CancellationHandle()
    rec = Recorder()
    task = asyncio.create_task(
        _transport(SlowProvider()).send(LLM, "hi", "en", [], handle, **rec.kwargs())
    )
    handle.bind(task)
    await asyncio.sleep(0.01)
    handle.cancel()
    await asyncio.wait({task})

    assert not task.cancelled()
    assert rec.chunks == ["first"]
    assert rec.completed == []
    assert rec.errors == []


@pytest.mark.asyncio
async def test_unsupported_provider_surfaces_as_error():
    rec = Recorder()
    config = LlmConfig(provider="claude", api_url="https://x", api_token="t")
    await LlmTransport(create_provider).send(config, "hi", "en", [], CancellationHandle(), **rec.kwargs())
    assert isinstance(rec.errors[0], ValidationError)
    assert rec.errors[0].code == "UNSUPPORTED_PROVIDER"


@pytest.mark.asyncio
async def test_send_and_await_returns_content():
    provider = FakeProvider(content="full answer")
    text = await _transport(provider).send_and_await(LLM, "hi", "en", [])
    assert text == "full answer"
    assert [m.role for m in provider.requests[0].messages] == ["system", "user"]


def test_build_request_messages():
    msgs = build_request_messages("hi", "German", [])
    assert [(m.role, m.content) for m in msgs] == [
        ("system", "Please provide your response in German language."),
        ("user", "hi"),
    ]

    history = [ChatMessage(role="system", content="ctx"), ChatMessage(role="user", content="hi")]
    assert build_request_messages("hi", "en", history) == history


@pytest.mark.asyncio
async def test_cancellation_handle_is_idempotent():
    handle = CancellationHandle()
    task = asyncio.create_task(asyncio.sleep(10))
    handle.bind(task)

    assert handle.cancel() is True
    assert handle.cancel() is False
    assert handle.cancelled
    await asyncio.wait_for(handle.wait(), timeout=1.0)
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_bind_after_cancel_cancels_task():
    handle = CancellationHandle()
    handle.cancel()
    task = asyncio.create_task(asyncio.sleep(10))
    handle.bind(task)
    with pytest.raises(asyncio.CancelledError):
        await task
