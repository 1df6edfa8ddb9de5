import httpx
import pytest

from aibot_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from aibot_core.domain.models import ChatMessage, ChatRequest, LlmConfig
from aibot_core.providers.openai_client import OpenAIClient, _sse_data


class SettingsStub:
    http_timeout = 1.0


def _req(provider="openai", url="https://api.openai.example"):
    config = LlmConfig(provider=provider, api_url=url, api_token="secret", max_tokens=100)
    return ChatRequest(config=config, messages=[ChatMessage(role="user", content="hi")])


class StreamResp:
    def __init__(self, status_code=200, lines=(), body=b""):
        self.status_code = status_code
        self._lines = list(lines)
        self._body = body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *a):
        return False

    async def aread(self):
        return self._body

    async def aiter_lines(self):
        for line in self._lines:
            yield line


def _client_factory(captured, resp=None, stream_resp=None, exc=None):
    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            if exc is not None:
                raise exc
            return resp

        def stream(self, method, url, json=None, headers=None):
            captured.update(method=method, url=url, json=json, headers=headers)
            if exc is not None:
                raise exc
            return stream_resp

    return Client


class Resp:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        return self._data


@pytest.mark.asyncio
async def test_openai_chat_parses_response(monkeypatch):
    captured = {}
    resp = Resp(
        200,
        {
            "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3},
        },
    )
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, resp=resp))

    res = await OpenAIClient(SettingsStub()).chat(_req())

    assert res.content == "ok"
    assert res.finish_reason == "stop"
    assert res.usage.total_tokens == 3
    assert captured["url"] == "https://api.openai.example/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer secret"
    assert captured["json"]["stream"] is False
    assert captured["json"]["max_tokens"] == 100
    assert captured["json"]["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_azure_uses_api_key_and_default_version(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, resp=Resp(200, {"choices": []})))

    url = "https://res.openai.azure.com/openai/deployments/gpt/chat/completions"
    await OpenAIClient(SettingsStub()).chat(_req("azure-openai", url))

    assert captured["url"] == url + "?api-version=2023-07-01-preview"
    assert captured["headers"]["api-key"] == "secret"
    assert "Authorization" not in captured["headers"]


@pytest.mark.asyncio
async def test_chat_error_status(monkeypatch):
    captured = {}
    body = '{"error": {"message": "bad key"}}'
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, resp=Resp(401, text=body)))
    with pytest.raises(ApiError) as exc_info:
        await OpenAIClient(SettingsStub()).chat(_req())
    assert exc_info.value.message == "API request failed with status 401: bad key"

    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, resp=Resp(429, text="")))
    with pytest.raises(RateLimitError):
        await OpenAIClient(SettingsStub()).chat(_req())


@pytest.mark.asyncio
async def test_chat_network_error(monkeypatch):
    captured = {}
    exc = httpx.ConnectError("refused")
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, exc=exc))
    with pytest.raises(NetworkError):
        await OpenAIClient(SettingsStub()).chat(_req())


@pytest.mark.asyncio
async def test_incomplete_config_is_rejected():
    req = _req(url="")
    with pytest.raises(ValidationError):
        await OpenAIClient(SettingsStub()).chat(req)


@pytest.mark.asyncio
async def test_stream_parses_sse_lines(monkeypatch):
    captured = {}
    lines = [
        ": keep-alive",
        'data: {"choices": [{"delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"delta": {"content": "Hel"}}]}',
        "",
        "data: {broken",
        'data: {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
    ]
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, stream_resp=StreamResp(lines=lines)))

    chunks = [c async for c in OpenAIClient(SettingsStub()).chat_stream(_req())]

    assert "".join(c.delta for c in chunks) == "Hello"
    assert chunks[-1].finish_reason == "stop"
    assert captured["method"] == "POST"
    assert captured["json"]["stream"] is True


@pytest.mark.asyncio
async def test_stream_error_status(monkeypatch):
    captured = {}
    stream_resp = StreamResp(status_code=500, body=b'{"message": "server down"}')
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, stream_resp=stream_resp))

    with pytest.raises(ApiError) as exc_info:
        async for _ in OpenAIClient(SettingsStub()).chat_stream(_req()):
            pass
    assert exc_info.value.http_status == 500
    assert "server down" in exc_info.value.message


def test_sse_data():
    assert _sse_data('data: {"a": 1}') == '{"a": 1}'
    assert _sse_data("data: [DONE]") is None
    assert _sse_data(": comment") is None
    assert _sse_data("") is None
