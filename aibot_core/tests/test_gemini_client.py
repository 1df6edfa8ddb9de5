import pytest

from aibot_core.domain.exceptions import DeserializationError
from aibot_core.domain.models import ChatMessage, ChatRequest, LlmConfig
from aibot_core.providers.gemini_client import (
    GeminiClient,
    GeminiStreamParser,
    build_gemini_url,
    format_gemini_history,
)


class SettingsStub:
    http_timeout = 1.0


BASE = "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro"


def _req(messages=None):
    config = LlmConfig(provider="gemini", api_url=BASE, api_token="gkey")
    return ChatRequest(config=config, messages=messages or [ChatMessage(role="user", content="hi")])


def _part(text):
    return '{"candidates": [{"content": {"parts": [{"text": "%s"}]}}]}' % text


class StreamResp:
    def __init__(self, pieces, status_code=200):
        self.status_code = status_code
        self._pieces = pieces

    async def __aenter__(self):
        return self

    async def __aexit__(self, *a):
        return False

    async def aread(self):
        return b""

    async def aiter_text(self):
        for piece in self._pieces:
            yield piece


def _client_factory(captured, resp=None, stream_resp=None):
    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return resp

        def stream(self, method, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return stream_resp

    return Client


def test_parser_handles_split_objects():
    parser = GeminiStreamParser()
    first = _part("Hel")
    second = _part("lo")
    payload = "[" + first + ",\r\n" + second + "]"

    objects = []
    for i in range(0, len(payload), 7):
        objects.extend(parser.feed(payload[i:i + 7]))

    texts = [o["candidates"][0]["content"]["parts"][0]["text"] for o in objects]
    assert texts == ["Hel", "lo"]
    assert parser.pending == ""


def test_parser_keeps_incomplete_object():
    parser = GeminiStreamParser()
    assert parser.feed('[{"candidates": [') == []
    assert parser.pending.startswith('{"candidates"')


def test_history_mapping():
    history = format_gemini_history(
        [
            ChatMessage(role="system", content="ctx"),
            ChatMessage(role="system", content="ignored"),
            ChatMessage(role="user", content="q"),
            ChatMessage(role="assistant", content="a"),
        ]
    )
    assert [(h["role"], h["parts"][0]["text"]) for h in history] == [
        ("user", "ctx"),
        ("user", "q"),
        ("model", "a"),
    ]


@pytest.mark.parametrize(
    "url, stream, expected",
    [
        (BASE, True, BASE + ":streamGenerateContent"),
        (BASE + ":generateContent", True, BASE + ":streamGenerateContent"),
        (BASE + ":streamGenerateContent", False, BASE + ":generateContent"),
        (
            "https://generativelanguage.googleapis.com",
            False,
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent",
        ),
    ],
)
def test_build_gemini_url(url, stream, expected):
    assert build_gemini_url(url, stream) == expected


@pytest.mark.asyncio
async def test_chat(monkeypatch):
    class Resp:
        status_code = 200
        text = ""

        def json(self):
            return {
                "candidates": [{"content": {"parts": [{"text": "ok"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 1, "candidatesTokenCount": 1, "totalTokenCount": 2},
            }

    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, resp=Resp()))
    res = await GeminiClient(SettingsStub()).chat(_req())

    assert res.content == "ok"
    assert res.finish_reason == "STOP"
    assert res.usage.total_tokens == 2
    assert captured["url"] == BASE + ":generateContent"
    assert captured["headers"]["x-goog-api-key"] == "gkey"
    assert captured["json"]["generationConfig"]["maxOutputTokens"] == 4000


@pytest.mark.asyncio
async def test_chat_stream(monkeypatch):
    pieces = ["[" + _part("Hel")[:20], _part("Hel")[20:] + ",", _part("lo") + "]"]
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _client_factory(captured, stream_resp=StreamResp(pieces)))

    chunks = [c async for c in GeminiClient(SettingsStub()).chat_stream(_req())]
    assert [c.delta for c in chunks] == ["Hel", "lo"]
    assert captured["url"] == BASE + ":streamGenerateContent"


@pytest.mark.asyncio
async def test_chat_stream_truncated_raises(monkeypatch):
    pieces = ["[" + _part("Hel") + ",", '{"candidates": [{"content"']
    monkeypatch.setattr("httpx.AsyncClient", _client_factory({}, stream_resp=StreamResp(pieces)))

    with pytest.raises(DeserializationError):
        async for _ in GeminiClient(SettingsStub()).chat_stream(_req()):
            pass
