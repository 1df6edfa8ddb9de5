"""Gemini Provider 适配器。

与 OpenAI 风格接口的差异：
- URL: {base}/v1beta/models/{model}:generateContent 或 :streamGenerateContent
- 认证: x-goog-api-key: <api_key>
- 没有 system 角色：第一条 system 消息以 user 角色发送，其余 system 消息丢弃；
  assistant 映射为 model。
- 流式响应是一个逐步输出的 JSON 数组，而非 SSE，需要增量解析。
"""

import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from aibot_core.config.settings import settings
from aibot_core.domain.exceptions import DeserializationError, NetworkError, ValidationError
from aibot_core.domain.models import ChatMessage, ChatRequest, ChatResult, ChatStreamChunk, ChatUsage, LlmConfig
from aibot_core.providers.openai_client import _raise_for_status
from aibot_core.providers.registry import GEMINI_CONFIG
from aibot_core.infrastructure.logging.logger import logger

_MODEL_RE = re.compile(r"/models/([^/:?]+)")

# 缓冲区上限，防止异常流导致内存无限增长
MAX_BUFFER_CHARS = 1_000_000


class GeminiStreamParser:
    """把 streamGenerateContent 的 JSON 数组流切分为独立对象。

    输入形如 `[{...},\\r\\n{...}]`，可能在任意位置被截断。
    """

    def __init__(self):
        self._buffer = ""
        self._decoder = json.JSONDecoder()

    def feed(self, text: str) -> List[Dict[str, Any]]:
        self._buffer += text
        objects: List[Dict[str, Any]] = []
        while True:
            stripped = self._buffer.lstrip(" \t\r\n,[]")
            if not stripped:
                self._buffer = ""
                break
            try:
                obj, end = self._decoder.raw_decode(stripped)
            except json.JSONDecodeError:
                # 不完整的对象，等待更多数据
                self._buffer = stripped
                break
            if isinstance(obj, dict):
                objects.append(obj)
            self._buffer = stripped[end:]
        if len(self._buffer) > MAX_BUFFER_CHARS:
            logger.warning(
                "Buffer too large, clearing",
                extra={"extra": {"source": "GeminiStreamParser", "size": len(self._buffer)}},
            )
            self._buffer = ""
        return objects

    @property
    def pending(self) -> str:
        return self._buffer


class GeminiClient:
    """Gemini Provider 客户端实现。"""

    name = "gemini"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        url, headers = self._endpoint(req.config, stream=False)
        payload = self._build_payload(req)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider="gemini")
        _raise_for_status(resp.status_code, resp.text, "gemini")
        try:
            data = resp.json()
        except ValueError as e:
            raise DeserializationError(message=f"Invalid JSON from gemini: {e}")
        if not isinstance(data, dict):
            raise DeserializationError(message="Unexpected response body from gemini")
        text, finish_reason = _candidate_text(data)
        return ChatResult(
            provider="gemini",
            content=text,
            finish_reason=finish_reason,
            usage=_parse_usage(data.get("usageMetadata")),
            raw=data,
        )

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        url, headers = self._endpoint(req.config, stream=True)
        payload = self._build_payload(req)
        parser = GeminiStreamParser()
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        _raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"), "gemini")
                    async for text in resp.aiter_text():
                        for obj in parser.feed(text):
                            yield self._parse_stream_object(obj)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider="gemini")
        if parser.pending.strip(" \t\r\n,[]"):
            raise DeserializationError(message="Gemini stream ended with an incomplete JSON object")

    # ---- 辅助方法 ----

    def _endpoint(self, config: LlmConfig, stream: bool) -> Tuple[str, Dict[str, str]]:
        if not config.is_complete():
            raise ValidationError(
                code="INVALID_LLM_CONFIG",
                message="LLM provider, API URL, or API Token not configured correctly.",
            )
        headers = {"Content-Type": "application/json", "x-goog-api-key": config.api_token}
        return build_gemini_url(config.api_url, stream), headers

    def _build_payload(self, req: ChatRequest) -> dict:
        temperature = req.temperature if req.temperature is not None else req.config.temperature
        extra = GEMINI_CONFIG.extra
        return {
            "contents": format_gemini_history(req.messages),
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": req.max_tokens or req.config.max_tokens,
                "topP": extra["top_p"],
                "topK": extra["top_k"],
            },
            "safetySettings": extra["safety_settings"],
        }

    def _parse_stream_object(self, data: Dict[str, Any]) -> ChatStreamChunk:
        text, finish_reason = _candidate_text(data)
        return ChatStreamChunk(
            provider="gemini",
            delta=text,
            finish_reason=finish_reason,
            usage=_parse_usage(data.get("usageMetadata")),
            raw=data,
        )


def build_gemini_url(api_url: str, stream: bool) -> str:
    """把用户配置的地址规范化为 generateContent / streamGenerateContent 端点。"""

    action = ":streamGenerateContent" if stream else ":generateContent"
    url = api_url
    if ":streamGenerateContent" in url:
        return url if stream else url.replace(":streamGenerateContent", action)
    if ":generateContent" in url:
        return url.replace(":generateContent", action)
    match = _MODEL_RE.search(url)
    if match:
        base = url.split("/models/")[0]
        return f"{base}/models/{match.group(1)}{action}"
    if not url.endswith("/"):
        url += "/"
    logger.warning(
        "Gemini model not found in URL, assuming default",
        extra={"extra": {"source": "GeminiClient", "model": GEMINI_CONFIG.default_model}},
    )
    return f"{url}{GEMINI_CONFIG.default_path}/{GEMINI_CONFIG.default_model}{action}"


def format_gemini_history(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = []
    has_system = False
    for msg in messages:
        if msg.role == "system":
            if has_system:
                continue
            has_system = True
            role = "user"
        else:
            role = "model" if msg.role == "assistant" else "user"
        formatted.append({"role": role, "parts": [{"text": msg.content}]})
    return formatted


def _candidate_text(data: Dict[str, Any]) -> Tuple[str, Any]:
    candidates = data.get("candidates") or []
    if not candidates:
        return "", None
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict))
    return text, first.get("finishReason")


def _parse_usage(usage_raw: Any) -> Optional[ChatUsage]:
    if not usage_raw:
        return None
    return ChatUsage(
        prompt_tokens=usage_raw.get("promptTokenCount", 0),
        completion_tokens=usage_raw.get("candidatesTokenCount", 0),
        total_tokens=usage_raw.get("totalTokenCount", 0),
    )
