"""OpenAI / Azure OpenAI Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 chat/completions 的 HTTP 请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON（或 SSE 增量）解析为统一的 ChatResult / ChatStreamChunk。

两家接口几乎一致，差异只在认证头与 URL：
- openai: Authorization: Bearer <token>，URL 缺路径时补全 v1/chat/completions。
- azure-openai: api-key: <token>，URL 缺 api-version 时追加默认版本。
"""

import json
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from aibot_core.config.settings import settings
from aibot_core.domain.exceptions import (
    ApiError,
    DeserializationError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from aibot_core.domain.models import ChatMessage, ChatRequest, ChatResult, ChatStreamChunk, ChatUsage, LlmConfig
from aibot_core.providers.registry import AZURE_OPENAI_CONFIG, OPENAI_CONFIG
from aibot_core.infrastructure.logging.logger import logger


class OpenAIClient:
    """OpenAI 兼容接口客户端实现（同时覆盖 Azure OpenAI）。"""

    name = "openai"

    def __init__(self, cfg=settings):
        # Settings 里包含 HTTP 超时等配置
        self._settings = cfg

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        url, headers = self._endpoint(req.config)
        payload = self._build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=req.config.provider)
        _raise_for_status(resp.status_code, resp.text, req.config.provider)
        try:
            data = resp.json()
        except ValueError as e:
            raise DeserializationError(message=f"Invalid JSON from {req.config.provider}: {e}")
        return self._parse_response(data, req.config.provider)

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        """执行一次流式对话调用，逐步 yield ChatStreamChunk。"""

        url, headers = self._endpoint(req.config)
        payload = self._build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        _raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"), req.config.provider)
                    async for line in resp.aiter_lines():
                        data_str = _sse_data(line)
                        if data_str is None:
                            continue
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            logger.warning(
                                "Error parsing SSE chunk",
                                extra={"extra": {"source": "OpenAIClient", "line": line}},
                            )
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req.config.provider)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=req.config.provider)

    # ---- 辅助方法 ----

    def _endpoint(self, config: LlmConfig) -> Tuple[str, Dict[str, str]]:
        """根据 provider 计算请求 URL 与认证头。"""

        if not config.is_complete():
            raise ValidationError(
                code="INVALID_LLM_CONFIG",
                message="LLM provider, API URL, or API Token not configured correctly.",
            )
        url = config.api_url
        headers = {"Content-Type": "application/json"}
        if config.provider == "azure-openai":
            headers["api-key"] = config.api_token
            if "api-version=" not in url:
                separator = "&" if "?" in url else "?"
                url = f"{url}{separator}api-version={AZURE_OPENAI_CONFIG.default_api_version}"
                logger.warning(
                    "Azure OpenAI API version not found in URL, appending default",
                    extra={"extra": {"source": "OpenAIClient", "api_version": AZURE_OPENAI_CONFIG.default_api_version}},
                )
        else:
            headers["Authorization"] = f"Bearer {config.api_token}"
            if not url.endswith("/" + OPENAI_CONFIG.default_path):
                if not url.endswith("/"):
                    url += "/"
                url += OPENAI_CONFIG.default_path
        return url, headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        """将 ChatRequest 转成 chat/completions 所需的请求 JSON。"""

        temperature = req.temperature if req.temperature is not None else req.config.temperature
        return {
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": temperature,
            "max_tokens": req.max_tokens or req.config.max_tokens,
            "stream": stream,
        }

    def _parse_response(self, data: Any, provider: str) -> ChatResult:
        if not isinstance(data, dict):
            raise DeserializationError(message=f"Unexpected response body from {provider}")
        choices = data.get("choices") or []
        content = ""
        finish_reason = None
        if choices:
            first = choices[0] or {}
            content = (first.get("message") or {}).get("content") or ""
            finish_reason = first.get("finish_reason")
        return ChatResult(
            provider=provider,
            content=content,
            finish_reason=finish_reason,
            usage=_parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, provider: str) -> ChatStreamChunk:
        """解析流式响应中的单条增量（只取第一个 choice）。"""

        delta = ""
        finish_reason = None
        choices = data.get("choices") or []
        if choices:
            first = choices[0] or {}
            delta = (first.get("delta") or {}).get("content") or ""
            finish_reason = first.get("finish_reason")
        return ChatStreamChunk(
            provider=provider,
            delta=delta,
            finish_reason=finish_reason,
            usage=_parse_usage(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}


def _sse_data(line: str) -> Optional[str]:
    """提取一行 SSE 的 data 字段；空行、注释与 [DONE] 返回 None。"""

    if not line:
        return None
    data_str = line
    if data_str.startswith("data:"):
        data_str = data_str[5:].strip()
    else:
        data_str = data_str.strip()
    if not data_str or data_str.startswith(":") or data_str == "[DONE]":
        return None
    return data_str


def _parse_usage(usage_raw: Optional[dict]) -> Optional[ChatUsage]:
    if not usage_raw:
        return None
    return ChatUsage(
        prompt_tokens=usage_raw.get("prompt_tokens", 0),
        completion_tokens=usage_raw.get("completion_tokens", 0),
        total_tokens=usage_raw.get("total_tokens", 0),
    )


def _raise_for_status(status_code: int, body: str, provider: str) -> None:
    if status_code == 429:
        # 限流错误不自动重试，交给用户决定
        raise RateLimitError(code="RATE_LIMIT", message=f"{provider} rate limit", http_status=429)
    if status_code >= 400:
        detail = body
        try:
            error_json = json.loads(body)
            if isinstance(error_json, dict):
                err = error_json.get("error")
                if isinstance(err, dict) and err.get("message"):
                    detail = err["message"]
                elif error_json.get("message"):
                    detail = error_json["message"]
        except json.JSONDecodeError:
            # 非 JSON 错误体，保留原文
            pass
        raise ApiError(
            code="API_ERROR",
            message=f"API request failed with status {status_code}: {detail}",
            http_status=status_code,
            provider=provider,
        )
