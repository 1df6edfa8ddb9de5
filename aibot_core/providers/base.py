"""Provider 抽象接口。

上层编排器不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient、GeminiClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult / ChatStreamChunk。

这样可以在不改编排代码的前提下接入更多厂商。
"""

from typing import AsyncIterator, Protocol

from aibot_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult。
    - chat_stream(req): 执行一次流式对话调用，逐步产出增量。

    网络错误统一抛出 NetworkError，非 2xx 抛出 ApiError / RateLimitError，
    响应体无法解析时抛出 DeserializationError。
    """

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...
