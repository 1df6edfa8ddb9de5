"""面向编排器的 LLM 传输层。

ProviderClient 负责“厂商 JSON ⇄ 统一模型”的转换；LlmTransport 在其上实现
回调式契约：

- send(...): 流式模式。on_chunk 被调用零次或多次，之后 on_complete / on_error
  恰好触发一次；若取消先发生，两者都不触发。
- send_and_await(...): 缓冲模式，直接返回完整文本，失败时抛出异常。
"""

import asyncio
import logging
from typing import Callable, List, Optional

from aibot_core.domain.exceptions import BusinessError, StreamCancelledError, TransportError
from aibot_core.domain.models import ChatMessage, ChatRequest, LlmConfig
from aibot_core.infrastructure.logging.logger import log_event, logger
from aibot_core.providers import create_provider
from aibot_core.providers.base import ProviderClient


ChunkCallback = Callable[[str], None]
CompleteCallback = Callable[[str], None]
ErrorCallback = Callable[[BaseException], None]
ProviderFactory = Callable[[LlmConfig], ProviderClient]


class CancellationHandle:
    """单个流式会话的取消句柄。

    cancel() 幂等：第一次调用会设置事件并取消绑定的传输任务，之后的调用什么也不做。
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        if self.cancelled and not task.done():
            task.cancel()

    def cancel(self) -> bool:
        if self._event.is_set():
            return False
        self._event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> None:
        await self._event.wait()


def build_request_messages(prompt: str, language: str, history: List[ChatMessage]) -> List[ChatMessage]:
    """补齐发给 Provider 的消息列表。

    - 历史里没有 system 消息时，插入一条语言指令；
    - 最后一条不是 user 时，把 prompt 作为 user 消息追加。
    """

    messages = list(history)
    if not any(m.role == "system" for m in messages):
        messages.insert(0, ChatMessage(role="system", content=f"Please provide your response in {language} language."))
    if prompt and (not messages or messages[-1].role != "user"):
        messages.append(ChatMessage(role="user", content=prompt))
    return messages


class LlmTransport:
    def __init__(self, provider_factory: ProviderFactory = create_provider):
        self._provider_factory = provider_factory

    async def send(
        self,
        config: LlmConfig,
        prompt: str,
        language: str,
        history: List[ChatMessage],
        cancellation: CancellationHandle,
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> None:
        log_ctx = {"source": "LlmTransport", "provider": config.provider if config else None}
        pieces: List[str] = []
        try:
            provider = self._provider_factory(config)
            req = ChatRequest(config=config, messages=build_request_messages(prompt, language, history))
            log_event(logging.INFO, "Streaming prompt to LLM", log_ctx, message_count=len(req.messages))
            stream = provider.chat_stream(req)
            try:
                async for chunk in stream:
                    if cancellation.cancelled:
                        log_event(logging.INFO, "Stream aborted by caller", log_ctx)
                        return
                    if chunk.delta:
                        pieces.append(chunk.delta)
                        on_chunk(chunk.delta)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        except asyncio.CancelledError:
            if cancellation.cancelled:
                log_event(logging.INFO, "Stream task cancelled", log_ctx)
                return
            raise
        except StreamCancelledError:
            return
        except BusinessError as e:
            if cancellation.cancelled:
                return
            log_event(logging.ERROR, "Stream error", log_ctx, code=e.code, error=e.message)
            on_error(e)
            return
        except Exception as e:
            if cancellation.cancelled:
                return
            logger.exception("Unexpected stream failure", extra={"extra": log_ctx})
            on_error(TransportError(code="STREAM_ERROR", message=str(e) or e.__class__.__name__))
            return
        if cancellation.cancelled:
            return
        full_text = "".join(pieces)
        log_event(logging.INFO, "Stream complete", log_ctx, response_length=len(full_text))
        on_complete(full_text)

    async def send_and_await(
        self,
        config: LlmConfig,
        prompt: str,
        language: str,
        history: List[ChatMessage],
    ) -> str:
        log_ctx = {"source": "LlmTransport", "provider": config.provider if config else None}
        provider = self._provider_factory(config)
        req = ChatRequest(config=config, messages=build_request_messages(prompt, language, history))
        log_event(logging.INFO, "Fetching complete response", log_ctx, message_count=len(req.messages))
        result = await provider.chat(req)
        log_event(logging.INFO, "Received complete response", log_ctx, response_length=len(result.content))
        return result.content
