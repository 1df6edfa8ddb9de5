"""流式对话编排器。

状态机（每个 StreamSession）：

    idle -> sending -> streaming -> (complete | errored | aborted) -> idle

编排器负责：
- 每次发送重新生成 system 上下文消息并插到历史最前面；
- 把传输层回调关联到产生它的会话，过期会话的回调一律丢弃；
- 取消（幂等）与看门狗兜底复位；
- stream / buffered 两种模式下产生相同形状的历史：[..., user, assistant]。

只有完成的轮次才会写入 history，取消与失败的尝试不留下任何历史条目。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from aibot_core.agents.session import StreamSession, StreamState
from aibot_core.domain.conversation import ConversationState, Message
from aibot_core.domain.exceptions import BusinessError, OperationTimeoutError, StreamCancelledError
from aibot_core.domain.models import ChatMessage, LlmConfig
from aibot_core.infrastructure.logging.logger import logger
from aibot_core.prompts.context_prompt import normalize_escaped_newlines
from aibot_core.providers.transport import LlmTransport


PLACEHOLDER_CONTENT = "..."

ContextProvider = Callable[[], Awaitable[Optional[str]]]


@dataclass
class OrchestratorConfig:
    mode: Literal["stream", "buffered"] = "stream"
    watchdog_seconds: float = 30.0  # 兜底复位时限（秒）
    language: str = "en"

    @classmethod
    def from_settings(cls, cfg) -> "OrchestratorConfig":
        return cls(
            mode=cfg.stream_mode,
            watchdog_seconds=cfg.watchdog_seconds,
            language=cfg.default_language,
        )


def format_error_message(err: BaseException) -> str:
    if isinstance(err, BusinessError):
        detail = err.message or err.code
    else:
        detail = str(err) or err.__class__.__name__
    detail = detail.rstrip(".") or err.__class__.__name__
    return normalize_escaped_newlines(f"Error: {detail}. Please try again.")


class StreamOrchestrator:
    def __init__(
        self,
        transport: Optional[LlmTransport],
        llm_config: Optional[LlmConfig],
        state: ConversationState,
        context_provider: Optional[ContextProvider] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self._transport = transport
        self._llm_config = llm_config
        self._state = state
        self._context_provider = context_provider
        self._config = config or OrchestratorConfig()
        self._active: Optional[StreamSession] = None

    @property
    def active_session(self) -> Optional[StreamSession]:
        return self._active

    @property
    def stream_state(self) -> StreamState:
        return self._active.state if self._active is not None else StreamState.IDLE

    @property
    def conversation(self) -> ConversationState:
        return self._state

    def can_send(self) -> bool:
        return (
            self._active is None
            and self._transport is not None
            and self._llm_config is not None
            and self._state.context_ready
        )

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------
    async def send(self, prompt: str) -> Optional[StreamSession]:
        """发起一次发送。被拒绝时返回 None。

        返回的会话在后台任务中运行，调用方可通过 session.wait() 等待终态。
        """

        log_ctx: Dict[str, Any] = {"mode": self._config.mode}
        if not prompt or not prompt.strip():
            self._log(logging.DEBUG, "Send refused: empty prompt", log_ctx)
            return None
        if not self.can_send():
            self._log(
                logging.INFO,
                "Send refused",
                log_ctx,
                active=self._active is not None,
                configured=self._llm_config is not None and self._transport is not None,
                context_ready=self._state.context_ready,
            )
            return None

        prompt = prompt.strip()
        self._state.add_message(Message(id=self._state.next_message_id(), role="user", content=prompt))
        placeholder = self._state.add_message(
            Message(id=self._state.next_message_id(), role="assistant", content=PLACEHOLDER_CONTENT)
        )
        self._state.set_streaming(placeholder.id)

        session = StreamSession(prompt=prompt, message_id=placeholder.id)
        self._active = session
        log_ctx["session_id"] = session.id
        self._log(logging.INFO, "Send started", log_ctx, message_id=placeholder.id)

        self._arm_watchdog(session)
        session.task = asyncio.create_task(self._run(session))
        session.cancellation.bind(session.task)
        return session

    async def _run(self, session: StreamSession) -> None:
        try:
            system_prompt = await self._resolve_context(session)
            if session is not self._active:
                return
            history = self._build_history(session.prompt, system_prompt)
            if self._config.mode == "buffered":
                await self._run_buffered(session, history)
            else:
                await self._transport.send(
                    self._llm_config,
                    session.prompt,
                    self._config.language,
                    history,
                    session.cancellation,
                    on_chunk=partial(self.on_chunk, session),
                    on_complete=partial(self.on_complete, session),
                    on_error=partial(self.on_error, session),
                )
        except asyncio.CancelledError:
            if session.cancellation.cancelled:
                return
            raise
        except Exception as e:
            logger.exception("Unexpected orchestrator failure", extra={"extra": {"session_id": session.id}})
            self.on_error(session, e)

    async def _run_buffered(self, session: StreamSession, history: List[ChatMessage]) -> None:
        try:
            text = await self._transport.send_and_await(
                self._llm_config,
                session.prompt,
                self._config.language,
                history,
            )
        except Exception as e:
            self.on_error(session, e)
            return
        self.on_complete(session, text)

    async def _resolve_context(self, session: StreamSession) -> Optional[str]:
        if self._context_provider is None:
            return None
        try:
            return await self._context_provider()
        except Exception as e:
            self._log(
                logging.WARNING,
                "Context resolution failed, sending without work item context",
                {"session_id": session.id},
                error=str(e),
            )
            return None

    def _build_history(self, prompt: str, system_prompt: Optional[str]) -> List[ChatMessage]:
        history: List[ChatMessage] = []
        if system_prompt:
            history.append(ChatMessage(role="system", content=system_prompt))
        history.extend(m for m in self._state.history if m.role != "system")
        history.append(ChatMessage(role="user", content=prompt))
        return history

    # ------------------------------------------------------------------
    # 传输层回调（第一个参数固定为产生回调的会话）
    # ------------------------------------------------------------------
    def _is_current(self, session: StreamSession, event: str) -> bool:
        if session is self._active:
            return True
        self._log(logging.DEBUG, f"Ignoring stale {event} callback", {"session_id": session.id})
        return False

    def on_chunk(self, session: StreamSession, text: str) -> None:
        if not self._is_current(session, "chunk") or not text:
            return
        if session.state is StreamState.SENDING:
            session.state = StreamState.STREAMING
            session.text = text
        else:
            session.text += text
        self._state.update_message(session.message_id, content=session.text)
        self._arm_watchdog(session)

    def on_complete(self, session: StreamSession, full_text: str) -> None:
        if not self._is_current(session, "complete"):
            return
        text = normalize_escaped_newlines(full_text if full_text is not None else session.text)
        session.text = text
        self._state.update_message(session.message_id, content=text, streaming=False)
        self._state.append_history(ChatMessage(role="user", content=session.prompt))
        self._state.append_history(ChatMessage(role="assistant", content=text))
        session.state = StreamState.COMPLETE
        self._log(
            logging.INFO,
            "Send complete",
            {"session_id": session.id},
            response_length=len(text),
            elapsed_ms=int((time.monotonic() - session.started_at) * 1000),
        )
        self._release(session)

    def on_error(self, session: StreamSession, err: BaseException) -> None:
        if not self._is_current(session, "error"):
            return
        if isinstance(err, (StreamCancelledError, asyncio.CancelledError)):
            self._abort(session, "cancelled")
            return
        session.error = err
        self._state.update_message(session.message_id, content=format_error_message(err), streaming=False)
        session.state = StreamState.ERRORED
        self._log(
            logging.ERROR,
            "Send failed",
            {"session_id": session.id},
            error=str(err),
            error_type=err.__class__.__name__,
        )
        self._release(session)

    # ------------------------------------------------------------------
    # 取消与看门狗
    # ------------------------------------------------------------------
    def cancel(self) -> bool:
        """取消当前会话。没有活动会话时什么也不做并返回 False。"""

        session = self._active
        if session is None:
            return False
        session.cancellation.cancel()
        self._abort(session, "user")
        return True

    def _abort(self, session: StreamSession, reason: str) -> None:
        # 保留已累计的内容，只清除 streaming 标记
        self._state.update_message(session.message_id, streaming=False)
        session.state = StreamState.ABORTED
        self._log(logging.INFO, "Send aborted", {"session_id": session.id}, reason=reason)
        self._release(session)

    def _arm_watchdog(self, session: StreamSession) -> None:
        """（重新）启动看门狗。计时从最近一次收到内容块开始。"""

        self._cancel_watchdog(session)
        session.watchdog = asyncio.create_task(self._watchdog(session))

    @staticmethod
    def _cancel_watchdog(session: StreamSession) -> None:
        watchdog = session.watchdog
        if watchdog is not None and watchdog is not asyncio.current_task() and not watchdog.done():
            watchdog.cancel()

    async def _watchdog(self, session: StreamSession) -> None:
        await asyncio.sleep(self._config.watchdog_seconds)
        if session is not self._active:
            return
        elapsed = time.monotonic() - session.started_at
        self._log(
            logging.WARNING,
            "Watchdog fired, forcing stream reset",
            {"session_id": session.id},
            elapsed_s=round(elapsed, 1),
            idle_s=self._config.watchdog_seconds,
        )
        session.error = OperationTimeoutError("stream session", elapsed)
        session.cancellation.cancel()
        self._abort(session, "watchdog")

    def _release(self, session: StreamSession) -> None:
        if self._active is session:
            self._active = None
        self._state.clear_streaming()
        self._cancel_watchdog(session)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        payload.setdefault("source", "StreamOrchestrator")
        logger.log(level, message, extra={"extra": payload})
