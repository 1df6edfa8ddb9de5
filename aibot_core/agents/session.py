"""流式会话对象。

每次发送创建一个 StreamSession，回调通过会话对象本身（而不是“当前会话”）
关联到编排器，过期会话的回调会被直接丢弃。
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from uuid import uuid4

from aibot_core.providers.transport import CancellationHandle


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({StreamState.COMPLETE, StreamState.ERRORED, StreamState.ABORTED})


@dataclass(eq=False)
class StreamSession:
    """一次 LLM 请求从发送到终态的生命周期。

    - message_id: 占位 / 流式消息在 ConversationState 中的 ID。
    - text: 已累计的增量文本。
    - task / watchdog: 传输任务与看门狗任务，由编排器管理。
    """

    prompt: str
    message_id: int
    id: str = field(default_factory=lambda: f"ss-{uuid4().hex}")
    cancellation: CancellationHandle = field(default_factory=CancellationHandle)
    state: StreamState = StreamState.SENDING
    text: str = ""
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    async def wait(self) -> None:
        """等待传输任务结束（不抛出任务自身的异常或取消）。"""

        if self.task is not None and not self.task.done():
            await asyncio.wait({self.task})
