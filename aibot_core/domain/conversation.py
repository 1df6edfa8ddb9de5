"""会话状态。

ConversationState 同时维护两份序列：

- messages: UI 消息日志（含占位、状态提示等短暂条目）。
- history: 发给 LLM 的历史轮次。system 消息不会持久化在这里，
  每次发送时由编排器重新生成并插到最前面。

状态只应由 StreamOrchestrator 修改，展示层只读。
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import ChatMessage, Role


@dataclass
class Message:
    """UI 日志中的一条消息。

    - id: 会话内唯一，用于把流式增量关联到正确的消息。
    - streaming: 从第一个增量开始为 True，直到该消息的终态事件。
    """

    id: int
    role: Role
    content: str
    streaming: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


class MessageIdGenerator:
    """基于毫秒时间戳的单调 ID 生成器。"""

    def __init__(self):
        self._last = 0

    def __call__(self) -> int:
        candidate = int(time.time() * 1000)
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return candidate


class ConversationState:
    def __init__(self, id_generator: Optional[MessageIdGenerator] = None):
        self._next_id = id_generator or MessageIdGenerator()
        self.messages: List[Message] = []
        self.history: List[ChatMessage] = []
        self.streaming_message_id: Optional[int] = None
        self.is_loading = False
        # 工作项上下文解析完成前禁止发送
        self.context_ready = True
        self.revision = 0

    def next_message_id(self) -> int:
        return self._next_id()

    # ---- 读取 ----

    def get_message(self, message_id: int) -> Optional[Message]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def visible_messages(self) -> List[Message]:
        """返回可展示给用户的消息（system 消息除外）。"""

        return [m for m in self.messages if m.role != "system"]

    def streaming_messages(self) -> List[Message]:
        return [m for m in self.messages if m.streaming]

    # ---- 修改（仅限编排器） ----

    def add_message(self, message: Message) -> Message:
        self.messages.append(message)
        self._touch()
        return message

    def update_message(self, message_id: int, **changes: Any) -> Optional[Message]:
        msg = self.get_message(message_id)
        if msg is None:
            return None
        for key, value in changes.items():
            setattr(msg, key, value)
        self._touch()
        return msg

    def append_history(self, message: ChatMessage) -> None:
        if message.role == "system":
            raise ValueError("system messages are regenerated per send and never stored in history")
        self.history.append(message)
        self._touch()

    def set_streaming(self, message_id: int) -> None:
        """把 message_id 标记为唯一的流式消息。"""

        for msg in self.messages:
            msg.streaming = msg.id == message_id
        self.streaming_message_id = message_id
        self.is_loading = True
        self._touch()

    def clear_streaming(self) -> None:
        for msg in self.messages:
            msg.streaming = False
        self.streaming_message_id = None
        self.is_loading = False
        self._touch()

    def reset(self) -> None:
        self.messages.clear()
        self.history.clear()
        self.streaming_message_id = None
        self.is_loading = False
        self._touch()

    def _touch(self) -> None:
        self.revision += 1
