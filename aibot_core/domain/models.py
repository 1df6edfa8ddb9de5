"""统一的对话与结果数据模型。

本模块定义了在不同 LLM Provider 之间共享的标准数据结构：

- ChatMessage: 一条发给 LLM 的历史消息（system/user/assistant）。
- ChatRequest: 发给底层 Provider 的完整请求。
- ChatResult: 从 Provider 解析后的统一响应结果。
- ChatStreamChunk: 流式响应中的一条增量。
- LlmConfig: 一套 LLM 连接配置（provider、地址、凭据）。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List


# LLM 消息角色类型
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。
    - meta: 附加元数据，不直接发给 Provider，主要用于日志。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LlmConfig:
    """一套 LLM 连接配置。

    对编排核心而言是不透明的：只有 Provider 适配层会读取其中的字段。
    """

    provider: str
    api_url: str
    api_token: str
    temperature: float = 0.7
    max_tokens: int = 4000
    id: str = "default"
    name: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.provider and self.api_url and self.api_token)


@dataclass
class ChatRequest:
    """一次完整的聊天请求。"""

    config: LlmConfig
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。"""

    provider: str
    content: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[Any] = None


@dataclass
class ChatStreamChunk:
    """流式对话的增量结果。

    delta 为本次增量文本（可能为空字符串，例如只携带 finish_reason 或 usage 的尾包）。
    """

    provider: str
    delta: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[Any] = None
