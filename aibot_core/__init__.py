"""AI Bot Core 顶层包。

该包提供工作项助手的核心实现，包括配置加载、领域模型、
工作项层级解析、上下文提示词构造、LLM Provider 适配以及流式对话编排。
"""

from aibot_core.api.service import AssistantSession

__all__ = ["AssistantSession"]
