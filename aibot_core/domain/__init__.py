"""领域层模型与协议。

包含：
- models: 统一的 ChatMessage / ChatRequest / ChatResult / LlmConfig 模型。
- work_items: 工作项快照、关系归一化与层级上下文。
- conversation: UI 消息日志与发给 LLM 的历史。
- exceptions: 业务异常类型定义。
"""
