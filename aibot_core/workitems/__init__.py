"""工作项上下文解析。

- host: 宿主环境服务协议（当前工作项 ID、表单字段、访问令牌）。
- cache: 按 ID 缓存工作项快照的会话级缓存。
- rest_client: 工作项 REST 接口客户端。
- resolver: REST 优先、逐级降级的上下文解析器。
"""
