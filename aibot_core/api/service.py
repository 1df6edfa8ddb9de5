"""对外 API 服务模块。

AssistantSession 是单个助手面板会话的组合根：
缓存、REST 客户端、上下文解析器、会话状态、传输层与编排器都在这里按会话构造，
不使用模块级单例。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from aibot_core.agents.orchestrator import OrchestratorConfig, StreamOrchestrator
from aibot_core.agents.session import StreamSession
from aibot_core.config.settings import settings
from aibot_core.domain.conversation import ConversationState
from aibot_core.domain.models import LlmConfig
from aibot_core.domain.work_items import WorkItemContext
from aibot_core.infrastructure.logging.logger import log_event
from aibot_core.prompts.context_prompt import build_context_prompt, is_context_prompt
from aibot_core.providers.transport import LlmTransport
from aibot_core.workitems.cache import WorkItemCache
from aibot_core.workitems.host import HostEnvironment
from aibot_core.workitems.resolver import ContextResolver
from aibot_core.workitems.rest_client import WorkItemRestClient


class AssistantSession:
    def __init__(
        self,
        host: HostEnvironment,
        cfg=settings,
        llm_config: Optional[LlmConfig] = None,
        transport: Optional[LlmTransport] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            host: 宿主环境服务（当前工作项 ID、表单字段、令牌、组织 / 项目）
            cfg: 配置对象，默认使用全局 settings
            llm_config: LLM 连接配置，缺省时由 cfg.llm_config() 生成
            transport: LLM 传输层（测试时可替换）
            http_transport: 工作项 REST 请求使用的 httpx 传输（测试时可替换）
        """
        self._settings = cfg
        self.cache = WorkItemCache()
        self.rest_client = WorkItemRestClient(host, cfg, transport=http_transport)
        self.resolver = ContextResolver(host, self.rest_client, self.cache, cfg)
        self.state = ConversationState()
        self.context: Optional[WorkItemContext] = None
        self.orchestrator = StreamOrchestrator(
            transport=transport or LlmTransport(),
            llm_config=llm_config or cfg.llm_config(),
            state=self.state,
            context_provider=self._context_prompt,
            config=OrchestratorConfig.from_settings(cfg),
        )

    async def refresh_context(self, clear_cache: bool = False) -> WorkItemContext:
        """重新解析工作项层级。解析期间禁止发送。"""

        if clear_cache:
            self.cache.clear()
        self.state.context_ready = False
        try:
            self.context = await self.resolver.resolve_context()
        finally:
            self.state.context_ready = True
        return self.context

    async def _context_prompt(self) -> str:
        """每次发送都重新解析当前工作项，重复查询由缓存吸收。"""

        self.context = await self.resolver.resolve_context()
        ctx = self.context
        prompt = build_context_prompt(
            ctx.current,
            ctx.parent,
            ctx.children,
            language=self._settings.default_language,
        )
        if not is_context_prompt(prompt):
            log_event(logging.INFO, "No work item context available for send", {"source": "AssistantSession"})
        return prompt

    async def send_message(self, prompt: str, wait: bool = True) -> Optional[StreamSession]:
        """发送一条用户消息。

        wait=True 时等待该次发送到达终态后再返回。被拒绝时返回 None。
        """

        session = await self.orchestrator.send(prompt)
        if session is None:
            return None
        if wait:
            await session.wait()
        return session

    def cancel(self) -> bool:
        return self.orchestrator.cancel()

    def reset_conversation(self) -> None:
        self.orchestrator.cancel()
        self.state.reset()
        log_event(logging.INFO, "Conversation reset", {"source": "AssistantSession"})

    def messages(self) -> List[Dict[str, Any]]:
        """返回可展示的消息列表。"""

        return [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "streaming": m.streaming,
                "meta": m.meta,
            }
            for m in self.state.visible_messages()
        ]
