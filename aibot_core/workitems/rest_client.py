"""工作项 REST 客户端。

请求形如：

    GET {base}/{organization}/{project}/_apis/wit/workItems/{id}
        ?api-version=7.1&fields=...&$expand=relations

响应 `{id, rev, fields: {...}, relations: [{rel, url, attributes}]}` 会被解析为
WorkItemRef，并在此处完成关系种类的归一化。

错误映射：
- 网络错误 / 令牌获取失败 / 401 / 403 / 其他非 2xx -> TransportError
- 404 -> NotFoundError
- 非 JSON 或缺少 id -> DeserializationError
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Sequence

import httpx

from aibot_core.config.settings import settings
from aibot_core.domain.exceptions import DeserializationError, NotFoundError, TransportError, ValidationError
from aibot_core.domain.work_items import REST_FIELDS, WorkItemRef
from aibot_core.infrastructure.logging.logger import log_event
from aibot_core.workitems.host import HostContext, HostEnvironment


class WorkItemRestClient:
    def __init__(
        self,
        host: HostEnvironment,
        cfg=settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._host = host
        self._settings = cfg
        self._transport = transport
        self._context: Optional[HostContext] = None

    async def initialize_context(self) -> HostContext:
        """确定组织与项目：优先使用配置，缺失部分向宿主查询，结果只计算一次。"""

        if self._context is not None and self._context.complete:
            return self._context
        organization = getattr(self._settings, "devops_organization", None)
        project = getattr(self._settings, "devops_project", None)
        if not (organization and project):
            host_ctx = await self._host.get_organization_and_project()
            organization = organization or host_ctx.organization
            project = project or host_ctx.project
        self._context = HostContext(organization=organization, project=project)
        log_event(
            logging.INFO,
            "Context initialized",
            {"source": "WorkItemRestClient"},
            organization=organization,
            project=project,
        )
        return self._context

    @property
    def project_name(self) -> Optional[str]:
        return self._context.project if self._context else None

    async def get_work_item(
        self,
        item_id: int,
        fields: Optional[Sequence[str]] = REST_FIELDS,
        expand_relations: bool = True,
    ) -> WorkItemRef:
        """获取单个工作项。fields 为 None 时不过滤字段。"""

        if not item_id:
            raise ValidationError(code="INVALID_ID", message="Cannot fetch work item: ID is undefined or zero")
        ctx = await self.initialize_context()
        if not ctx.complete:
            raise ValidationError(
                code="MISSING_CONTEXT",
                message="Organization or project not available",
                organization=ctx.organization,
                project=ctx.project,
            )
        url = self._item_url(ctx, item_id)
        params: Dict[str, str] = {"api-version": self._settings.devops_api_version}
        if fields:
            params["fields"] = ",".join(fields)
        if expand_relations:
            params["$expand"] = "relations"

        token = await self._access_token()
        log_ctx = {"source": "WorkItemRestClient", "work_item_id": item_id}
        log_event(logging.DEBUG, f"REQUEST: GET {url}", log_ctx, params=params)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                transport=self._transport,
                trust_env=False,
            ) as client:
                resp = await client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise TransportError(code="NETWORK_ERROR", message=f"Network error: {e}", work_item_id=item_id)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        log_event(
            logging.DEBUG,
            f"RESPONSE: GET {url} - Status: {resp.status_code} ({elapsed_ms}ms)",
            log_ctx,
            status=resp.status_code,
        )
        self._raise_for_status(resp, item_id)
        data = self._parse_body(resp, item_id)
        item = WorkItemRef.from_payload(data, project_name=ctx.project)
        log_event(
            logging.INFO,
            f"Successfully fetched work item {item_id} with {len(item.relations)} relations",
            log_ctx,
            elapsed_ms=elapsed_ms,
        )
        return item

    async def _access_token(self) -> str:
        try:
            token = await self._host.get_access_token()
        except Exception as e:
            raise TransportError(
                code="AUTH_ERROR",
                message=f"Authentication failed: Could not get access token - {e}",
            ) from e
        if not token:
            raise TransportError(code="AUTH_ERROR", message="Authentication failed: Access token is empty or undefined")
        return token

    def _item_url(self, ctx: HostContext, item_id: int) -> str:
        base = self._settings.devops_base_url.rstrip("/")
        return f"{base}/{ctx.organization}/{ctx.project}/_apis/wit/workItems/{item_id}"

    @staticmethod
    def _raise_for_status(resp: httpx.Response, item_id: int) -> None:
        status = resp.status_code
        if status < 400:
            return
        details = resp.text or f"Status {status}"
        try:
            error_json = json.loads(details)
            if isinstance(error_json, dict) and error_json.get("message"):
                details = error_json["message"]
        except json.JSONDecodeError:
            # 非 JSON 错误体，保留原文
            pass
        if status == 404:
            raise NotFoundError(message=f"Work item {item_id} not found", work_item_id=item_id)
        if status in (401, 403):
            raise TransportError(
                code="AUTH_ERROR",
                message=f"Authentication failed with status {status}: {details}",
                http_status=status,
            )
        if status == 400:
            raise TransportError(code="BAD_REQUEST", message=f"Bad request: {details}", http_status=status)
        raise TransportError(
            code="API_ERROR",
            message=f"REST API request failed with status {status}: {details}",
            http_status=status,
        )

    @staticmethod
    def _parse_body(resp: httpx.Response, item_id: int) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise DeserializationError(message=f"Failed to parse response: {e}", work_item_id=item_id)
        if not isinstance(data, dict) or "id" not in data:
            raise DeserializationError(message=f"Response for work item {item_id} has no id", work_item_id=item_id)
        return data
