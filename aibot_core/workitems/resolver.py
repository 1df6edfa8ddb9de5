"""工作项层级解析。

ContextResolver 负责找到用户正在查看的工作项以及它的父 / 子工作项。
所有公开协程都不抛异常：失败时记录日志并降级（返回 None 或空列表）。

获取当前工作项的降级链：

1. REST（带关系，受超时保护，结果写入缓存）；
2. 宿主表单服务读取完整字段；
3. 宿主表单服务读取最小字段；
4. 仅含 ID 的合成占位。

走降级路径时会再尝试一次不带字段过滤和 $expand 的简化 REST 调用，
成功则把其字段覆盖到表单字段之上。降级结果没有关系数据，不写入缓存。
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from aibot_core.config.settings import settings
from aibot_core.domain.work_items import (
    FIELD_ID,
    FIELD_TITLE,
    FIELD_TYPE,
    FORM_FIELDS,
    MINIMAL_FIELDS,
    RelationKind,
    WorkItemContext,
    WorkItemRef,
    extract_work_item_id,
)
from aibot_core.infrastructure.logging.logger import log_event
from aibot_core.infrastructure.timeout import with_timeout
from aibot_core.workitems.cache import WorkItemCache
from aibot_core.workitems.host import HostEnvironment
from aibot_core.workitems.rest_client import WorkItemRestClient


class ContextResolver:
    def __init__(
        self,
        host: HostEnvironment,
        rest_client: WorkItemRestClient,
        cache: Optional[WorkItemCache] = None,
        cfg=settings,
    ):
        self._host = host
        self._rest = rest_client
        self._cache = cache if cache is not None else WorkItemCache()
        self._settings = cfg

    @property
    def cache(self) -> WorkItemCache:
        return self._cache

    @staticmethod
    def _log(level: int, msg: str, **fields: Any) -> None:
        log_event(level, msg, {"source": "ContextResolver"}, **fields)

    # ------------------------------------------------------------------
    # 单个工作项
    # ------------------------------------------------------------------
    async def fetch_work_item(self, item_id: int) -> Optional[WorkItemRef]:
        """REST 优先获取工作项：先查缓存，未命中时在超时保护下调用 REST。"""

        cached = self._cache.get(item_id)
        if cached is not None:
            self._log(logging.DEBUG, f"Cache hit for work item {item_id}", work_item_id=item_id)
            return cached
        try:
            item = await with_timeout(
                self._rest.get_work_item(item_id),
                self._settings.workitem_api_timeout,
                label=f"REST API fetch for work item {item_id}",
            )
        except Exception as e:
            self._log(
                logging.WARNING,
                f"Failed to fetch work item {item_id}",
                work_item_id=item_id,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return None
        self._cache.put(item)
        return item

    async def get_current_work_item(self) -> Optional[WorkItemRef]:
        try:
            item_id = await self._host.get_current_item_id()
        except Exception as e:
            self._log(logging.ERROR, "Error getting current work item ID", error=str(e))
            return None
        if not item_id:
            self._log(logging.WARNING, "No current work item ID available")
            return None

        self._log(logging.INFO, f"Getting work item {item_id} using REST API first", work_item_id=item_id)
        item = await self.fetch_work_item(item_id)
        if item is not None:
            return item

        self._log(logging.WARNING, "REST API failed, falling back to form service", work_item_id=item_id)
        fields = await self._form_fields(item_id)
        retry = await self._simplified_rest(item_id)
        if retry:
            fields = {**fields, **retry}
        return WorkItemRef(id=item_id, fields=fields, project_name=self._rest.project_name)

    async def _form_fields(self, item_id: int) -> Dict[str, Any]:
        for names, label in ((FORM_FIELDS, "all fields"), (MINIMAL_FIELDS, "minimal fields")):
            try:
                values = await self._host.get_fields(list(names))
            except Exception as e:
                self._log(
                    logging.WARNING,
                    f"Form service failed for {label}",
                    work_item_id=item_id,
                    error=str(e),
                )
                continue
            fields = dict(values)
            fields.setdefault(FIELD_ID, item_id)
            self._log(logging.INFO, f"Got {len(fields)} fields from form service", work_item_id=item_id)
            return fields

        self._log(logging.ERROR, "All form field fetches failed, using placeholder", work_item_id=item_id)
        return {
            FIELD_ID: item_id,
            FIELD_TITLE: f"Work Item {item_id}",
            FIELD_TYPE: "Unknown Type",
        }

    async def _simplified_rest(self, item_id: int) -> Optional[Mapping[str, Any]]:
        try:
            item = await with_timeout(
                self._rest.get_work_item(item_id, fields=None, expand_relations=False),
                self._settings.workitem_retry_timeout,
                label=f"Simplified REST fetch for work item {item_id}",
            )
        except Exception as e:
            self._log(logging.WARNING, "Simplified REST retry failed", work_item_id=item_id, error=str(e))
            return None
        self._log(logging.INFO, "Simplified REST retry succeeded", work_item_id=item_id)
        return item.fields

    # ------------------------------------------------------------------
    # 层级
    # ------------------------------------------------------------------
    async def get_parent_work_item(self, item: Optional[WorkItemRef]) -> Optional[WorkItemRef]:
        if item is None:
            return None
        parents = item.relations_of(RelationKind.PARENT)
        if not parents:
            self._log(logging.INFO, "No parent relation found", work_item_id=item.id)
            return None
        parent_id = parents[0].target_id
        if parent_id is None:
            self._log(logging.WARNING, "Could not extract parent ID", url=parents[0].url)
            return None
        return await self.fetch_work_item(parent_id)

    async def get_child_work_items(self, item: Optional[WorkItemRef]) -> List[WorkItemRef]:
        if item is None:
            return []
        child_ids = [r.target_id for r in item.relations_of(RelationKind.CHILD)]
        child_ids = [cid for cid in child_ids if cid is not None]
        if not child_ids:
            return []
        children = await self._fetch_many(child_ids)
        self._log(
            logging.INFO,
            f"Fetched {len(children)} of {len(child_ids)} child work items",
            work_item_id=item.id,
            dropped=len(child_ids) - len(children),
        )
        return children

    async def get_work_items_by_ids(self, ids: Iterable[int]) -> List[WorkItemRef]:
        ids = list(ids)
        if not ids:
            return []
        limit = self._settings.workitem_batch_limit
        if len(ids) > limit:
            self._log(
                logging.WARNING,
                f"Too many work items requested ({len(ids)}), limiting to {limit}",
                requested=len(ids),
            )
            ids = ids[:limit]
        return await self._fetch_many(ids)

    async def get_related_work_items(
        self,
        item: Optional[WorkItemRef],
        relation_type: str,
        expand: bool = False,
    ) -> List[WorkItemRef]:
        """按原始 rel 精确匹配关系。expand=False 时只返回仅含 ID 的占位工作项。"""

        if item is None:
            return []
        ids = []
        for relation in item.relations:
            if relation.rel != relation_type:
                continue
            related_id = extract_work_item_id(relation.url)
            if related_id is not None:
                ids.append(related_id)
        if not ids:
            return []
        if expand:
            return await self.get_work_items_by_ids(ids)
        return [WorkItemRef.placeholder(i, project_name=item.project_name) for i in ids]

    async def resolve_context(self) -> WorkItemContext:
        current = await self.get_current_work_item()
        if current is None:
            return WorkItemContext()
        parent, children = await asyncio.gather(
            self.get_parent_work_item(current),
            self.get_child_work_items(current),
        )
        ctx = WorkItemContext(current=current, parent=parent, children=children)
        self._log(logging.INFO, "Work item context resolved", **ctx.summary())
        return ctx

    async def _fetch_many(self, ids: List[int]) -> List[WorkItemRef]:
        results = await asyncio.gather(*(self.fetch_work_item(i) for i in ids))
        return [r for r in results if r is not None]
