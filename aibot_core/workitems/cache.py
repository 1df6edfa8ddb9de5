"""会话级工作项缓存。

每个会话构造一次并注入到 ContextResolver，不使用模块级全局状态。
缓存没有过期策略：同一会话内工作项的远端变化不会被感知。
并发获取同一 ID 时可能两次未命中、两次写入，值是同一远端快照，后写覆盖即可。
"""

from typing import Dict, Optional

from aibot_core.domain.work_items import WorkItemRef


class WorkItemCache:
    def __init__(self):
        self._items: Dict[int, WorkItemRef] = {}
        self.hits = 0
        self.misses = 0

    def get(self, item_id: int) -> Optional[WorkItemRef]:
        item = self._items.get(item_id)
        if item is None:
            self.misses += 1
        else:
            self.hits += 1
        return item

    def put(self, item: WorkItemRef) -> None:
        self._items[item.id] = item

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)
