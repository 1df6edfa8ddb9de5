"""工作项领域模型。

远端工作项跟踪系统返回的是扁平、异构的关系列表：
同一种“父 / 子”语义在不同宿主上可能以多种字符串拼写出现。
本模块在数据入口处把这些原始字符串一次性归一化为封闭的 RelationKind 枚举，
后续的层级解析只依赖枚举，不再做字符串猜测。
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


# 常用字段名
FIELD_ID = "System.Id"
FIELD_TITLE = "System.Title"
FIELD_TYPE = "System.WorkItemType"
FIELD_STATE = "System.State"
FIELD_ASSIGNED_TO = "System.AssignedTo"
FIELD_CREATED_BY = "System.CreatedBy"
FIELD_DESCRIPTION = "System.Description"
FIELD_ACCEPTANCE_CRITERIA = "Microsoft.VSTS.Common.AcceptanceCriteria"
FIELD_PRIORITY = "Microsoft.VSTS.Common.Priority"
FIELD_STORY_POINTS = "Microsoft.VSTS.Scheduling.StoryPoints"
FIELD_EFFORT = "Microsoft.VSTS.Scheduling.Effort"
FIELD_ORIGINAL_ESTIMATE = "Microsoft.VSTS.Scheduling.OriginalEstimate"
FIELD_REMAINING_WORK = "Microsoft.VSTS.Scheduling.RemainingWork"
FIELD_COMPLETED_WORK = "Microsoft.VSTS.Scheduling.CompletedWork"
FIELD_AREA_PATH = "System.AreaPath"
FIELD_ITERATION_PATH = "System.IterationPath"
FIELD_CREATED_DATE = "System.CreatedDate"
FIELD_CHANGED_DATE = "System.ChangedDate"
FIELD_TAGS = "System.Tags"

# REST 全量获取时请求的字段
REST_FIELDS: Tuple[str, ...] = (
    FIELD_ID,
    FIELD_TYPE,
    FIELD_TITLE,
    FIELD_ASSIGNED_TO,
    FIELD_STATE,
    FIELD_DESCRIPTION,
    FIELD_ACCEPTANCE_CRITERIA,
    FIELD_PRIORITY,
    FIELD_STORY_POINTS,
    FIELD_EFFORT,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_REMAINING_WORK,
    FIELD_COMPLETED_WORK,
    FIELD_TAGS,
    FIELD_AREA_PATH,
    FIELD_ITERATION_PATH,
    FIELD_CREATED_BY,
    FIELD_CREATED_DATE,
    FIELD_CHANGED_DATE,
)

# 表单服务降级时请求的字段
FORM_FIELDS: Tuple[str, ...] = (
    FIELD_ID,
    FIELD_TITLE,
    FIELD_STATE,
    FIELD_ASSIGNED_TO,
    FIELD_DESCRIPTION,
    FIELD_TYPE,
    FIELD_PRIORITY,
    FIELD_ACCEPTANCE_CRITERIA,
    FIELD_STORY_POINTS,
    FIELD_CREATED_BY,
    FIELD_CREATED_DATE,
    FIELD_CHANGED_DATE,
    FIELD_EFFORT,
    FIELD_REMAINING_WORK,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_COMPLETED_WORK,
    FIELD_AREA_PATH,
    FIELD_ITERATION_PATH,
)

# 最后一级降级：最小字段集
MINIMAL_FIELDS: Tuple[str, ...] = (FIELD_ID, FIELD_TITLE, FIELD_TYPE, FIELD_STATE)

HIERARCHY_REVERSE = "System.LinkTypes.Hierarchy-Reverse"
HIERARCHY_FORWARD = "System.LinkTypes.Hierarchy-Forward"

_TRAILING_ID_RE = re.compile(r"/(\d+)$")
_WORK_ITEMS_ID_RE = re.compile(r"workItems/(\d+)", re.IGNORECASE)


class RelationKind(str, Enum):
    """关系种类（封闭集合）。"""

    PARENT = "parent"
    CHILD = "child"
    OTHER = "other"


def normalize_relation_kind(rel: Optional[str], attributes: Optional[Mapping[str, Any]] = None) -> RelationKind:
    """把原始关系字符串映射为 RelationKind。

    规则：
    - rel 与层级链接类型精确匹配（区分大小写）；
    - rel 小写后等于 "parent" / "child" / "children"；
    - attributes.name 小写后等于或包含 "parent" / "child"。

    父关系优先于子关系判断。
    """

    raw = rel or ""
    lowered = raw.lower()
    name = ""
    if attributes:
        attr_name = attributes.get("name")
        if isinstance(attr_name, str):
            name = attr_name.lower()

    if raw == HIERARCHY_REVERSE or lowered == "parent" or "parent" in name:
        return RelationKind.PARENT
    if raw == HIERARCHY_FORWARD or lowered in ("child", "children") or "child" in name:
        return RelationKind.CHILD
    return RelationKind.OTHER


def extract_trailing_id(url: Optional[str]) -> Optional[int]:
    """从关系 URL 的最后一段提取数字 ID，失败返回 None。"""

    if not url:
        return None
    match = _TRAILING_ID_RE.search(url)
    if not match:
        return None
    return int(match.group(1))


def extract_work_item_id(url: Optional[str]) -> Optional[int]:
    """从形如 .../workItems/123 的 URL 中提取 ID（不要求位于末尾）。"""

    if not url:
        return None
    match = _WORK_ITEMS_ID_RE.search(url)
    if not match:
        return None
    return int(match.group(1))


@dataclass(frozen=True)
class Relation:
    """一条关系记录，kind 在构造时归一化。"""

    rel: str
    url: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    kind: RelationKind = RelationKind.OTHER

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Relation":
        rel = payload.get("rel") or ""
        attributes = payload.get("attributes") or {}
        return cls(
            rel=rel,
            url=payload.get("url") or "",
            attributes=dict(attributes),
            kind=normalize_relation_kind(rel, attributes),
        )

    @property
    def target_id(self) -> Optional[int]:
        return extract_trailing_id(self.url)


@dataclass(frozen=True)
class WorkItemRef:
    """远端工作项的只读快照。

    - fields: 原始字段映射（字段名 -> 值）。
    - relations: 已归一化的关系列表；降级路径获取的工作项为空列表。
    """

    id: int
    rev: int = 0
    fields: Mapping[str, Any] = field(default_factory=dict)
    relations: Tuple[Relation, ...] = ()
    project_name: Optional[str] = None
    url: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], project_name: Optional[str] = None) -> "WorkItemRef":
        relations = tuple(Relation.from_payload(r) for r in payload.get("relations") or [] if isinstance(r, Mapping))
        return cls(
            id=int(payload["id"]),
            rev=int(payload.get("rev") or 0),
            fields=dict(payload.get("fields") or {}),
            relations=relations,
            project_name=project_name,
            url=payload.get("url") or "",
        )

    @classmethod
    def placeholder(cls, item_id: int, project_name: Optional[str] = None) -> "WorkItemRef":
        """构造只含 ID 与生成标题的占位工作项。"""

        return cls(
            id=item_id,
            fields={FIELD_ID: item_id, FIELD_TITLE: f"Work Item {item_id}"},
            project_name=project_name,
        )

    def get_field(self, name: str) -> Any:
        value = self.fields.get(name)
        if value in ("", None):
            return None
        return value

    @property
    def title(self) -> Optional[str]:
        return self.get_field(FIELD_TITLE)

    @property
    def work_item_type(self) -> Optional[str]:
        return self.get_field(FIELD_TYPE)

    @property
    def state(self) -> Optional[str]:
        return self.get_field(FIELD_STATE)

    def relations_of(self, kind: RelationKind) -> List[Relation]:
        return [r for r in self.relations if r.kind is kind]


def _display_name(value: Any) -> Optional[str]:
    # 身份字段在 REST 中是 {"displayName": ...}，在表单服务中可能是纯字符串
    if isinstance(value, Mapping):
        return value.get("displayName") or value.get("uniqueName")
    if value in ("", None):
        return None
    return str(value)


def _text(value: Any, default: str) -> str:
    if value in ("", None):
        return default
    return str(value)


@dataclass
class WorkItemDetails:
    """提示词构造使用的结构化字段视图。可选字段缺失时为 None。"""

    id: int
    title: str
    type: str
    state: str
    project_name: Optional[str] = None
    description: Optional[str] = None
    acceptance_criteria: Optional[str] = None
    priority: Any = None
    story_points: Any = None
    effort: Any = None
    original_estimate: Any = None
    remaining_work: Any = None
    completed_work: Any = None
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    created_date: Any = None
    changed_date: Any = None
    area_path: Optional[str] = None
    iteration_path: Optional[str] = None

    @classmethod
    def from_work_item(cls, item: WorkItemRef) -> "WorkItemDetails":
        return cls(
            id=item.id,
            title=_text(item.title, "Untitled"),
            type=_text(item.work_item_type, "Unknown"),
            state=_text(item.state, "Unknown"),
            project_name=item.project_name,
            description=item.get_field(FIELD_DESCRIPTION),
            acceptance_criteria=item.get_field(FIELD_ACCEPTANCE_CRITERIA),
            priority=item.get_field(FIELD_PRIORITY),
            story_points=item.get_field(FIELD_STORY_POINTS),
            effort=item.get_field(FIELD_EFFORT),
            original_estimate=item.get_field(FIELD_ORIGINAL_ESTIMATE),
            remaining_work=item.get_field(FIELD_REMAINING_WORK),
            completed_work=item.get_field(FIELD_COMPLETED_WORK),
            assigned_to=_display_name(item.get_field(FIELD_ASSIGNED_TO)),
            created_by=_display_name(item.get_field(FIELD_CREATED_BY)),
            created_date=item.get_field(FIELD_CREATED_DATE),
            changed_date=item.get_field(FIELD_CHANGED_DATE),
            area_path=item.get_field(FIELD_AREA_PATH),
            iteration_path=item.get_field(FIELD_ITERATION_PATH),
        )


@dataclass
class WorkItemContext:
    """一次层级解析的结果。"""

    current: Optional[WorkItemRef] = None
    parent: Optional[WorkItemRef] = None
    children: List[WorkItemRef] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.current is not None

    def summary(self) -> Dict[str, Any]:
        return {
            "current_id": self.current.id if self.current else None,
            "parent_id": self.parent.id if self.parent else None,
            "child_ids": [c.id for c in self.children],
        }
