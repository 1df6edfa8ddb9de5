"""宿主环境服务协议。

宿主（嵌入助手面板的工作项跟踪系统页面）负责提供：

- 当前打开的工作项 ID；
- 不含关系数据的表单字段读取服务（始终可用，但字段有限）；
- 访问 REST 接口所需的令牌；
- 组织 / 项目信息。

核心代码只依赖这里的协议，凭据管理完全交给宿主。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence


class HostEnvironment(Protocol):
    async def get_current_item_id(self) -> Optional[int]:
        ...

    async def get_fields(self, names: Sequence[str]) -> Mapping[str, Any]:
        ...

    async def get_access_token(self) -> str:
        ...

    async def get_organization_and_project(self) -> "HostContext":
        ...


@dataclass
class HostContext:
    organization: Optional[str] = None
    project: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.organization and self.project)


@dataclass
class StaticHost:
    """固定数据的宿主实现，用于命令行调试与测试。"""

    item_id: Optional[int] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    token: str = ""
    organization: Optional[str] = None
    project: Optional[str] = None

    async def get_current_item_id(self) -> Optional[int]:
        return self.item_id

    async def get_fields(self, names: Sequence[str]) -> Mapping[str, Any]:
        return {name: self.fields[name] for name in names if name in self.fields}

    async def get_access_token(self) -> str:
        return self.token

    async def get_organization_and_project(self) -> HostContext:
        return HostContext(organization=self.organization, project=self.project)
