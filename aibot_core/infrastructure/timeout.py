"""异步操作的超时保护。

with_timeout 把任意 awaitable 与计时器赛跑：计时器先到时抛出
OperationTimeoutError（携带标签与耗时），其余异常原样向上传播。
底层操作会被尽力取消，调用方不应依赖其清理结果。
"""

import asyncio
import time
from typing import Awaitable, TypeVar

from aibot_core.domain.exceptions import OperationTimeoutError

T = TypeVar("T")

DEFAULT_TIMEOUT = 10.0


async def with_timeout(operation: Awaitable[T], seconds: float = DEFAULT_TIMEOUT, label: str = "operation") -> T:
    started = time.monotonic()
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except OperationTimeoutError:
        # 内层操作自己的超时，保留原标签
        raise
    except asyncio.TimeoutError:
        raise OperationTimeoutError(label, time.monotonic() - started, timeout=seconds) from None
