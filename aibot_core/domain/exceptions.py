"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层或 UI 层做统一捕获与用户提示。

异常分类：
- OperationTimeoutError: 操作超过截止时间。
- TransportError: 与宿主 / LLM 通信时的网络或 HTTP 失败。
- DeserializationError: 响应体格式错误。
- NotFoundError: 引用的工作项不存在。
- StreamCancelledError: 用户主动取消，不视为失败。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "TRANSPORT_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 work_item_id、provider 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(self, code: str = None, message: str = "", http_status: int = 400, **extra):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class OperationTimeoutError(BusinessError, TimeoutError):
    """操作超时。

    同时继承内置 TimeoutError，调用方既可以按业务异常捕获，
    也可以按标准超时异常捕获。
    """

    default_code = "TIMEOUT"

    def __init__(self, label: str, elapsed: float, **extra):
        self.label = label
        self.elapsed = elapsed
        super().__init__(
            code=self.default_code,
            message=f"{label} timed out after {elapsed:.1f}s",
            http_status=504,
            **extra,
        )


class TransportError(BusinessError):
    """网络 / HTTP 层错误（与宿主或 LLM 通信失败）。"""

    default_code = "TRANSPORT_ERROR"


class NetworkError(TransportError):
    """连接失败、DNS 失败等网络错误。"""


class ApiError(TransportError):
    """第三方 API 返回非 2xx 时抛出。"""


class RateLimitError(TransportError):
    """Provider 限流错误，当前不做自动重试。"""


class DeserializationError(BusinessError):
    """响应体无法解析（非 JSON 或缺少必要字段）。"""

    default_code = "DESERIALIZATION_ERROR"


class NotFoundError(BusinessError):
    """引用的工作项不存在。"""

    default_code = "NOT_FOUND"

    def __init__(self, code: str = None, message: str = "", http_status: int = 404, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class StreamCancelledError(BusinessError):
    """用户主动取消流式请求。"""

    default_code = "CANCELLED"


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    default_code = "VALIDATION_ERROR"
