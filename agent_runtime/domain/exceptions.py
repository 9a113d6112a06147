"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在命令分发、Run 回调与通道层做统一捕获与用户提示。
子类都带有固定的默认错误码，调用方只需传入用户可读信息。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 tool、limit 等）。
    """

    default_code = "BUSINESS_ERROR"

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @classmethod
    def of(cls, message: str, **extra) -> "BusinessError":
        """使用子类默认错误码构造异常。"""
        return cls(code=cls.default_code, message=message, **extra)


# ---- Provider / 网络层 ----

class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""

    default_code = "NETWORK_ERROR"


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""

    default_code = "API_ERROR"


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""

    default_code = "RATE_LIMIT"


class ValidationError(BusinessError):
    """参数或配置校验失败。"""

    default_code = "VALIDATION_ERROR"


# ---- 会话与命令 ----

class UsageError(BusinessError):
    """命令参数错误，信息可直接展示给用户。"""

    default_code = "USAGE_ERROR"


class NotFound(BusinessError):
    """标识符（标签或 ID）无法解析。"""

    default_code = "NOT_FOUND"


class InvalidOperation(BusinessError):
    """非法的状态迁移，例如归档当前会话。"""

    default_code = "INVALID_OPERATION"


class InvalidFormat(BusinessError):
    """标签格式不合法。"""

    default_code = "INVALID_FORMAT"


class LabelTaken(BusinessError):
    """同一 chat 下标签已被其他会话占用。"""

    default_code = "LABEL_TAKEN"


# ---- 工具 ----

class UnknownTool(BusinessError):
    default_code = "UNKNOWN_TOOL"


class ToolExecutionError(BusinessError):
    """工具执行失败的基类，LoopEngine 会重试后转成 observation。"""

    default_code = "TOOL_EXECUTION_ERROR"


class CommandNotFound(ToolExecutionError):
    default_code = "COMMAND_NOT_FOUND"


class PermissionDenied(ToolExecutionError):
    default_code = "PERMISSION_DENIED"


class ConnectionRefused(ToolExecutionError):
    default_code = "CONNECTION_REFUSED"


class MalformedResponse(ToolExecutionError):
    default_code = "MALFORMED_RESPONSE"


class SearchFailed(ToolExecutionError):
    default_code = "SEARCH_FAILED"


# ---- 执行与通道 ----

class MaxIterationsExceeded(BusinessError):
    """单轮推理达到迭代上限。"""

    default_code = "MAX_ITERATIONS_EXCEEDED"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            code=self.default_code,
            message=(
                f"I've reached my thinking limit ({limit} iterations). "
                "Please try a more specific question."
            ),
            limit=limit,
        )


class ConfigurationError(BusinessError):
    """通道构造时缺少必要配置，Supervisor 视为可恢复的跳过。"""

    default_code = "CONFIGURATION_ERROR"


class AlreadyRunning(BusinessError):
    default_code = "ALREADY_RUNNING"


class ThreadCrash(BusinessError):
    """通道线程意外退出，只用于日志记录。"""

    default_code = "THREAD_CRASH"
