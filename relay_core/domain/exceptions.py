"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或编排层做统一捕获并转换为 error 事件。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "SESSION_HTTP_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 correlation_id、status_code 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx 时抛出。"""


class RateLimitError(BusinessError):
    """第三方服务限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class SessionCreationFailed(BusinessError):
    """后端会话创建失败：不可达、非 2xx 或响应缺少 sessionId。"""

    def __init__(self, code: str, message: str, **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)


class BackendTransportError(BusinessError):
    """流式连接在建立前或传输中出错（含连接在终止消息前被关闭）。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="BACKEND_TRANSPORT_ERROR", message=message, http_status=502, **extra)


class BackendReportedError(BusinessError):
    """后端通过 error 消息显式报告的错误。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="BACKEND_ERROR", message=message, http_status=502, **extra)


class ExchangeTimeout(BusinessError):
    """在配置的时间窗口内没有收到终止信号。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="TIMEOUT", message=message, http_status=504, **extra)


class MalformedBackendMessage(BusinessError):
    """无法解析的后端消息，只丢弃不上报。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="MALFORMED_MESSAGE", message=message, **extra)
