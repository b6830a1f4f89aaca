"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在传输层统一捕获并映射为响应。
路由/会话层的错误不会被抛给调用方，而是作为 Reply.error 写回请求自己的回复通道。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "ROUTING_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_key、provider 等）。
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
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，本层不做重试。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class RoutingError(BusinessError):
    """无法从元数据中推导出会话 key（既没有 channel 也没有 node_id）。"""

    def __init__(self, message: str = "no channel or node_id found", **extra):
        super().__init__(code="ROUTING_ERROR", message=message, http_status=400, **extra)


class SessionCreationError(BusinessError):
    """后端会话创建失败（首次创建或历史压缩时重建）。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="SESSION_CREATION_ERROR", message=message, http_status=502, **extra)


class SendError(BusinessError):
    """向后端会话发送消息失败，且底层异常不是 BusinessError。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="SEND_ERROR", message=message, http_status=502, **extra)


class DispatcherClosedError(BusinessError):
    """Dispatcher 已开始关闭，不再接收新消息。"""

    def __init__(self, message: str = "dispatcher is shutting down", **extra):
        super().__init__(code="DISPATCHER_CLOSED", message=message, http_status=503, **extra)
