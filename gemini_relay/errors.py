# gemini_relay/errors.py
"""
代理返回给客户端的错误类型。

每个异常都携带 HTTP 状态码和 JSON 响应体，由 main.py 中注册的异常处理器统一渲染。
"""
from typing import Any, Dict, List, Optional


class ProxyError(Exception):
    """所有可预期错误的基类。"""
    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, error: Optional[str] = None, status_code: Optional[int] = None, **extra: Any):
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra
        super().__init__(self.error)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, **self.extra}


class InvalidRequestError(ProxyError):
    """客户端请求体不合法（缺少必填字段、JSON 无法解析等）。"""
    status_code = 400
    error = "Invalid request"


class MissingFieldsError(InvalidRequestError):
    error = "Missing required parameters: model and messages are required"

    def __init__(self, missing: List[str]):
        super().__init__(missing=list(missing))
        self.missing = list(missing)


class ConfigurationError(ProxyError):
    """服务端配置缺失，请求不会发往上游。"""
    status_code = 500
    error = "Server configuration error: GEMINI_API_KEY not set"


class UpstreamError(ProxyError):
    """上游返回非成功状态码。状态码与原始响应体原样透传。"""
    error = "Gemini API request failed"

    def __init__(self, status_code: int, details: str):
        super().__init__(status_code=status_code, details=details)
        self.details = details
