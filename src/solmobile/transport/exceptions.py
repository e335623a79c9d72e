"""Transport 异常体系

所有 transport 层错误都继承 TransportError，outbox 引擎统一按投递失败处理。
"""


class TransportError(Exception):
    """Transport 包基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class SimulatedFailureError(TransportError):
    """调试用的模拟失败（服务端按 x-sol-simulate-status 返回 500）

    对 outbox 引擎而言与真实的服务端错误无区别。
    """

    status_code = 500

    def __init__(self) -> None:
        super().__init__("Simulated failure (x-sol-simulate-status: 500)", recoverable=True)


class HTTPStatusError(TransportError):
    """服务端返回非 2xx 状态码"""

    def __init__(
        self,
        code: int,
        body: str,
        headers: dict[str, str] | None = None,
        final_url: str | None = None,
        redirect_chain: list | None = None,
    ) -> None:
        """
        Args:
            code: HTTP 状态码
            body: 响应体文本
            headers: 响应头
            final_url: 重定向后的最终 URL
            redirect_chain: 重定向链（RedirectHop 列表）
        """
        snippet = body.strip()[:200] if body else ""
        message = f"HTTP {code}: {snippet}" if snippet else f"HTTP {code}"
        super().__init__(message, recoverable=code == 429 or code >= 500)
        self.code = code
        self.body = body
        self.headers = headers or {}
        self.final_url = final_url
        self.redirect_chain = redirect_chain or []


class NetworkError(TransportError):
    """服务端不可达（连接失败、超时、DNS 解析失败等）"""

    def __init__(self, url: str, original_error: Exception) -> None:
        """
        Args:
            url: 尝试访问的地址
            original_error: 原始异常
        """
        super().__init__(
            f"Server unreachable: {url} -- {type(original_error).__name__}: {original_error}",
            recoverable=True,
        )
        self.url = url
        self.original_error = original_error


class BadResponseError(TransportError):
    """响应无法解析（协议层错误或响应体解码失败）"""

    def __init__(self, message: str = "Bad server response", status_code: int | None = None) -> None:
        super().__init__(message, recoverable=False)
        self.status_code = status_code


class UnsupportedTransportError(TransportError):
    """当前 transport 不支持所需的可选能力"""

    def __init__(self, capability: str) -> None:
        super().__init__(f"Transport does not support {capability}", recoverable=False)
        self.capability = capability
