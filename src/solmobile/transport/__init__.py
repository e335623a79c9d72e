"""solmobile Transport -- 服务端通信抽象层

transport 包的公开接口导出。
"""

# 协议与响应类型
from .protocols import (
    ChatPollResponse,
    ChatResponse,
    ChatTransport,
    ChatTransportMementoDecision,
    ChatTransportPolling,
    DiagnosticsContext,
    MementoDecision,
    MementoDecisionResult,
    ResponseInfo,
)

# 核心组件
from .diagnostics import DiagnosticsEntry, DiagnosticsStore
from .http_client import SolServerClient
from .redirect_tracker import RedirectHop, RedirectTracker
from .retry_policy import MAX_RETRY_AFTER_S, RetryableSource, RetryDecision, RetryPolicy
from .scripted import ScriptedTransport

# 配置
from .config import TransportConfig, load_transport_config

# 异常
from .exceptions import (
    BadResponseError,
    HTTPStatusError,
    NetworkError,
    SimulatedFailureError,
    TransportError,
    UnsupportedTransportError,
)

__all__ = [
    "ChatTransport",
    "ChatTransportPolling",
    "ChatTransportMementoDecision",
    "ChatResponse",
    "ChatPollResponse",
    "ResponseInfo",
    "DiagnosticsContext",
    "MementoDecision",
    "MementoDecisionResult",
    "SolServerClient",
    "ScriptedTransport",
    "RetryPolicy",
    "RetryDecision",
    "RetryableSource",
    "MAX_RETRY_AFTER_S",
    "RedirectTracker",
    "RedirectHop",
    "DiagnosticsStore",
    "DiagnosticsEntry",
    "TransportConfig",
    "load_transport_config",
    "TransportError",
    "SimulatedFailureError",
    "HTTPStatusError",
    "NetworkError",
    "BadResponseError",
    "UnsupportedTransportError",
]
