"""RetryPolicy -- HTTP 结果的重试分类

纯函数：根据状态码、响应体、响应头和 transport 异常给出 RetryDecision。
分类结果记录在投递台账和诊断条目中。
"""

import json
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel

from .exceptions import (
    BadResponseError,
    HTTPStatusError,
    NetworkError,
    SimulatedFailureError,
    TransportError,
)

# retry-after 上限（秒），防止服务端给出的超大值卡住队首
MAX_RETRY_AFTER_S = 3600

_INTEGER_RE = re.compile(r"\d+")

# 连接类异常（无 HTTP 响应，可重试）
_CONNECTIVITY_ERROR_TYPES = (
    NetworkError,
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)

# 协议类异常（服务端响应不可用，不重试）
_PROTOCOL_ERROR_TYPES = (
    BadResponseError,
    httpx.DecodingError,
    httpx.TooManyRedirects,
    httpx.RemoteProtocolError,
    httpx.LocalProtocolError,
)


class RetryableSource(StrEnum):
    """retryable 判定来源"""

    EXPLICIT_FIELD = "explicit_field"
    HTTP_STATUS = "http_status"
    NETWORK_ERROR = "network_error"
    PARSE_FAILED_DEFAULT = "parse_failed_default"


class RetryDecision(BaseModel):
    """重试分类结果"""

    retryable: bool
    source: RetryableSource
    error_code: str | None = None
    retry_after_seconds: int | None = None
    trace_run_id: str | None = None
    transmission_id: str | None = None


class ParsedErrorEnvelope(BaseModel):
    """错误响应体中可识别的字段"""

    error_code: str | None = None
    retryable: bool | None = None
    trace_run_id: str | None = None
    transmission_id: str | None = None


def _string_value(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _bool_value(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _first(*values: str | None) -> str | None:
    for value in values:
        if value is not None:
            return value
    return None


def parse_error_envelope(body: str | None) -> ParsedErrorEnvelope | None:
    """解析错误响应体；非 JSON 对象返回 None"""
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    nested_error = data.get("error") if isinstance(data.get("error"), dict) else {}
    trace = data.get("trace") if isinstance(data.get("trace"), dict) else {}

    retryable = _bool_value(data.get("retryable"))
    if retryable is None:
        retryable = _bool_value(nested_error.get("retryable"))

    return ParsedErrorEnvelope(
        error_code=_first(
            _string_value(data.get("error")),
            _string_value(data.get("error_code")),
            _string_value(data.get("errorCode")),
            _string_value(nested_error.get("code")),
            _string_value(nested_error.get("error_code")),
        ),
        retryable=retryable,
        trace_run_id=_first(
            _string_value(data.get("traceRunId")),
            _string_value(data.get("trace_run_id")),
            _string_value(trace.get("traceRunId")),
        ),
        transmission_id=_first(
            _string_value(data.get("transmissionId")),
            _string_value(data.get("transmission_id")),
        ),
    )


def _clamp_retry_after(seconds: int) -> int:
    return min(max(0, seconds), MAX_RETRY_AFTER_S)


def retry_after_seconds(headers: dict[str, str] | None, now: datetime | None = None) -> int | None:
    """解析 retry-after 头（整数秒或 HTTP-date），大小写不敏感

    结果截断到 [0, MAX_RETRY_AFTER_S]；无法解析时返回 None。
    """
    if not headers:
        return None
    value = next(
        (v for k, v in headers.items() if k.lower() == "retry-after"),
        None,
    )
    if value is None or not value.strip():
        return None
    value = value.strip()

    if _INTEGER_RE.fullmatch(value):
        return _clamp_retry_after(int(value))

    try:
        when = parsedate_to_datetime(value)
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        delta = (when - (now or datetime.now(UTC))).total_seconds()
    except (TypeError, ValueError, OverflowError):
        return None
    return _clamp_retry_after(int(delta))


def _classify_error(error: Exception | None) -> tuple[bool, RetryableSource]:
    if error is None:
        return False, RetryableSource.NETWORK_ERROR
    # 协议类优先判断：httpx 的协议异常也是 httpx.TransportError 的子类
    if isinstance(error, _PROTOCOL_ERROR_TYPES):
        return False, RetryableSource.NETWORK_ERROR
    # 其余 transport 异常由自身的 recoverable 标记决定
    if isinstance(error, TransportError):
        return error.recoverable, RetryableSource.NETWORK_ERROR
    if isinstance(error, _CONNECTIVITY_ERROR_TYPES):
        return True, RetryableSource.NETWORK_ERROR
    return False, RetryableSource.NETWORK_ERROR


class RetryPolicy:
    """HTTP 结果的重试分类规则

    优先级:
        1. 无状态码：协议类错误不重试，TransportError 按 recoverable 判定，
           其他连接类错误可重试，无法识别的错误不重试
        2. 429：可重试，透出 retry-after
        3. 422：不重试，提取 error 字段
        4. 400：不重试，响应体无法解析时来源为 parse_failed_default
        5. 其他 4xx：默认不重试，响应体显式 retryable 字段可覆盖
        6. 5xx：可重试
    """

    @staticmethod
    def classify(
        status_code: int | None,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        error: Exception | None = None,
    ) -> RetryDecision:
        """对一次 HTTP 结果分类

        Args:
            status_code: HTTP 状态码，无响应时为 None
            body: 响应体文本
            headers: 响应头
            error: transport 异常

        Returns:
            RetryDecision
        """
        parsed = parse_error_envelope(body)
        common = {
            "error_code": parsed.error_code if parsed else None,
            "trace_run_id": parsed.trace_run_id if parsed else None,
            "transmission_id": parsed.transmission_id if parsed else None,
        }

        if status_code is None or status_code < 0:
            retryable, source = _classify_error(error)
            return RetryDecision(retryable=retryable, source=source, **common)

        if status_code == 429:
            return RetryDecision(
                retryable=True,
                source=RetryableSource.HTTP_STATUS,
                retry_after_seconds=retry_after_seconds(headers),
                **common,
            )

        if status_code >= 500:
            return RetryDecision(retryable=True, source=RetryableSource.HTTP_STATUS, **common)

        if status_code == 422:
            return RetryDecision(retryable=False, source=RetryableSource.HTTP_STATUS, **common)

        if status_code == 400:
            source = RetryableSource.HTTP_STATUS if parsed else RetryableSource.PARSE_FAILED_DEFAULT
            return RetryDecision(retryable=False, source=source, **common)

        if status_code >= 400:
            if parsed is not None and parsed.retryable is not None:
                return RetryDecision(
                    retryable=parsed.retryable,
                    source=RetryableSource.EXPLICIT_FIELD,
                    **common,
                )
            source = RetryableSource.HTTP_STATUS if parsed else RetryableSource.PARSE_FAILED_DEFAULT
            return RetryDecision(retryable=False, source=source, **common)

        return RetryDecision(retryable=False, source=RetryableSource.HTTP_STATUS, **common)

    @classmethod
    def classify_exception(cls, error: Exception) -> RetryDecision:
        """对 transport 抛出的异常分类（从异常中取出状态码、响应体和响应头）"""
        if isinstance(error, HTTPStatusError):
            return cls.classify(error.code, error.body, error.headers, error)
        if isinstance(error, SimulatedFailureError):
            return cls.classify(SimulatedFailureError.status_code, None, None, error)
        if isinstance(error, BadResponseError) and error.status_code is not None:
            return cls.classify(error.status_code, None, None, error)
        return cls.classify(None, None, None, error)
