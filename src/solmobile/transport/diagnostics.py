"""DiagnosticsStore -- HTTP 交换的脱敏诊断环形缓冲区

容量固定（默认 50），读取时新条目在前；超出容量淘汰最旧条目。
由调用方构建并注入 transport，不使用模块级单例。
"""

import threading
from collections import deque
from datetime import UTC, datetime
from urllib.parse import unquote, urlsplit, urlunsplit

from pydantic import BaseModel, Field
from ulid import ULID

from .redirect_tracker import RedirectHop

DEFAULT_CAPACITY = 50

REDACTED = "<redacted>"

# 请求头名包含以下任一片段即视为敏感（大小写不敏感）
SENSITIVE_HEADER_FRAGMENTS = ("authorization", "cookie", "api-key", "api_key", "token", "secret")

# 查询参数名精确匹配（大小写不敏感）
SENSITIVE_QUERY_PARAMS = frozenset({"api_key", "token", "sig", "signature", "expires"})

# 允许记录的响应头
SAFE_RESPONSE_HEADERS = frozenset(
    {
        "server",
        "cf-ray",
        "fly-request-id",
        "content-type",
        "x-sol-trace-run-id",
        "x-sol-transmission-id",
        "retry-after",
    }
)

RESPONSE_SNIPPET_LIMIT = 400
REQUEST_BODY_SNIPPET_LIMIT = 500


def is_sensitive_header(name: str) -> bool:
    lower = name.lower()
    return any(fragment in lower for fragment in SENSITIVE_HEADER_FRAGMENTS)


def redact_headers(headers: dict[str, str] | None) -> dict[str, str]:
    """去掉敏感请求头，其余原样保留"""
    if not headers:
        return {}
    return {k: v for k, v in headers.items() if not is_sensitive_header(k)}


def safe_response_headers(headers: dict[str, str] | None) -> dict[str, str]:
    """只保留白名单内的响应头，键统一小写"""
    if not headers:
        return {}
    return {k.lower(): v for k, v in headers.items() if k.lower() in SAFE_RESPONSE_HEADERS}


def redact_url(url: str | None) -> str:
    """把敏感查询参数的值替换为 <redacted>，其余部分不变"""
    if not url:
        return "(unknown url)"
    parts = urlsplit(url)
    if not parts.query:
        return url

    pieces = []
    for piece in parts.query.split("&"):
        name, _sep, _value = piece.partition("=")
        if unquote(name).lower() in SENSITIVE_QUERY_PARAMS:
            pieces.append(f"{name}={REDACTED}")
        else:
            pieces.append(piece)
    return urlunsplit(parts._replace(query="&".join(pieces)))


def body_snippet(data: bytes | str | None, limit: int) -> str | None:
    if not data:
        return None
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = "(non-utf8 body)"
    else:
        text = data
    return text[:limit]


def response_snippet(data: bytes | str | None, status: int | None) -> str | None:
    """仅在 status >= 400 时截取响应体片段"""
    if status is None or status < 400:
        return None
    return body_snippet(data, RESPONSE_SNIPPET_LIMIT)


def shell_escape(value: str) -> str:
    return value.replace("'", "'\"'\"'")


def _sorted_pairs(headers: dict[str, str]) -> list[tuple[str, str]]:
    return sorted(headers.items(), key=lambda kv: kv[0].lower())


class DiagnosticsEntry(BaseModel):
    """一次 HTTP 交换的脱敏记录"""

    entry_id: str = Field(default_factory=lambda: str(ULID()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    attempt_id: str | None = None
    thread_id: str | None = None
    local_transmission_id: str | None = None
    transmission_id: str | None = None
    method: str
    url: str
    response_url: str | None = None
    redirect_chain: list[RedirectHop] = Field(default_factory=list)
    status: int | None = None
    latency_ms: int | None = None
    retryable_inferred: bool | None = None
    retryable_source: str | None = None
    parsed_error_code: str | None = None
    trace_run_id: str | None = None
    error_type: str | None = None
    error_description: str | None = None
    response_snippet: str | None = None
    safe_response_headers: dict[str, str] = Field(default_factory=dict)
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body_snippet: str | None = None
    had_authorization: bool = False

    @property
    def is_failure(self) -> bool:
        if self.status is not None:
            return self.status >= 400
        return self.error_description is not None

    def export_text(self) -> str:
        """导出为多行文本"""
        lines = [
            f"Time: {self.timestamp.isoformat()}",
            f"Request: {self.method} {self.url}",
        ]
        if self.attempt_id:
            lines.append(f"Attempt: {self.attempt_id}")
        if self.thread_id:
            lines.append(f"Thread: {self.thread_id}")
        if self.local_transmission_id:
            lines.append(f"Local transmission: {self.local_transmission_id}")
        if self.transmission_id:
            lines.append(f"Transmission: {self.transmission_id}")

        lines.append(f"Status: HTTP {self.status}" if self.status is not None else "Status: (no response)")

        if self.latency_ms is not None:
            lines.append(f"Latency: {self.latency_ms}ms")
        if self.response_url:
            lines.append(f"Final URL: {self.response_url}")

        if self.redirect_chain:
            lines.append(f"Redirects: {len(self.redirect_chain)}")
            for idx, hop in enumerate(self.redirect_chain, start=1):
                lines.append(
                    f"Redirect {idx}: {hop.method or '-'} {hop.from_url} -> {hop.to_url} "
                    f"[HTTP {hop.status_code}]"
                )

        if self.retryable_inferred is not None:
            lines.append(f"Retryable: {str(self.retryable_inferred).lower()} ({self.retryable_source or '-'})")
        if self.parsed_error_code:
            lines.append(f"Error code: {self.parsed_error_code}")
        if self.trace_run_id:
            lines.append(f"Trace run: {self.trace_run_id}")
        if self.error_description:
            lines.append(f"Error: {self.error_description}")
            if self.error_type:
                lines.append(f"Error detail: {self.error_type}")

        if self.safe_response_headers:
            pairs = ", ".join(f"{k}: {v}" for k, v in _sorted_pairs(self.safe_response_headers))
            lines.append(f"Response headers: {pairs}")
        if self.response_snippet:
            lines.append(f"Response snippet: {self.response_snippet}")
        if self.request_headers:
            pairs = ", ".join(f"{k}: {v}" for k, v in _sorted_pairs(self.request_headers))
            lines.append(f"Request headers: {pairs}")
        if self.request_body_snippet:
            lines.append(f"Request body: {self.request_body_snippet}")

        return "\n".join(lines)


class DiagnosticsStore:
    """诊断条目的有界环形缓冲区（线程安全）"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        # 左端为最新条目
        self._entries: deque[DiagnosticsEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def entries(self) -> list[DiagnosticsEntry]:
        """当前条目快照，新条目在前"""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, entry: DiagnosticsEntry) -> None:
        """追加条目，超出容量时淘汰最旧的"""
        with self._lock:
            self._entries.appendleft(entry)

    def record(
        self,
        method: str,
        url: str | None,
        *,
        response_url: str | None = None,
        redirect_chain: list[RedirectHop] | None = None,
        status: int | None = None,
        latency_ms: int | None = None,
        retryable_inferred: bool | None = None,
        retryable_source: str | None = None,
        parsed_error_code: str | None = None,
        trace_run_id: str | None = None,
        attempt_id: str | None = None,
        thread_id: str | None = None,
        local_transmission_id: str | None = None,
        transmission_id: str | None = None,
        error: Exception | None = None,
        response_body: bytes | str | None = None,
        response_headers: dict[str, str] | None = None,
        request_headers: dict[str, str] | None = None,
        request_body: bytes | str | None = None,
    ) -> DiagnosticsEntry:
        """脱敏后记录一次 HTTP 交换

        Returns:
            写入的 DiagnosticsEntry
        """
        had_authorization = any(k.lower() == "authorization" for k in (request_headers or {}))
        entry = DiagnosticsEntry(
            attempt_id=attempt_id,
            thread_id=thread_id,
            local_transmission_id=local_transmission_id,
            transmission_id=transmission_id,
            method=method,
            url=redact_url(url),
            response_url=redact_url(response_url) if response_url else None,
            redirect_chain=[
                RedirectHop(
                    from_url=redact_url(hop.from_url),
                    to_url=redact_url(hop.to_url),
                    status_code=hop.status_code,
                    method=hop.method,
                )
                for hop in (redirect_chain or [])
            ],
            status=status,
            latency_ms=latency_ms,
            retryable_inferred=retryable_inferred,
            retryable_source=retryable_source,
            parsed_error_code=parsed_error_code,
            trace_run_id=trace_run_id,
            error_type=type(error).__name__ if error is not None else None,
            error_description=str(error) if error is not None else None,
            response_snippet=response_snippet(response_body, status),
            safe_response_headers=safe_response_headers(response_headers),
            request_headers=redact_headers(request_headers),
            request_body_snippet=body_snippet(request_body, REQUEST_BODY_SNIPPET_LIMIT),
            had_authorization=had_authorization,
        )
        self.append(entry)
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def last_failure_entry(self) -> DiagnosticsEntry | None:
        """最近一条失败记录（status >= 400 或有错误描述）"""
        with self._lock:
            return next((e for e in self._entries if e.is_failure), None)

    def export_text(self) -> str:
        """导出全部条目，带脱敏标记和导出时间"""
        header = "\n".join(
            [
                "DIAGNOSTICS_EXPORT_REDACTED=true",
                f"exported_at={datetime.now(UTC).isoformat()}",
            ]
        )
        entries = self.entries
        if not entries:
            return f"{header}\n(no entries)"
        return f"{header}\n\n" + "\n\n".join(e.export_text() for e in entries)

    @staticmethod
    def curl_command(entry: DiagnosticsEntry) -> str:
        """生成可复现请求的 curl 命令（敏感值用占位符）"""
        parts = ["curl", "-X", entry.method, f"'{shell_escape(entry.url)}'"]

        if entry.had_authorization:
            parts += ["-H", "'Authorization: Bearer <API_KEY>'"]

        has_content_type = any(k.lower() == "content-type" for k in entry.request_headers)
        if entry.request_body_snippet and not has_content_type:
            parts += ["-H", "'Content-Type: application/json'"]

        for key, value in _sorted_pairs(entry.request_headers):
            parts += ["-H", f"'{shell_escape(f'{key}: {value}')}'"]

        if entry.request_body_snippet:
            parts += ["--data-raw", f"'{shell_escape(entry.request_body_snippet)}'"]

        return " ".join(parts)
