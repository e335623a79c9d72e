"""SolServerClient -- 基于 httpx.AsyncClient 的 ChatTransport 实现

支持 send / poll / decide_memento 三种能力。
每次 HTTP 交换都会写一条 structlog 日志和一条脱敏的 DiagnosticsEntry。
"""

import time
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from ulid import ULID

from solmobile.core.config import DEBUG_PENDING_PREFIX, short_id
from solmobile.core.models.enums import PacketType
from solmobile.core.models.envelope import PacketEnvelope
from .config import DEFAULT_SERVER_URL, DEFAULT_TIMEOUT_S, TransportConfig
from .diagnostics import DiagnosticsStore
from .dto import (
    ChatRequest,
    ChatResponseBody,
    MementoDecisionRequest,
    MementoDecisionResponseBody,
    TransmissionPollBody,
)
from .exceptions import (
    BadResponseError,
    HTTPStatusError,
    NetworkError,
    SimulatedFailureError,
    TransportError,
)
from .protocols import (
    ChatPollResponse,
    ChatResponse,
    DiagnosticsContext,
    MementoDecision,
    MementoDecisionResult,
    ResponseInfo,
)
from .redirect_tracker import RedirectHop, RedirectTracker
from .retry_policy import RetryPolicy

log = structlog.get_logger()

SIMULATE_STATUS_HEADER = "x-sol-simulate-status"
TRANSMISSION_ID_HEADER = "x-sol-transmission-id"

NO_ASSISTANT_TEXT = "(no assistant text)"
PENDING_TEXT = "(pending: server is still processing this message)"

# 协议类错误：有连接但响应不可用
_PROTOCOL_ERROR_TYPES = (
    httpx.ProtocolError,
    httpx.DecodingError,
    httpx.TooManyRedirects,
    httpx.UnsupportedProtocol,
)


class _Exchange(BaseModel):
    """一次已完成的 HTTP 交换（内部用）"""

    method: str
    url: str
    label: dict[str, str]
    request_headers: dict[str, str]
    request_body: bytes | None
    status_code: int
    response_headers: dict[str, str]
    response_text: str
    final_url: str
    redirect_chain: list[RedirectHop]
    latency_ms: int

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def response_info(self) -> ResponseInfo:
        return ResponseInfo(
            status_code=self.status_code,
            headers=self.response_headers,
            final_url=self.final_url,
            redirect_chain=self.redirect_chain,
        )

    def status_error(self) -> HTTPStatusError:
        return HTTPStatusError(
            code=self.status_code,
            body=self.response_text,
            headers=self.response_headers,
            final_url=self.final_url,
            redirect_chain=self.redirect_chain,
        )


class SolServerClient:
    """SolServer HTTP 客户端

    实现 ChatTransport、ChatTransportPolling、ChatTransportMementoDecision。
    可注入 httpx.AsyncClient（测试时配合 httpx.MockTransport）、
    DiagnosticsStore 和 RedirectTracker。
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        api_key: str = "",
        timeout_s: int = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        diagnostics: DiagnosticsStore | None = None,
        redirect_tracker: RedirectTracker | None = None,
    ) -> None:
        """初始化 SolServer 客户端

        Args:
            base_url: 服务端基础 URL
            api_key: 访问密钥，非空时以 Bearer token 发送
            timeout_s: 请求超时（秒）
            client: 外部提供的 httpx.AsyncClient；为 None 时内部创建并负责关闭
            diagnostics: 诊断缓冲区；为 None 时新建
            redirect_tracker: 重定向记录器；为 None 时新建
        """
        self._base_url = base_url.strip().rstrip("/")
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
        )
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticsStore()
        self.redirect_tracker = (
            redirect_tracker if redirect_tracker is not None else RedirectTracker()
        )

    @classmethod
    def from_config(cls, config: TransportConfig, **kwargs: Any) -> "SolServerClient":
        """从 TransportConfig 创建客户端"""
        return cls(
            base_url=config.base_url,
            api_key=config.api_key.get_secret_value(),
            timeout_s=config.timeout_s,
            **kwargs,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SolServerClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ---- ChatTransport ----

    async def send(
        self,
        envelope: PacketEnvelope,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatResponse:
        """POST /v1/chat

        Raises:
            SimulatedFailureError: 调试失败标记触发的模拟 500
            HTTPStatusError: 非 2xx（202 除外）
            BadResponseError: 响应体无法解码或协议错误
            NetworkError: 服务端不可达
        """
        simulate_500 = envelope.packet_type == PacketType.CHAT_FAIL
        simulate_202 = envelope.message_text.strip().lower().startswith(DEBUG_PENDING_PREFIX)

        headers: dict[str, str] = {}
        if simulate_500:
            headers[SIMULATE_STATUS_HEADER] = "500"
        elif simulate_202:
            headers[SIMULATE_STATUS_HEADER] = "202"

        body = ChatRequest(
            thread_id=envelope.thread_id,
            client_request_id=envelope.packet_id,
            message=envelope.message_text,
        )
        label = {
            "packet_id": short_id(envelope.packet_id),
            "thread_id": short_id(envelope.thread_id),
        }

        exchange = await self._exchange(
            "POST",
            "/v1/chat",
            label=label,
            json_body=body.model_dump_json(by_alias=True).encode(),
            extra_headers=headers,
            ctx=diagnostics,
        )
        try:
            response = self._decode_chat(exchange, simulate_500)
        except TransportError as e:
            self._record(exchange, diagnostics, error=e)
            raise
        self._record(exchange, diagnostics, transmission_id=response.transmission_id)
        return response

    def _decode_chat(self, exchange: _Exchange, simulate_500: bool) -> ChatResponse:
        header_tx_id = exchange.response_headers.get(TRANSMISSION_ID_HEADER)

        if simulate_500 and exchange.status_code == 500:
            raise SimulatedFailureError()

        if exchange.status_code == 202:
            # 202 宽松解码：只取 transmission id / memento / evidence
            try:
                decoded = ChatResponseBody.model_validate_json(exchange.response_text)
            except ValidationError:
                decoded = None
            return ChatResponse(
                text=PENDING_TEXT,
                status_code=202,
                transmission_id=header_tx_id or (decoded.transmission_id if decoded else None),
                pending=True,
                response_info=exchange.response_info(),
                thread_memento=decoded.thread_memento if decoded else None,
                evidence_summary=decoded.evidence_summary if decoded else None,
                evidence=decoded.evidence if decoded else None,
                evidence_warnings=decoded.evidence_warnings if decoded else None,
                output_envelope=decoded.output_envelope if decoded else None,
            )

        if not exchange.ok:
            raise exchange.status_error()

        try:
            decoded = ChatResponseBody.model_validate_json(exchange.response_text)
        except ValidationError as e:
            raise BadResponseError(
                f"Failed to decode chat response: {e.error_count()} validation error(s)",
                status_code=exchange.status_code,
            ) from e

        return ChatResponse(
            text=decoded.assistant or NO_ASSISTANT_TEXT,
            status_code=exchange.status_code,
            transmission_id=header_tx_id or decoded.transmission_id,
            pending=bool(decoded.pending),
            response_info=exchange.response_info(),
            thread_memento=decoded.thread_memento,
            evidence_summary=decoded.evidence_summary,
            evidence=decoded.evidence,
            evidence_warnings=decoded.evidence_warnings,
            output_envelope=decoded.output_envelope,
        )

    # ---- ChatTransportPolling ----

    async def poll(
        self,
        transmission_id: str,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatPollResponse:
        """GET /v1/transmissions/{id}

        pending 优先取响应体 pending 字段，缺省时以服务端状态 created 判定。
        """
        exchange = await self._exchange(
            "GET",
            f"/v1/transmissions/{quote(transmission_id, safe='')}",
            label={"server_tx_id": short_id(transmission_id)},
            ctx=diagnostics,
        )
        try:
            if not exchange.ok:
                raise exchange.status_error()
            try:
                decoded = TransmissionPollBody.model_validate_json(exchange.response_text)
            except ValidationError as e:
                raise BadResponseError(
                    "Failed to decode transmission response",
                    status_code=exchange.status_code,
                ) from e
        except TransportError as e:
            self._record(exchange, diagnostics, error=e, transmission_id=transmission_id)
            raise

        self._record(exchange, diagnostics, transmission_id=transmission_id)
        pending = (
            decoded.pending
            if decoded.pending is not None
            else decoded.transmission.status == "created"
        )
        return ChatPollResponse(
            pending=pending,
            assistant=decoded.assistant,
            server_status=decoded.transmission.status,
            status_code=exchange.status_code,
            response_info=exchange.response_info(),
            thread_memento=decoded.thread_memento,
            evidence_summary=decoded.evidence_summary,
            evidence=decoded.evidence,
            evidence_warnings=decoded.evidence_warnings,
            output_envelope=decoded.output_envelope,
        )

    # ---- ChatTransportMementoDecision ----

    async def decide_memento(
        self,
        thread_id: str,
        memento_id: str,
        decision: MementoDecision,
    ) -> MementoDecisionResult:
        """POST /v1/memento/decision"""
        body = MementoDecisionRequest(
            thread_id=thread_id,
            memento_id=memento_id,
            decision=MementoDecision(decision).value,
        )
        exchange = await self._exchange(
            "POST",
            "/v1/memento/decision",
            label={"thread_id": short_id(thread_id), "memento_id": short_id(memento_id)},
            json_body=body.model_dump_json(by_alias=True).encode(),
        )
        try:
            if not exchange.ok:
                raise exchange.status_error()
            try:
                decoded = MementoDecisionResponseBody.model_validate_json(exchange.response_text)
            except ValidationError as e:
                raise BadResponseError(
                    "Failed to decode memento decision response",
                    status_code=exchange.status_code,
                ) from e
        except TransportError as e:
            self._record(exchange, None, error=e)
            raise

        self._record(exchange, None)
        return MementoDecisionResult(
            status_code=exchange.status_code,
            applied=bool(decoded.applied),
            reason=decoded.reason,
            memento=decoded.memento,
        )

    # ---- HTTP 交换 ----

    def _request_headers(self, extra: dict[str, str], has_body: bool) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if has_body:
            headers["Content-Type"] = "application/json"
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(extra)
        return headers

    async def _exchange(
        self,
        method: str,
        path: str,
        *,
        label: dict[str, str],
        json_body: bytes | None = None,
        extra_headers: dict[str, str] | None = None,
        ctx: DiagnosticsContext | None = None,
    ) -> _Exchange:
        """执行请求并收集响应元数据

        连接或协议层失败在这里记录诊断后转换为 NetworkError / BadResponseError。
        """
        url = f"{self._base_url}{path}"
        headers = self._request_headers(extra_headers or {}, json_body is not None)
        task_id = ctx.attempt_id if ctx is not None else str(ULID())
        start = time.monotonic()

        try:
            response = await self._client.request(method, url, content=json_body, headers=headers)
        except httpx.HTTPError as e:
            latency_ms = int((time.monotonic() - start) * 1000)
            if isinstance(e, _PROTOCOL_ERROR_TYPES):
                wrapped: TransportError = BadResponseError(f"Protocol error: {e}")
            else:
                wrapped = NetworkError(url=url, original_error=e)
            decision = RetryPolicy.classify(None, None, None, wrapped)
            self.diagnostics.record(
                method,
                url,
                redirect_chain=self.redirect_tracker.consume_chain(task_id),
                latency_ms=latency_ms,
                retryable_inferred=decision.retryable,
                retryable_source=decision.source.value,
                error=wrapped,
                request_headers=headers,
                request_body=json_body,
                **self._ctx_fields(ctx),
            )
            log.warning(
                "sol_http_exchange",
                method=method,
                path=path,
                ok=False,
                status=None,
                elapsed_ms=latency_ms,
                error_type=type(e).__name__,
                **label,
            )
            raise wrapped from e

        latency_ms = int((time.monotonic() - start) * 1000)
        self._track_redirects(task_id, response)

        return _Exchange(
            method=method,
            url=url,
            label=label,
            request_headers=headers,
            request_body=json_body,
            status_code=response.status_code,
            response_headers=dict(response.headers.items()),
            response_text=response.text,
            final_url=str(response.url),
            redirect_chain=self.redirect_tracker.consume_chain(task_id),
            latency_ms=latency_ms,
        )

    def _track_redirects(self, task_id: str, response: httpx.Response) -> None:
        """把 httpx 的重定向历史写入 RedirectTracker"""
        hops = [*response.history, response]
        for current, following in zip(hops, hops[1:]):
            self.redirect_tracker.record(
                task_id,
                from_url=str(current.url),
                to_url=str(following.url),
                status_code=current.status_code,
                method=current.request.method,
            )

    def _record(
        self,
        exchange: _Exchange,
        ctx: DiagnosticsContext | None,
        error: TransportError | None = None,
        transmission_id: str | None = None,
    ) -> None:
        """写诊断条目和交换日志"""
        ok = error is None
        decision = None
        if not ok:
            decision = RetryPolicy.classify(
                exchange.status_code,
                exchange.response_text,
                exchange.response_headers,
                error,
            )

        self.diagnostics.record(
            exchange.method,
            exchange.url,
            response_url=exchange.final_url,
            redirect_chain=exchange.redirect_chain,
            status=exchange.status_code,
            latency_ms=exchange.latency_ms,
            retryable_inferred=decision.retryable if decision else None,
            retryable_source=decision.source.value if decision else None,
            parsed_error_code=decision.error_code if decision else None,
            trace_run_id=decision.trace_run_id if decision else None,
            transmission_id=transmission_id
            or exchange.response_headers.get(TRANSMISSION_ID_HEADER),
            error=error,
            response_body=exchange.response_text,
            response_headers=exchange.response_headers,
            request_headers=exchange.request_headers,
            request_body=exchange.request_body,
            **self._ctx_fields(ctx),
        )

        log_fn = log.info if ok else log.warning
        log_fn(
            "sol_http_exchange",
            method=exchange.method,
            path=exchange.url.removeprefix(self._base_url),
            ok=ok,
            status=exchange.status_code,
            elapsed_ms=exchange.latency_ms,
            redirects=len(exchange.redirect_chain),
            error_type=type(error).__name__ if error else None,
            **exchange.label,
        )

    @staticmethod
    def _ctx_fields(ctx: DiagnosticsContext | None) -> dict[str, str | None]:
        if ctx is None:
            return {}
        return {
            "attempt_id": ctx.attempt_id,
            "thread_id": ctx.thread_id,
            "local_transmission_id": ctx.local_transmission_id,
        }
