"""ChatTransport 协议与响应类型

ChatTransport 是必需能力；ChatTransportPolling / ChatTransportMementoDecision
是可选能力，调用方通过 isinstance 探测。
"""

from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from solmobile.core.models.envelope import PacketEnvelope
from .dto import Evidence, EvidenceSummary, EvidenceWarning, OutputEnvelope, ThreadMemento
from .redirect_tracker import RedirectHop


class ResponseInfo(BaseModel):
    """HTTP 响应元数据"""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    final_url: str | None = None
    redirect_chain: list[RedirectHop] = Field(default_factory=list)


class DiagnosticsContext(BaseModel):
    """诊断上下文 -- 把一次 HTTP 交换关联到本地投递尝试"""

    attempt_id: str
    thread_id: str | None = None
    local_transmission_id: str | None = None


class ChatResponse(BaseModel):
    """send() 的返回值"""

    text: str
    status_code: int
    transmission_id: str | None = None
    pending: bool = False
    response_info: ResponseInfo | None = None
    thread_memento: ThreadMemento | None = None
    evidence_summary: EvidenceSummary | None = None
    evidence: Evidence | None = None
    evidence_warnings: list[EvidenceWarning] | None = None
    output_envelope: OutputEnvelope | None = None


class ChatPollResponse(BaseModel):
    """poll() 的返回值"""

    pending: bool
    assistant: str | None = None
    server_status: str | None = None
    status_code: int
    response_info: ResponseInfo | None = None
    thread_memento: ThreadMemento | None = None
    evidence_summary: EvidenceSummary | None = None
    evidence: Evidence | None = None
    evidence_warnings: list[EvidenceWarning] | None = None
    output_envelope: OutputEnvelope | None = None


class MementoDecision(StrEnum):
    """ThreadMemento 决策

    accept: draft -> accepted
    decline: draft -> discarded
    revoke: accepted -> cleared
    """

    ACCEPT = "accept"
    DECLINE = "decline"
    REVOKE = "revoke"


class MementoDecisionResult(BaseModel):
    status_code: int
    applied: bool
    reason: str | None = None
    memento: ThreadMemento | None = None


@runtime_checkable
class ChatTransport(Protocol):
    """发送 PacketEnvelope 到服务端"""

    async def send(
        self,
        envelope: PacketEnvelope,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatResponse:
        ...


@runtime_checkable
class ChatTransportPolling(ChatTransport, Protocol):
    """可选能力：轮询服务端 pending（202）的 transmission"""

    async def poll(
        self,
        transmission_id: str,
        diagnostics: DiagnosticsContext | None = None,
    ) -> ChatPollResponse:
        ...


@runtime_checkable
class ChatTransportMementoDecision(Protocol):
    """可选能力：提交 ThreadMemento 决策"""

    async def decide_memento(
        self,
        thread_id: str,
        memento_id: str,
        decision: MementoDecision,
    ) -> MementoDecisionResult:
        ...
