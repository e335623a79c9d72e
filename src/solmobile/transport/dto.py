"""服务端 wire 格式 DTO

请求/响应体使用 camelCase 字段；OutputEnvelope 使用 snake_case。
未知字段忽略，可选字段缺省为 None。
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """camelCase wire 模型基类"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ChatRequest(_WireModel):
    """POST /v1/chat 请求体"""

    thread_id: str
    client_request_id: str = Field(description="幂等键（packet id），重试时原样复用")
    message: str


class ThreadMemento(_WireModel):
    """服务端返回的 ThreadMemento（导航用草稿，不是持久知识）"""

    id: str
    thread_id: str
    created_at: str
    version: str = ""
    arc: str = ""
    active: list[str] = Field(default_factory=list)
    parked: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    next: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        """格式化为多行摘要文本"""

        def join(items: list[str]) -> str:
            return " | ".join(items) if items else "(none)"

        return "\n".join(
            [
                f"Arc: {self.arc or '(none)'}",
                f"Active: {join(self.active)}",
                f"Parked: {join(self.parked)}",
                f"Decisions: {join(self.decisions)}",
                f"Next: {join(self.next)}",
            ]
        )


# ---- evidence ----


class EvidenceSummary(_WireModel):
    captures: int = 0
    supports: int = 0
    claims: int = 0
    warnings: int = 0


class EvidenceWarning(_WireModel):
    """URL 处理的 fail-open 警告"""

    code: str
    message: str
    count: int | None = None
    max: int | None = None
    url_preview: str | None = None


class Capture(_WireModel):
    capture_id: str
    kind: str
    url: str
    captured_at: str
    title: str | None = None
    source: str


class ClaimSupport(_WireModel):
    """url_capture 或 text_snippet"""

    support_id: str
    type: str
    created_at: str
    capture_id: str | None = None
    snippet_text: str | None = None
    snippet_hash: str | None = None


class ClaimMapEntry(_WireModel):
    claim_id: str
    claim_text: str
    support_ids: list[str] = Field(default_factory=list)
    created_at: str


class Evidence(_WireModel):
    captures: list[Capture] | None = None
    supports: list[ClaimSupport] | None = None
    claims: list[ClaimMapEntry] | None = None


# ---- output envelope（snake_case） ----


class OutputEnvelopeEvidenceRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    evidence_id: str
    span_id: str | None = None


class OutputEnvelopeClaim(BaseModel):
    model_config = ConfigDict(extra="ignore")

    claim_id: str
    claim_text: str
    evidence_refs: list[OutputEnvelopeEvidenceRef] = Field(default_factory=list)


class OutputEnvelopeMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    meta_version: str | None = None
    claims: list[OutputEnvelopeClaim] | None = None
    used_evidence_ids: list[str] | None = None
    evidence_pack_id: str | None = None


class OutputEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    assistant_text: str
    meta: OutputEnvelopeMeta | None = None


# ---- 响应体 ----


class ChatResponseBody(_WireModel):
    """POST /v1/chat 响应体"""

    ok: bool
    transmission_id: str | None = None
    assistant: str | None = None
    idempotent_replay: bool | None = None
    pending: bool | None = None
    status: str | None = None
    thread_memento: ThreadMemento | None = None
    evidence_summary: EvidenceSummary | None = None
    evidence: Evidence | None = None
    evidence_warnings: list[EvidenceWarning] | None = None
    output_envelope: OutputEnvelope | None = None


class TransmissionInfo(_WireModel):
    id: str
    status: str


class TransmissionPollBody(_WireModel):
    """GET /v1/transmissions/{id} 响应体"""

    ok: bool
    transmission: TransmissionInfo
    pending: bool | None = None
    assistant: str | None = None
    thread_memento: ThreadMemento | None = None
    evidence_summary: EvidenceSummary | None = None
    evidence: Evidence | None = None
    evidence_warnings: list[EvidenceWarning] | None = None
    output_envelope: OutputEnvelope | None = None


class MementoDecisionRequest(_WireModel):
    """POST /v1/memento/decision 请求体"""

    thread_id: str
    memento_id: str
    decision: str


class MementoDecisionResponseBody(_WireModel):
    ok: bool
    decision: str | None = None
    applied: bool | None = None
    reason: str | None = None
    memento: ThreadMemento | None = None
