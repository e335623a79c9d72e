"""Packet / Transmission / DeliveryAttempt Domain Model

Packet 每个用户回合创建一次；Transmission 与 Packet 一一对应。
DeliveryAttempt 是 append-only 的投递台账，用于推导重试、退避与 polling 状态。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import (
    DeliveryAttemptSource,
    DeliveryOutcome,
    PacketType,
    TransmissionStatus,
)


class Packet(BaseModel):
    """Packet 数据模型

    除 retry_failed 中 chat_fail -> chat 的一次性翻转外不再修改。
    """

    packet_id: str = Field(description="唯一标识，ULID 格式")
    packet_type: PacketType = Field(default=PacketType.CHAT, description="Packet 类型")
    thread_id: str = Field(description="所属 Thread ID")
    message_ids: list[str] = Field(default_factory=list, description="携带的消息 ID")
    context_refs_json: str | None = Field(default=None, description="上下文引用 JSON")
    payload_json: str | None = Field(default=None, description="请求 payload JSON")

    @property
    def simulate_failure(self) -> bool:
        return self.packet_type == PacketType.CHAT_FAIL


class DeliveryAttempt(BaseModel):
    """单次投递尝试（append-only）"""

    attempt_id: str = Field(description="唯一标识，ULID 格式")
    transmission_id: str = Field(description="所属 Transmission ID")
    created_at: datetime = Field(description="尝试时间")
    status_code: int = Field(description="HTTP 状态码，无 HTTP 响应时为 -1")
    outcome: DeliveryOutcome = Field(description="尝试结果")
    source: DeliveryAttemptSource = Field(
        default=DeliveryAttemptSource.SEND,
        description="尝试来源",
    )
    error_message: str | None = Field(default=None, description="错误描述")
    server_transmission_id: str | None = Field(
        default=None,
        description="服务端返回的 transmission id",
    )
    retryable_inferred: bool | None = Field(default=None, description="RetryPolicy 判定")
    retry_after_seconds: int | None = Field(default=None, description="服务端 Retry-After")
    final_url: str | None = Field(default=None, description="重定向后的最终 URL")


class Transmission(BaseModel):
    """Transmission 数据模型

    同一时刻系统内最多一个 Transmission 处于 SENDING。
    request_id 是幂等键，重试时原样复用。
    """

    transmission_id: str = Field(description="唯一标识，ULID 格式")
    type: str = Field(default="chat", description="Transmission 类型")
    request_id: str = Field(description="幂等键（等于 packet_id）")
    status: TransmissionStatus = Field(
        default=TransmissionStatus.QUEUED,
        description="当前状态",
    )
    packet_id: str = Field(description="关联的 Packet ID")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="最近一次状态写入时间")
    last_error: str | None = Field(default=None, description="最近一次错误")

    # 服务端提议的 ThreadMemento 草稿，供 Accept / Decline
    server_memento_id: str | None = Field(default=None)
    server_memento_created_at: str | None = Field(default=None)
    server_memento_summary: str | None = Field(default=None)

    delivery_attempts: list[DeliveryAttempt] = Field(
        default_factory=list,
        description="投递尝试台账，按创建时间正序",
    )
