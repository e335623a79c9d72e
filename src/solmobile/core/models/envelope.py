"""PacketEnvelope -- 发送前构建的瞬态快照

网络请求进行中不持有任何持久化对象，只持有此快照。
"""

from pydantic import BaseModel, ConfigDict, Field

from .enums import PacketType


class PacketEnvelope(BaseModel):
    """Packet 的扁平快照 + 已解析的消息文本（不落盘）"""

    model_config = ConfigDict(frozen=True)

    packet_id: str
    packet_type: PacketType = PacketType.CHAT
    thread_id: str
    message_ids: list[str] = Field(default_factory=list)
    message_text: str = ""
    request_id: str
    context_refs_json: str | None = None
    payload_json: str | None = None
