"""Thread / Message Domain Model

Thread 拥有其消息，消息按插入顺序排列。
Message 创建后不可变。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import CreatorType


class Message(BaseModel):
    """Message 数据模型

    assistant 消息可携带服务端 transmission id 和 evidence 图（JSON 序列化）。
    """

    message_id: str = Field(description="唯一标识，ULID 格式")
    thread_id: str = Field(description="所属 Thread ID")
    creator: CreatorType = Field(description="创建者")
    text: str = Field(description="文本内容")
    created_at: datetime = Field(description="创建时间")
    server_transmission_id: str | None = Field(
        default=None,
        description="服务端 transmission id（assistant 消息）",
    )
    evidence_json: str | None = Field(
        default=None,
        description="evidence 图的 JSON 序列化（assistant 消息，可选）",
    )


class Thread(BaseModel):
    """Thread 数据模型"""

    thread_id: str = Field(description="唯一标识，ULID 格式")
    title: str = Field(default="", description="标题")
    created_at: datetime = Field(description="创建时间")
    last_active_at: datetime = Field(description="最近活跃时间")
    message_ids: list[str] = Field(
        default_factory=list,
        description="消息 ID 列表，插入顺序",
    )
