"""Store Protocol 接口定义

定义 ThreadStore、OutboxStore、BudgetStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from datetime import datetime
from typing import Protocol

from ..models.budget import BudgetState
from ..models.enums import PacketType, TransmissionStatus
from ..models.thread import Message, Thread
from ..models.transmission import DeliveryAttempt, Packet, Transmission


class ThreadStore(Protocol):
    """Thread / Message 存储接口"""

    async def create_thread(self, thread: Thread) -> None:
        """创建 Thread 记录"""
        ...

    async def get_thread(self, thread_id: str) -> Thread | None:
        """根据 thread_id 查询 Thread"""
        ...

    async def list_threads(self) -> list[Thread]:
        """查询所有 Thread"""
        ...

    async def touch_thread(self, thread_id: str, last_active_at: datetime) -> None:
        """更新最近活跃时间"""
        ...

    async def delete_thread(self, thread_id: str) -> None:
        """删除 Thread 及其消息"""
        ...

    async def insert_message(self, message: Message) -> None:
        """插入消息"""
        ...

    async def get_message(self, message_id: str) -> Message | None:
        """根据 message_id 查询消息"""
        ...

    async def list_messages(self, thread_id: str) -> list[Message]:
        """查询 Thread 的消息，插入顺序"""
        ...


class OutboxStore(Protocol):
    """Packet / Transmission / DeliveryAttempt 存储接口

    delivery_attempts append-only：只允许插入，不允许更新。
    """

    async def create_packet(self, packet: Packet) -> None:
        """创建 Packet 记录"""
        ...

    async def get_packet(self, packet_id: str) -> Packet | None:
        """根据 packet_id 查询 Packet"""
        ...

    async def update_packet_type(self, packet_id: str, packet_type: PacketType) -> None:
        """更新 Packet 类型"""
        ...

    async def create_transmission(self, transmission: Transmission) -> None:
        """创建 Transmission 记录"""
        ...

    async def get_transmission(self, transmission_id: str) -> Transmission | None:
        """根据 transmission_id 查询 Transmission"""
        ...

    async def list_transmissions(
        self,
        status: TransmissionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Transmission]:
        """按谓词查询 Transmission，按创建时间正序"""
        ...

    async def update_transmission_status(
        self,
        transmission_id: str,
        status: TransmissionStatus,
        updated_at: datetime,
        last_error: str | None,
        expected_status: TransmissionStatus | None = None,
    ) -> int:
        """更新 Transmission 状态，返回受影响行数"""
        ...

    async def delete_transmission(self, transmission_id: str) -> None:
        """删除 Transmission 及其 Packet"""
        ...

    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        """追加投递尝试（append-only）"""
        ...

    async def list_attempts(self, transmission_id: str) -> list[DeliveryAttempt]:
        """查询投递台账"""
        ...


class BudgetStore(Protocol):
    """预算封禁状态存储接口"""

    async def get_state(self) -> BudgetState:
        """读取预算状态"""
        ...

    async def save_state(self, state: BudgetState) -> None:
        """覆盖写入预算状态"""
        ...
