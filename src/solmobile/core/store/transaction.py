"""Outbox 原子事务封装

Packet + Transmission 的创建、投递结果的对账写入（尝试记录 + assistant 消息 +
状态 compare-and-set）都在同一 SQLite 事务内提交。
"""

from collections.abc import Collection
from datetime import UTC, datetime

import aiosqlite

from ..models.enums import PacketType, TransmissionStatus, validate_transition
from ..models.thread import Message
from ..models.transmission import DeliveryAttempt, Packet, Transmission
from .outbox_store import SqliteOutboxStore
from .thread_store import SqliteThreadStore


class TransmissionStatusConflictError(RuntimeError):
    """Transmission 状态在等待期间已被其他写入改变"""

    def __init__(
        self,
        transmission_id: str,
        expected: TransmissionStatus,
        target: TransmissionStatus,
    ) -> None:
        super().__init__(
            f"transmission {transmission_id} is no longer {expected}, "
            f"cannot move to {target}"
        )
        self.transmission_id = transmission_id
        self.expected = expected
        self.target = target


async def create_packet_and_transmission(
    conn: aiosqlite.Connection,
    outbox_store: SqliteOutboxStore,
    packet: Packet,
    transmission: Transmission,
) -> None:
    """在同一事务内创建 Packet 和 Transmission

    Raises:
        Exception: 写入或提交失败时回滚后抛出
    """
    try:
        await outbox_store.create_packet(packet)
        await outbox_store.create_transmission(transmission)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def append_message(
    conn: aiosqlite.Connection,
    thread_store: SqliteThreadStore,
    message: Message,
) -> None:
    """插入消息并更新 Thread 最近活跃时间"""
    try:
        await thread_store.insert_message(message)
        await thread_store.touch_thread(message.thread_id, message.created_at)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def _apply_status(
    outbox_store: SqliteOutboxStore,
    transmission_id: str,
    new_status: TransmissionStatus,
    expected_status: TransmissionStatus | None,
    last_error: str | None,
    updated_at: datetime,
) -> None:
    if expected_status is not None and not validate_transition(expected_status, new_status):
        raise ValueError(f"非法状态流转: {expected_status} -> {new_status}")

    rowcount = await outbox_store.update_transmission_status(
        transmission_id=transmission_id,
        status=new_status,
        updated_at=updated_at,
        last_error=last_error,
        expected_status=expected_status,
    )
    if rowcount == 0 and expected_status is not None:
        raise TransmissionStatusConflictError(transmission_id, expected_status, new_status)


async def update_status(
    conn: aiosqlite.Connection,
    outbox_store: SqliteOutboxStore,
    transmission_id: str,
    new_status: TransmissionStatus,
    expected_status: TransmissionStatus | None,
    last_error: str | None = None,
) -> None:
    """单独更新 Transmission 状态（compare-and-set）

    Args:
        conn: 数据库连接
        outbox_store: OutboxStore 实例
        transmission_id: Transmission ID
        new_status: 目标状态
        expected_status: 期望的当前状态；为 None 时不做校验
        last_error: 错误描述（None 表示清空）

    Raises:
        ValueError: 流转非法
        TransmissionStatusConflictError: 当前状态与 expected_status 不符
    """
    try:
        await _apply_status(
            outbox_store,
            transmission_id,
            new_status,
            expected_status,
            last_error,
            datetime.now(UTC),
        )
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def record_attempt_and_update_status(
    conn: aiosqlite.Connection,
    outbox_store: SqliteOutboxStore,
    attempt: DeliveryAttempt,
    new_status: TransmissionStatus | None,
    expected_status: TransmissionStatus | None,
    last_error: str | None = None,
    assistant_message: Message | None = None,
    thread_store: SqliteThreadStore | None = None,
    memento: tuple[str, str, str] | None = None,
) -> None:
    """在同一事务内写入投递尝试、可选的 assistant 消息、memento 草稿和状态更新

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        outbox_store: OutboxStore 实例
        attempt: 投递尝试记录
        new_status: 目标状态；为 None 时只写尝试记录
        expected_status: 期望的当前状态
        last_error: 错误描述
        assistant_message: 需要追加的 assistant 消息
        thread_store: 追加消息时必须提供
        memento: 服务端 ThreadMemento 草稿 (id, created_at, summary)

    Raises:
        Exception: 写入或提交失败时回滚后抛出
    """
    try:
        await outbox_store.append_attempt(attempt)

        if assistant_message is not None:
            if thread_store is None:
                raise ValueError("追加 assistant 消息需要 thread_store")
            await thread_store.insert_message(assistant_message)
            await thread_store.touch_thread(
                assistant_message.thread_id, assistant_message.created_at
            )

        if memento is not None:
            memento_id, created_at, summary = memento
            await outbox_store.update_memento_draft(
                attempt.transmission_id, memento_id, created_at, summary
            )

        if new_status is not None:
            await _apply_status(
                outbox_store,
                attempt.transmission_id,
                new_status,
                expected_status,
                last_error,
                attempt.created_at,
            )

        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def requeue_failed(
    conn: aiosqlite.Connection,
    outbox_store: SqliteOutboxStore,
    transmissions: list[Transmission],
    flip_packet_ids: Collection[str],
) -> int:
    """批量将 failed 的 Transmission 重置为 queued，并翻转调试失败标记

    只有实际重置成功的 Transmission 才会翻转其 Packet 类型。

    Returns:
        实际重置的数量（状态已变化的记录被跳过）
    """
    now = datetime.now(UTC)
    requeued = 0
    try:
        for tx in transmissions:
            changed = await outbox_store.update_transmission_status(
                transmission_id=tx.transmission_id,
                status=TransmissionStatus.QUEUED,
                updated_at=now,
                last_error=None,
                expected_status=TransmissionStatus.FAILED,
            )
            if not changed:
                continue
            requeued += changed
            if tx.packet_id in flip_packet_ids:
                await outbox_store.update_packet_type(tx.packet_id, PacketType.CHAT)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
    return requeued


async def clear_memento_drafts(
    conn: aiosqlite.Connection,
    outbox_store: SqliteOutboxStore,
    thread_id: str,
    memento_id: str,
) -> int:
    """清空 thread 下匹配 memento_id 的草稿字段

    Returns:
        被清空的 Transmission 数量
    """
    try:
        cleared = await outbox_store.clear_memento_drafts(thread_id, memento_id)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
    return cleared
