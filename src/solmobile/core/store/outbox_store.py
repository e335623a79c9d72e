"""OutboxStore SQLite 实现

packets / transmissions / delivery_attempts 三张表。
delivery_attempts 为 append-only：只允许插入。
此处不提交事务，由 transaction 模块管理。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import (
    DeliveryAttemptSource,
    DeliveryOutcome,
    PacketType,
    TransmissionStatus,
)
from ..models.transmission import DeliveryAttempt, Packet, Transmission

_TX_COLUMNS = (
    "transmission_id, type, request_id, status, packet_id, created_at, updated_at, "
    "last_error, server_memento_id, server_memento_created_at, server_memento_summary"
)

_ATTEMPT_COLUMNS = (
    "attempt_id, transmission_id, created_at, status_code, outcome, source, "
    "error_message, server_transmission_id, retryable_inferred, "
    "retry_after_seconds, final_url"
)


class SqliteOutboxStore:
    """OutboxStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ---- packets ----

    async def create_packet(self, packet: Packet) -> None:
        """创建 Packet 记录"""
        await self._conn.execute(
            """
            INSERT INTO packets (packet_id, packet_type, thread_id, message_ids,
                                 context_refs_json, payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                packet.packet_id,
                packet.packet_type.value,
                packet.thread_id,
                json.dumps(packet.message_ids),
                packet.context_refs_json,
                packet.payload_json,
            ),
        )

    async def get_packet(self, packet_id: str) -> Packet | None:
        """根据 packet_id 查询 Packet"""
        cursor = await self._conn.execute(
            """
            SELECT packet_id, packet_type, thread_id, message_ids,
                   context_refs_json, payload_json
            FROM packets WHERE packet_id = ?
            """,
            (packet_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Packet(
            packet_id=row[0],
            packet_type=PacketType(row[1]),
            thread_id=row[2],
            message_ids=json.loads(row[3]) if row[3] else [],
            context_refs_json=row[4],
            payload_json=row[5],
        )

    async def update_packet_type(self, packet_id: str, packet_type: PacketType) -> None:
        """更新 Packet 类型（仅用于 chat_fail -> chat 一次性翻转）"""
        await self._conn.execute(
            "UPDATE packets SET packet_type = ? WHERE packet_id = ?",
            (packet_type.value, packet_id),
        )

    # ---- transmissions ----

    async def create_transmission(self, transmission: Transmission) -> None:
        """创建 Transmission 记录"""
        await self._conn.execute(
            f"INSERT INTO transmissions ({_TX_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                transmission.transmission_id,
                transmission.type,
                transmission.request_id,
                transmission.status.value,
                transmission.packet_id,
                transmission.created_at.isoformat(),
                transmission.updated_at.isoformat(),
                transmission.last_error,
                transmission.server_memento_id,
                transmission.server_memento_created_at,
                transmission.server_memento_summary,
            ),
        )

    async def get_transmission(self, transmission_id: str) -> Transmission | None:
        """根据 transmission_id 查询 Transmission（含投递台账）"""
        cursor = await self._conn.execute(
            f"SELECT {_TX_COLUMNS} FROM transmissions WHERE transmission_id = ?",
            (transmission_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        attempts = await self.list_attempts(transmission_id)
        return self._row_to_transmission(row, attempts)

    async def list_transmissions(
        self,
        status: TransmissionStatus | None = None,
        thread_id: str | None = None,
    ) -> list[Transmission]:
        """按谓词查询 Transmission，按创建时间正序（同一时刻按插入顺序）"""
        clauses: list[str] = []
        params: list[str] = []
        if status is not None:
            clauses.append("t.status = ?")
            params.append(status.value)
        if thread_id is not None:
            clauses.append("p.thread_id = ?")
            params.append(thread_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        columns = ", ".join(f"t.{c.strip()}" for c in _TX_COLUMNS.split(","))
        cursor = await self._conn.execute(
            f"""
            SELECT {columns}
            FROM transmissions t JOIN packets p ON p.packet_id = t.packet_id
            {where}
            ORDER BY t.created_at ASC, t.rowid ASC
            """,
            params,
        )
        rows = await cursor.fetchall()
        if not rows:
            return []

        attempts_by_tx = await self._list_attempts_for([row[0] for row in rows])
        return [
            self._row_to_transmission(row, attempts_by_tx.get(row[0], [])) for row in rows
        ]

    async def update_transmission_status(
        self,
        transmission_id: str,
        status: TransmissionStatus,
        updated_at: datetime,
        last_error: str | None,
        expected_status: TransmissionStatus | None = None,
    ) -> int:
        """更新 Transmission 状态与 last_error

        expected_status 不为 None 时做 compare-and-set。

        Returns:
            受影响行数（0 表示记录不存在或状态已被改变）
        """
        if expected_status is None:
            cursor = await self._conn.execute(
                """
                UPDATE transmissions SET status = ?, updated_at = ?, last_error = ?
                WHERE transmission_id = ?
                """,
                (status.value, updated_at.isoformat(), last_error, transmission_id),
            )
        else:
            cursor = await self._conn.execute(
                """
                UPDATE transmissions SET status = ?, updated_at = ?, last_error = ?
                WHERE transmission_id = ? AND status = ?
                """,
                (
                    status.value,
                    updated_at.isoformat(),
                    last_error,
                    transmission_id,
                    expected_status.value,
                ),
            )
        return cursor.rowcount

    async def update_memento_draft(
        self,
        transmission_id: str,
        memento_id: str | None,
        created_at: str | None,
        summary: str | None,
    ) -> None:
        """写入（或清空）服务端 ThreadMemento 草稿字段"""
        await self._conn.execute(
            """
            UPDATE transmissions
            SET server_memento_id = ?, server_memento_created_at = ?, server_memento_summary = ?
            WHERE transmission_id = ?
            """,
            (memento_id, created_at, summary, transmission_id),
        )

    async def clear_memento_drafts(self, thread_id: str, memento_id: str) -> int:
        """清空指定 thread 下匹配 memento_id 的草稿字段

        Returns:
            被清空的 Transmission 数量
        """
        cursor = await self._conn.execute(
            """
            UPDATE transmissions
            SET server_memento_id = NULL, server_memento_created_at = NULL,
                server_memento_summary = NULL
            WHERE server_memento_id = ?
              AND packet_id IN (SELECT packet_id FROM packets WHERE thread_id = ?)
            """,
            (memento_id, thread_id),
        )
        return cursor.rowcount

    async def delete_transmission(self, transmission_id: str) -> None:
        """删除 Transmission 及其 Packet（投递台账级联删除）"""
        tx = await self.get_transmission(transmission_id)
        if tx is None:
            return
        await self._conn.execute(
            "DELETE FROM transmissions WHERE transmission_id = ?",
            (transmission_id,),
        )
        await self._conn.execute("DELETE FROM packets WHERE packet_id = ?", (tx.packet_id,))

    async def count_by_status(self) -> dict[TransmissionStatus, int]:
        """按状态统计 Transmission 数量"""
        cursor = await self._conn.execute(
            "SELECT status, COUNT(*) FROM transmissions GROUP BY status"
        )
        rows = await cursor.fetchall()
        counts = {status: 0 for status in TransmissionStatus}
        for row in rows:
            counts[TransmissionStatus(row[0])] = row[1]
        return counts

    # ---- delivery attempts ----

    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        """追加投递尝试（append-only）"""
        retryable = None if attempt.retryable_inferred is None else int(attempt.retryable_inferred)
        await self._conn.execute(
            f"INSERT INTO delivery_attempts ({_ATTEMPT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                attempt.attempt_id,
                attempt.transmission_id,
                attempt.created_at.isoformat(),
                attempt.status_code,
                attempt.outcome.value,
                attempt.source.value,
                attempt.error_message,
                attempt.server_transmission_id,
                retryable,
                attempt.retry_after_seconds,
                attempt.final_url,
            ),
        )

    async def list_attempts(self, transmission_id: str) -> list[DeliveryAttempt]:
        """查询指定 Transmission 的投递台账，按创建时间正序"""
        cursor = await self._conn.execute(
            f"SELECT {_ATTEMPT_COLUMNS} FROM delivery_attempts WHERE transmission_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (transmission_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_attempt(row) for row in rows]

    async def _list_attempts_for(
        self, transmission_ids: list[str]
    ) -> dict[str, list[DeliveryAttempt]]:
        placeholders = ", ".join("?" for _ in transmission_ids)
        cursor = await self._conn.execute(
            f"SELECT {_ATTEMPT_COLUMNS} FROM delivery_attempts "
            f"WHERE transmission_id IN ({placeholders}) "
            "ORDER BY created_at ASC, rowid ASC",
            transmission_ids,
        )
        rows = await cursor.fetchall()
        result: dict[str, list[DeliveryAttempt]] = {}
        for row in rows:
            result.setdefault(row[1], []).append(self._row_to_attempt(row))
        return result

    @staticmethod
    def _row_to_transmission(
        row: aiosqlite.Row, attempts: list[DeliveryAttempt]
    ) -> Transmission:
        """将数据库行转换为 Transmission 模型"""
        return Transmission(
            transmission_id=row[0],
            type=row[1],
            request_id=row[2],
            status=TransmissionStatus(row[3]),
            packet_id=row[4],
            created_at=datetime.fromisoformat(row[5]),
            updated_at=datetime.fromisoformat(row[6]),
            last_error=row[7],
            server_memento_id=row[8],
            server_memento_created_at=row[9],
            server_memento_summary=row[10],
            delivery_attempts=attempts,
        )

    @staticmethod
    def _row_to_attempt(row: aiosqlite.Row) -> DeliveryAttempt:
        """将数据库行转换为 DeliveryAttempt 模型"""
        return DeliveryAttempt(
            attempt_id=row[0],
            transmission_id=row[1],
            created_at=datetime.fromisoformat(row[2]),
            status_code=row[3],
            outcome=DeliveryOutcome(row[4]),
            source=DeliveryAttemptSource(row[5]),
            error_message=row[6],
            server_transmission_id=row[7],
            retryable_inferred=None if row[8] is None else bool(row[8]),
            retry_after_seconds=row[9],
            final_url=row[10],
        )
