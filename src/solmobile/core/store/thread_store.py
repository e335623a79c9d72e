"""ThreadStore SQLite 实现

threads + messages 两张表。消息顺序即插入顺序（created_at + rowid）。
此处不提交事务，由调用方或 transaction 模块管理。
"""

from datetime import datetime

import aiosqlite

from ..models.enums import CreatorType
from ..models.thread import Message, Thread

_MESSAGE_COLUMNS = (
    "message_id, thread_id, creator, text, created_at, "
    "server_transmission_id, evidence_json"
)


class SqliteThreadStore:
    """ThreadStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_thread(self, thread: Thread) -> None:
        """创建 Thread 记录"""
        await self._conn.execute(
            """
            INSERT INTO threads (thread_id, title, created_at, last_active_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                thread.thread_id,
                thread.title,
                thread.created_at.isoformat(),
                thread.last_active_at.isoformat(),
            ),
        )

    async def get_thread(self, thread_id: str) -> Thread | None:
        """根据 thread_id 查询 Thread（含有序 message_ids）"""
        cursor = await self._conn.execute(
            "SELECT thread_id, title, created_at, last_active_at FROM threads WHERE thread_id = ?",
            (thread_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        message_ids = await self._list_message_ids(thread_id)
        return self._row_to_thread(row, message_ids)

    async def list_threads(self) -> list[Thread]:
        """查询所有 Thread，按 last_active_at 倒序"""
        cursor = await self._conn.execute(
            "SELECT thread_id, title, created_at, last_active_at FROM threads "
            "ORDER BY last_active_at DESC"
        )
        rows = await cursor.fetchall()
        threads = []
        for row in rows:
            threads.append(self._row_to_thread(row, await self._list_message_ids(row[0])))
        return threads

    async def touch_thread(self, thread_id: str, last_active_at: datetime) -> None:
        """更新 Thread 最近活跃时间"""
        await self._conn.execute(
            "UPDATE threads SET last_active_at = ? WHERE thread_id = ?",
            (last_active_at.isoformat(), thread_id),
        )

    async def delete_thread(self, thread_id: str) -> None:
        """删除 Thread（messages 级联删除）"""
        await self._conn.execute("DELETE FROM threads WHERE thread_id = ?", (thread_id,))

    async def insert_message(self, message: Message) -> None:
        """插入消息（不更新 thread.last_active_at）"""
        await self._conn.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                message.message_id,
                message.thread_id,
                message.creator.value,
                message.text,
                message.created_at.isoformat(),
                message.server_transmission_id,
                message.evidence_json,
            ),
        )

    async def get_message(self, message_id: str) -> Message | None:
        """根据 message_id 查询消息"""
        cursor = await self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = ?",
            (message_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    async def list_messages(self, thread_id: str) -> list[Message]:
        """查询 Thread 内全部消息，插入顺序"""
        cursor = await self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (thread_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def _list_message_ids(self, thread_id: str) -> list[str]:
        cursor = await self._conn.execute(
            "SELECT message_id FROM messages WHERE thread_id = ? ORDER BY created_at ASC, rowid ASC",
            (thread_id,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    @staticmethod
    def _row_to_thread(row: aiosqlite.Row, message_ids: list[str]) -> Thread:
        """将数据库行转换为 Thread 模型"""
        return Thread(
            thread_id=row[0],
            title=row[1],
            created_at=datetime.fromisoformat(row[2]),
            last_active_at=datetime.fromisoformat(row[3]),
            message_ids=message_ids,
        )

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> Message:
        """将数据库行转换为 Message 模型"""
        return Message(
            message_id=row[0],
            thread_id=row[1],
            creator=CreatorType(row[2]),
            text=row[3],
            created_at=datetime.fromisoformat(row[4]),
            server_transmission_id=row[5],
            evidence_json=row[6],
        )
