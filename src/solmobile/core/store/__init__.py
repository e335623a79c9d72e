"""solmobile Core Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
db_path 为 ":memory:" 时使用纯内存数据库（测试用）。
"""

from pathlib import Path

import aiosqlite

from .budget_store import SqliteBudgetStore
from .outbox_store import SqliteOutboxStore
from .sqlite_init import init_db
from .thread_store import SqliteThreadStore
from .transaction import (
    TransmissionStatusConflictError,
    append_message,
    clear_memento_drafts,
    create_packet_and_transmission,
    record_attempt_and_update_status,
    requeue_failed,
    update_status,
)

MEMORY_DB = ":memory:"


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.thread_store = SqliteThreadStore(conn)
        self.outbox_store = SqliteOutboxStore(conn)
        self.budget_store = SqliteBudgetStore(conn)

    async def close(self) -> None:
        await self.conn.close()


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径，或 ":memory:"

    Returns:
        StoreGroup 实例
    """
    if db_path != MEMORY_DB:
        # 确保数据库目录存在
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return StoreGroup(conn=conn)


__all__ = [
    "MEMORY_DB",
    "StoreGroup",
    "create_store_group",
    "SqliteThreadStore",
    "SqliteOutboxStore",
    "SqliteBudgetStore",
    "init_db",
    "TransmissionStatusConflictError",
    "create_packet_and_transmission",
    "append_message",
    "update_status",
    "record_attempt_and_update_status",
    "requeue_failed",
    "clear_memento_drafts",
]
