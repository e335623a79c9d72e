"""全局 pytest 配置 -- 临时 SQLite 数据库与 StoreGroup fixture"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import pytest_asyncio
from ulid import ULID

from solmobile.core.models import CreatorType, Message, Thread
from solmobile.core.store import MEMORY_DB, StoreGroup, create_store_group
from solmobile.core.store.transaction import append_message

PostMessage = Callable[..., Awaitable[tuple[Thread, Message]]]


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "sqlite" / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from solmobile.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_path / "conn.db"))
    await init_db(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path) -> AsyncGenerator[StoreGroup, None]:
    """提供基于临时文件的 StoreGroup"""
    group = await create_store_group(str(tmp_db_path))
    yield group
    await group.close()


@pytest_asyncio.fixture
async def memory_store_group() -> AsyncGenerator[StoreGroup, None]:
    """提供纯内存 StoreGroup"""
    group = await create_store_group(MEMORY_DB)
    yield group
    await group.close()


@pytest_asyncio.fixture
async def post_message() -> PostMessage:
    """提供"追加用户消息"的辅助函数，Thread 不存在时创建"""

    async def _post(
        group: StoreGroup,
        text: str,
        thread_id: str = "thread-0001",
    ) -> tuple[Thread, Message]:
        now = datetime.now(UTC)
        if await group.thread_store.get_thread(thread_id) is None:
            await group.thread_store.create_thread(
                Thread(thread_id=thread_id, created_at=now, last_active_at=now)
            )
            await group.conn.commit()
        message = Message(
            message_id=str(ULID()),
            thread_id=thread_id,
            creator=CreatorType.USER,
            text=text,
            created_at=now,
        )
        await append_message(group.conn, group.thread_store, message)
        thread = await group.thread_store.get_thread(thread_id)
        return thread, message

    return _post
