"""SQLite 数据库初始化

PRAGMA 配置 + 六张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# threads 表 DDL
_THREADS_DDL = """
CREATE TABLE IF NOT EXISTS threads (
    thread_id       TEXT PRIMARY KEY,
    title           TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL,
    last_active_at  TEXT NOT NULL
);
"""

# messages 表 DDL
_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    message_id              TEXT PRIMARY KEY,
    thread_id               TEXT NOT NULL,
    creator                 TEXT NOT NULL,
    text                    TEXT NOT NULL DEFAULT '',
    created_at              TEXT NOT NULL,
    server_transmission_id  TEXT,
    evidence_json           TEXT,

    FOREIGN KEY (thread_id) REFERENCES threads(thread_id) ON DELETE CASCADE
);
"""

_MESSAGES_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, created_at);",
]

# packets 表 DDL（不对 threads 建外键：发送中的 thread 可被删除）
_PACKETS_DDL = """
CREATE TABLE IF NOT EXISTS packets (
    packet_id          TEXT PRIMARY KEY,
    packet_type        TEXT NOT NULL DEFAULT 'chat',
    thread_id          TEXT NOT NULL,
    message_ids        TEXT NOT NULL DEFAULT '[]',
    context_refs_json  TEXT,
    payload_json       TEXT
);
"""

_PACKETS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_packets_thread ON packets(thread_id);",
]

# transmissions 表 DDL
_TRANSMISSIONS_DDL = """
CREATE TABLE IF NOT EXISTS transmissions (
    transmission_id            TEXT PRIMARY KEY,
    type                       TEXT NOT NULL DEFAULT 'chat',
    request_id                 TEXT NOT NULL,
    status                     TEXT NOT NULL DEFAULT 'queued',
    packet_id                  TEXT NOT NULL,
    created_at                 TEXT NOT NULL,
    updated_at                 TEXT NOT NULL,
    last_error                 TEXT,
    server_memento_id          TEXT,
    server_memento_created_at  TEXT,
    server_memento_summary     TEXT,

    FOREIGN KEY (packet_id) REFERENCES packets(packet_id) ON DELETE CASCADE
);
"""

_TRANSMISSIONS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_transmissions_status ON transmissions(status, created_at);",
    # v0: Packet 与 Transmission 一一对应
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_transmissions_packet ON transmissions(packet_id);",
]

# delivery_attempts 表 DDL（append-only）
_DELIVERY_ATTEMPTS_DDL = """
CREATE TABLE IF NOT EXISTS delivery_attempts (
    attempt_id              TEXT PRIMARY KEY,
    transmission_id         TEXT NOT NULL,
    created_at              TEXT NOT NULL,
    status_code             INTEGER NOT NULL DEFAULT -1,
    outcome                 TEXT NOT NULL,
    source                  TEXT NOT NULL DEFAULT 'send',
    error_message           TEXT,
    server_transmission_id  TEXT,
    retryable_inferred      INTEGER,
    retry_after_seconds     INTEGER,
    final_url               TEXT,

    FOREIGN KEY (transmission_id) REFERENCES transmissions(transmission_id) ON DELETE CASCADE
);
"""

_DELIVERY_ATTEMPTS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_attempts_tx ON delivery_attempts(transmission_id, created_at);",
]


# budget_state 表 DDL（单行）
_BUDGET_STATE_DDL = """
CREATE TABLE IF NOT EXISTS budget_state (
    id               INTEGER PRIMARY KEY CHECK (id = 1),
    is_blocked       INTEGER NOT NULL DEFAULT 0,
    blocked_until    TEXT,
    last_updated_at  TEXT
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA（内存库的 journal_mode 固定为 memory，设置无副作用）
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    await conn.execute(_THREADS_DDL)
    await conn.execute(_MESSAGES_DDL)
    await conn.execute(_PACKETS_DDL)
    await conn.execute(_TRANSMISSIONS_DDL)
    await conn.execute(_DELIVERY_ATTEMPTS_DDL)
    await conn.execute(_BUDGET_STATE_DDL)

    # 创建索引
    for idx_sql in (
        _MESSAGES_INDEXES
        + _PACKETS_INDEXES
        + _TRANSMISSIONS_INDEXES
        + _DELIVERY_ATTEMPTS_INDEXES
    ):
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
