"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、调试前缀、日志 ID 截断长度等可配置常量。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取 data 基础目录"""
    return Path(os.environ.get("SOL_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径（":memory:" 表示纯内存模式）"""
    return os.environ.get(
        "SOL_DB_PATH",
        str(_get_base_dir() / "sqlite" / "solmobile.db"),
    )


# 调试前缀：以此开头的消息首次发送时要求服务端模拟失败
DEBUG_FAIL_PREFIX: str = os.environ.get("SOL_DEBUG_FAIL_PREFIX", "/fail")

# 调试前缀：以此开头的消息要求服务端返回 202 pending
DEBUG_PENDING_PREFIX: str = os.environ.get("SOL_DEBUG_PENDING_PREFIX", "/pending")

# 日志中 ID 截断长度
SHORT_ID_LENGTH: int = 8


def short_id(value: str | None) -> str:
    """日志用短 ID，空值返回 "-"

    ULID 前 10 位是时间戳，同一时段内前缀几乎相同，因此取尾部随机段。
    """
    if not value:
        return "-"
    return value[-SHORT_ID_LENGTH:]
