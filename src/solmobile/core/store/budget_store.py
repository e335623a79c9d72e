"""BudgetStore SQLite 实现

budget_state 表只有一行（id = 1）。
此处不提交事务，由调用方管理。
"""

from datetime import datetime

import aiosqlite

from ..models.budget import BudgetState

_ROW_ID = 1


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteBudgetStore:
    """BudgetStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get_state(self) -> BudgetState:
        """读取预算状态；从未写入时返回未封禁状态"""
        cursor = await self._conn.execute(
            "SELECT is_blocked, blocked_until, last_updated_at FROM budget_state WHERE id = ?",
            (_ROW_ID,),
        )
        row = await cursor.fetchone()
        if row is None:
            return BudgetState()
        return BudgetState(
            is_blocked=bool(row[0]),
            blocked_until=_parse_dt(row[1]),
            last_updated_at=_parse_dt(row[2]),
        )

    async def save_state(self, state: BudgetState) -> None:
        """覆盖写入预算状态"""
        await self._conn.execute(
            """
            INSERT INTO budget_state (id, is_blocked, blocked_until, last_updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                is_blocked = excluded.is_blocked,
                blocked_until = excluded.blocked_until,
                last_updated_at = excluded.last_updated_at
            """,
            (
                _ROW_ID,
                int(state.is_blocked),
                state.blocked_until.isoformat() if state.blocked_until else None,
                state.last_updated_at.isoformat() if state.last_updated_at else None,
            ),
        )
