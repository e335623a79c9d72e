"""BudgetGate -- 预算封禁闸门

服务端以 422 + {"error": "budget_exceeded"} 拒绝请求后，本地记录封禁状态；
封禁期间 outbox 不再发起网络请求，直接把队首标记为 failed。
到达 blocked_until（或 billing_period_end）后自动解封。
"""

import json
from datetime import UTC, datetime

import aiosqlite
import structlog
from pydantic import BaseModel

from solmobile.core.models import BudgetState
from solmobile.core.store.protocols import BudgetStore

log = structlog.get_logger()

BUDGET_EXCEEDED_ERROR = "budget_exceeded"
BUDGET_BLOCKED_ATTEMPT_ERROR = "budget_exceeded(local)"
BUDGET_STATUS_CODE = 422


class BudgetExceededInfo(BaseModel):
    """budget_exceeded 响应中的解封时间"""

    blocked_until: datetime | None = None


def _parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def parse_budget_exceeded(body: str | None) -> BudgetExceededInfo | None:
    """识别 budget_exceeded 错误响应体；其他响应返回 None"""
    if not body:
        return None
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("error") != BUDGET_EXCEEDED_ERROR:
        return None

    blocked_until = data.get("blocked_until")
    if not isinstance(blocked_until, str):
        blocked_until = data.get("billing_period_end")
    return BudgetExceededInfo(blocked_until=_parse_iso(blocked_until))


class BudgetGate:
    """预算封禁状态服务（持久化在 budget_state 表）"""

    def __init__(self, conn: aiosqlite.Connection, store: BudgetStore) -> None:
        self._conn = conn
        self._store = store

    async def state(self) -> BudgetState:
        return await self._store.get_state()

    async def is_blocked_now(self, now: datetime | None = None) -> bool:
        """当前是否封禁；到期的封禁在此处解除"""
        now = now or datetime.now(UTC)
        state = await self._store.get_state()
        if state.expired(now):
            await self._save(BudgetState(is_blocked=False, last_updated_at=now))
            log.info("budget_block_expired", blocked_until=state.blocked_until.isoformat())
            return False
        return state.is_blocked

    async def apply_budget_exceeded(self, blocked_until: datetime | None) -> None:
        """记录封禁；blocked_until 为 None 时直到 clear() 前一直封禁"""
        await self._save(
            BudgetState(
                is_blocked=True,
                blocked_until=blocked_until,
                last_updated_at=datetime.now(UTC),
            )
        )
        log.warning(
            "budget_exceeded_applied",
            blocked_until=blocked_until.isoformat() if blocked_until else None,
        )

    async def clear(self) -> None:
        """手动解除封禁"""
        await self._save(BudgetState(is_blocked=False, last_updated_at=datetime.now(UTC)))
        log.info("budget_block_cleared")

    async def _save(self, state: BudgetState) -> None:
        try:
            await self._store.save_state(state)
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise
