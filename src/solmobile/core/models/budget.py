"""BudgetState Domain Model

服务端返回 budget_exceeded 后记录的本地封禁状态。
blocked_until 为 None 表示服务端未给出解封时间。
"""

from datetime import datetime

from pydantic import BaseModel, Field


class BudgetState(BaseModel):
    """预算封禁状态"""

    is_blocked: bool = Field(default=False, description="是否处于封禁中")
    blocked_until: datetime | None = Field(default=None, description="解封时间")
    last_updated_at: datetime | None = Field(default=None, description="最近更新时间")

    def expired(self, now: datetime) -> bool:
        """封禁已到期（无解封时间时永不到期）"""
        return self.is_blocked and self.blocked_until is not None and self.blocked_until <= now
